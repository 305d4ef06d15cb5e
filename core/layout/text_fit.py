"""Scale-to-fill font size estimation.

Boxes are in millimetres, font sizes in points.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable

from reportlab.pdfbase import pdfmetrics

from core.utils.log_events import log_event

logger = logging.getLogger("vdp.layout")

PT_PER_MM = 72.0 / 25.4

# (line, font size in pt) -> rendered line width in pt
Measure = Callable[[str, float], float]


class _AutoMeasure:
    pass


AUTO_MEASURE = _AutoMeasure()


def reportlab_measure(font_name: str = "Helvetica") -> Measure:
    """Build a glyph-metric measure backed by reportlab font tables.

    Raises KeyError when the font is not registered with reportlab.
    """

    pdfmetrics.getFont(font_name)

    def _measure(line: str, size: float) -> float:
        return pdfmetrics.stringWidth(line, font_name, size)

    return _measure


def default_measure(font_name: str = "Helvetica") -> Measure | None:
    try:
        return reportlab_measure(font_name)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.WARNING,
            "measure_font_unavailable",
            font=font_name,
            error_type=type(exc).__name__,
        )
        return None


def best_font_size(
    text: str,
    box_width: float,
    box_height: float,
    *,
    min_size: float = 6.0,
    max_size: float = 72.0,
    line_height: float = 1.3,
    average_char_width: float = 0.55,
    measure: Measure | None | _AutoMeasure = AUTO_MEASURE,
) -> float:
    """Return the largest font size in ``[min_size, max_size]`` that fits the box.

    Rules:
    - Empty or whitespace-only text returns ``max_size`` without searching.
    - The widest line must fit the box width.
    - ``line_count * size * line_height`` must fit the box height.
    - When no fit exists, ``min_size`` is returned.
    - Without a measure, a closed-form estimate based on an average
      character width is used instead.
    """

    if not text or not text.strip():
        return max_size

    lines = [line for line in text.split("\n") if line.strip()]
    if not lines:
        return max_size

    if min_size > max_size:
        min_size = max_size

    resolved_measure = default_measure() if isinstance(measure, _AutoMeasure) else measure
    if resolved_measure is None:
        return _closed_form_size(
            lines, box_width, box_height, min_size, max_size, line_height, average_char_width
        )

    try:
        return _search_size(
            lines, box_width, box_height, min_size, max_size, line_height, resolved_measure
        )
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.WARNING,
            "measure_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _closed_form_size(
            lines, box_width, box_height, min_size, max_size, line_height, average_char_width
        )


def _search_size(
    lines: list[str],
    box_width: float,
    box_height: float,
    min_size: float,
    max_size: float,
    line_height: float,
    measure: Measure,
) -> float:
    width_pt = box_width * PT_PER_MM
    height_pt = box_height * PT_PER_MM

    low = math.ceil(min_size)
    high = math.floor(max_size)
    best = min_size

    while low <= high:
        mid = (low + high) // 2
        widest = max(measure(line, float(mid)) for line in lines)
        total_height = len(lines) * mid * line_height
        if widest <= width_pt and total_height <= height_pt:
            best = float(mid)
            low = mid + 1
        else:
            high = mid - 1

    return best


def _closed_form_size(
    lines: list[str],
    box_width: float,
    box_height: float,
    min_size: float,
    max_size: float,
    line_height: float,
    average_char_width: float,
) -> float:
    longest = max((len(line) for line in lines), default=1) or 1
    size_for_width = box_width / (longest * average_char_width) * PT_PER_MM
    size_for_height = box_height / (len(lines) * line_height) * PT_PER_MM
    return max(min(size_for_width, size_for_height, max_size), min_size)
