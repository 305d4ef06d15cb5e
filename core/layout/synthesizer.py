"""Automatic layout synthesis from field names and sample data.

Rules:
- Every generated element gets a fresh identifier.
- Text content is token-preserving: ``{{Field}}`` per field, never sample values.
- Font sizes are fitted against sample values, then scaled by a typographic tier.
- An invalid or degenerate layout spec falls back to the smart fallback layout.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from core.assets.matcher import find_asset_url, looks_like_remote
from core.config.models import (
    SCALE_TIER_ORDER,
    EngineSettings,
    ImageFieldSettings,
    ScaleTierName,
)
from core.config.settings_loader import default_settings
from core.layout.spec import LayoutSpec, Region, clamp_layout_spec, parse_layout_spec
from core.layout.suggestion_client import LayoutSuggestionClient
from core.layout.text_fit import AUTO_MEASURE, Measure, best_font_size, default_measure
from core.templates.models import (
    AssetPool,
    Element,
    ImageElement,
    Page,
    Record,
    Template,
    TextElement,
    TextStyle,
)
from core.templates.token_resolver import token_for
from core.utils.errors import LayoutSpecError, LayoutSuggestionError
from core.utils.log_events import log_event

logger = logging.getLogger("vdp.layout")

_ALIGNMENTS = ("left", "center", "right")


@dataclass(frozen=True)
class Box:
    """Absolute rectangle in millimetres."""

    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_region(cls, region: Region, page_width: float, page_height: float) -> Box:
        return cls(
            x=region.x * page_width,
            y=region.y * page_height,
            width=region.width * page_width,
            height=region.height * page_height,
        )


def detect_image_fields(
    fields: Sequence[str],
    sample_records: Sequence[Record],
    settings: ImageFieldSettings | None = None,
) -> list[str]:
    """Fields whose name suggests an image or whose samples look like image files."""

    config = settings or ImageFieldSettings()
    keywords = [keyword.casefold() for keyword in config.name_keywords]
    extensions = tuple(extension.casefold() for extension in config.extensions)

    detected: list[str] = []
    for name in fields:
        folded = name.casefold()
        if any(keyword in folded for keyword in keywords):
            detected.append(name)
            continue
        for record in sample_records:
            value = str(record.get(name) or "").strip().casefold()
            if not value:
                continue
            path = value.split("?", 1)[0]
            if path.endswith(extensions) or value.startswith("data:image/"):
                detected.append(name)
                break
    return detected


def infer_aspect_ratio(
    field_name: str, settings: ImageFieldSettings | None = None
) -> tuple[float, float]:
    """Square for logo-like names, otherwise the configured default."""

    config = settings or ImageFieldSettings()
    folded = field_name.casefold()
    if any(keyword.casefold() in folded for keyword in config.square_keywords):
        return (1.0, 1.0)
    return config.default_aspect


def fit_image(
    aspect: tuple[float, float], max_width: float, max_height: float
) -> tuple[float, float]:
    """Largest width and height with the given aspect inside the bounds."""

    aspect_width, aspect_height = aspect
    if aspect_width <= 0 or aspect_height <= 0 or max_width <= 0 or max_height <= 0:
        return (max(max_width, 0.0), max(max_height, 0.0))
    ratio = aspect_width / aspect_height
    width = max_width
    height = width / ratio
    if height > max_height:
        height = max_height
        width = height * ratio
    return (width, height)


def effective_scale_tier(
    requested: str | None,
    text_field_count: int,
    *,
    layout_type: str | None = None,
    template_type: str | None = None,
    settings: EngineSettings | None = None,
) -> ScaleTierName:
    """Step the requested tier down for crowded or badge-like layouts."""

    config = settings or default_settings()
    if requested is None:
        name: ScaleTierName = "fill"
    elif requested in SCALE_TIER_ORDER:
        name = requested  # type: ignore[assignment]
    else:
        log_event(logger, logging.WARNING, "unknown_scale_tier", requested=requested)
        name = config.default_scale_tier

    thresholds = config.scale_bias.many_fields_thresholds
    steps = sum(1 for threshold in thresholds if text_field_count >= threshold)
    kind = f"{layout_type or ''} {template_type or ''}".casefold()
    if any(keyword.casefold() in kind for keyword in config.scale_bias.badge_keywords):
        steps += 1

    index = min(SCALE_TIER_ORDER.index(name) + steps, len(SCALE_TIER_ORDER) - 1)
    return SCALE_TIER_ORDER[index]


class _LayoutBuilder:
    def __init__(
        self,
        settings: EngineSettings,
        sample: Record,
        asset_pool: AssetPool | None,
        measure: Measure | None,
    ) -> None:
        self.settings = settings
        self.sample = sample
        self.asset_pool = asset_pool
        self.measure = measure

    def sample_text(self, field_name: str) -> str:
        value = self.sample.get(field_name)
        return str(value) if value else field_name

    def fit(self, text: str, box: Box, *, min_size: float, max_size: float) -> float:
        fit = self.settings.fit
        return best_font_size(
            text,
            box.width,
            box.height,
            min_size=min_size,
            max_size=max_size,
            line_height=fit.line_height,
            average_char_width=fit.average_char_width,
            measure=self.measure,
        )

    def combined_text(
        self, fields: Sequence[str], box: Box, font_size: float, align: str
    ) -> TextElement:
        return TextElement(
            x=box.x,
            y=box.y,
            width=box.width,
            height=box.height,
            content="\n".join(token_for(name) for name in fields),
            variable=",".join(fields),
            combined_fields=list(fields),
            style=self._style(font_size, align=align, line_height=self.settings.fit.line_height),
        )

    def field_text(
        self, field_name: str, box: Box, font_size: float, align: str, *, bold: bool
    ) -> TextElement:
        return TextElement(
            x=box.x,
            y=box.y,
            width=box.width,
            height=box.height,
            content=token_for(field_name),
            variable=field_name,
            style=self._style(font_size, align=align, bold=bold),
        )

    def stacked_boxes(self, count: int, box: Box, gap: float) -> list[Box]:
        if count <= 0:
            return []
        slot_height = (box.height - gap * (count - 1)) / count
        if slot_height <= 0:
            gap = 0.0
            slot_height = box.height / count
        return [
            Box(box.x, box.y + index * (slot_height + gap), box.width, slot_height)
            for index in range(count)
        ]

    def images(
        self, fields: Sequence[str], region: Box, spec: LayoutSpec | None = None
    ) -> list[ImageElement]:
        if not fields:
            return []
        gap = self.settings.fallback.image_gap_mm
        elements: list[ImageElement] = []
        for field_name, slot in zip(fields, self.stacked_boxes(len(fields), region, gap)):
            aspect = self._aspect_for(field_name, spec)
            width, height = fit_image(aspect, slot.width, slot.height)
            elements.append(
                ImageElement(
                    x=slot.x + (slot.width - width) / 2,
                    y=slot.y + (slot.height - height) / 2,
                    width=width,
                    height=height,
                    variable=field_name,
                    src=self._sample_src(field_name),
                )
            )
        return elements

    def _aspect_for(self, field_name: str, spec: LayoutSpec | None) -> tuple[float, float]:
        if spec is not None:
            aspect = spec.aspect_for(field_name)
            if aspect is not None:
                return (aspect.width, aspect.height)
        return infer_aspect_ratio(field_name, self.settings.image_fields)

    def _sample_src(self, field_name: str) -> str | None:
        value = str(self.sample.get(field_name) or "").strip()
        if not value:
            return None
        matched = find_asset_url(value, self.asset_pool)
        if matched is not None:
            return matched
        return value if looks_like_remote(value) else None

    def _style(
        self,
        font_size: float,
        *,
        align: str,
        bold: bool = False,
        line_height: float | None = None,
    ) -> TextStyle:
        style = TextStyle(
            font_family=self.settings.fit.font_family,
            font_size=round(font_size, 2),
            font_weight="bold" if bold else "normal",
            align=align if align in _ALIGNMENTS else "left",  # type: ignore[arg-type]
            vertical_align="middle",
        )
        if line_height is not None:
            style.line_height = line_height
        return style


def synthesize_layout(
    fields: Sequence[str],
    sample_records: Sequence[Record],
    page_width: float,
    page_height: float,
    layout_spec: LayoutSpec | None = None,
    asset_pool: AssetPool | None = None,
    *,
    settings: EngineSettings | None = None,
    template_type: str | None = None,
    measure: Measure | None | object = AUTO_MEASURE,
) -> Template:
    """Build a single-page template laying out ``fields`` on the page."""

    if page_width <= 0 or page_height <= 0:
        raise ValueError(f"page size must be positive, got {page_width}x{page_height}")

    config = settings or default_settings()
    resolved_measure = (
        default_measure(config.fit.measure_font) if measure is AUTO_MEASURE else measure
    )
    sample: Record = sample_records[0] if sample_records else {}
    builder = _LayoutBuilder(config, sample, asset_pool, resolved_measure)  # type: ignore[arg-type]

    image_fields = detect_image_fields(fields, sample_records, config.image_fields)
    text_fields = [name for name in fields if name not in image_fields]

    spec = layout_spec
    if spec is not None:
        try:
            spec = clamp_layout_spec(
                spec, has_image_fields=bool(image_fields), settings=config.clamp
            )
        except LayoutSpecError as exc:
            log_event(logger, logging.WARNING, "layout_spec_rejected", error=str(exc))
            spec = None

    if spec is None:
        elements = _fallback_elements(
            builder, text_fields, image_fields, page_width, page_height
        )
        strategy = "fallback"
    else:
        elements = _spec_elements(
            builder, spec, text_fields, image_fields, page_width, page_height, template_type
        )
        strategy = "spec"

    log_event(
        logger,
        logging.INFO,
        "layout_synthesized",
        strategy=strategy,
        text_fields=text_fields,
        image_fields=image_fields,
        element_count=len(elements),
    )
    page = Page(width=page_width, height=page_height, elements=elements)
    return Template(pages=[page])


def _fallback_elements(
    builder: _LayoutBuilder,
    text_fields: list[str],
    image_fields: list[str],
    page_width: float,
    page_height: float,
) -> list[Element]:
    geometry = builder.settings.fallback
    fit = builder.settings.fit
    margin = min(page_width, page_height) * geometry.margin
    inner_width = page_width - 2 * margin
    inner_height = page_height - 2 * margin
    text_share = geometry.text_width_with_images if image_fields else geometry.text_width_no_images
    text_box = Box(margin, margin, inner_width * text_share, inner_height)

    elements: list[Element] = []
    if len(text_fields) >= geometry.combine_threshold:
        sample = "\n".join(builder.sample_text(name) for name in text_fields)
        size = builder.fit(
            sample, text_box, min_size=fit.fallback_min_pt, max_size=fit.fallback_combined_max_pt
        )
        elements.append(builder.combined_text(text_fields, text_box, size, "left"))
    elif text_fields:
        gap = min(2.0, text_box.height * 0.05)
        boxes = builder.stacked_boxes(len(text_fields), text_box, gap)
        for index, (name, box) in enumerate(zip(text_fields, boxes)):
            size = builder.fit(
                builder.sample_text(name),
                box,
                min_size=fit.fallback_min_pt,
                max_size=fit.fallback_stacked_max_pt,
            )
            elements.append(builder.field_text(name, box, size, "left", bold=index == 0))

    if image_fields:
        band_height = inner_height * geometry.image_band_height
        band = Box(
            margin + inner_width * geometry.image_band_x,
            margin + (inner_height - band_height) / 2,
            inner_width * geometry.image_band_width,
            band_height,
        )
        elements.extend(builder.images(image_fields, band))
    return elements


def _spec_elements(
    builder: _LayoutBuilder,
    spec: LayoutSpec,
    text_fields: list[str],
    image_fields: list[str],
    page_width: float,
    page_height: float,
    template_type: str | None,
) -> list[Element]:
    config = builder.settings
    fit = config.fit
    ordered = _ordered_text_fields(spec, text_fields)
    tier_name = effective_scale_tier(
        spec.typography.scale,
        len(ordered),
        layout_type=spec.layout_type,
        template_type=template_type,
        settings=config,
    )
    tier = config.scale_tiers[tier_name]
    align = spec.typography.alignment.casefold()
    text_box = Box.from_region(spec.text_area, page_width, page_height)

    combined = spec.use_combined_text_block
    if combined is None:
        combined = len(ordered) >= config.fallback.combine_threshold

    elements: list[Element] = []
    if ordered and combined:
        sample = "\n".join(builder.sample_text(name) for name in ordered)
        raw = builder.fit(sample, text_box, min_size=fit.combined_min_pt, max_size=tier.max_pt)
        size = min(raw * tier.multiplier, tier.max_pt)
        elements.append(builder.combined_text(ordered, text_box, size, align))
    elif ordered:
        if spec.gap is not None:
            gap = max(spec.gap, 0.0)
        elif tier_name in ("restrained", "small"):
            gap = min(4.0, text_box.height * 0.08)
        else:
            gap = min(2.0, text_box.height * 0.05)
        stacked_max = min(tier.max_pt, fit.stacked_max_pt)
        primary = spec.typography.primary_field_index or 0
        boxes = builder.stacked_boxes(len(ordered), text_box, gap)
        for index, (name, box) in enumerate(zip(ordered, boxes)):
            raw = builder.fit(
                builder.sample_text(name), box, min_size=fit.stacked_min_pt, max_size=stacked_max
            )
            size = min(raw * tier.multiplier, stacked_max)
            elements.append(builder.field_text(name, box, size, align, bold=index == primary))

    if image_fields:
        if spec.image_area is not None:
            region = Box.from_region(spec.image_area, page_width, page_height)
        else:
            geometry = config.fallback
            margin = min(page_width, page_height) * geometry.margin
            inner_width = page_width - 2 * margin
            inner_height = page_height - 2 * margin
            band_height = inner_height * geometry.image_band_height
            region = Box(
                margin + inner_width * geometry.image_band_x,
                margin + (inner_height - band_height) / 2,
                inner_width * geometry.image_band_width,
                band_height,
            )
        elements.extend(builder.images(image_fields, region, spec))

    log_event(
        logger,
        logging.DEBUG,
        "layout_spec_applied",
        scale_tier=tier_name,
        combined=bool(combined and ordered),
        alignment=align,
    )
    return elements


def _ordered_text_fields(spec: LayoutSpec, text_fields: list[str]) -> list[str]:
    if not spec.text_fields:
        return text_fields
    ordered = [name for name in spec.text_fields if name in text_fields]
    ordered.extend(name for name in text_fields if name not in ordered)
    return ordered


async def generate_layout(
    fields: Sequence[str],
    sample_records: Sequence[Record],
    page_width: float,
    page_height: float,
    *,
    client: LayoutSuggestionClient | None = None,
    asset_pool: AssetPool | None = None,
    settings: EngineSettings | None = None,
    template_type: str | None = None,
    measure: Measure | None | object = AUTO_MEASURE,
) -> Template:
    """Ask the suggestion service for a spec, then synthesize.

    Service failures and unusable responses degrade to the fallback layout.
    """

    config = settings or default_settings()
    spec: LayoutSpec | None = None
    if client is not None and fields:
        sample: Mapping[str, str] = sample_records[0] if sample_records else {}
        try:
            payload = await client.suggest(
                fields,
                sample,
                page_width,
                page_height,
                template_type=template_type or config.suggestion.template_type,
            )
        except LayoutSuggestionError as exc:
            log_event(
                logger,
                logging.WARNING,
                "layout_suggestion_failed",
                status_code=exc.status_code,
                error=str(exc),
            )
        else:
            spec = parse_layout_spec(payload)

    return synthesize_layout(
        fields,
        sample_records,
        page_width,
        page_height,
        spec,
        asset_pool,
        settings=config,
        template_type=template_type,
        measure=measure,
    )
