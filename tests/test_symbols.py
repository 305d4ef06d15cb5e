from __future__ import annotations

import base64

import pytest

from core.render.symbols import (
    DefaultSymbolGenerator,
    supported_barcode_formats,
    validate_barcode_value,
)
from core.utils.errors import SymbolGenerationError


def _decode(data_url: str) -> bytes:
    return base64.b64decode(data_url.split(",", 1)[1])


@pytest.mark.parametrize(
    ("value", "symbology"),
    [
        ("ABC-123", "code128"),
        ("ABC123", "CODE39"),
        ("5901234123457", "ean13"),
        ("590123412345", "EAN-13"),
        ("03600029145", "upca"),
        ("036000291452", "UPC_A"),
    ],
)
def test_validate_barcode_value_accepts_valid_input(value: str, symbology: str) -> None:
    validate_barcode_value(value, symbology)


@pytest.mark.parametrize(
    ("value", "symbology", "message"),
    [
        ("", "code128", "cannot be empty"),
        ("12345", "ean13", "invalid digits"),
        ("12345678901A", "upca", "invalid digits"),
        ("123", "itf", "invalid digits"),
        ("ABC", "pdf417", "Unsupported barcode format"),
    ],
)
def test_validate_barcode_value_rejects_invalid_input(
    value: str, symbology: str, message: str
) -> None:
    with pytest.raises(SymbolGenerationError, match=message) as exc_info:
        validate_barcode_value(value, symbology)

    assert exc_info.value.symbology == symbology
    assert exc_info.value.value == value


def test_code128_barcode_is_svg_data_url() -> None:
    src = DefaultSymbolGenerator().barcode("ABC-123", "code128", width=40, height=15)

    assert src.startswith("data:image/svg+xml;base64,")
    assert b"<svg" in _decode(src)


def test_invalid_barcode_raises_before_rendering() -> None:
    with pytest.raises(SymbolGenerationError):
        DefaultSymbolGenerator().barcode("12", "ean13", width=40, height=15)


def test_qr_is_png_data_url() -> None:
    src = DefaultSymbolGenerator().qr("http://x/1", error_correction="H")

    assert src.startswith("data:image/png;base64,")
    assert _decode(src).startswith(b"\x89PNG")


def test_empty_qr_value_raises() -> None:
    with pytest.raises(SymbolGenerationError):
        DefaultSymbolGenerator().qr("")


def test_supported_barcode_formats() -> None:
    assert {"code128", "code39", "ean13", "upca"} <= set(supported_barcode_formats())
