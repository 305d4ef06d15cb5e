"""Barcode and QR symbol generation as image data URLs."""

from __future__ import annotations

import base64
import io
import re
from typing import Literal, Protocol

import qrcode
import qrcode.constants
from reportlab.graphics import renderSVG
from reportlab.graphics.barcode import createBarcodeDrawing

from core.layout.text_fit import PT_PER_MM
from core.utils.errors import SymbolGenerationError

ErrorCorrection = Literal["L", "M", "Q", "H"]

_REPORTLAB_NAMES: dict[str, str] = {
    "code128": "Code128",
    "code39": "Standard39",
    "ean13": "EAN13",
    "ean8": "EAN8",
    "upca": "UPCA",
    "itf": "I2of5",
}

_ERROR_CORRECTION: dict[str, int] = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}

_DIGITS_RE = {
    "ean13": re.compile(r"\d{12,13}"),
    "ean8": re.compile(r"\d{7,8}"),
    "upca": re.compile(r"\d{11,12}"),
    "itf": re.compile(r"(\d\d)+"),
}


class SymbolGenerator(Protocol):
    """Produces renderable images for barcode and QR elements."""

    def barcode(self, value: str, symbology: str, *, width: float, height: float) -> str:
        """Return an image URL encoding value in the given 1D symbology."""

    def qr(self, value: str, *, error_correction: ErrorCorrection = "M") -> str:
        """Return an image URL encoding value as a QR code."""


def normalize_symbology(symbology: str) -> str:
    return re.sub(r"[\s_\-]+", "", symbology).lower()


def validate_barcode_value(value: str, symbology: str) -> None:
    """Raise SymbolGenerationError when value cannot be encoded."""

    key = normalize_symbology(symbology)
    if key not in _REPORTLAB_NAMES:
        raise SymbolGenerationError(
            f"Unsupported barcode format: {symbology}", symbology=symbology, value=value
        )
    if not value:
        raise SymbolGenerationError(
            "Barcode value cannot be empty", symbology=symbology, value=value
        )
    pattern = _DIGITS_RE.get(key)
    if pattern is not None and not pattern.fullmatch(value):
        raise SymbolGenerationError(
            f"{symbology.upper()} value has invalid digits: {value!r}",
            symbology=symbology,
            value=value,
        )


class DefaultSymbolGenerator:
    """reportlab barcodes as SVG, qrcode symbols as PNG."""

    def barcode(self, value: str, symbology: str, *, width: float, height: float) -> str:
        validate_barcode_value(value, symbology)
        code_name = _REPORTLAB_NAMES[normalize_symbology(symbology)]
        try:
            drawing = createBarcodeDrawing(
                code_name,
                value=value,
                width=max(width, 1.0) * PT_PER_MM,
                height=max(height, 1.0) * PT_PER_MM,
                **_barcode_options(code_name),
            )
            svg = renderSVG.drawToString(drawing)
        except Exception as exc:  # noqa: BLE001
            raise SymbolGenerationError(
                f"Failed to generate {symbology} barcode", symbology=symbology, value=value
            ) from exc
        return _data_url("image/svg+xml", svg.encode("utf-8"))

    def qr(self, value: str, *, error_correction: ErrorCorrection = "M") -> str:
        if not value:
            raise SymbolGenerationError("QR value cannot be empty", symbology="qrcode", value=value)
        try:
            code = qrcode.QRCode(
                error_correction=_ERROR_CORRECTION[error_correction],
                box_size=10,
                border=2,
            )
            code.add_data(value)
            code.make(fit=True)
            image = code.make_image(fill_color="black", back_color="white")
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
        except Exception as exc:  # noqa: BLE001
            raise SymbolGenerationError(
                "Failed to generate QR code", symbology="qrcode", value=value
            ) from exc
        return _data_url("image/png", buffer.getvalue())


def _barcode_options(code_name: str) -> dict[str, object]:
    # EAN and UPC widgets always print their digits
    if code_name in {"EAN13", "EAN8", "UPCA"}:
        return {}
    return {"humanReadable": True}


def _data_url(content_type: str, payload: bytes) -> str:
    return f"data:{content_type};base64,{base64.b64encode(payload).decode('ascii')}"


def supported_barcode_formats() -> list[str]:
    return sorted(_REPORTLAB_NAMES)
