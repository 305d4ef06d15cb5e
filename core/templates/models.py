"""Data models for templates, pages, elements and resolved scenes.

Geometry is expressed in the template unit (millimetres); font sizes are points.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator, Mapping
from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.utils.errors import TemplateError

Record = Mapping[str, str]
AssetPool = Mapping[str, str]

ElementKind = Literal["text", "image", "barcode", "qr", "sequence"]


def new_element_id() -> str:
    """Generate a stable, template-scoped element identifier."""

    return uuid.uuid4().hex


class TextStyle(BaseModel):
    """Typography shared by text and sequence elements."""

    model_config = ConfigDict(extra="forbid")

    font_family: str = "Roboto"
    font_size: float = 12.0
    font_weight: Literal["normal", "bold"] = "normal"
    font_style: Literal["normal", "italic"] = "normal"
    fill: str = "#000000"
    align: Literal["left", "center", "right"] = "left"
    vertical_align: Literal["top", "middle", "bottom"] = "top"
    line_height: float = 1.2


class Crop(BaseModel):
    """Crop window as fractions of the source image."""

    model_config = ConfigDict(extra="forbid")

    x: float = 0.0
    y: float = 0.0
    width: float = 1.0
    height: float = 1.0


class SymbolSource(BaseModel):
    """Where a barcode or QR code takes its encoded value from."""

    model_config = ConfigDict(extra="forbid")

    data_source: Literal["static", "field"] = "static"
    static_value: str = ""
    variable_field: str | None = None


class _ElementBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_element_id)
    x: float = 0.0
    y: float = 0.0
    width: float = 10.0
    height: float = 10.0
    rotation: float = 0.0
    opacity: float = 1.0
    z_index: int = 0


class TextElement(_ElementBase):
    kind: Literal["text"] = "text"
    content: str = ""
    style: TextStyle = Field(default_factory=TextStyle)
    variable: str | None = None
    combined_fields: list[str] = Field(default_factory=list)


class ImageElement(_ElementBase):
    kind: Literal["image"] = "image"
    src: str | None = None
    crop: Crop | None = None
    variable: str | None = None


class BarcodeElement(_ElementBase):
    kind: Literal["barcode"] = "barcode"
    format: str = "code128"
    source: SymbolSource = Field(default_factory=SymbolSource)
    src: str | None = None
    value: str | None = None
    render_kind: Literal["image"] | None = None


class QrElement(_ElementBase):
    kind: Literal["qr"] = "qr"
    format: Literal["qrcode"] = "qrcode"
    error_correction: Literal["L", "M", "Q", "H"] = "M"
    source: SymbolSource = Field(default_factory=SymbolSource)
    src: str | None = None
    value: str | None = None
    render_kind: Literal["image"] | None = None


class SequenceElement(_ElementBase):
    kind: Literal["sequence"] = "sequence"
    start: int = 1
    prefix: str = ""
    suffix: str = ""
    padding: int = Field(default=0, ge=0)
    content: str = ""
    style: TextStyle = Field(default_factory=TextStyle)


Element = Annotated[
    TextElement | ImageElement | BarcodeElement | QrElement | SequenceElement,
    Field(discriminator="kind"),
]


class Page(BaseModel):
    """One physical page of a template."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_element_id)
    width: float
    height: float
    background: str | None = None
    elements: list[Element] = Field(default_factory=list)


class Template(BaseModel):
    """Canonical, token-preserving document."""

    model_config = ConfigDict(extra="forbid")

    unit: Literal["mm"] = "mm"
    pages: list[Page] = Field(default_factory=list)

    def iter_elements(self) -> Iterator[Element]:
        for page in self.pages:
            yield from page.elements

    def element_ids(self) -> set[str]:
        return {element.id for element in self.iter_elements()}


class ResolvedScene(Template):
    """Ephemeral per-record rendering of a template.

    Rules:
    - Element identifiers are the template's identifiers at resolution time.
    - Never saved as a template; edits flow back through layout merge.
    """

    record_index: int = 0
    unresolved_tokens: list[str] = Field(default_factory=list)


_TemplateT = TypeVar("_TemplateT", bound=Template)


def load_template_payload(
    payload: Any, *, source: str, model: type[_TemplateT] = Template  # type: ignore[assignment]
) -> _TemplateT:
    """Validate a decoded JSON payload; structural problems raise TemplateError."""

    if not isinstance(payload, dict):
        raise TemplateError(f"{source}: template JSON must be an object", source=source)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise TemplateError(
            f"{source}: invalid template schema ({exc.error_count()} errors)", source=source
        ) from exc
