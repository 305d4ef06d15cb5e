"""Declarative layout specs and their plausibility clamping.

Specs arrive from an external suggestion service, usually in camelCase. They
are read-only: clamping always returns a new instance.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from core.config.models import ClampSettings
from core.utils.errors import LayoutSpecError
from core.utils.log_events import log_event

logger = logging.getLogger("vdp.layout")

_RegionT = TypeVar("_RegionT", bound="Region")


class _SpecModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


class Region(_SpecModel):
    """Rectangle in fractional page coordinates."""

    x: float = Field(default=0.0, validation_alias=AliasChoices("x", "xPercent", "x_percent"))
    y: float = Field(default=0.0, validation_alias=AliasChoices("y", "yPercent", "y_percent"))
    width: float = Field(
        default=1.0, validation_alias=AliasChoices("width", "widthPercent", "width_percent")
    )
    height: float = Field(
        default=1.0, validation_alias=AliasChoices("height", "heightPercent", "height_percent")
    )


class AspectRatio(_SpecModel):
    width: float = Field(gt=0)
    height: float = Field(gt=0)

    @property
    def ratio(self) -> float:
        return self.width / self.height


class ImageRegion(Region):
    aspect_ratio: AspectRatio | None = Field(
        default=None, validation_alias=AliasChoices("aspect_ratio", "aspectRatio")
    )


class ImageSlot(_SpecModel):
    field_name: str = Field(validation_alias=AliasChoices("field_name", "fieldName"))
    aspect_ratio: AspectRatio | None = Field(
        default=None, validation_alias=AliasChoices("aspect_ratio", "aspectRatio")
    )


class Typography(_SpecModel):
    scale: str | None = Field(
        default=None, validation_alias=AliasChoices("scale", "baseFontScale", "base_font_scale")
    )
    alignment: str = "left"
    primary_field_index: int | None = Field(
        default=None, validation_alias=AliasChoices("primary_field_index", "primaryFieldIndex")
    )


class LayoutSpec(_SpecModel):
    """Desired arrangement of text and image regions on a page."""

    layout_type: str | None = Field(
        default=None, validation_alias=AliasChoices("layout_type", "layoutType")
    )
    use_combined_text_block: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("use_combined_text_block", "useCombinedTextBlock"),
    )
    text_area: Region = Field(validation_alias=AliasChoices("text_area", "textArea"))
    image_area: ImageRegion | None = Field(
        default=None, validation_alias=AliasChoices("image_area", "imageArea")
    )
    images: list[ImageSlot] = Field(default_factory=list)
    text_fields: list[str] | None = Field(
        default=None, validation_alias=AliasChoices("text_fields", "textFields")
    )
    typography: Typography = Field(default_factory=Typography)
    gap: float | None = None

    def aspect_for(self, field_name: str) -> AspectRatio | None:
        for slot in self.images:
            if slot.field_name == field_name and slot.aspect_ratio is not None:
                return slot.aspect_ratio
        if self.image_area is not None:
            return self.image_area.aspect_ratio
        return None


def extract_spec_payload(payload: Mapping[str, Any]) -> Mapping[str, Any] | None:
    """Locate the layout spec inside a suggestion-service response."""

    strategy = payload.get("designStrategy") or payload.get("design_strategy")
    if isinstance(strategy, Mapping):
        nested = strategy.get("layoutSpec") or strategy.get("layout_spec")
        return nested if isinstance(nested, Mapping) else None
    nested = payload.get("layoutSpec") or payload.get("layout_spec")
    if isinstance(nested, Mapping):
        return nested
    if "textArea" in payload or "text_area" in payload:
        return payload
    return None


def parse_layout_spec(payload: Mapping[str, Any] | None) -> LayoutSpec | None:
    """Validate a spec payload; structurally invalid payloads yield None."""

    if not payload:
        return None
    spec_payload = extract_spec_payload(payload)
    if spec_payload is None:
        log_event(logger, logging.WARNING, "layout_spec_missing", keys=sorted(payload))
        return None
    try:
        return LayoutSpec.model_validate(dict(spec_payload))
    except ValidationError as exc:
        log_event(
            logger,
            logging.WARNING,
            "layout_spec_invalid",
            error_count=exc.error_count(),
            errors=[error["msg"] for error in exc.errors()[:5]],
        )
        return None


def clamp_layout_spec(
    spec: LayoutSpec, *, has_image_fields: bool, settings: ClampSettings
) -> LayoutSpec:
    """Return a copy of spec with implausible regions corrected.

    Rules:
    - Percent-style values (1 < v <= 100) are rescaled to fractions.
    - Regions are clamped into the page.
    - Without image fields, narrow or short text regions are widened.
    - A degenerate text region raises LayoutSpecError.
    - A degenerate image region is dropped.
    """

    adjustments: list[str] = []
    text_area = _clamp_region(spec.text_area, "text_area", adjustments)

    if not has_image_fields:
        width = text_area.width
        height = text_area.height
        if width < settings.no_image_min_width:
            adjustments.append(f"text_area.width {width:.3f}->{settings.no_image_width:.3f}")
            width = settings.no_image_width
        if height < settings.no_image_min_height:
            adjustments.append(f"text_area.height {height:.3f}->{settings.no_image_height:.3f}")
            height = settings.no_image_height
        text_area = text_area.model_copy(
            update={
                "width": width,
                "height": height,
                "x": min(text_area.x, 1.0 - width),
                "y": min(text_area.y, 1.0 - height),
            }
        )

    if (
        text_area.width < settings.min_region_fraction
        or text_area.height < settings.min_region_fraction
    ):
        raise LayoutSpecError(
            "Text region is degenerate after clamping",
            payload=spec.model_dump(mode="json"),
        )

    image_area = spec.image_area
    if image_area is not None:
        image_area = _clamp_region(image_area, "image_area", adjustments)
        if (
            image_area.width < settings.min_region_fraction
            or image_area.height < settings.min_region_fraction
        ):
            adjustments.append("image_area dropped")
            image_area = None

    if adjustments:
        log_event(logger, logging.INFO, "layout_spec_clamped", adjustments=adjustments)

    return spec.model_copy(update={"text_area": text_area, "image_area": image_area})


def _clamp_region(region: _RegionT, label: str, adjustments: list[str]) -> _RegionT:
    values: dict[str, float] = {}
    for name in ("x", "y", "width", "height"):
        raw = getattr(region, name)
        value = raw / 100.0 if 1.0 < raw <= 100.0 else raw
        value = min(max(value, 0.0), 1.0)
        if value != raw:
            adjustments.append(f"{label}.{name} {raw:.3f}->{value:.3f}")
        values[name] = value

    width = min(values["width"], 1.0 - values["x"])
    height = min(values["height"], 1.0 - values["y"])
    if width != values["width"]:
        adjustments.append(f"{label}.width {values['width']:.3f}->{width:.3f}")
    if height != values["height"]:
        adjustments.append(f"{label}.height {values['height']:.3f}->{height:.3f}")
    values["width"] = width
    values["height"] = height
    return region.model_copy(update=values)
