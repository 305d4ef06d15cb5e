"""Engine configuration models loaded from YAML."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

ScaleTierName = Literal["fill", "large", "medium", "restrained", "small"]

SCALE_TIER_ORDER: tuple[ScaleTierName, ...] = ("fill", "large", "medium", "restrained", "small")


class ScaleTier(BaseModel):
    """Cap and multiplier applied to an auto-fit font size."""

    model_config = ConfigDict(extra="forbid")

    max_pt: float = Field(gt=0)
    multiplier: float = Field(gt=0, le=1)


class ScaleBiasSettings(BaseModel):
    """When to step a requested scale tier down."""

    model_config = ConfigDict(extra="forbid")

    many_fields_thresholds: list[int] = Field(default_factory=lambda: [4, 6])
    badge_keywords: list[str] = Field(default_factory=lambda: ["badge"])


class FitSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    measure_font: str = "Helvetica"
    font_family: str = "Roboto"
    line_height: float = Field(default=1.3, gt=0)
    average_char_width: float = Field(default=0.55, gt=0)
    combined_min_pt: float = 14
    stacked_min_pt: float = 12
    stacked_max_pt: float = 48
    fallback_combined_max_pt: float = 60
    fallback_stacked_max_pt: float = 48
    fallback_min_pt: float = 14


class FallbackGeometry(BaseModel):
    """Smart fallback layout proportions, as fractions."""

    model_config = ConfigDict(extra="forbid")

    margin: float = Field(default=0.04, ge=0, lt=0.5)
    text_width_no_images: float = Field(default=1.0, gt=0, le=1)
    text_width_with_images: float = Field(default=0.58, gt=0, le=1)
    image_band_x: float = Field(default=0.62, ge=0, lt=1)
    image_band_width: float = Field(default=0.36, gt=0, le=1)
    image_band_height: float = Field(default=0.85, gt=0, le=1)
    image_gap_mm: float = Field(default=2.0, ge=0)
    combine_threshold: int = Field(default=3, ge=1)


class ClampSettings(BaseModel):
    """Plausibility limits applied to external layout specs."""

    model_config = ConfigDict(extra="forbid")

    no_image_min_width: float = 0.85
    no_image_width: float = 0.90
    no_image_min_height: float = 0.75
    no_image_height: float = 0.85
    min_region_fraction: float = 0.05


class ImageFieldSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name_keywords: list[str] = Field(
        default_factory=lambda: ["image", "photo", "logo", "picture", "img", "avatar"]
    )
    extensions: list[str] = Field(
        default_factory=lambda: [".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp"]
    )
    square_keywords: list[str] = Field(default_factory=lambda: ["logo", "avatar", "icon", "qr"])
    default_aspect: tuple[float, float] = (3.0, 2.0)


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    capacity: int = Field(default=50, ge=1)
    batch_size: int = Field(default=10, ge=1)
    timeout_seconds: float = Field(default=10.0, gt=0)


class SuggestionSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    timeout_seconds: float = Field(default=20.0, gt=0)
    template_type: str = "address_label"


class EngineSettings(BaseModel):
    """Complete engine configuration."""

    model_config = ConfigDict(extra="forbid")

    scale_tiers: dict[ScaleTierName, ScaleTier]
    default_scale_tier: ScaleTierName = "medium"
    scale_bias: ScaleBiasSettings = Field(default_factory=ScaleBiasSettings)
    fit: FitSettings = Field(default_factory=FitSettings)
    fallback: FallbackGeometry = Field(default_factory=FallbackGeometry)
    clamp: ClampSettings = Field(default_factory=ClampSettings)
    image_fields: ImageFieldSettings = Field(default_factory=ImageFieldSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    suggestion: SuggestionSettings = Field(default_factory=SuggestionSettings)

    @model_validator(mode="after")
    def _check_tiers(self) -> EngineSettings:
        missing = [name for name in SCALE_TIER_ORDER if name not in self.scale_tiers]
        if missing:
            raise ValueError(f"scale_tiers missing entries: {missing}")
        return self
