"""Settings loading utilities for the VDP engine."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import yaml  # type: ignore[import-untyped]
from pydantic import ValidationError

from core.config.models import EngineSettings

DEFAULT_SETTINGS_PATH = Path(__file__).with_name("defaults.yaml")


def load_settings(path: Path | None = None) -> EngineSettings:
    """Load and validate engine settings from YAML."""

    settings_path = path or DEFAULT_SETTINGS_PATH

    try:
        raw = yaml.safe_load(settings_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValueError(f"Settings file not found: {settings_path}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in settings file: {settings_path}") from exc

    if not isinstance(raw, dict):
        raise ValueError(f"Settings file must contain a mapping: {settings_path}")

    try:
        return EngineSettings.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings schema: {settings_path}") from exc


@lru_cache(maxsize=1)
def default_settings() -> EngineSettings:
    """Return the packaged default settings, loaded once per process."""

    return load_settings()
