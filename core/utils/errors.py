"""Custom exceptions for core logic."""

from __future__ import annotations

from typing import Any


class TemplateError(Exception):
    """Raised when a template payload cannot be loaded into the scene model."""

    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class SymbolGenerationError(Exception):
    """Raised when a barcode or QR symbol cannot be generated for a value."""

    def __init__(self, message: str, *, symbology: str, value: str) -> None:
        super().__init__(message)
        self.symbology = symbology
        self.value = value


class AssetFetchError(Exception):
    """Raised when a remote asset cannot be downloaded."""

    def __init__(self, message: str, *, url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class LayoutSpecError(Exception):
    """Raised when a layout spec cannot be applied even after clamping."""

    def __init__(self, message: str, *, payload: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.payload = payload


class LayoutSuggestionError(Exception):
    """Raised when the layout suggestion service fails or returns no spec."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
