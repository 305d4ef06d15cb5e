"""HTTP client for the external layout suggestion service."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from core.config.models import SuggestionSettings
from core.utils.errors import LayoutSuggestionError
from core.utils.log_events import log_event

logger = logging.getLogger("vdp.layout")


class LayoutSuggestionClient:
    """POSTs field names and one sample record; returns the raw JSON response."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 20.0,
        client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        if not url:
            raise ValueError("suggestion service url cannot be empty")
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._headers = dict(headers or {})
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(
        cls, settings: SuggestionSettings, **kwargs: Any
    ) -> LayoutSuggestionClient | None:
        """Build a client when a service url is configured, else None."""

        if not settings.url:
            return None
        return cls(settings.url, timeout_seconds=settings.timeout_seconds, **kwargs)

    @property
    def url(self) -> str:
        return self._url

    async def suggest(
        self,
        field_names: Sequence[str],
        sample_record: Mapping[str, str],
        page_width: float,
        page_height: float,
        *,
        template_type: str = "address_label",
    ) -> dict[str, Any]:
        body = {
            "fieldNames": list(field_names),
            "sampleData": [dict(sample_record)],
            "templateSize": {"width": page_width, "height": page_height},
            "templateType": template_type,
        }
        client = self._get_client()
        try:
            response = await client.post(
                self._url, json=body, headers=self._headers, timeout=self._timeout_seconds
            )
        except httpx.TimeoutException as exc:
            raise LayoutSuggestionError(
                f"Layout suggestion timed out after {self._timeout_seconds}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise LayoutSuggestionError(f"Layout suggestion request failed: {exc}") from exc

        if response.status_code >= 400:
            raise LayoutSuggestionError(
                f"Layout suggestion service returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise LayoutSuggestionError(
                "Layout suggestion response is not JSON", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise LayoutSuggestionError(
                "Layout suggestion response must be a JSON object",
                status_code=response.status_code,
            )

        log_event(
            logger,
            logging.INFO,
            "layout_suggestion_received",
            field_count=len(body["fieldNames"]),
            keys=sorted(payload),
        )
        return payload

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> LayoutSuggestionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._client
