"""Asset identifier normalization and record-to-pool matching."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator

from core.templates.models import AssetPool, Record

_IMAGE_EXTENSION_RE = re.compile(r"\.(png|jpe?g|gif|webp|svg|bmp|tiff?)$", re.IGNORECASE)
_REMOTE_PREFIXES = ("http://", "https://", "data:")


def normalize_for_match(name: str) -> str:
    """Reduce an asset reference to a comparable base name.

    ``"C:\\photos\\Ann.PNG"``, ``"https://cdn/x/ann.png?v=2"`` and ``"ann"``
    all normalize to ``"ann"``.
    """

    base_name = name.strip()
    if "\\" in base_name:
        base_name = base_name.rsplit("\\", 1)[-1]
    elif "/" in base_name:
        base_name = base_name.rsplit("/", 1)[-1]
    if "?" in base_name:
        base_name = base_name.split("?", 1)[0]
    return _IMAGE_EXTENSION_RE.sub("", base_name).strip().casefold()


def find_asset_url(value: str, pool: AssetPool | None) -> str | None:
    """Return the pool URL whose name matches value, or None."""

    if not pool or not value:
        return None
    normalized = normalize_for_match(value)
    if not normalized:
        return None
    for name, url in pool.items():
        if normalize_for_match(name) == normalized:
            return url
    return None


def looks_like_remote(value: str) -> bool:
    return value.strip().lower().startswith(_REMOTE_PREFIXES)


def iter_matched_urls(records: Iterable[Record], pool: AssetPool | None) -> Iterator[str]:
    """Yield distinct pool URLs matched by any field value, in first-seen order."""

    if not pool:
        return
    seen: set[str] = set()
    for record in records:
        for value in record.values():
            if not isinstance(value, str):
                continue
            url = find_asset_url(value, pool)
            if url and url not in seen:
                seen.add(url)
                yield url
