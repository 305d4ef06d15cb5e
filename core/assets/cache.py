"""Bounded, deduplicating fetch cache for remote image assets.

Rules:
- Keys are original URLs; values are local representations (``data:`` URLs,
  or ``file://`` URIs when a spill directory is configured).
- Concurrent fetches of one URL share a single in-flight task.
- Eviction is strict LRU by access order and releases the evicted entry.
- A failed fetch returns the original URL and leaves existing entries intact.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import mimetypes
from collections import OrderedDict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx

from core.assets.matcher import iter_matched_urls
from core.config.models import CacheSettings
from core.templates.models import AssetPool, Record
from core.utils.errors import AssetFetchError
from core.utils.log_events import log_event

logger = logging.getLogger("vdp.assets")

_DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class CachedAsset:
    """One cached asset and the local representation handed to renderers."""

    url: str
    local_ref: str
    content_type: str
    size_bytes: int
    path: Path | None = None


def warm_window_indices(current_index: int, total: int) -> list[int]:
    """Indices of the previous, current, next and next+1 records, in range."""

    candidates = (current_index - 1, current_index, current_index + 1, current_index + 2)
    return [index for index in candidates if 0 <= index < total]


class AssetCache:
    """Session-scoped image cache injected into scene resolution."""

    def __init__(
        self,
        capacity: int = 50,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        batch_size: int = 10,
        spill_dir: Path | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._capacity = capacity
        self._batch_size = batch_size
        self._timeout_seconds = timeout_seconds
        self._spill_dir = spill_dir
        self._client = client
        self._owns_client = client is None
        self._entries: OrderedDict[str, CachedAsset] = OrderedDict()
        self._in_flight: dict[str, asyncio.Task[str]] = {}
        self._fetch_count = 0

    @classmethod
    def from_settings(cls, settings: CacheSettings, **kwargs: object) -> AssetCache:
        return cls(
            capacity=settings.capacity,
            timeout_seconds=settings.timeout_seconds,
            batch_size=settings.batch_size,
            **kwargs,  # type: ignore[arg-type]
        )

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def fetch_count(self) -> int:
        """Number of network downloads attempted so far."""

        return self._fetch_count

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def keys(self) -> list[str]:
        """Cached URLs, least recently used first."""

        return list(self._entries)

    def lookup(self, url: str) -> str | None:
        """Return the cached representation for url without fetching."""

        entry = self._entries.get(url)
        if entry is None:
            return None
        self._entries.move_to_end(url)
        return entry.local_ref

    async def fetch(self, url: str) -> str:
        """Return a local representation for url, downloading at most once."""

        entry = self._entries.get(url)
        if entry is not None:
            self._entries.move_to_end(url)
            return entry.local_ref

        task = self._in_flight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(url))
            self._in_flight[url] = task
            task.add_done_callback(lambda done, key=url: self._forget_in_flight(key, done))
        return await asyncio.shield(task)

    async def fetch_many(self, urls: Sequence[str]) -> list[str]:
        results: list[str] = []
        for start in range(0, len(urls), self._batch_size):
            batch = urls[start : start + self._batch_size]
            results.extend(await asyncio.gather(*(self.fetch(url) for url in batch)))
        return results

    async def prefetch_for_records(
        self, records: Iterable[Record], pool: AssetPool | None
    ) -> int:
        """Fetch every asset matched by any record field plus every pool entry."""

        if not pool:
            return 0
        urls = list(iter_matched_urls(records, pool))
        seen = set(urls)
        for url in pool.values():
            if url and url not in seen:
                seen.add(url)
                urls.append(url)
        if not urls:
            return 0

        log_event(logger, logging.INFO, "prefetch_start", url_count=len(urls))
        await self.fetch_many(urls)
        log_event(logger, logging.INFO, "prefetch_done", url_count=len(urls), cached=len(self))
        return len(urls)

    async def warm_adjacent(
        self, current_index: int, records: Sequence[Record], pool: AssetPool | None
    ) -> int:
        """Prefetch assets for the records around current_index."""

        if not pool or not records:
            return 0
        window = [records[index] for index in warm_window_indices(current_index, len(records))]
        urls = list(iter_matched_urls(window, pool))
        if urls:
            await self.fetch_many(urls)
        return len(urls)

    def clear(self) -> None:
        while self._entries:
            _, entry = self._entries.popitem(last=False)
            self._release(entry)

    async def aclose(self) -> None:
        pending = list(self._in_flight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> AssetCache:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _forget_in_flight(self, url: str, task: asyncio.Task[str]) -> None:
        if self._in_flight.get(url) is task:
            del self._in_flight[url]

    async def _fetch_and_store(self, url: str) -> str:
        try:
            content, content_type = await self._download(url)
        except (AssetFetchError, httpx.HTTPError) as exc:
            log_event(
                logger,
                logging.WARNING,
                "asset_fetch_failed",
                url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return url
        try:
            entry = self._store(url, content, content_type)
        except OSError as exc:
            log_event(
                logger,
                logging.WARNING,
                "asset_fetch_failed",
                url=url,
                stage="store",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return url
        return entry.local_ref

    async def _download(self, url: str) -> tuple[bytes, str]:
        client = self._get_client()
        self._fetch_count += 1
        response = await client.get(url, follow_redirects=True)
        if response.status_code >= 400:
            raise AssetFetchError(
                f"Fetch failed: {response.status_code}",
                url=url,
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type", _DEFAULT_CONTENT_TYPE)
        return response.content, content_type.split(";", 1)[0].strip() or _DEFAULT_CONTENT_TYPE

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._client

    def _store(self, url: str, content: bytes, content_type: str) -> CachedAsset:
        # Materialize first so a failed spill leaves existing entries untouched.
        path: Path | None = None
        if self._spill_dir is not None:
            spill_path = self._spill_path(self._spill_dir, url, content_type)
            spill_path.write_bytes(content)
            local_ref = spill_path.resolve().as_uri()
            path = spill_path
        else:
            encoded = base64.b64encode(content).decode("ascii")
            local_ref = f"data:{content_type};base64,{encoded}"

        previous = self._entries.pop(url, None)
        if previous is not None and previous.path != path:
            self._release(previous)

        while len(self._entries) >= self._capacity:
            evicted_url, evicted = self._entries.popitem(last=False)
            self._release(evicted)
            log_event(logger, logging.DEBUG, "asset_evicted", url=evicted_url)

        entry = CachedAsset(
            url=url,
            local_ref=local_ref,
            content_type=content_type,
            size_bytes=len(content),
            path=path,
        )
        self._entries[url] = entry
        return entry

    @staticmethod
    def _spill_path(spill_dir: Path, url: str, content_type: str) -> Path:
        spill_dir.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
        suffix = mimetypes.guess_extension(content_type) or ".bin"
        return spill_dir / f"{digest}{suffix}"

    @staticmethod
    def _release(entry: CachedAsset) -> None:
        if entry.path is not None:
            entry.path.unlink(missing_ok=True)
