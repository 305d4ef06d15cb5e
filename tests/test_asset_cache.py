from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from core.assets.cache import AssetCache, warm_window_indices

PNG_BYTES = b"\x89PNG-test"
PNG_DATA_URL = "data:image/png;base64,iVBORy10ZXN0"


def _transport(
    calls: list[str], *, failing: frozenset[str] = frozenset()
) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        calls.append(url)
        if url in failing:
            return httpx.Response(404, content=b"missing")
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    return handler


def _client(calls: list[str], **kwargs: frozenset[str]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(_transport(calls, **kwargs)))


@pytest.mark.anyio
async def test_fetch_returns_data_url_and_deduplicates_concurrent_requests() -> None:
    calls: list[str] = []
    async with _client(calls) as client:
        cache = AssetCache(capacity=5, client=client)
        first, second = await asyncio.gather(
            cache.fetch("https://cdn.test/a.png"), cache.fetch("https://cdn.test/a.png")
        )
        third = await cache.fetch("https://cdn.test/a.png")

    assert first == second == third == PNG_DATA_URL
    assert calls == ["https://cdn.test/a.png"]
    assert cache.fetch_count == 1
    assert cache.lookup("https://cdn.test/a.png") == PNG_DATA_URL


@pytest.mark.anyio
async def test_capacity_bound_evicts_least_recently_used() -> None:
    calls: list[str] = []
    async with _client(calls) as client:
        cache = AssetCache(capacity=2, client=client)
        await cache.fetch("https://cdn.test/a.png")
        await cache.fetch("https://cdn.test/b.png")
        assert cache.lookup("https://cdn.test/a.png") is not None
        await cache.fetch("https://cdn.test/c.png")

    assert len(cache) == 2
    assert cache.keys() == ["https://cdn.test/a.png", "https://cdn.test/c.png"]
    assert "https://cdn.test/b.png" not in cache
    assert cache.lookup("https://cdn.test/b.png") is None


@pytest.mark.anyio
async def test_failed_fetch_returns_original_url_and_keeps_entries() -> None:
    calls: list[str] = []
    bad = "https://cdn.test/missing.png"
    async with _client(calls, failing=frozenset({bad})) as client:
        cache = AssetCache(capacity=1, client=client)
        await cache.fetch("https://cdn.test/a.png")
        result = await cache.fetch(bad)

    assert result == bad
    assert bad not in cache
    assert cache.keys() == ["https://cdn.test/a.png"]


@pytest.mark.anyio
async def test_transport_error_returns_original_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        cache = AssetCache(client=client)
        result = await cache.fetch("https://down.test/a.png")

    assert result == "https://down.test/a.png"
    assert len(cache) == 0


@pytest.mark.anyio
async def test_spill_dir_files_are_removed_on_eviction(tmp_path: Path) -> None:
    calls: list[str] = []
    async with _client(calls) as client:
        cache = AssetCache(capacity=1, client=client, spill_dir=tmp_path / "spill")
        first_ref = await cache.fetch("https://cdn.test/a.png")
        first_files = list((tmp_path / "spill").iterdir())
        await cache.fetch("https://cdn.test/b.png")
        second_files = list((tmp_path / "spill").iterdir())
        await cache.aclose()

    assert first_ref.startswith("file://")
    assert len(first_files) == 1
    assert first_files[0].read_bytes() == PNG_BYTES
    assert len(second_files) == 1
    assert second_files[0] != first_files[0]
    assert not first_files[0].exists()
    assert list((tmp_path / "spill").iterdir()) == []


@pytest.mark.anyio
async def test_spill_write_failure_returns_url_and_keeps_entries(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[str] = []
    async with _client(calls) as client:
        cache = AssetCache(capacity=1, client=client, spill_dir=tmp_path / "spill")
        first_ref = await cache.fetch("https://cdn.test/a.png")
        (first_file,) = (tmp_path / "spill").iterdir()
        monkeypatch.setattr(
            AssetCache,
            "_spill_path",
            staticmethod(lambda spill_dir, url, content_type: tmp_path / "gone" / "b.png"),
        )
        result = await cache.fetch("https://cdn.test/b.png")

    assert result == "https://cdn.test/b.png"
    assert cache.keys() == ["https://cdn.test/a.png"]
    assert cache.lookup("https://cdn.test/a.png") == first_ref
    assert first_file.read_bytes() == PNG_BYTES


@pytest.mark.anyio
async def test_prefetch_for_records_loads_matched_and_pool_urls() -> None:
    calls: list[str] = []
    pool = {"ann.png": "https://cdn.test/ann.png", "bob.png": "https://cdn.test/bob.png"}
    records = [{"Name": "Ann", "Photo": "ann.png"}]
    async with _client(calls) as client:
        cache = AssetCache(client=client, batch_size=1)
        count = await cache.prefetch_for_records(records, pool)

    assert count == 2
    assert calls == ["https://cdn.test/ann.png", "https://cdn.test/bob.png"]
    assert set(cache.keys()) == set(pool.values())


@pytest.mark.anyio
async def test_prefetch_without_pool_is_a_no_op() -> None:
    cache = AssetCache()

    assert await cache.prefetch_for_records([{"Photo": "ann.png"}], None) == 0
    assert await cache.warm_adjacent(0, [{"Photo": "ann.png"}], {}) == 0


@pytest.mark.anyio
async def test_warm_adjacent_fetches_window_around_index() -> None:
    calls: list[str] = []
    names = ["a", "b", "c", "d", "e"]
    pool = {f"{name}.png": f"https://cdn.test/{name}.png" for name in names}
    records = [{"Photo": f"{name}.png"} for name in names]
    async with _client(calls) as client:
        cache = AssetCache(client=client)
        count = await cache.warm_adjacent(2, records, pool)

    assert count == 4
    assert sorted(calls) == [f"https://cdn.test/{name}.png" for name in ("b", "c", "d", "e")]


def test_warm_window_indices_stay_in_range() -> None:
    assert warm_window_indices(0, 5) == [0, 1, 2]
    assert warm_window_indices(2, 5) == [1, 2, 3, 4]
    assert warm_window_indices(4, 5) == [3, 4]
    assert warm_window_indices(0, 0) == []


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError, match="capacity"):
        AssetCache(capacity=0)
