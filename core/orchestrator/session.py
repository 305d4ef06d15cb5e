"""Record navigation over one template, one record set and one asset cache.

Switching records always merges the edited scene into the base template
before the next record is resolved, so layout edits are never lost.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from core.assets.cache import AssetCache
from core.render.layout_merge import MergeReport, merge_layout_with_report
from core.render.scene_resolver import resolve_scene
from core.render.symbols import SymbolGenerator
from core.templates.models import AssetPool, Record, ResolvedScene, Template
from core.utils.log_events import log_event

logger = logging.getLogger("vdp.session")


class VdpSession:
    def __init__(
        self,
        template: Template,
        records: Sequence[Record],
        asset_pool: AssetPool | None = None,
        cache: AssetCache | None = None,
        *,
        symbols: SymbolGenerator | None = None,
    ) -> None:
        self._base = template.model_copy(deep=True)
        self._records = list(records)
        self._asset_pool = asset_pool
        self._cache = cache
        self._symbols = symbols
        self._index = 0
        self._scene: ResolvedScene | None = None
        self._warm_tasks: set[asyncio.Task[int]] = set()
        self.last_merge: MergeReport | None = None

    @property
    def base_template(self) -> Template:
        return self._base

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def record_count(self) -> int:
        return len(self._records)

    def current_scene(self) -> ResolvedScene:
        """Resolve the current record lazily and keep the result."""

        if self._scene is None:
            self._scene = self._resolve(self._index)
        return self._scene

    async def go_to(self, index: int, edited_scene: Template | None = None) -> ResolvedScene:
        """Merge edits from the outgoing scene, then resolve record ``index``.

        Raises IndexError when index is outside the record set.
        """

        if not 0 <= index < len(self._records):
            raise IndexError(f"record index {index} out of range 0..{len(self._records) - 1}")

        if edited_scene is not None:
            self._base, self.last_merge = merge_layout_with_report(edited_scene, self._base)

        previous = self._index
        self._index = index
        self._scene = self._resolve(index)
        log_event(
            logger,
            logging.INFO,
            "record_switched",
            previous_index=previous,
            record_index=index,
            merged=edited_scene is not None,
        )
        self._schedule_warm(index)
        return self._scene

    async def go_next(self, edited_scene: Template | None = None) -> ResolvedScene:
        return await self.go_to(min(self._index + 1, len(self._records) - 1), edited_scene)

    async def go_previous(self, edited_scene: Template | None = None) -> ResolvedScene:
        return await self.go_to(max(self._index - 1, 0), edited_scene)

    async def aclose(self) -> None:
        """Wait for background warm-ups; the cache itself is owned by the caller."""

        if self._warm_tasks:
            await asyncio.gather(*self._warm_tasks, return_exceptions=True)

    def _resolve(self, index: int) -> ResolvedScene:
        record = self._records[index] if self._records else {}
        return resolve_scene(
            self._base,
            record,
            index,
            self._asset_pool,
            self._cache,
            symbols=self._symbols,
        )

    def _schedule_warm(self, index: int) -> None:
        if self._cache is None or not self._asset_pool:
            return
        task = asyncio.create_task(
            self._cache.warm_adjacent(index, self._records, self._asset_pool)
        )
        self._warm_tasks.add(task)
        task.add_done_callback(self._warm_done)

    def _warm_done(self, task: asyncio.Task[int]) -> None:
        self._warm_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event(
                logger,
                logging.WARNING,
                "warm_adjacent_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
