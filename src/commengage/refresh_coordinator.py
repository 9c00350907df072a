"""
Keeps the embedding index converging on the content store.

Mutations dirty-mark an id (with the version they committed) and start a
refresh cycle if none is running. The single running cycle drains the dirty
map until nothing retryable is left, so marks that arrive mid-cycle are picked
up by the same cycle instead of being dropped. A mark is only cleared once the
index holds a version at or after the flagged one.
"""
from __future__ import annotations

import asyncio
import threading
import time

from .content_store import ContentStore
from .embedding_index import EmbeddingIndex, UpsertStatus
from .metrics import EngineMetrics
from .models import RefreshJob
from .observability import get_logger

logger = get_logger(__name__)


class RefreshCoordinator:
    def __init__(
        self,
        store: ContentStore,
        index: EmbeddingIndex,
        *,
        metrics: EngineMetrics | None = None,
    ):
        self._store = store
        self._index = index
        self._metrics = metrics
        # Guards _dirty, _running, _job and _task. Never held across an await.
        self._lock = threading.Lock()
        self._dirty: dict[str, int] = {}
        self._running = False
        self._job: RefreshJob | None = None
        self._task: asyncio.Task | None = None

    @property
    def current_job(self) -> RefreshJob | None:
        with self._lock:
            return self._job

    @property
    def is_refreshing(self) -> bool:
        with self._lock:
            return self._running

    def dirty_ids(self) -> set[str]:
        with self._lock:
            return set(self._dirty)

    def mark_dirty(self, item_id: str, version: int | None = None, *, reason: str = "mutation") -> asyncio.Task | None:
        """
        Flags an item for re-embedding and makes sure a refresh cycle is running.

        Call after the store write committed. Returns the task of the cycle that
        will observe this mark, or None when no event loop is running; the mark
        then stays dirty until the next trigger or rebuild() drains it.
        """
        item_id = str(item_id)
        if version is None:
            item = self._store.get(item_id)
            version = item.version if item is not None else 0
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        with self._lock:
            self._dirty[item_id] = max(self._dirty.get(item_id, 0), int(version))
            if self._running:
                return self._task
            if loop is not None:
                self._running = True
                self._job = RefreshJob(trigger_reason=reason)
                self._task = loop.create_task(self._run())
            task = self._task
        if task is None:
            logger.warning("refresh_deferred", item_id=item_id, version=int(version), reason=reason)
            return None
        logger.info("refresh_scheduled", item_id=item_id, version=int(version), reason=reason)
        return task

    def mark_deleted(self, item_id: str) -> bool:
        """Removal is final: no version check, and any in-flight upsert for the id is discarded."""
        item_id = str(item_id)
        with self._lock:
            self._dirty.pop(item_id, None)
        removed = self._index.remove(item_id)
        logger.info("index_entry_removed", item_id=item_id, existed=removed)
        return removed

    async def _refresh_one(self, item_id: str, flagged_version: int, failed: dict[str, int]) -> bool:
        item = self._store.get(item_id)
        if item is None or item.deleted:
            self.mark_deleted(item_id)
            return False

        result = await self._index.upsert(item)
        if result.status is UpsertStatus.TOMBSTONED:
            with self._lock:
                self._dirty.pop(item_id, None)
            return False
        if not result.ok:
            # Left dirty; retried by the next cycle or by a newer mark in this one.
            failed[item_id] = flagged_version
            return False

        if result.status in {UpsertStatus.INDEXED, UpsertStatus.UNCHANGED}:
            self._store.mark_embedded(item_id, result.version)
        current = self._store.get(item_id)
        current_version = current.version if current is not None else None
        with self._lock:
            flagged = self._dirty.get(item_id)
            if flagged is not None and (flagged <= result.version or current_version == result.version):
                self._dirty.pop(item_id, None)
        return result.status is UpsertStatus.INDEXED

    def _reset(self):
        with self._lock:
            self._running = False
            self._job = None
            self._task = None

    async def _run(self):
        started = time.perf_counter()
        failed: dict[str, int] = {}
        reindexed = 0
        passes = 0
        try:
            while True:
                with self._lock:
                    batch = {
                        item_id: version
                        for item_id, version in self._dirty.items()
                        if failed.get(item_id) != version
                    }
                    if not batch:
                        self._running = False
                        self._job = None
                        self._task = None
                        break
                passes += 1
                for item_id in sorted(batch):
                    if await self._refresh_one(item_id, batch[item_id], failed):
                        reindexed += 1
        except asyncio.CancelledError:
            self._reset()
            logger.info("refresh_cycle_cancelled", reindexed=reindexed)
            raise
        except Exception:
            # Marks stay dirty for the next trigger or rebuild().
            self._reset()
            logger.exception("refresh_cycle_aborted", reindexed=reindexed)
            return

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if self._metrics is not None:
            self._metrics.record_refresh_cycle(reindexed)
        logger.info(
            "refresh_cycle_finished",
            passes=passes,
            reindexed=reindexed,
            still_dirty=len(failed),
            elapsed_ms=round(elapsed_ms, 2),
        )

    async def wait_idle(self):
        """Waits until no refresh cycle is running."""
        while True:
            with self._lock:
                task = self._task
            if task is None:
                return
            await asyncio.shield(task)

    async def rebuild(self, *, reason: str = "full_refresh") -> int:
        """Reclaims tombstones, re-flags every live item, and waits for convergence."""
        purged = self._store.purge_tombstones()
        self._index.reclaim(purged)
        items = self._store.list_items()
        for item in items:
            self.mark_dirty(item.id, item.version, reason=reason)
        await self.wait_idle()
        logger.info("index_rebuilt", items=len(items), reclaimed=len(purged), reason=reason)
        return len(items)

    async def close(self):
        with self._lock:
            task = self._task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
