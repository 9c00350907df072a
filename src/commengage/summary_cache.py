"""
Memoized AI summaries for community content.

A summary is keyed to the item version it was produced from. Callers asking
for the same item share one in-flight Summarizer call; no lock is held while
that call runs.
"""
from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from enum import Enum

from .config import SUMMARIZE_TIMEOUT_S, SUMMARY_MIN_WORDS
from .content_store import ContentStore
from .errors import SummarizationFailure, UpstreamTimeout, await_upstream
from .metrics import EngineMetrics
from .models import ContentItem
from .observability import get_logger
from .providers import Summarizer
from .tokenization import count_words

logger = get_logger(__name__)


class SummaryStatus(str, Enum):
    TOO_SHORT = "too_short"
    CACHED = "cached"
    GENERATED = "generated"
    MISSING = "missing"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class SummaryResult:
    status: SummaryStatus
    summary: str | None = None
    version: int = 0
    error: str | None = None


class SummaryCache:
    def __init__(
        self,
        summarizer: Summarizer,
        store: ContentStore | None = None,
        *,
        min_words: int = SUMMARY_MIN_WORDS,
        timeout_s: float = SUMMARIZE_TIMEOUT_S,
        metrics: EngineMetrics | None = None,
    ):
        self._summarizer = summarizer
        self._store = store
        self._min_words = max(1, int(min_words))
        self._timeout_s = float(timeout_s)
        self._metrics = metrics
        self._guard = threading.Lock()
        self._entries: dict[str, tuple[int, str]] = {}
        self._inflight: dict[str, tuple[int, asyncio.Future]] = {}

    def _is_short(self, item: ContentItem) -> bool:
        return count_words(item.text) <= self._min_words

    def peek(self, item: ContentItem) -> str | None:
        """Returns a summary valid for `item.version` without calling the Summarizer."""
        if item.summary_is_valid:
            return item.summary
        with self._guard:
            entry = self._entries.get(item.id)
        if entry is not None and entry[0] == item.version:
            return entry[1]
        return None

    def invalidate(self, item_id: str):
        with self._guard:
            self._entries.pop(str(item_id), None)

    def _latest(self, item: ContentItem) -> ContentItem | None:
        if self._store is None:
            return item
        latest = self._store.get(item.id)
        if latest is None or latest.deleted:
            return None
        return latest if latest.version >= item.version else item

    def _remember(self, item_id: str, version: int, summary: str):
        with self._guard:
            existing = self._entries.get(item_id)
            if existing is None or existing[0] <= version:
                self._entries[item_id] = (version, summary)

    async def _summarize(self, item: ContentItem) -> SummaryResult:
        if self._metrics is not None:
            self._metrics.record_upstream_call("summarize")
        try:
            raw = await await_upstream(
                self._summarizer.summarize(item.text),
                operation="summarize",
                timeout_s=self._timeout_s,
            )
            summary = str(raw or "").strip()
            if not summary:
                raise SummarizationFailure("summarizer returned an empty summary")
        except UpstreamTimeout as exc:
            logger.warning("summary_timed_out", item_id=item.id, version=item.version, timeout_s=exc.timeout_s)
            return SummaryResult(SummaryStatus.TIMED_OUT, version=item.version, error=str(exc))
        except Exception as exc:
            logger.warning("summary_failed", item_id=item.id, version=item.version, error=str(exc))
            return SummaryResult(SummaryStatus.FAILED, version=item.version, error=str(exc))

        self._remember(item.id, item.version, summary)
        persisted = False
        if self._store is not None:
            persisted = self._store.set_summary(item.id, summary, item.version)
        logger.info("summary_generated", item_id=item.id, version=item.version, persisted=persisted)
        return SummaryResult(SummaryStatus.GENERATED, summary=summary, version=item.version)

    def _release(self, item_id: str, future: asyncio.Future):
        with self._guard:
            current = self._inflight.get(item_id)
            if current is not None and current[1] is future:
                self._inflight.pop(item_id, None)

    async def resolve(self, item: ContentItem) -> SummaryResult:
        """Returns a typed outcome; never raises for Summarizer problems."""
        latest = self._latest(item)
        if latest is None:
            return SummaryResult(SummaryStatus.MISSING, version=item.version)
        item = latest
        if self._is_short(item):
            return SummaryResult(SummaryStatus.TOO_SHORT, version=item.version)

        while True:
            cached = self.peek(item)
            if cached is not None:
                return SummaryResult(SummaryStatus.CACHED, summary=cached, version=item.version)

            with self._guard:
                inflight = self._inflight.get(item.id)
                if inflight is None:
                    task = asyncio.ensure_future(self._summarize(item))
                    self._inflight[item.id] = (item.version, task)
                    task.add_done_callback(lambda fut, item_id=item.id: self._release(item_id, fut))
                    break

            # One call per item at a time: wait for the running one, then re-check.
            inflight_version, inflight_task = inflight
            result = await asyncio.shield(inflight_task)
            if inflight_version == item.version:
                return result

        return await asyncio.shield(task)

    async def get_summary(self, item: ContentItem) -> str | None:
        result = await self.resolve(item)
        return result.summary
