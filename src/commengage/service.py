# /commengage/service.py
"""
Engine facade used by the surrounding CRUD and query layers.

Mutation hooks must run after the content store write has committed; the
convenience mutators below do the write first and the hook second.
"""
from __future__ import annotations

import asyncio

from .config import METRICS_LOG_DIR, console
from .content_store import SqliteContentStore
from .embedding_index import EmbeddingIndex
from .metrics import EngineMetrics
from .models import ContentItem, ContentKind
from .observability import get_logger
from .providers import AnswerGenerator, Embedder, Summarizer
from .qa_engine import QAEngine
from .refresh_coordinator import RefreshCoordinator
from .session_store import SessionStore
from .summary_cache import SummaryCache

logger = get_logger(__name__)


class AnswerService:
    def __init__(
        self,
        *,
        store: SqliteContentStore,
        embedder: Embedder,
        summarizer: Summarizer,
        generator: AnswerGenerator,
        metrics: EngineMetrics | None = None,
        qa_options: dict | None = None,
    ):
        self.store = store
        self.metrics = metrics or EngineMetrics()
        self.index = EmbeddingIndex(embedder, metrics=self.metrics)
        self.summaries = SummaryCache(summarizer, store, metrics=self.metrics)
        self.sessions = SessionStore()
        self.coordinator = RefreshCoordinator(store, self.index, metrics=self.metrics)
        self.qa = QAEngine(
            store=store,
            index=self.index,
            sessions=self.sessions,
            generator=generator,
            summaries=self.summaries,
            metrics=self.metrics,
            **(qa_options or {}),
        )

    @classmethod
    def from_config(cls, store: SqliteContentStore | None = None) -> "AnswerService":
        """Builds the service with the configured HuggingFace/LLM providers."""
        from .providers import HuggingFaceEmbedder, LLMAnswerGenerator, LLMSummarizer, initialize_llm

        llm = initialize_llm()
        return cls(
            store=store or SqliteContentStore(),
            embedder=HuggingFaceEmbedder(),
            summarizer=LLMSummarizer(llm),
            generator=LLMAnswerGenerator(llm),
            metrics=EngineMetrics(log_dir=METRICS_LOG_DIR),
        )

    # --- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Rebuilds the index from the store. Returns the number of live items."""
        with console.status("[bold cyan]Indexing community content...[/bold cyan]"):
            count = await self.coordinator.rebuild(reason="startup")
        logger.info("engine_started", indexed=count)
        console.print(f"[green]OK Indexed {count} community items.[/green]")
        return count

    async def wait_until_indexed(self):
        await self.coordinator.wait_idle()

    async def close(self):
        await self.coordinator.close()
        self.store.close()

    # --- hooks from the CRUD layer ----------------------------------------

    def on_content_created(self, item: ContentItem) -> asyncio.Task | None:
        return self.coordinator.mark_dirty(item.id, item.version, reason="created")

    def on_content_edited(self, item: ContentItem) -> asyncio.Task | None:
        self.summaries.invalidate(item.id)
        return self.coordinator.mark_dirty(item.id, item.version, reason="edited")

    def on_content_deleted(self, item_id: str) -> bool:
        self.summaries.invalidate(item_id)
        return self.coordinator.mark_deleted(item_id)

    def on_relation_changed(self, item_id: str) -> asyncio.Task | None:
        return self.coordinator.mark_dirty(item_id, reason="relation_changed")

    # --- query layer -------------------------------------------------------

    async def query_summary(self, item_id: str) -> str | None:
        item = self.store.get(item_id)
        if item is None or item.deleted:
            return None
        return await self.summaries.get_summary(item)

    async def ask_question(self, question: str, session_id: str) -> dict:
        result = await self.qa.answer(question, session_id)
        return result.as_payload()

    def metrics_summary(self) -> dict:
        summary = self.metrics.get_summary()
        summary["index"] = {
            "entries": len(self.index),
            "dirty": len(self.coordinator.dirty_ids()),
            "refreshing": self.coordinator.is_refreshing,
        }
        summary["sessions"] = len(self.sessions.session_ids())
        return summary

    # --- write-then-hook mutators -----------------------------------------

    def create_post(self, text: str, *, title: str = "", category: str = "") -> ContentItem:
        item = self.store.create(ContentKind.POST, text, title=title, category=category)
        self.on_content_created(item)
        return item

    def create_help_request(self, text: str, *, title: str = "", location: str = "") -> ContentItem:
        item = self.store.create(ContentKind.HELP_REQUEST, text, title=title, location=location)
        self.on_content_created(item)
        return item

    def edit_content(self, item_id: str, **changes) -> ContentItem | None:
        before = self.store.get(item_id)
        item = self.store.edit(item_id, **changes)
        if item is not None and (before is None or item.version != before.version):
            self.on_content_edited(item)
        return item

    def delete_content(self, item_id: str) -> bool:
        deleted = self.store.delete(item_id)
        if deleted:
            self.on_content_deleted(item_id)
        return deleted

    def volunteer(self, item_id: str, volunteer_id: str) -> ContentItem | None:
        before = self.store.get(item_id)
        item = self.store.add_volunteer(item_id, volunteer_id)
        if item is not None and (before is None or item.version != before.version):
            self.on_relation_changed(item.id)
        return item
