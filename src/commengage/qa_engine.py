"""
Conversational question answering over the community content index.

A question moves Received -> Retrieving -> Generating -> Recorded, or ends in
Failed from Retrieving or Generating. Only Recorded touches the session.
"""
from __future__ import annotations

import re
import time
from enum import Enum

from .config import GENERATE_TIMEOUT_S, QA_CHUNK_MAX_CHARS, QA_HISTORY_TURNS, QA_TOP_K
from .content_store import ContentStore
from .embedding_index import EmbeddingIndex
from .errors import EngineError, GenerationFailure, UpstreamTimeout, await_upstream
from .metrics import EngineMetrics
from .models import AnswerResult, ContextChunk, IndexHit, Turn
from .observability import get_logger
from .providers import AnswerGenerator
from .session_store import SessionStore
from .summary_cache import SummaryCache
from .tokenization import clip_text

logger = get_logger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)


class QuestionState(str, Enum):
    RECEIVED = "received"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    RECORDED = "recorded"
    FAILED = "failed"


class QAEngine:
    def __init__(
        self,
        *,
        store: ContentStore,
        index: EmbeddingIndex,
        sessions: SessionStore,
        generator: AnswerGenerator,
        summaries: SummaryCache | None = None,
        metrics: EngineMetrics | None = None,
        top_k: int = QA_TOP_K,
        history_turns: int = QA_HISTORY_TURNS,
        chunk_max_chars: int = QA_CHUNK_MAX_CHARS,
        generate_timeout_s: float = GENERATE_TIMEOUT_S,
    ):
        self._store = store
        self._index = index
        self._sessions = sessions
        self._generator = generator
        self._summaries = summaries
        self._metrics = metrics
        self.top_k = max(1, int(top_k))
        self.history_turns = max(0, int(history_turns))
        self.chunk_max_chars = max(32, int(chunk_max_chars))
        self._generate_timeout_s = float(generate_timeout_s)

    def _chunk_for(self, hit: IndexHit) -> ContextChunk | None:
        item = self._store.get(hit.item_id)
        if item is None or item.deleted:
            return None
        text = self._summaries.peek(item) if self._summaries is not None else None
        if not text:
            text = item.document_text
        return ContextChunk(item_id=item.id, kind=item.kind, text=clip_text(text, self.chunk_max_chars))

    async def retrieve(self, question: str) -> list[ContextChunk]:
        """Context chunks for a question; empty when nothing is indexed yet."""
        if len(self._index) == 0:
            return []
        vector = await self._index.embed_text(question)
        chunks = []
        for hit in self._index.query(vector, self.top_k):
            chunk = self._chunk_for(hit)
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    async def _generate(self, question: str, chunks: list[ContextChunk], history: list[Turn]) -> str:
        if self._metrics is not None:
            self._metrics.record_upstream_call("generate")
        try:
            raw = await await_upstream(
                self._generator.generate(question, chunks, history),
                operation="generate",
                timeout_s=self._generate_timeout_s,
            )
        except UpstreamTimeout:
            raise
        except Exception as exc:
            raise GenerationFailure(str(exc)) from exc
        answer = _THINK_RE.sub("", str(raw or "")).strip()
        if not answer:
            raise GenerationFailure("answer generator returned an empty answer")
        return answer

    async def answer(self, question: str, session_id: str) -> AnswerResult:
        question = str(question or "").strip()
        if not question:
            raise ValueError("question must not be empty")
        session_id = str(session_id)
        started = time.perf_counter()
        state = QuestionState.RECEIVED
        try:
            state = QuestionState.RETRIEVING
            chunks = await self.retrieve(question)
            history = self._sessions.history(session_id, limit=self.history_turns)

            state = QuestionState.GENERATING
            answer = await self._generate(question, chunks, history)

            retrieved_ids = tuple(chunk.item_id for chunk in chunks)
            # Cancellation before this point leaves the session untouched.
            await self._sessions.append(
                session_id,
                Turn(question=question, answer=answer, retrieved_ids=retrieved_ids),
            )
            state = QuestionState.RECORDED
        except EngineError as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            logger.warning(
                "question_failed",
                session_id=session_id,
                failed_in=state.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if self._metrics is not None:
                self._metrics.record_question(elapsed_ms, failure=type(exc).__name__)
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if self._metrics is not None:
            self._metrics.record_question(elapsed_ms, sources=len(retrieved_ids))
        logger.info(
            "question_answered",
            session_id=session_id,
            sources=list(retrieved_ids),
            context_chunks=len(chunks),
            elapsed_ms=round(elapsed_ms, 2),
        )
        return AnswerResult(answer=answer, retrieved_ids=retrieved_ids)
