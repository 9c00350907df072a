import asyncio
import hashlib
import re
import tempfile
import unittest
from pathlib import Path

from commengage.content_store import SqliteContentStore
from commengage.embedding_index import EmbeddingIndex
from commengage.errors import EmbeddingFailure, GenerationFailure, UpstreamTimeout
from commengage.metrics import EngineMetrics
from commengage.models import ContentKind
from commengage.qa_engine import QAEngine
from commengage.refresh_coordinator import RefreshCoordinator
from commengage.session_store import SessionStore
from commengage.summary_cache import SummaryCache


def _bag_of_words(text: str, dims: int = 64) -> list[float]:
    vector = [0.0] * dims
    for token in re.findall(r"\w+", text.casefold()):
        digest = hashlib.md5(token.encode("utf-8")).digest()
        vector[digest[0] % dims] += 1.0
    return vector


class _FakeEmbedder:
    def __init__(self):
        self.calls = 0
        self.fail = False

    async def embed(self, text):
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding backend down")
        return _bag_of_words(text)


class _FakeSummarizer:
    async def summarize(self, text):
        return "unused"


class _FakeGenerator:
    def __init__(self):
        self.calls = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.fail = False
        self.reply: str | None = None
        self.delay = 0.0

    async def generate(self, question, chunks, history):
        self.calls.append((question, list(chunks), list(history)))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("model offline")
        if self.reply is not None:
            return self.reply
        return f"answer {len(self.calls)}"


class TestQAEngine(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteContentStore(Path(self.tmp.name) / "content.sqlite")
        self.embedder = _FakeEmbedder()
        self.generator = _FakeGenerator()
        self.metrics = EngineMetrics()
        self.index = EmbeddingIndex(self.embedder, timeout_s=1.0, metrics=self.metrics)
        self.coordinator = RefreshCoordinator(self.store, self.index)
        self.sessions = SessionStore()
        self.summaries = SummaryCache(_FakeSummarizer(), self.store)
        self.engine = self._engine()

    async def asyncTearDown(self):
        await self.coordinator.close()
        self.store.close()
        self.tmp.cleanup()

    def _engine(self, **options) -> QAEngine:
        return QAEngine(
            store=self.store,
            index=self.index,
            sessions=self.sessions,
            generator=self.generator,
            summaries=self.summaries,
            metrics=self.metrics,
            **options,
        )

    async def _publish(self, *texts: str):
        items = [self.store.create(ContentKind.POST, text) for text in texts]
        for item in items:
            self.coordinator.mark_dirty(item.id, item.version)
        await self.coordinator.wait_idle()
        return items

    async def test_empty_index_answers_from_empty_context(self):
        result = await self.engine.answer("What events are happening?", "s1")

        self.assertEqual(result.answer, "answer 1")
        self.assertEqual(result.retrieved_ids, ())
        self.assertEqual(self.generator.calls[0][1], [])
        self.assertEqual(self.embedder.calls, 0)

        history = self.sessions.history("s1")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].question, "What events are happening?")
        self.assertEqual(history[0].retrieved_ids, ())
        self.assertEqual(result.as_payload(), {"answer": "answer 1", "sources": []})

    async def test_retrieved_ids_follow_similarity_order(self):
        garden, market, _ = await self._publish(
            "community garden watering schedule",
            "farmers market garden produce stand",
            "lost dog reward",
        )

        result = await self._engine(top_k=2).answer("community garden watering", "s1")

        self.assertEqual(result.retrieved_ids[0], garden.id)
        self.assertEqual(len(result.retrieved_ids), 2)
        chunk_ids = [chunk.item_id for chunk in self.generator.calls[0][1]]
        self.assertEqual(tuple(chunk_ids), result.retrieved_ids)
        self.assertEqual(self.sessions.history("s1")[0].retrieved_ids, result.retrieved_ids)

    async def test_valid_summary_replaces_long_text_in_context(self):
        long_text = " ".join(f"detail{i}" for i in range(80))
        (item,) = await self._publish(long_text)
        self.store.set_summary(item.id, "Short summary.", item.version)

        await self.engine.answer("detail1 detail2", "s1")

        self.assertEqual(self.generator.calls[0][1][0].text, "Short summary.")

    async def test_context_chunks_are_clipped(self):
        long_text = " ".join(f"detail{i}" for i in range(80))
        await self._publish(long_text)

        await self._engine(chunk_max_chars=40).answer("detail1", "s1")

        text = self.generator.calls[0][1][0].text
        self.assertTrue(text.endswith("..."))
        self.assertLessEqual(len(text), 43)

    async def test_deleted_hits_are_dropped_from_context(self):
        keep, gone = await self._publish("bake sale saturday", "bake sale sunday")
        self.store.delete(gone.id)

        result = await self.engine.answer("bake sale", "s1")

        self.assertEqual(result.retrieved_ids, (keep.id,))

    async def test_generation_failure_leaves_session_untouched(self):
        self.generator.fail = True
        with self.assertRaises(GenerationFailure):
            await self.engine.answer("Anything?", "s1")
        self.assertEqual(self.sessions.turn_count("s1"), 0)
        self.assertEqual(self.metrics.get_summary()["questions"]["failures_by_type"], {"GenerationFailure": 1})

    async def test_empty_answer_is_a_generation_failure(self):
        self.generator.reply = "<think>nothing to say</think>   "
        with self.assertRaises(GenerationFailure):
            await self.engine.answer("Anything?", "s1")
        self.assertEqual(self.sessions.turn_count("s1"), 0)

    async def test_generation_timeout_surfaces_upstream_timeout(self):
        self.generator.delay = 0.5
        with self.assertRaises(UpstreamTimeout) as ctx:
            await self._engine(generate_timeout_s=0.01).answer("Anything?", "s1")
        self.assertEqual(ctx.exception.operation, "generate")
        self.assertEqual(self.sessions.turn_count("s1"), 0)

    async def test_question_embedding_failure_skips_generation(self):
        await self._publish("bake sale saturday")
        self.embedder.fail = True

        with self.assertRaises(EmbeddingFailure):
            await self.engine.answer("bake sale", "s1")
        self.assertEqual(self.generator.calls, [])
        self.assertEqual(self.sessions.turn_count("s1"), 0)

    async def test_cancelled_question_does_not_record_turn(self):
        self.generator.gate = asyncio.Event()
        task = asyncio.create_task(self.engine.answer("Anything?", "s1"))
        await asyncio.wait_for(self.generator.started.wait(), timeout=1.0)

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.sessions.turn_count("s1"), 0)

    async def test_history_is_truncated_to_recent_turns(self):
        engine = self._engine(history_turns=2)
        for n in range(1, 4):
            await engine.answer(f"question {n}", "s1")
        await engine.answer("question 4", "s1")

        history = self.generator.calls[-1][2]
        self.assertEqual([turn.question for turn in history], ["question 2", "question 3"])
        self.assertEqual(self.sessions.turn_count("s1"), 4)

    async def test_think_blocks_are_stripped(self):
        self.generator.reply = "<think>\nreasoning\n</think>\nThe market opens at 8."
        result = await self.engine.answer("When does the market open?", "s1")
        self.assertEqual(result.answer, "The market opens at 8.")

    async def test_blank_question_is_rejected(self):
        with self.assertRaises(ValueError):
            await self.engine.answer("   ", "s1")
        self.assertEqual(self.generator.calls, [])


if __name__ == "__main__":
    unittest.main()
