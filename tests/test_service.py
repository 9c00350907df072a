import asyncio
import hashlib
import io
import re
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from commengage.content_store import SqliteContentStore
from commengage.metrics import EngineMetrics
from commengage.models import ContentKind
from commengage.service import AnswerService

LONG_TEXT = " ".join(f"word{i}" for i in range(60))
LONG_TEXT_EDITED = " ".join(f"other{i}" for i in range(75))


def _bag_of_words(text: str, dims: int = 64) -> list[float]:
    vector = [0.0] * dims
    for token in re.findall(r"\w+", text.casefold()):
        digest = hashlib.md5(token.encode("utf-8")).digest()
        vector[digest[0] % dims] += 1.0
    return vector


class _FakeEmbedder:
    def __init__(self):
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def embed(self, text):
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        return _bag_of_words(text)


class _FakeSummarizer:
    def __init__(self):
        self.calls = 0

    async def summarize(self, text):
        self.calls += 1
        return f"summary {self.calls}"


class _FakeGenerator:
    def __init__(self):
        self.calls = 0

    async def generate(self, question, chunks, history):
        self.calls += 1
        return f"answer to {question} with {len(chunks)} sources and {len(history)} prior turns"


class TestAnswerService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.embedder = _FakeEmbedder()
        self.summarizer = _FakeSummarizer()
        self.generator = _FakeGenerator()
        self.service = AnswerService(
            store=SqliteContentStore(Path(self.tmp.name) / "content.sqlite"),
            embedder=self.embedder,
            summarizer=self.summarizer,
            generator=self.generator,
            metrics=EngineMetrics(),
        )

    async def asyncTearDown(self):
        await self.service.close()
        self.tmp.cleanup()

    async def test_start_indexes_existing_content(self):
        self.service.store.create(ContentKind.POST, "Potluck on Friday")
        self.service.store.create(ContentKind.HELP_REQUEST, "Need a ride to the clinic", location="Oak St")

        with redirect_stdout(io.StringIO()):
            count = await self.service.start()

        self.assertEqual(count, 2)
        self.assertEqual(len(self.service.index), 2)

    async def test_summary_tracks_item_versions(self):
        post = self.service.create_post(LONG_TEXT, title="Neighborhood update")

        self.assertEqual(await self.service.query_summary(post.id), "summary 1")
        self.assertEqual(await self.service.query_summary(post.id), "summary 1")
        self.assertEqual(self.summarizer.calls, 1)

        edited = self.service.edit_content(post.id, text=LONG_TEXT_EDITED)
        self.assertEqual(edited.version, 2)
        self.assertEqual(await self.service.query_summary(post.id), "summary 2")
        self.assertEqual(self.summarizer.calls, 2)

        short = self.service.create_post("Short note")
        self.assertIsNone(await self.service.query_summary(short.id))
        self.assertIsNone(await self.service.query_summary("missing"))
        self.assertEqual(self.summarizer.calls, 2)

    async def test_first_question_on_empty_engine(self):
        payload = await self.service.ask_question("What events are happening?", "s1")

        self.assertEqual(payload["sources"], [])
        self.assertTrue(payload["answer"])
        self.assertEqual(self.service.sessions.turn_count("s1"), 1)
        self.assertEqual(self.embedder.calls, 0)

    async def test_edits_during_refresh_leave_latest_text_as_top_match(self):
        self.service.create_post("Library book sale this weekend")
        await self.service.wait_until_indexed()

        self.embedder.gate = asyncio.Event()
        self.embedder.started.clear()
        item = self.service.create_post("Community garden needs volunteers")
        await asyncio.wait_for(self.embedder.started.wait(), timeout=1.0)

        self.service.edit_content(item.id, text="Garden watering rota for July")
        latest = self.service.edit_content(item.id, text="Garden compost workshop on Tuesday evening")
        self.embedder.gate.set()
        await self.service.wait_until_indexed()

        self.assertEqual(self.service.index.entry_version(item.id), latest.version)
        payload = await self.service.ask_question(latest.document_text, "s1")
        self.assertEqual(payload["sources"][0], item.id)

    async def test_volunteer_hook_runs_after_store_write(self):
        item = self.service.create_help_request("Need help moving boxes", title="Moving day")
        await self.service.wait_until_indexed()

        seen_versions = []
        original = self.service.coordinator.mark_dirty

        def _spy(item_id, version=None, *, reason="mutation"):
            seen_versions.append(self.service.store.get(item_id).version)
            return original(item_id, version, reason=reason)

        with patch.object(self.service.coordinator, "mark_dirty", side_effect=_spy):
            self.service.volunteer(item.id, "user-7")
            self.service.volunteer(item.id, "user-7")
            await self.service.wait_until_indexed()

        self.assertEqual(seen_versions, [2])
        self.assertEqual(self.service.index.entry_version(item.id), 2)

    async def test_category_change_re_embeds_post(self):
        item = self.service.create_post("Free guitar lessons at the rec center", category="events")
        await self.service.wait_until_indexed()
        calls = self.embedder.calls

        edited = self.service.edit_content(item.id, category="classes")
        await self.service.wait_until_indexed()

        self.assertEqual(edited.version, 2)
        self.assertEqual(self.embedder.calls, calls + 1)
        self.assertEqual(self.service.index.entry_version(item.id), 2)
        self.assertTrue(self.service.store.get(item.id).embedding_is_valid)

    async def test_hook_without_running_loop_does_not_fail_mutation(self):
        early = await asyncio.to_thread(self.service.create_post, "Porch light outage on Birch Rd")
        self.assertEqual(self.service.store.get(early.id).version, 1)
        self.assertNotIn(early.id, self.service.index)

        later = self.service.create_post("Choir practice moved to Wednesday")
        await self.service.wait_until_indexed()

        self.assertEqual(self.service.index.entry_version(early.id), 1)
        self.assertEqual(self.service.index.entry_version(later.id), 1)

    async def test_noop_edit_does_not_trigger_refresh(self):
        item = self.service.create_post("Same words")
        await self.service.wait_until_indexed()
        calls = self.embedder.calls

        self.assertEqual(self.service.edit_content(item.id, text="Same words").version, 1)
        await self.service.wait_until_indexed()
        self.assertEqual(self.embedder.calls, calls)

    async def test_delete_removes_content_from_answers(self):
        keep = self.service.create_post("bake sale saturday")
        gone = self.service.create_post("bake sale sunday")
        await self.service.wait_until_indexed()

        self.assertTrue(self.service.delete_content(gone.id))
        self.assertFalse(self.service.delete_content(gone.id))

        payload = await self.service.ask_question("bake sale", "s1")
        self.assertEqual(payload["sources"], [keep.id])
        self.assertIsNone(await self.service.query_summary(gone.id))

    async def test_session_history_is_ordered(self):
        for n in range(4):
            await self.service.ask_question(f"question {n}", "s1")
        history = self.service.sessions.history("s1")
        self.assertEqual([turn.question for turn in history], [f"question {n}" for n in range(4)])

    async def test_metrics_summary_reports_engine_state(self):
        self.service.create_post("Potluck on Friday")
        await self.service.wait_until_indexed()
        await self.service.ask_question("Any potlucks?", "s1")

        summary = self.service.metrics_summary()

        self.assertEqual(summary["index"]["entries"], 1)
        self.assertEqual(summary["index"]["dirty"], 0)
        self.assertFalse(summary["index"]["refreshing"])
        self.assertEqual(summary["sessions"], 1)
        self.assertEqual(summary["questions"]["total"], 1)
        self.assertEqual(summary["upstream_calls"]["generate"], 1)


if __name__ == "__main__":
    unittest.main()
