import asyncio
import unittest

from commengage.models import Turn
from commengage.session_store import SessionStore


def _turn(n: int) -> Turn:
    return Turn(question=f"q{n}", answer=f"a{n}", retrieved_ids=(f"item{n}",))


class TestSessionStore(unittest.IsolatedAsyncioTestCase):
    async def test_sessions_are_created_lazily(self):
        sessions = SessionStore()
        self.assertEqual(sessions.history("s1"), [])
        self.assertEqual(sessions.turn_count("s1"), 0)
        self.assertEqual(sessions.session_ids(), [])

        self.assertEqual(await sessions.append("s1", _turn(1)), 1)
        self.assertEqual(sessions.session_ids(), ["s1"])

    async def test_sequential_appends_keep_order(self):
        sessions = SessionStore()
        for n in range(5):
            await sessions.append("s1", _turn(n))
        self.assertEqual([t.question for t in sessions.history("s1")], [f"q{n}" for n in range(5)])

    async def test_concurrent_appends_keep_submission_order(self):
        sessions = SessionStore()
        counts = await asyncio.gather(*(sessions.append("s1", _turn(n)) for n in range(20)))
        self.assertEqual(sorted(counts), list(range(1, 21)))
        self.assertEqual([t.question for t in sessions.history("s1")], [f"q{n}" for n in range(20)])

    async def test_history_limit_keeps_most_recent(self):
        sessions = SessionStore()
        for n in range(6):
            await sessions.append("s1", _turn(n))
        self.assertEqual([t.question for t in sessions.history("s1", limit=2)], ["q4", "q5"])
        self.assertEqual(sessions.history("s1", limit=0), [])
        self.assertEqual(len(sessions.history("s1", limit=50)), 6)

    async def test_sessions_are_independent(self):
        sessions = SessionStore()
        await asyncio.gather(
            sessions.append("a", _turn(1)),
            sessions.append("b", _turn(2)),
            sessions.append("a", _turn(3)),
        )
        self.assertEqual([t.question for t in sessions.history("a")], ["q1", "q3"])
        self.assertEqual([t.question for t in sessions.history("b")], ["q2"])
        self.assertEqual(sessions.session_ids(), ["a", "b"])

    async def test_history_is_a_copy(self):
        sessions = SessionStore()
        await sessions.append("s1", _turn(1))
        sessions.history("s1").clear()
        self.assertEqual(sessions.turn_count("s1"), 1)


if __name__ == "__main__":
    unittest.main()
