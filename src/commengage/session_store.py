"""Per-conversation turn history, append-only and ordered per session."""
from __future__ import annotations

import asyncio
import threading

from .models import Session, Turn


class SessionStore:
    """
    Sessions are created lazily on first append and never expire here.

    Each session has its own asyncio.Lock so appends to one session are
    strictly ordered while different sessions never contend.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[session_id] = lock
            return lock

    async def append(self, session_id: str, turn: Turn) -> int:
        """Appends a turn and returns the session's new turn count."""
        session_id = str(session_id)
        async with self._lock_for(session_id):
            with self._guard:
                session = self._sessions.get(session_id)
                if session is None:
                    session = Session(session_id=session_id)
                    self._sessions[session_id] = session
                session.turns.append(turn)
                return len(session.turns)

    def history(self, session_id: str, limit: int | None = None) -> list[Turn]:
        """Turns oldest first; `limit` keeps only the most recent ones."""
        with self._guard:
            session = self._sessions.get(str(session_id))
            turns = list(session.turns) if session is not None else []
        if limit is not None:
            keep = max(0, int(limit))
            turns = turns[-keep:] if keep else []
        return turns

    def turn_count(self, session_id: str) -> int:
        with self._guard:
            session = self._sessions.get(str(session_id))
            return len(session.turns) if session is not None else 0

    def session_ids(self) -> list[str]:
        with self._guard:
            return sorted(self._sessions)
