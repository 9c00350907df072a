"""Core records shared by the store, index, cache, and QA engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class ContentKind(str, Enum):
    POST = "post"
    HELP_REQUEST = "help_request"


@dataclass(frozen=True)
class ContentItem:
    """
    Snapshot of a community record as the engine sees it.

    `summary` is only trustworthy while `summary_of_version == version`;
    the index entry only while `embedded_version == version`.
    """

    id: str
    kind: ContentKind
    text: str
    title: str = ""
    location: str = ""
    category: str = ""
    is_resolved: bool = False
    volunteers: tuple[str, ...] = ()
    version: int = 1
    deleted: bool = False
    summary: str | None = None
    summary_of_version: int = 0
    embedded_version: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def summary_is_valid(self) -> bool:
        return bool(self.summary) and self.summary_of_version == self.version

    @property
    def embedding_is_valid(self) -> bool:
        return self.embedded_version == self.version

    @property
    def document_text(self) -> str:
        """Text handed to the embedder. Every field here is version-tracked."""
        parts = [self.title.strip(), self.text.strip()]
        if self.kind is ContentKind.POST and self.category.strip():
            parts.append(f"Category: {self.category.strip()}")
        if self.kind is ContentKind.HELP_REQUEST:
            if self.location.strip():
                parts.append(f"Location: {self.location.strip()}")
            parts.append("Status: resolved" if self.is_resolved else "Status: open")
            parts.append(f"Volunteers: {len(self.volunteers)}")
        return "\n".join(part for part in parts if part)


@dataclass(frozen=True)
class IndexHit:
    item_id: str
    score: float
    version: int


@dataclass(frozen=True)
class Turn:
    question: str
    answer: str
    retrieved_ids: tuple[str, ...] = ()
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass
class Session:
    session_id: str
    turns: list[Turn] = field(default_factory=list)


@dataclass(frozen=True)
class RefreshJob:
    trigger_reason: str
    requested_at: str = field(default_factory=utcnow_iso)


@dataclass(frozen=True)
class ContextChunk:
    item_id: str
    kind: ContentKind
    text: str


@dataclass(frozen=True)
class AnswerResult:
    answer: str
    retrieved_ids: tuple[str, ...]

    def as_payload(self) -> dict:
        return {"answer": self.answer, "sources": list(self.retrieved_ids)}
