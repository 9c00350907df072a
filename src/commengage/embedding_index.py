"""
In-process vector index over community content.

Maps content id -> (unit vector, version). Each upsert swaps a whole immutable
entry under the index lock, so a concurrent query sees either the old vector
or the new one, never a mix. Deleted ids are tombstoned and win over any
embedding that was still in flight when the delete arrived.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

import numpy as np

from .config import EMBED_TIMEOUT_S
from .errors import EmbeddingFailure, UpstreamTimeout, await_upstream
from .metrics import EngineMetrics
from .models import ContentItem, IndexHit
from .observability import get_logger
from .providers import Embedder

logger = get_logger(__name__)


class UpsertStatus(str, Enum):
    INDEXED = "indexed"
    UNCHANGED = "unchanged"
    SUPERSEDED = "superseded"
    TOMBSTONED = "tombstoned"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class UpsertResult:
    item_id: str
    status: UpsertStatus
    version: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in {UpsertStatus.INDEXED, UpsertStatus.UNCHANGED, UpsertStatus.SUPERSEDED}


@dataclass(frozen=True, eq=False)
class IndexEntry:
    vector: np.ndarray
    version: int


def _unit_vector(values: Sequence[float]) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float32).reshape(-1)
    if vector.size == 0 or not np.all(np.isfinite(vector)):
        raise EmbeddingFailure("embedder returned an empty or non-finite vector")
    norm = float(np.linalg.norm(vector))
    if norm > 0.0:
        vector = vector / norm
    vector.setflags(write=False)
    return vector


class EmbeddingIndex:
    def __init__(
        self,
        embedder: Embedder,
        *,
        timeout_s: float = EMBED_TIMEOUT_S,
        metrics: EngineMetrics | None = None,
    ):
        self._embedder = embedder
        self._timeout_s = float(timeout_s)
        self._metrics = metrics
        self._lock = threading.Lock()
        self._entries: dict[str, IndexEntry] = {}
        self._tombstones: set[str] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            return item_id in self._entries

    def entry_version(self, item_id: str) -> int | None:
        with self._lock:
            entry = self._entries.get(str(item_id))
        return entry.version if entry is not None else None

    def is_tombstoned(self, item_id: str) -> bool:
        with self._lock:
            return str(item_id) in self._tombstones

    async def embed_text(self, text: str) -> np.ndarray:
        """Embeds text as a unit vector. Raises EmbeddingFailure or UpstreamTimeout."""
        if self._metrics is not None:
            self._metrics.record_upstream_call("embed")
        try:
            values = await await_upstream(
                self._embedder.embed(text),
                operation="embed",
                timeout_s=self._timeout_s,
            )
        except (UpstreamTimeout, EmbeddingFailure):
            raise
        except Exception as exc:
            raise EmbeddingFailure(str(exc)) from exc
        return _unit_vector(values)

    async def upsert(self, item: ContentItem) -> UpsertResult:
        item_id = str(item.id)
        if item.deleted:
            self.remove(item_id)
            return UpsertResult(item_id, UpsertStatus.TOMBSTONED, item.version)

        with self._lock:
            if item_id in self._tombstones:
                return UpsertResult(item_id, UpsertStatus.TOMBSTONED, item.version)
            existing = self._entries.get(item_id)
        if existing is not None and existing.version >= item.version:
            status = UpsertStatus.UNCHANGED if existing.version == item.version else UpsertStatus.SUPERSEDED
            return UpsertResult(item_id, status, existing.version)

        try:
            vector = await self.embed_text(item.document_text)
        except UpstreamTimeout as exc:
            logger.warning("index_upsert_timed_out", item_id=item_id, version=item.version, timeout_s=exc.timeout_s)
            return UpsertResult(item_id, UpsertStatus.TIMED_OUT, item.version, error=str(exc))
        except EmbeddingFailure as exc:
            logger.warning("index_upsert_failed", item_id=item_id, version=item.version, error=str(exc))
            return UpsertResult(item_id, UpsertStatus.FAILED, item.version, error=str(exc))

        with self._lock:
            # Delete wins over an embedding that finished after it.
            if item_id in self._tombstones:
                logger.info("index_upsert_discarded", item_id=item_id, version=item.version, reason="tombstoned")
                return UpsertResult(item_id, UpsertStatus.TOMBSTONED, item.version)
            existing = self._entries.get(item_id)
            if existing is not None and existing.version > item.version:
                return UpsertResult(item_id, UpsertStatus.SUPERSEDED, existing.version)
            self._entries[item_id] = IndexEntry(vector=vector, version=int(item.version))
        return UpsertResult(item_id, UpsertStatus.INDEXED, item.version)

    def remove(self, item_id: str) -> bool:
        """Drops the entry and tombstones the id. Returns True if an entry existed."""
        item_id = str(item_id)
        with self._lock:
            self._tombstones.add(item_id)
            return self._entries.pop(item_id, None) is not None

    def reclaim(self, item_ids: Iterable[str]):
        """Forgets tombstones once their records are physically gone."""
        with self._lock:
            for item_id in item_ids:
                self._tombstones.discard(str(item_id))
                self._entries.pop(str(item_id), None)

    def query(self, vector: Sequence[float] | np.ndarray, k: int) -> list[IndexHit]:
        """Top-k by cosine similarity; ties go to the higher version, then the lower id."""
        limit = int(k)
        if limit <= 0:
            return []
        with self._lock:
            snapshot = [
                (item_id, entry)
                for item_id, entry in self._entries.items()
                if item_id not in self._tombstones
            ]
        if not snapshot:
            return []

        query_vec = _unit_vector(vector)
        candidates = [(item_id, entry) for item_id, entry in snapshot if entry.vector.shape == query_vec.shape]
        if not candidates:
            return []

        matrix = np.stack([entry.vector for _, entry in candidates])
        scores = matrix @ query_vec
        ranked = sorted(
            (
                IndexHit(item_id=item_id, score=float(score), version=entry.version)
                for (item_id, entry), score in zip(candidates, scores)
            ),
            key=lambda hit: (-hit.score, -hit.version, hit.item_id),
        )
        return ranked[:limit]
