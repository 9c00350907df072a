"""
Failure taxonomy for the answer engine.

Only the QA engine raises these to callers. The summary cache and embedding
index report the same conditions as typed results instead.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class EngineError(Exception):
    """Base class for answer engine failures."""


class SummarizationFailure(EngineError):
    """Summarizer raised or returned nothing usable."""


class EmbeddingFailure(EngineError):
    """Embedder raised or returned an unusable vector."""


class GenerationFailure(EngineError):
    """Answer generator raised or returned an empty answer."""


class UpstreamTimeout(EngineError):
    """An AI capability did not respond in time. Not retried internally."""

    def __init__(self, operation: str, timeout_s: float):
        super().__init__(f"{operation} timed out after {timeout_s:.1f}s")
        self.operation = operation
        self.timeout_s = float(timeout_s)


async def await_upstream(awaitable: Awaitable[T], *, operation: str, timeout_s: float) -> T:
    """Awaits an external AI call, converting a deadline miss into UpstreamTimeout."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        raise UpstreamTimeout(operation, timeout_s) from exc
