"""
Shared text helpers for summary thresholds and context clipping.
"""
from __future__ import annotations


def count_words(text: str) -> int:
    """Whitespace-delimited word count, the unit used for the summary threshold."""
    return len(str(text or "").split())


def clip_text(text: str, max_chars: int) -> str:
    """Collapses whitespace and cuts at a word boundary, marking the cut with '...'."""
    compact = " ".join(str(text or "").split())
    limit = max(1, int(max_chars))
    if len(compact) <= limit:
        return compact
    clipped = compact[:limit].rsplit(" ", 1)[0] or compact[:limit]
    return clipped + "..."
