"""
Runtime metrics for the answer engine.

Tracks: question latency and failures, upstream AI call counts, refresh
cycles, and process memory. Optionally appends per-question entries to
<log_dir>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from pathlib import Path

import psutil


class EngineMetrics:
    """Thread-safe counters with optional JSONL logging."""

    def __init__(self, log_dir: str | Path | None = None):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Questions.
        self._questions: int = 0
        self._question_failures: Counter[str] = Counter()
        self._total_latency_ms: float = 0.0
        self._max_latency_ms: float = 0.0

        # Upstream calls and refresh work.
        self._upstream_calls: Counter[str] = Counter()
        self._refresh_cycles: int = 0
        self._items_reindexed: int = 0

        self._log_path: Path | None = None
        if log_dir is not None:
            directory = Path(log_dir)
            directory.mkdir(parents=True, exist_ok=True)
            self._log_path = directory / "metrics.jsonl"

        self._process = psutil.Process(os.getpid())

    def record_upstream_call(self, operation: str) -> None:
        with self._lock:
            self._upstream_calls[str(operation)] += 1

    def record_refresh_cycle(self, items_reindexed: int) -> None:
        with self._lock:
            self._refresh_cycles += 1
            self._items_reindexed += int(items_reindexed)

    def record_question(self, latency_ms: float, *, failure: str | None = None, sources: int = 0) -> None:
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "latency_ms": round(latency_ms, 2),
            "success": failure is None,
            "failure": failure,
            "sources": int(sources),
        }
        with self._lock:
            self._questions += 1
            self._total_latency_ms += latency_ms
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)
            if failure is not None:
                self._question_failures[failure] += 1

        if self._log_path is None:
            return
        # Append outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def upstream_calls(self, operation: str) -> int:
        with self._lock:
            return int(self._upstream_calls.get(operation, 0))

    def get_summary(self) -> dict:
        with self._lock:
            total = self._questions
            failures = dict(self._question_failures)
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            max_lat = self._max_latency_ms
            upstream = dict(self._upstream_calls)
            cycles = self._refresh_cycles
            reindexed = self._items_reindexed

        failed = sum(failures.values())
        mem_rss_mb = self._process.memory_info().rss / (1024 * 1024)
        return {
            "questions": {
                "total": total,
                "failed": failed,
                "failures_by_type": failures,
                "avg_latency_ms": round(avg_lat, 2),
                "max_latency_ms": round(max_lat, 2),
            },
            "upstream_calls": upstream,
            "refresh": {
                "cycles": cycles,
                "items_reindexed": reindexed,
            },
            "memory": {"rss_mb": round(mem_rss_mb, 1)},
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }
