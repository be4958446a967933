"""Per-run metrics recorder.

Counters and timers are mutated by concurrent candidate workers and read
once at the end of the run; :meth:`RunMetrics.snapshot` freezes them into a
:class:`~grounding.models.pipeline.PipelineMetrics`.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from grounding.models.pipeline import PipelineMetrics
from grounding.utils.date_utils import utc_now

_TIMERS = (
    "search_time",
    "link_validation_time",
    "web_validation_time",
    "content_validation_time",
    "scoring_time",
)
_COUNTERS = (
    "search_results",
    "links_found",
    "valid_links",
    "sources_processed",
    "grounded_sources",
    "cache_hits",
    "retries",
    "duplicates_removed",
)


class RunMetrics:
    def __init__(self, query: str, *, log_progress: bool = False, started_at: Optional[datetime] = None) -> None:
        self.query = query
        self.log_progress = log_progress
        self.started_at = started_at or utc_now()
        self._t0 = time.perf_counter()
        self._lock = threading.Lock()
        self._timers: Dict[str, float] = {name: 0.0 for name in _TIMERS}
        self._counters: Dict[str, int] = {name: 0 for name in _COUNTERS}
        self._steps: List[str] = []

    def increment(self, name: str, value: int = 1) -> None:
        if name not in self._counters:
            raise KeyError(f"unknown counter {name!r}")
        with self._lock:
            self._counters[name] += value

    def set_count(self, name: str, value: int) -> None:
        if name not in self._counters:
            raise KeyError(f"unknown counter {name!r}")
        with self._lock:
            self._counters[name] = value

    def record_retry(self) -> None:
        self.increment("retries")

    def add_time(self, name: str, seconds: float) -> None:
        if name not in self._timers:
            raise KeyError(f"unknown timer {name!r}")
        with self._lock:
            self._timers[name] += max(0.0, seconds)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.add_time(name, time.perf_counter() - start)

    def step(self, label: str) -> None:
        """Record a processing step label when progress logging is on."""
        if not self.log_progress:
            return
        with self._lock:
            self._steps.append(label)

    def count(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self, *, final_state: str, average_score: float = 0.0) -> PipelineMetrics:
        with self._lock:
            return PipelineMetrics(
                query=self.query,
                started_at=self.started_at,
                total_time=time.perf_counter() - self._t0,
                average_score=average_score,
                final_state=final_state,
                processing_steps=list(self._steps),
                **self._timers,
                **self._counters,
            )
