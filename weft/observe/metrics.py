"""In-process counters for workflow runs and step outcomes.

The engine records every run that settles to a terminal status and every
step record it closes. ``snapshot()`` returns an immutable copy for callers
that report or assert on the numbers.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    total_workflow_runs: int = 0
    workflow_runs_by_status: dict[str, int] = field(default_factory=dict)
    total_workflow_duration_seconds: float = 0.0
    total_steps: int = 0
    steps_by_status: dict[str, int] = field(default_factory=dict)
    step_retries: int = 0

    @property
    def avg_workflow_duration_seconds(self) -> float:
        if not self.total_workflow_runs:
            return 0.0
        return self.total_workflow_duration_seconds / self.total_workflow_runs


class MetricsCollector:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Counter[str] = Counter()
        self._duration = 0.0
        self._steps: Counter[str] = Counter()
        self._retries = 0

    def record_workflow_run(self, status: str, duration_seconds: float = 0.0) -> None:
        with self._lock:
            self._runs[str(status)] += 1
            self._duration += max(0.0, duration_seconds)

    def record_step(self, status: str, retries: int = 0) -> None:
        with self._lock:
            self._steps[str(status)] += 1
            self._retries += retries

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                total_workflow_runs=sum(self._runs.values()),
                workflow_runs_by_status=dict(self._runs),
                total_workflow_duration_seconds=self._duration,
                total_steps=sum(self._steps.values()),
                steps_by_status=dict(self._steps),
                step_retries=self._retries,
            )

    def reset(self) -> None:
        with self._lock:
            self._runs.clear()
            self._duration = 0.0
            self._steps.clear()
            self._retries = 0


_metrics: MetricsCollector | None = None
_metrics_lock = threading.Lock()


def get_metrics() -> MetricsCollector:
    """Return the process-wide collector, creating it on first use."""
    global _metrics
    if _metrics is None:
        with _metrics_lock:
            if _metrics is None:
                _metrics = MetricsCollector()
    return _metrics
