"""
In-process metrics for driftwatch.

Counters can carry labels (a drift event is counted per deviation, a recovery
transition per phase pair), gauges track how many live sessions sit in each
recovery phase, and histograms track pass latency and drift severity. The whole
registry exports as a JSON-able snapshot, which ``driftwatch status --json``
prints.

Usage:
    from driftwatch.metrics import metrics

    metrics.record_drift(events)
    metrics.record_transition("flagged", "recovering")
    metrics.counter(DRIFT_EVENTS, deviation="omission")
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from typing import Any, Iterable

from driftwatch.types import DriftEvent, RecoveryPhase

DRIFT_EVENTS = "drift_events_total"
ESCALATIONS = "escalations_total"
COMPRESSIONS = "compressions_total"
MONITOR_PASSES = "monitor_passes_total"
SESSION_FAILURES = "monitor_session_failures_total"
RECOVERY_TRANSITIONS = "recovery_transitions_total"
SESSIONS_LIVE = "sessions_live"
SESSIONS_IN_PHASE = "sessions_in_phase"
PASS_SECONDS = "monitor_pass_seconds"
DRIFT_SEVERITY = "drift_severity"


def _label_key(labels: dict[str, Any]) -> str:
    return ",".join(f"{k}={labels[k]}" for k in sorted(labels))


class _Histogram:
    """Count, sum and range of observed values."""

    __slots__ = ("count", "total", "low", "high")

    def __init__(self) -> None:
        self.count = 0
        self.total = 0.0
        self.low = float("inf")
        self.high = 0.0

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.low = min(self.low, value)
        self.high = max(self.high, value)

    def snapshot(self) -> dict[str, Any]:
        if not self.count:
            return {"count": 0, "sum": 0.0, "avg": 0.0, "min": 0.0, "max": 0.0}
        return {
            "count": self.count,
            "sum": round(self.total, 4),
            "avg": round(self.total / self.count, 4),
            "min": round(self.low, 4),
            "max": round(self.high, 4),
        }


class MetricsRegistry:
    """Thread-safe registry of driftwatch counters, gauges and histograms."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        # name -> "k=v,..." -> count; the unlabelled total stays in _counters.
        self._labelled: dict[str, dict[str, int]] = {}
        self._gauges: dict[str, dict[str, float]] = {}
        self._histograms: dict[str, _Histogram] = {}
        self._start_time = time.monotonic()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        """Add to a counter; labelled increments also count toward the total."""
        if value == 0:
            return
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value
            if labels:
                series = self._labelled.setdefault(name, {})
                key = _label_key(labels)
                series[key] = series.get(key, 0) + value

    def counter(self, name: str, **labels: Any) -> int:
        with self._lock:
            if labels:
                return self._labelled.get(name, {}).get(_label_key(labels), 0)
            return self._counters.get(name, 0)

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        with self._lock:
            self._gauges.setdefault(name, {})[_label_key(labels)] = float(value)

    def gauge(self, name: str, **labels: Any) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(_label_key(labels), 0.0)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms.setdefault(name, _Histogram()).observe(value)

    # -- driftwatch recorders --

    def record_drift(self, events: Iterable[DriftEvent]) -> None:
        for event in events:
            self.inc(DRIFT_EVENTS, deviation=event.deviation)
            self.observe(DRIFT_SEVERITY, event.severity)

    def record_transition(self, previous: str, current: str) -> None:
        self.inc(RECOVERY_TRANSITIONS, previous=previous, current=current)

    def set_phase_counts(self, phases: Iterable[RecoveryPhase]) -> None:
        """Replace the per-phase session gauges; phases with no sessions read 0."""
        counts = Counter(phases)
        for phase in RecoveryPhase:
            self.set_gauge(SESSIONS_IN_PHASE, counts.get(phase, 0), phase=phase.value)

    # -- export --

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            gauges: dict[str, Any] = {}
            for name, series in self._gauges.items():
                if list(series) == [""]:
                    gauges[name] = series[""]
                else:
                    gauges[name] = dict(series)
            return {
                "uptime_seconds": round(time.monotonic() - self._start_time, 1),
                "counters": dict(self._counters),
                "labelled": {name: dict(series) for name, series in self._labelled.items()},
                "gauges": gauges,
                "histograms": {k: v.snapshot() for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._labelled.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.monotonic()


# Process-wide registry.
metrics = MetricsRegistry()
