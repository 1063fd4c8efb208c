from __future__ import annotations

import json
import threading

from conftest import T0
from driftwatch.metrics import (
    DRIFT_EVENTS,
    RECOVERY_TRANSITIONS,
    SESSIONS_IN_PHASE,
    MetricsRegistry,
)
from driftwatch.types import DriftEvent, RecoveryPhase


def _event(deviation: str, severity: float) -> DriftEvent:
    return DriftEvent(session_id="s", deviation=deviation, severity=severity, detected_at=T0)


def test_counters_and_gauges():
    registry = MetricsRegistry()
    registry.inc("actions_recorded_total")
    registry.inc("actions_recorded_total", 3)
    registry.inc("actions_recorded_total", 0)
    registry.set_gauge("sessions_live", 4)

    assert registry.counter("actions_recorded_total") == 4
    assert registry.counter("never_touched") == 0
    assert registry.gauge("sessions_live") == 4.0


def test_drift_is_counted_per_deviation():
    registry = MetricsRegistry()
    registry.record_drift([_event("timing", 0.2), _event("omission", 1.0), _event("timing", 0.4)])

    assert registry.counter(DRIFT_EVENTS) == 3
    assert registry.counter(DRIFT_EVENTS, deviation="timing") == 2
    assert registry.counter(DRIFT_EVENTS, deviation="content") == 0

    severity = registry.snapshot()["histograms"]["drift_severity"]
    assert severity["count"] == 3
    assert severity["min"] == 0.2
    assert severity["max"] == 1.0


def test_transitions_are_labelled_by_phase_pair():
    registry = MetricsRegistry()
    registry.record_transition("nominal", "flagged")
    registry.record_transition("flagged", "recovering")
    registry.record_transition("nominal", "flagged")

    assert registry.counter(RECOVERY_TRANSITIONS, previous="nominal", current="flagged") == 2
    # Label order does not matter.
    assert registry.counter(RECOVERY_TRANSITIONS, current="recovering", previous="flagged") == 1


def test_phase_counts_cover_every_phase():
    registry = MetricsRegistry()
    registry.set_phase_counts([RecoveryPhase.NOMINAL, RecoveryPhase.ESCALATED, RecoveryPhase.NOMINAL])
    assert registry.gauge(SESSIONS_IN_PHASE, phase="nominal") == 2.0
    assert registry.gauge(SESSIONS_IN_PHASE, phase="escalated") == 1.0

    registry.set_phase_counts([])
    assert registry.gauge(SESSIONS_IN_PHASE, phase="escalated") == 0.0
    assert registry.snapshot()["gauges"][SESSIONS_IN_PHASE]["phase=flagged"] == 0.0


def test_snapshot_is_json_serialisable_and_reset_clears():
    registry = MetricsRegistry()
    registry.record_drift([_event("content", 0.5)])
    registry.set_gauge("sessions_live", 1)
    snap = registry.snapshot()
    json.dumps(snap)
    assert snap["labelled"][DRIFT_EVENTS] == {"deviation=content": 1}
    assert snap["gauges"]["sessions_live"] == 1.0

    registry.reset()
    snap = registry.snapshot()
    assert snap["counters"] == {}
    assert snap["labelled"] == {}
    assert snap["histograms"] == {}


def test_concurrent_increments():
    registry = MetricsRegistry()

    def _bump():
        for _ in range(1000):
            registry.inc("actions_recorded_total", source="agent")

    threads = [threading.Thread(target=_bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert registry.counter("actions_recorded_total") == 4000
    assert registry.counter("actions_recorded_total", source="agent") == 4000
