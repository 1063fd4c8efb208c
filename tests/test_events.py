"""Tests for driftwatch.events — EventBus and typed event definitions."""

from __future__ import annotations

import asyncio

import pytest

from driftwatch.events import (
    DriftDetectedEvent,
    DriftwatchEvent,
    EventBus,
    MonitorPassEvent,
    OperatorAlertEvent,
    RecoveryTransitionEvent,
    SessionCompressedEvent,
    SessionTerminatedEvent,
)


# ---------------------------------------------------------------------------
# event_type derivation
# ---------------------------------------------------------------------------


class TestEventType:
    """event_type is derived from the class name."""

    def test_drift_detected(self) -> None:
        event = DriftDetectedEvent(session_id="s", deviation="timing", severity=0.4)
        assert event.event_type == "drift.detected"

    def test_recovery_transition(self) -> None:
        event = RecoveryTransitionEvent(
            session_id="s", previous="nominal", current="flagged", attempts=0
        )
        assert event.event_type == "recovery.transition"

    def test_operator_alert(self) -> None:
        event = OperatorAlertEvent(
            alert_id="a1", session_id="s", severity="critical", message="escalated"
        )
        assert event.event_type == "operator.alert"

    def test_session_events(self) -> None:
        assert SessionCompressedEvent(session_id="s").event_type == "session.compressed"
        assert SessionTerminatedEvent(session_id="s").event_type == "session.terminated"

    def test_monitor_pass(self) -> None:
        event = MonitorPassEvent(pass_count=1, sessions_checked=2, drift_events=0, escalations=0)
        assert event.event_type == "monitor.pass"

    def test_explicit_event_type_preserved(self) -> None:
        assert DriftwatchEvent(event_type="custom.type").event_type == "custom.type"


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class TestEventBus:
    @pytest.mark.asyncio
    async def test_pattern_subscription(self) -> None:
        bus = EventBus()
        await bus.start()
        drift: list[DriftwatchEvent] = []
        everything: list[DriftwatchEvent] = []
        bus.subscribe("drift.*", drift.append)
        bus.subscribe("*", everything.append)

        await bus.emit_async(DriftDetectedEvent(session_id="s", deviation="omission", severity=1.0))
        await bus.emit_async(SessionTerminatedEvent(session_id="s"))
        await bus.stop()

        assert [e.event_type for e in drift] == ["drift.detected"]
        assert [e.event_type for e in everything] == ["drift.detected", "session.terminated"]

    @pytest.mark.asyncio
    async def test_async_handler_awaited(self) -> None:
        bus = EventBus()
        await bus.start()
        seen: list[str] = []

        async def handler(event: DriftwatchEvent) -> None:
            await asyncio.sleep(0)
            seen.append(event.event_type)

        bus.subscribe("session.*", handler)
        await bus.emit_async(SessionTerminatedEvent(session_id="s"))
        await bus.stop()
        assert seen == ["session.terminated"]

    @pytest.mark.asyncio
    async def test_handler_error_is_isolated(self) -> None:
        bus = EventBus()
        await bus.start()
        seen: list[str] = []

        def broken(event: DriftwatchEvent) -> None:
            raise RuntimeError("boom")

        bus.subscribe("*", broken)
        bus.subscribe("*", lambda e: seen.append(e.event_type))
        await bus.emit_async(SessionTerminatedEvent(session_id="s"))
        await bus.stop()
        assert seen == ["session.terminated"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        bus = EventBus()
        await bus.start()
        seen: list[str] = []
        sub_id = bus.subscribe("*", lambda e: seen.append(e.event_type))
        assert bus.subscription_count == 1
        bus.unsubscribe(sub_id)
        assert bus.subscription_count == 0
        await bus.emit_async(SessionTerminatedEvent(session_id="s"))
        await bus.stop()
        assert seen == []

    @pytest.mark.asyncio
    async def test_stop_drains_queued_events(self) -> None:
        bus = EventBus()
        await bus.start()
        seen: list[str] = []
        bus.subscribe("*", lambda e: seen.append(e.event_type))
        for _ in range(5):
            bus.emit(SessionTerminatedEvent(session_id="s"))
        await bus.stop()
        assert len(seen) == 5
        assert bus.is_running is False

    @pytest.mark.asyncio
    async def test_emit_async_on_stopped_bus(self) -> None:
        bus = EventBus()
        with pytest.raises(RuntimeError):
            await bus.emit_async(SessionTerminatedEvent(session_id="s"))

    @pytest.mark.asyncio
    async def test_full_queue_drops(self) -> None:
        bus = EventBus(max_queue_size=2)
        seen: list[str] = []
        bus.subscribe("*", lambda e: seen.append(e.session_id))
        await bus.start()
        for sid in ("a", "b", "c"):
            bus.emit(SessionTerminatedEvent(session_id=sid))  # "c" dropped, not raised
        await asyncio.sleep(0.05)
        await bus.stop()
        assert seen == ["a", "b"]
