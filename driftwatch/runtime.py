"""
Runtime — wires driftwatch's subsystems into one object.

The store, detector, compressor, recovery controller, alert dispatcher and
monitor all need each other. This module builds them from a single
``DriftwatchConfig`` in dependency order and exposes the operations an agent
host (or the CLI) drives:

    async with DriftwatchRuntime(config) as rt:
        snap = await rt.create_session(["Summarize the inbox every 5 minutes"],
                                       interval_seconds=300)
        await rt.record_action(snap.session_id, "inbox summary: 3 new mails")
        events = await rt.check(snap.session_id)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Iterable, Optional

import structlog

from driftwatch.alerts import AlertChannel, AlertDispatcher
from driftwatch.compression import ContextCompressor, Summarizer
from driftwatch.config import DriftwatchConfig
from driftwatch.drift import DriftDetector
from driftwatch.errors import RecoveryExhaustedError
from driftwatch.events import DriftDetectedEvent, EventBus, SessionTerminatedEvent
from driftwatch.metrics import COMPRESSIONS, ESCALATIONS, metrics
from driftwatch.monitor import ConsistencyMonitor
from driftwatch.recovery import RecoveryController, ReinjectHook
from driftwatch.store import SessionStore
from driftwatch.types import (
    Action,
    ActionSource,
    CompressionLevel,
    DriftEvent,
    RecoveryState,
    ScheduleDescriptor,
    SessionSnapshot,
)

logger = structlog.get_logger(__name__)


class DriftwatchRuntime:
    """Owns every driftwatch subsystem for one process."""

    def __init__(
        self,
        config: Optional[DriftwatchConfig] = None,
        store: Optional[SessionStore] = None,
        reinject_hook: Optional[ReinjectHook] = None,
        summarizer: Optional[Summarizer] = None,
        alert_channels: Optional[list[AlertChannel]] = None,
    ) -> None:
        self._config = config or DriftwatchConfig()
        cfg = self._config

        self.event_bus = EventBus()
        self.store = store or SessionStore.from_config(cfg.store)
        self.detector = DriftDetector(self.store, cfg.drift)
        self.compressor = ContextCompressor(
            self.store, cfg.compression, summarizer=summarizer, event_bus=self.event_bus
        )
        if alert_channels is None:
            self.alerts = AlertDispatcher.from_config(cfg.alerts, self.event_bus)
        else:
            self.alerts = AlertDispatcher(alert_channels, cfg.alerts)
        self.recovery = RecoveryController(
            self.store,
            self.detector,
            alerts=self.alerts,
            config=cfg.recovery,
            event_bus=self.event_bus,
            reinject_hook=reinject_hook,
        )
        self.monitor = ConsistencyMonitor(
            self.store,
            self.detector,
            self.compressor,
            self.recovery,
            config=cfg.monitor,
            event_bus=self.event_bus,
        )
        self._started = False

    @property
    def config(self) -> DriftwatchConfig:
        return self._config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            logger.warning("runtime.already_started")
            return
        await self.store.initialize()
        await self.event_bus.start()
        self._started = True
        logger.info("runtime.started", sessions=len(self.store), config=repr(self._config))

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.event_bus.stop()
        await self.alerts.close()
        await self.store.close()
        logger.info("runtime.stopped")

    async def __aenter__(self) -> "DriftwatchRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    async def create_session(
        self,
        instructions: Iterable[str] = (),
        interval_seconds: Optional[float] = None,
        tolerance_seconds: Optional[float] = None,
        expected_pattern: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SessionSnapshot:
        """Register a session; unspecified schedule fields fall back to config."""
        drift_cfg = self._config.drift
        schedule = ScheduleDescriptor(
            interval_seconds=(
                drift_cfg.default_interval_seconds if interval_seconds is None else interval_seconds
            ),
            tolerance_seconds=(
                drift_cfg.default_tolerance_seconds if tolerance_seconds is None else tolerance_seconds
            ),
            expected_pattern=expected_pattern or None,
        )
        snap = await self.store.create(schedule, instructions, session_id=session_id)
        metrics.inc("sessions_created_total")
        return snap

    async def record_action(
        self,
        session_id: str,
        payload: str,
        source: ActionSource = ActionSource.AGENT,
        timestamp: Optional[float] = None,
    ) -> tuple[Action, RecoveryState]:
        """Append an action and let recovery see it."""
        action = Action(
            payload=payload,
            source=source,
            timestamp=time.time() if timestamp is None else timestamp,
        )
        await self.store.append(session_id, action)
        metrics.inc("actions_recorded_total")
        state = await self.recovery.observe_action(session_id, action)
        return action, state

    async def history(self, session_id: str) -> list[Action]:
        return await self.store.get_history(session_id)

    async def check(
        self,
        session_id: str,
        now: Optional[float] = None,
        recover: bool = True,
    ) -> list[DriftEvent]:
        """
        Run one drift check. With ``recover`` the events go straight to the
        recovery controller, which may raise RecoveryExhaustedError.
        """
        events = await self.detector.check(session_id, now=now)
        metrics.record_drift(events)
        for event in events:
            self.event_bus.emit(DriftDetectedEvent(
                session_id=event.session_id,
                deviation=event.deviation,
                severity=event.severity,
                detail=event.detail,
            ))
        if events and recover:
            try:
                await self.recovery.handle_drift(session_id, events)
            except RecoveryExhaustedError:
                metrics.inc(ESCALATIONS)
                raise
        return events

    async def compress(self, session_id: str, force: bool = False) -> list[CompressionLevel]:
        """Compress now, or only when due unless ``force``."""
        snap = await self.store.snapshot(session_id)
        if not force and not self.compressor.should_compress(snap):
            return list(snap.compressed_context)
        levels = await self.compressor.compress(session_id)
        metrics.inc(COMPRESSIONS)
        return levels

    async def reset(self, session_id: str, reason: str = "manual reset") -> RecoveryState:
        return await self.recovery.reset(session_id, reason)

    async def terminate(self, session_id: str) -> None:
        await self.store.terminate(session_id)
        metrics.inc("sessions_terminated_total")
        self.event_bus.emit(SessionTerminatedEvent(session_id=session_id))

    async def status(self, session_id: str, now: Optional[float] = None) -> dict[str, Any]:
        """Summary of one session for display."""
        now = time.time() if now is None else now
        snap = await self.store.snapshot(session_id)
        state = self.recovery.state(session_id)
        last = snap.last_timestamp
        return {
            "session_id": snap.session_id,
            "created_at": snap.created_at,
            "actions": len(snap.actions),
            "agent_actions": len(snap.agent_actions),
            "instructions": list(snap.instructions),
            "schedule": snap.schedule.to_dict(),
            "seconds_since_last_action": round(max(0.0, now - last), 1),
            "deadline": last + snap.schedule.window_seconds,
            "phase": state.phase.value,
            "attempts": state.attempts,
            "retry_budget": self.recovery.retry_budget,
            "last_reason": state.last_reason,
            "compressed_tiers": [level.tier for level in snap.compressed_context],
        }

    async def run_monitor(self, stop_event: Optional[asyncio.Event] = None) -> None:
        await self.monitor.run(stop_event)
