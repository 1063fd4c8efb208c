"""
Monitor — the periodic trigger that drives detection, recovery and compression.

The drift detector and the compressor never schedule themselves. The monitor
walks every live session on a fixed interval:

  1. take one snapshot
  2. evaluate drift on it and hand any events to the recovery controller
  3. compress the session when its raw history outgrew the bound

A session terminated mid-pass is skipped. A pass that fails outright counts
toward a circuit breaker; after enough consecutive failures the loop backs
off exponentially before trying again.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

import structlog

from driftwatch.compression import ContextCompressor
from driftwatch.config import MonitorConfig
from driftwatch.drift import DriftDetector
from driftwatch.errors import NotFoundError, RecoveryExhaustedError, StorageError
from driftwatch.events import DriftDetectedEvent, EventBus, MonitorPassEvent
from driftwatch.metrics import (
    COMPRESSIONS,
    ESCALATIONS,
    MONITOR_PASSES,
    PASS_SECONDS,
    SESSION_FAILURES,
    SESSIONS_LIVE,
    MetricsRegistry,
    metrics as default_metrics,
)
from driftwatch.recovery import RecoveryController
from driftwatch.store import SessionStore

logger = structlog.get_logger(__name__)


@dataclass
class PassReport:
    """What one monitor pass did."""

    sessions_checked: int = 0
    drift_events: int = 0
    escalations: list[str] = field(default_factory=list)
    compressed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class ConsistencyMonitor:
    """Runs drift checks, recovery and compression over all sessions."""

    def __init__(
        self,
        store: SessionStore,
        detector: DriftDetector,
        compressor: ContextCompressor,
        recovery: RecoveryController,
        config: Optional[MonitorConfig] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self._detector = detector
        self._compressor = compressor
        self._recovery = recovery
        self._config = config or MonitorConfig()
        self._event_bus = event_bus
        self._metrics = metrics or default_metrics

        self._pass_count = 0
        self._consecutive_failures = 0
        self._circuit_open_until: Optional[float] = None
        self._circuit_open_count = 0
        self._last_error: Optional[str] = None

    @property
    def pass_count(self) -> int:
        return self._pass_count

    @property
    def circuit_open(self) -> bool:
        return self._circuit_open_until is not None

    def status(self) -> dict:
        return {
            "pass_count": self._pass_count,
            "interval": self._config.interval,
            "consecutive_failures": self._consecutive_failures,
            "circuit_open": self.circuit_open,
            "last_error": self._last_error,
        }

    async def run_once(self, now: Optional[float] = None) -> PassReport:
        """One pass over every live session."""
        started = time.monotonic()
        report = PassReport()
        last_error: Optional[Exception] = None

        for session_id in self._store.list_sessions():
            try:
                await self._check_session(session_id, report, now)
            except NotFoundError:
                logger.debug("monitor.session_gone", session_id=session_id)
            except StorageError as e:
                # Storage already retried; record and move on to the next session.
                last_error = e
                report.failed.append(session_id)
                logger.error("monitor.session_failed", session_id=session_id, error=str(e))
            except Exception as e:
                last_error = e
                report.failed.append(session_id)
                logger.error(
                    "monitor.session_failed",
                    session_id=session_id,
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )

        self._pass_count += 1
        self._metrics.inc(MONITOR_PASSES)
        self._metrics.inc(ESCALATIONS, len(report.escalations))
        self._metrics.inc(COMPRESSIONS, len(report.compressed))
        self._metrics.inc(SESSION_FAILURES, len(report.failed))
        self._metrics.set_gauge(SESSIONS_LIVE, float(len(self._store)))
        self._metrics.set_phase_counts(
            self._recovery.state(sid).phase for sid in self._store.list_sessions()
        )
        self._metrics.observe(PASS_SECONDS, time.monotonic() - started)

        if last_error is not None and len(report.failed) == report.sessions_checked:
            logger.error("monitor.all_sessions_failed", sessions=len(report.failed))
            raise last_error

        logger.info(
            "monitor.pass_complete",
            pass_count=self._pass_count,
            sessions=report.sessions_checked,
            drift_events=report.drift_events,
            escalations=len(report.escalations),
            compressed=len(report.compressed),
        )
        if self._event_bus is not None:
            self._event_bus.emit(MonitorPassEvent(
                pass_count=self._pass_count,
                sessions_checked=report.sessions_checked,
                drift_events=report.drift_events,
                escalations=len(report.escalations),
            ))
        return report

    async def _check_session(
        self, session_id: str, report: PassReport, now: Optional[float]
    ) -> None:
        report.sessions_checked += 1
        events = await self._detector.check(session_id, now=now)
        report.drift_events += len(events)
        self._metrics.record_drift(events)
        if self._event_bus is not None:
            for event in events:
                self._event_bus.emit(DriftDetectedEvent(
                    session_id=event.session_id,
                    deviation=event.deviation,
                    severity=event.severity,
                    detail=event.detail,
                ))
        if events:
            try:
                await self._recovery.handle_drift(session_id, events)
            except RecoveryExhaustedError:
                report.escalations.append(session_id)

        snap = await self._store.snapshot(session_id)
        if self._compressor.should_compress(snap):
            await self._compressor.compress(session_id)
            report.compressed.append(session_id)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Loop until ``stop_event`` is set, with a consecutive-failure circuit breaker."""
        stop_event = stop_event or asyncio.Event()
        cfg = self._config
        logger.info("monitor.started", interval=self._config.interval)

        while not stop_event.is_set():
            if self._circuit_open_until is not None:
                remaining = self._circuit_open_until - time.monotonic()
                if remaining > 0:
                    await self._wait(stop_event, min(self._config.interval, remaining))
                    continue
                self._circuit_open_until = None
                logger.info("monitor.circuit_closed")
            try:
                await self.run_once()
                self._consecutive_failures = 0
                self._circuit_open_count = 0
                self._last_error = None
            except Exception as e:
                self._consecutive_failures += 1
                self._last_error = str(e)
                logger.error(
                    "monitor.pass_failed",
                    error=str(e),
                    consecutive=self._consecutive_failures,
                    exc_info=True,
                )
                if self._consecutive_failures >= cfg.circuit_max_consecutive:
                    backoff = min(
                        cfg.circuit_base_seconds * (2 ** self._circuit_open_count),
                        cfg.circuit_max_seconds,
                    )
                    self._circuit_open_count += 1
                    self._circuit_open_until = time.monotonic() + backoff
                    logger.critical(
                        "monitor.circuit_open",
                        cool_down_seconds=backoff,
                        open_count=self._circuit_open_count,
                    )
                    self._consecutive_failures = 0

            if await self._wait(stop_event, self._config.interval):
                break

        logger.info("monitor.stopped", pass_count=self._pass_count)

    @staticmethod
    async def _wait(stop_event: asyncio.Event, timeout: float) -> bool:
        """Sleep up to ``timeout``; True if stop was signalled."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
