"""
Drift Detector — notices when a session stops behaving as instructed.

Two kinds of deviation are checked against the session's schedule:

  TIMING:  the expected next action is computed from the last recorded action
           plus the schedule interval. Once the time since that action exceeds
           the tolerance window (interval + tolerance), a timing event fires.
           When the overdue span covers several whole intervals the agent has
           skipped expected actions outright and the event is an omission.
  CONTENT: when the schedule carries an expected pattern, the newest agent
           action is scored by keyword overlap with it. Low overlap is content
           drift.

The detector never schedules itself; the monitor (or any external scheduler)
calls ``check``. It reads exactly one snapshot per call and has no side
effects beyond the events it returns.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

import structlog

from driftwatch._utils import clamp01, keyword_overlap
from driftwatch.config import DriftConfig
from driftwatch.store import SessionStore
from driftwatch.types import Action, ActionSource, DriftEvent, SessionSnapshot

logger = structlog.get_logger(__name__)


class DriftDetector:
    """Compares a session's observed actions with its expected schedule."""

    def __init__(
        self,
        store: SessionStore,
        config: Optional[DriftConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config or DriftConfig()
        self._clock = clock

    async def check(self, session_id: str, now: Optional[float] = None) -> list[DriftEvent]:
        """Return the drift events for one session. Raises NotFoundError if unknown."""
        snap = await self._store.snapshot(session_id)
        events = self.evaluate(snap, now)
        for event in events:
            logger.info(
                "drift.detected",
                session_id=session_id,
                deviation=event.deviation,
                severity=round(event.severity, 3),
            )
        return events

    def evaluate(self, snap: SessionSnapshot, now: Optional[float] = None) -> list[DriftEvent]:
        """Pure evaluation of a snapshot."""
        now = self._clock() if now is None else now
        events: list[DriftEvent] = []

        timing = self._timing_event(snap, now)
        if timing is not None:
            events.append(timing)

        content = self._content_event(snap, now)
        if content is not None:
            events.append(content)

        return events

    def is_compliant(self, snap: SessionSnapshot, action: Action) -> bool:
        """True when ``action`` is an agent action that matches the expected pattern."""
        if action.source is not ActionSource.AGENT:
            return False
        pattern = snap.schedule.expected_pattern
        if not pattern:
            return True
        return keyword_overlap(pattern, action.payload) >= self._config.content_threshold

    def _timing_event(self, snap: SessionSnapshot, now: float) -> Optional[DriftEvent]:
        schedule = snap.schedule
        reference = snap.last_timestamp
        elapsed = now - reference
        if elapsed <= schedule.window_seconds:
            return None

        interval = schedule.interval_seconds
        overdue = elapsed - interval
        omission_span = interval * self._config.omission_intervals
        missed = int(elapsed // interval)
        deviation = "omission" if overdue >= omission_span else "timing"
        severity = max(0.1, clamp01(overdue / omission_span))
        return DriftEvent(
            session_id=snap.session_id,
            deviation=deviation,
            severity=severity,
            detected_at=now,
            detail=(
                f"no action for {elapsed:.0f}s (window {schedule.window_seconds:.0f}s, "
                f"~{missed} expected action(s) missed)"
            ),
        )

    def _content_event(self, snap: SessionSnapshot, now: float) -> Optional[DriftEvent]:
        pattern = snap.schedule.expected_pattern
        if not pattern or not snap.actions:
            return None
        newest = snap.actions[-1]
        # Only judge an agent action that answers the latest instruction.
        if newest.source is not ActionSource.AGENT:
            return None

        similarity = keyword_overlap(pattern, newest.payload)
        threshold = self._config.content_threshold
        if similarity >= threshold:
            return None
        severity = max(0.1, clamp01(1.0 - similarity / threshold))
        return DriftEvent(
            session_id=snap.session_id,
            deviation="content",
            severity=severity,
            detected_at=now,
            detail=f"action {newest.action_id} overlaps expected pattern {similarity:.2f} < {threshold:.2f}",
        )
