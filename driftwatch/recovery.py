"""
Recovery Controller — what happens after drift is detected.

Each session moves through a small state machine:

    NOMINAL ──drift──> FLAGGED ──re-inject──> RECOVERING ──compliant action──> NOMINAL
                          │  ^                     │
                          │  └──────drift──────────┘
                          └──budget spent──> ESCALATED (terminal until reset)

Recovery means re-injecting the session's original instructions as operator
actions, and optionally handing the compressed context digest to a delivery
hook so the agent runtime can put both back in front of the model. Every
re-injection counts against the retry budget. A session that needs another
attempt after the budget is spent escalates: an operator alert goes out and
``RecoveryExhaustedError`` is raised. ``ESCALATED`` ignores further drift until
an operator calls ``reset``.

States are persisted through the session store so an escalation survives a
restart.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Awaitable, Callable, Optional

import structlog

from driftwatch.alerts import AlertDispatcher, OperatorAlert
from driftwatch.config import RecoveryConfig
from driftwatch.drift import DriftDetector
from driftwatch.errors import RecoveryExhaustedError
from driftwatch.events import EventBus, RecoveryTransitionEvent
from driftwatch.harness.retry import RetryConfig, with_retries
from driftwatch.metrics import MetricsRegistry, metrics as default_metrics
from driftwatch.store import SessionStore
from driftwatch.types import (
    Action,
    DriftEvent,
    RecoveryPhase,
    RecoveryState,
    SessionSnapshot,
)

logger = structlog.get_logger(__name__)

# Delivers re-injection text to the agent runtime: (session_id, text).
ReinjectHook = Callable[[str, str], Awaitable[None]]


def build_reinjection_text(snap: SessionSnapshot, include_context: bool = True) -> str:
    """Text handed to the agent runtime when a session is re-grounded."""
    lines = ["Re-stating your original instructions:"]
    for i, text in enumerate(snap.instructions, start=1):
        lines.append(f"{i}. {text}")
    if include_context and snap.compressed_context:
        lines.append("")
        lines.append("Context so far:")
        for level in snap.compressed_context:
            lines.append(level.render())
    return "\n".join(lines)


class RecoveryController:
    """Per-session recovery state machine."""

    def __init__(
        self,
        store: SessionStore,
        detector: DriftDetector,
        alerts: Optional[AlertDispatcher] = None,
        config: Optional[RecoveryConfig] = None,
        event_bus: Optional[EventBus] = None,
        reinject_hook: Optional[ReinjectHook] = None,
        hook_timeout: float = 10.0,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self._detector = detector
        self._alerts = alerts
        self._config = config or RecoveryConfig()
        self._event_bus = event_bus
        self._reinject_hook = reinject_hook
        self._hook_timeout = hook_timeout
        self._metrics = metrics or default_metrics
        self._audit: deque[DriftEvent] = deque(maxlen=self._config.audit_history_size)

    @property
    def retry_budget(self) -> int:
        return self._config.retry_budget

    def state(self, session_id: str) -> RecoveryState:
        """Current state; sessions never touched by recovery are nominal."""
        return self._store.load_recovery_state(session_id) or RecoveryState(session_id=session_id)

    def audit_log(self, session_id: Optional[str] = None) -> list[DriftEvent]:
        """In-memory window of handled drift events (the store keeps the full trail)."""
        if session_id is None:
            return list(self._audit)
        return [e for e in self._audit if e.session_id == session_id]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def handle_drift(self, session_id: str, events: list[DriftEvent]) -> RecoveryState:
        """
        Consume drift events for one session.

        NOMINAL and RECOVERING move to FLAGGED, and a recovery attempt follows
        immediately. Raises RecoveryExhaustedError when that attempt would
        exceed the retry budget.
        """
        state = self.state(session_id)
        if not events:
            return state

        await self._store.record_drift_events(events)
        self._audit.extend(events)

        if state.phase is RecoveryPhase.ESCALATED:
            logger.debug(
                "recovery.ignored_while_escalated",
                session_id=session_id,
                events=len(events),
            )
            return state

        reason = ", ".join(sorted({e.deviation for e in events}))
        state = await self._transition(state, RecoveryPhase.FLAGGED, reason)
        return await self._attempt_recovery(state)

    async def observe_action(self, session_id: str, action: Action) -> RecoveryState:
        """Feed a newly recorded action; a compliant one ends a recovery."""
        state = self.state(session_id)
        if state.phase is not RecoveryPhase.RECOVERING:
            return state
        snap = await self._store.snapshot(session_id)
        if not self._detector.is_compliant(snap, action):
            return state
        state.attempts = 0
        return await self._transition(state, RecoveryPhase.NOMINAL, "compliant action")

    async def reset(self, session_id: str, reason: str = "manual reset") -> RecoveryState:
        """Operator reset: back to NOMINAL with a fresh retry budget."""
        state = self.state(session_id)
        # Verifies the session still exists before persisting anything.
        await self._store.snapshot(session_id)
        state.attempts = 0
        state = await self._transition(state, RecoveryPhase.NOMINAL, reason, force=True)
        if self._alerts is not None:
            await self._alerts.dispatch(OperatorAlert(
                session_id=session_id,
                severity="info",
                message=f"Session {session_id} reset to nominal ({reason})",
            ))
        return state

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _attempt_recovery(self, state: RecoveryState) -> RecoveryState:
        session_id = state.session_id
        if state.attempts >= self._config.retry_budget:
            state = await self._transition(
                state, RecoveryPhase.ESCALATED, f"retry budget {self._config.retry_budget} spent"
            )
            logger.error(
                "recovery.escalated",
                session_id=session_id,
                attempts=state.attempts,
                retry_budget=self._config.retry_budget,
            )
            if self._alerts is not None:
                await self._alerts.dispatch(OperatorAlert(
                    session_id=session_id,
                    severity="critical",
                    message=(
                        f"Session {session_id} escalated after {state.attempts} "
                        f"recovery attempt(s); manual reset required"
                    ),
                    detail={"attempts": state.attempts, "last_reason": state.last_reason},
                ))
            raise RecoveryExhaustedError(session_id, state.attempts)

        # The attempt is spent before delivery so a failing hook still counts.
        state = state.model_copy(update={"attempts": state.attempts + 1, "updated_at": time.time()})
        await self._store.save_recovery_state(state)
        if not await self._reinject(session_id, state.attempts):
            return state

        state = await self._transition(
            state, RecoveryPhase.RECOVERING, f"re-injection {state.attempts}"
        )
        logger.info(
            "recovery.reinjected",
            session_id=session_id,
            attempt=state.attempts,
            retry_budget=self._config.retry_budget,
        )
        return state

    async def _reinject(self, session_id: str, attempt: int) -> bool:
        """Append the instructions and run the delivery hook; False if delivery failed."""
        snap = await self._store.snapshot(session_id)
        now = time.time()
        for text in snap.instructions:
            await self._store.append(session_id, Action.instruction(text, timestamp=now))

        if self._reinject_hook is not None:
            text = build_reinjection_text(snap, self._config.include_compressed_context)
            hook = self._reinject_hook
            try:
                await with_retries(
                    lambda: hook(session_id, text),
                    config=RetryConfig(max_retries=2),
                    timeout=self._hook_timeout,
                    operation="recovery.reinject_hook",
                )
            except Exception as e:
                logger.error(
                    "recovery.reinject_failed",
                    session_id=session_id,
                    attempt=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
                return False
        return True

    async def _transition(
        self,
        state: RecoveryState,
        phase: RecoveryPhase,
        reason: str,
        force: bool = False,
    ) -> RecoveryState:
        previous = state.phase
        if previous is phase and not force:
            return state
        new_state = state.model_copy(update={
            "phase": phase,
            "updated_at": time.time(),
            "last_reason": reason,
        })
        await self._store.save_recovery_state(new_state)
        self._metrics.record_transition(previous.value, phase.value)
        logger.info(
            "recovery.transition",
            session_id=state.session_id,
            previous=previous.value,
            current=phase.value,
            attempts=new_state.attempts,
            reason=reason,
        )
        if self._event_bus is not None:
            self._event_bus.emit(RecoveryTransitionEvent(
                session_id=state.session_id,
                previous=previous.value,
                current=phase.value,
                attempts=new_state.attempts,
                reason=reason,
            ))
        return new_state
