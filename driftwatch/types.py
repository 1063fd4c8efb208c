"""
Core data types shared across driftwatch subsystems.

This module defines the containers that cross subsystem boundaries (store,
detector, compressor, recovery). They live here rather than in a specific
subsystem to avoid circular imports.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ActionSource(str, enum.Enum):
    """Who produced an action."""

    AGENT = "agent"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Action:
    """
    A single recorded action.

    Actions are immutable once recorded. Agent-emitted actions are what the
    drift detector watches; operator-sourced actions are instructions.
    """

    payload: str
    source: ActionSource = ActionSource.AGENT
    timestamp: float = field(default_factory=time.time)
    action_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_instruction(self) -> bool:
        return self.source is ActionSource.OPERATOR

    @classmethod
    def agent(cls, payload: str, timestamp: Optional[float] = None) -> "Action":
        if timestamp is None:
            return cls(payload=payload, source=ActionSource.AGENT)
        return cls(payload=payload, source=ActionSource.AGENT, timestamp=timestamp)

    @classmethod
    def instruction(cls, payload: str, timestamp: Optional[float] = None) -> "Action":
        if timestamp is None:
            return cls(payload=payload, source=ActionSource.OPERATOR)
        return cls(payload=payload, source=ActionSource.OPERATOR, timestamp=timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Action":
        return cls(
            payload=str(data.get("payload", "")),
            source=ActionSource(data.get("source", ActionSource.AGENT.value)),
            timestamp=float(data.get("timestamp", 0.0)),
            action_id=str(data.get("action_id") or uuid.uuid4().hex),
        )


@dataclass(frozen=True)
class ScheduleDescriptor:
    """
    What the agent is expected to do and how often.

    ``interval_seconds`` is the cadence ("one action every N seconds"),
    ``tolerance_seconds`` the grace period on top of it, and
    ``expected_pattern`` optional text the agent's actions should resemble.
    """

    interval_seconds: float
    tolerance_seconds: float = 0.0
    expected_pattern: Optional[str] = None

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.tolerance_seconds < 0:
            raise ValueError("tolerance_seconds must not be negative")

    @property
    def window_seconds(self) -> float:
        """Longest allowed gap between two agent actions."""
        return self.interval_seconds + self.tolerance_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "tolerance_seconds": self.tolerance_seconds,
            "expected_pattern": self.expected_pattern,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleDescriptor":
        return cls(
            interval_seconds=float(data["interval_seconds"]),
            tolerance_seconds=float(data.get("tolerance_seconds", 0.0)),
            expected_pattern=data.get("expected_pattern"),
        )


CompressionTier = Literal["immediate", "recent", "historical"]
DeviationType = Literal["timing", "content", "omission"]


class CompressionLevel(BaseModel):
    """One tier of a session's compressed context."""

    tier: CompressionTier
    summary: str = ""
    # Operator instructions covered by this tier, verbatim and never truncated.
    instructions: list[str] = Field(default_factory=list)
    action_count: int = 0
    size_bound: int = 0
    # Timestamp of the newest action this tier covers; older than the session's
    # newest action means the tier is stale.
    as_of: float = 0.0
    built_at: float = Field(default_factory=time.time)

    def equivalent(self, other: "CompressionLevel") -> bool:
        """Compare content, ignoring when the level was built."""
        return self.model_dump(exclude={"built_at"}) == other.model_dump(exclude={"built_at"})

    def render(self) -> str:
        """Text form used when re-injecting context into a session."""
        lines = [f"[{self.tier}] {self.summary}".rstrip()]
        for text in self.instructions:
            lines.append(f"  instruction: {text}")
        return "\n".join(lines)


class DriftEvent(BaseModel):
    """A detected deviation from the expected schedule."""

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    session_id: str
    deviation: DeviationType
    severity: float = 0.5  # 0.0-1.0
    detected_at: float = Field(default_factory=time.time)
    detail: str = ""


class RecoveryPhase(str, enum.Enum):
    NOMINAL = "nominal"
    FLAGGED = "flagged"
    RECOVERING = "recovering"
    ESCALATED = "escalated"


class RecoveryState(BaseModel):
    """Persisted position of one session in the recovery state machine."""

    session_id: str
    phase: RecoveryPhase = RecoveryPhase.NOMINAL
    attempts: int = 0
    updated_at: float = Field(default_factory=time.time)
    last_reason: str = ""


@dataclass
class Session:
    """
    Mutable per-session state, owned exclusively by the session store.

    Other components never hold a ``Session``; they receive a
    ``SessionSnapshot`` instead.
    """

    session_id: str
    schedule: ScheduleDescriptor
    created_at: float = field(default_factory=time.time)
    instructions: list[str] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)
    compressed_context: list[CompressionLevel] = field(default_factory=list)

    def snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(
            session_id=self.session_id,
            schedule=self.schedule,
            created_at=self.created_at,
            instructions=tuple(self.instructions),
            actions=tuple(self.actions),
            compressed_context=tuple(
                level.model_copy(deep=True) for level in self.compressed_context
            ),
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-consistent, immutable view of a session at one instant."""

    session_id: str
    schedule: ScheduleDescriptor
    created_at: float
    instructions: tuple[str, ...]
    actions: tuple[Action, ...]
    compressed_context: tuple[CompressionLevel, ...] = ()

    @property
    def agent_actions(self) -> tuple[Action, ...]:
        return tuple(a for a in self.actions if a.source is ActionSource.AGENT)

    @property
    def last_timestamp(self) -> float:
        return self.actions[-1].timestamp if self.actions else self.created_at
