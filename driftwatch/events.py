"""
Event Bus — how driftwatch layers tell each other (and operators) what happened.

Typed events are Pydantic models put onto an asyncio.Queue and fanned out by a
dispatcher task to every subscriber whose pattern matches the event type.

Concurrency model:
  - emit() enqueues: non-blocking, callable from sync code
  - one dispatcher task dequeues and fans out to matching handlers
  - handler exceptions are logged, never propagated
  - events are dispatched in emission order
"""

from __future__ import annotations

import asyncio
import fnmatch
import re
import uuid
from typing import Any, Callable, Coroutine, Literal

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

EventHandler = (
    Callable[["DriftwatchEvent"], Any]
    | Callable[["DriftwatchEvent"], Coroutine[Any, Any, Any]]
)

# Splits CamelCase, keeping acronyms together: "DriftDetected" -> ["Drift", "Detected"]
_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")


class DriftwatchEvent(BaseModel):
    """Base class for all typed events."""

    event_type: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            name = type(self).__name__.removesuffix("Event")
            parts = _CAMEL_SPLIT_RE.findall(name)
            self.event_type = ".".join(p.lower() for p in parts) if parts else name.lower()


class _Subscription:
    __slots__ = ("sub_id", "pattern", "handler", "_compiled")

    def __init__(self, sub_id: str, pattern: str, handler: EventHandler) -> None:
        self.sub_id = sub_id
        self.pattern = pattern
        self.handler = handler
        self._compiled = re.compile(fnmatch.translate(pattern))

    def matches(self, event_type: str) -> bool:
        return self._compiled.match(event_type) is not None


_SENTINEL = object()


class EventBus:
    """Async event bus with typed events and fnmatch-style subscriptions.

      "drift.*"     matches "drift.detected"
      "recovery.*"  matches "recovery.transition"
      "*"           matches everything
    """

    def __init__(self, max_queue_size: int = 10000) -> None:
        self._queue: asyncio.Queue[DriftwatchEvent | object] = asyncio.Queue(
            maxsize=max_queue_size,
        )
        self._subscriptions: dict[str, _Subscription] = {}
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._running = False
        self._pending_done: dict[int, asyncio.Event] = {}

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._dispatcher_task = asyncio.create_task(
            self._dispatch_loop(), name="driftwatch-event-dispatcher"
        )
        logger.info("event_bus.started")

    async def stop(self) -> None:
        """Drain queued events, then stop the dispatcher."""
        if not self._running:
            return
        self._running = False
        try:
            self._queue.put_nowait(_SENTINEL)
        except asyncio.QueueFull:
            logger.warning("event_bus.stop_queue_full_cancelling_directly")
            if self._dispatcher_task is not None:
                self._dispatcher_task.cancel()
        if self._dispatcher_task is not None:
            try:
                await asyncio.wait_for(self._dispatcher_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("event_bus.stop_timeout_cancelling", timeout=5.0)
                self._dispatcher_task.cancel()
                try:
                    await self._dispatcher_task
                except asyncio.CancelledError:
                    pass
            except asyncio.CancelledError:
                pass
            self._dispatcher_task = None
        for done_event in self._pending_done.values():
            done_event.set()
        self._pending_done.clear()
        logger.info("event_bus.stopped")

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe to events matching ``pattern``. Returns a subscription id."""
        sub_id = uuid.uuid4().hex[:12]
        self._subscriptions[sub_id] = _Subscription(sub_id, pattern, handler)
        logger.debug("event_bus.subscribed", pattern=pattern, sub_id=sub_id)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        if self._subscriptions.pop(subscription_id, None):
            logger.debug("event_bus.unsubscribed", sub_id=subscription_id)

    def emit(self, event: DriftwatchEvent) -> None:
        """Enqueue an event. Dropped with a warning when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("event_bus.queue_full", event_type=event.event_type, dropped=True)

    async def emit_async(self, event: DriftwatchEvent) -> None:
        """Emit an event and wait until every handler has run."""
        if not self._running:
            raise RuntimeError("emit_async called on a stopped EventBus")
        done = asyncio.Event()
        event_id = id(event)
        self._pending_done[event_id] = done
        self.emit(event)
        try:
            await asyncio.wait_for(done.wait(), timeout=10.0)
        finally:
            self._pending_done.pop(event_id, None)

    async def _dispatch_loop(self) -> None:
        while self._running:
            item = await self._queue.get()
            if item is _SENTINEL:
                break
            await self._dispatch_event(item)  # type: ignore[arg-type]

        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _SENTINEL:
                await self._dispatch_event(item)  # type: ignore[arg-type]

    async def _dispatch_event(self, event: DriftwatchEvent) -> None:
        coros = [
            self._invoke_handler(sub, event)
            for sub in list(self._subscriptions.values())
            if sub.matches(event.event_type)
        ]
        if coros:
            await asyncio.gather(*coros)

        done = self._pending_done.get(id(event))
        if done is not None:
            done.set()

    @staticmethod
    async def _invoke_handler(sub: _Subscription, event: DriftwatchEvent) -> None:
        try:
            result = sub.handler(event)
            if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                await result
        except Exception:
            logger.error(
                "event_bus.handler_error",
                pattern=sub.pattern,
                event_type=event.event_type,
                exc_info=True,
            )

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def is_running(self) -> bool:
        return self._running


# ---------------------------------------------------------------------------
# Event Definitions
# ---------------------------------------------------------------------------

class DriftDetectedEvent(DriftwatchEvent):
    """Emitted for every DriftEvent the detector produces."""

    session_id: str
    deviation: Literal["timing", "content", "omission"]
    severity: float
    detail: str = ""


class RecoveryTransitionEvent(DriftwatchEvent):
    """Emitted when a session moves between recovery phases."""

    session_id: str
    previous: str
    current: str
    attempts: int
    reason: str = ""


class OperatorAlertEvent(DriftwatchEvent):
    """Emitted when an operator needs to look at a session."""

    alert_id: str
    session_id: str
    severity: Literal["info", "warning", "critical"]
    message: str
    detail: dict[str, Any] = Field(default_factory=dict)


class SessionCompressedEvent(DriftwatchEvent):
    """Emitted after a session's context has been compressed."""

    session_id: str
    tiers: list[str] = Field(default_factory=list)
    action_count: int = 0


class SessionTerminatedEvent(DriftwatchEvent):
    """Emitted after a session has been terminated."""

    session_id: str


class MonitorPassEvent(DriftwatchEvent):
    """Emitted at the end of every monitor pass."""

    pass_count: int
    sessions_checked: int
    drift_events: int
    escalations: int
