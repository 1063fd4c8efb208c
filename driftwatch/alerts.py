"""
Operator alerting.

When the recovery controller runs out of options a human has to look at the
session. Alerts fan out to every configured channel; each delivery is bounded
by a timeout and retried with backoff. A channel that still fails is logged
and skipped, so one broken webhook never stops the monitor.
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Literal, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from driftwatch.config import AlertConfig
from driftwatch.errors import AlertDeliveryError
from driftwatch.events import EventBus, OperatorAlertEvent
from driftwatch.harness.retry import RetryConfig, with_retries

logger = structlog.get_logger(__name__)

AlertSeverity = Literal["info", "warning", "critical"]


class OperatorAlert(BaseModel):
    """Something an operator should see."""

    alert_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    session_id: str
    severity: AlertSeverity = "warning"
    message: str
    created_at: float = Field(default_factory=time.time)
    detail: dict[str, Any] = Field(default_factory=dict)


class AlertChannel(ABC):
    """A destination for operator alerts."""

    name: str = "channel"

    @abstractmethod
    async def send(self, alert: OperatorAlert) -> None:
        """Deliver one alert. Raise on failure."""

    async def close(self) -> None:
        return None


class LogAlertChannel(AlertChannel):
    """Writes alerts to the structured log."""

    name = "log"

    async def send(self, alert: OperatorAlert) -> None:
        log = logger.error if alert.severity == "critical" else logger.warning
        log(
            "alert.operator",
            alert_id=alert.alert_id,
            session_id=alert.session_id,
            severity=alert.severity,
            message=alert.message,
        )


class EventBusAlertChannel(AlertChannel):
    """Publishes alerts as ``OperatorAlertEvent`` on the event bus."""

    name = "event_bus"

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus

    async def send(self, alert: OperatorAlert) -> None:
        self._event_bus.emit(OperatorAlertEvent(
            alert_id=alert.alert_id,
            session_id=alert.session_id,
            severity=alert.severity,
            message=alert.message,
            detail=alert.detail,
        ))


class WebhookAlertChannel(AlertChannel):
    """POSTs alerts as JSON to an HTTP endpoint."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(self, alert: OperatorAlert) -> None:
        response = await self._client.post(self._url, json=alert.model_dump())
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class AlertDispatcher:
    """Sends each alert to every channel with timeout and bounded retry."""

    def __init__(
        self,
        channels: list[AlertChannel],
        config: Optional[AlertConfig] = None,
    ) -> None:
        self._channels = list(channels)
        self._config = config or AlertConfig()
        self._retry = RetryConfig(
            max_retries=self._config.max_retries,
            base_delay=self._config.retry_base_delay,
            max_delay=self._config.retry_max_delay,
        )
        self._sent: deque[OperatorAlert] = deque(maxlen=200)

    @classmethod
    def from_config(
        cls, config: AlertConfig, event_bus: Optional[EventBus] = None
    ) -> "AlertDispatcher":
        channels: list[AlertChannel] = [LogAlertChannel()]
        if event_bus is not None:
            channels.append(EventBusAlertChannel(event_bus))
        if config.webhook_url:
            channels.append(WebhookAlertChannel(config.webhook_url, config.timeout_seconds))
        return cls(channels, config)

    @property
    def channels(self) -> list[AlertChannel]:
        return list(self._channels)

    @property
    def sent(self) -> list[OperatorAlert]:
        return list(self._sent)

    async def dispatch(self, alert: OperatorAlert) -> dict[str, bool]:
        """Deliver to all channels. Returns per-channel success."""
        results: dict[str, bool] = {}
        for channel in self._channels:
            try:
                await self._deliver(channel, alert)
                results[channel.name] = True
            except AlertDeliveryError as e:
                logger.error(
                    "alert.delivery_failed",
                    channel=channel.name,
                    alert_id=alert.alert_id,
                    session_id=alert.session_id,
                    error=str(e),
                )
                results[channel.name] = False
        self._sent.append(alert)
        return results

    async def _deliver(self, channel: AlertChannel, alert: OperatorAlert) -> None:
        try:
            await with_retries(
                lambda: channel.send(alert),
                config=self._retry,
                timeout=self._config.timeout_seconds,
                operation=f"alert.{channel.name}",
            )
        except Exception as e:
            raise AlertDeliveryError(f"{channel.name}: {type(e).__name__}: {e}") from e

    async def close(self) -> None:
        for channel in self._channels:
            await channel.close()
