"""
Shared fixtures for the driftwatch test suite.

Provides temp-dir backed stores, fast-retry configs and a recording alert
channel so individual test modules can focus on behavior rather than setup.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from driftwatch.alerts import AlertChannel, AlertDispatcher, OperatorAlert
from driftwatch.config import (
    AlertConfig,
    CompressionConfig,
    DriftConfig,
    DriftwatchConfig,
    MonitorConfig,
    RecoveryConfig,
    StoreConfig,
)
from driftwatch.store import SessionStore
from driftwatch.types import ScheduleDescriptor


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

T0 = 1_700_000_000.0  # fixed epoch used as "session start" in timing tests


def make_schedule(
    interval: float = 60.0,
    tolerance: float = 10.0,
    pattern: str | None = None,
) -> ScheduleDescriptor:
    return ScheduleDescriptor(
        interval_seconds=interval,
        tolerance_seconds=tolerance,
        expected_pattern=pattern,
    )


class RecordingChannel(AlertChannel):
    """Alert channel that keeps every alert it is sent."""

    name = "recording"

    def __init__(self) -> None:
        self.alerts: list[OperatorAlert] = []

    async def send(self, alert: OperatorAlert) -> None:
        self.alerts.append(alert)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------
# pydantic-settings fields with aliases are set using the alias name (the
# env-var name) rather than the Python field name.

@pytest.fixture()
def store_config(tmp_path: Path) -> StoreConfig:
    """StoreConfig rooted in a temp dir, with instant retries."""
    return StoreConfig(
        DRIFTWATCH_DATA_DIR=tmp_path / "data",
        DRIFTWATCH_STORAGE_TIMEOUT=2.0,
        DRIFTWATCH_STORAGE_MAX_RETRIES=2,
        DRIFTWATCH_STORAGE_RETRY_BASE_DELAY=0.0,
        DRIFTWATCH_STORAGE_RETRY_MAX_DELAY=0.0,
    )


@pytest.fixture()
def drift_config() -> DriftConfig:
    return DriftConfig(
        DRIFTWATCH_OMISSION_INTERVALS=2,
        DRIFTWATCH_CONTENT_THRESHOLD=0.5,
    )


@pytest.fixture()
def compression_config() -> CompressionConfig:
    """Small tiers so a few dozen actions exercise every tier."""
    return CompressionConfig(
        DRIFTWATCH_MAX_RAW_ACTIONS=20,
        DRIFTWATCH_IMMEDIATE_ACTIONS=5,
        DRIFTWATCH_RECENT_ACTIONS=10,
        DRIFTWATCH_IMMEDIATE_SIZE_BOUND=400,
        DRIFTWATCH_RECENT_SIZE_BOUND=300,
        DRIFTWATCH_HISTORICAL_SIZE_BOUND=200,
    )


@pytest.fixture()
def recovery_config() -> RecoveryConfig:
    return RecoveryConfig(DRIFTWATCH_RECOVERY_RETRY_BUDGET=2)


@pytest.fixture()
def alert_config() -> AlertConfig:
    return AlertConfig(
        DRIFTWATCH_ALERT_TIMEOUT=2.0,
        DRIFTWATCH_ALERT_MAX_RETRIES=2,
        DRIFTWATCH_ALERT_RETRY_BASE_DELAY=0.0,
    )


@pytest.fixture()
def monitor_config() -> MonitorConfig:
    return MonitorConfig(
        DRIFTWATCH_MONITOR_INTERVAL=0.1,
        DRIFTWATCH_MONITOR_CIRCUIT_MAX_CONSECUTIVE=2,
        DRIFTWATCH_MONITOR_CIRCUIT_BASE_SECONDS=5.0,
    )


@pytest.fixture()
def driftwatch_config(
    store_config, drift_config, compression_config, recovery_config, alert_config, monitor_config
) -> DriftwatchConfig:
    """Full config assembled from the test slices."""
    config = DriftwatchConfig()
    config.store = store_config
    config.drift = drift_config
    config.compression = compression_config
    config.recovery = recovery_config
    config.alerts = alert_config
    config.monitor = monitor_config
    return config


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def store(store_config):
    """An initialized SessionStore backed by a temp SQLite file."""
    s = SessionStore.from_config(store_config)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture()
def recording_channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def alerts(recording_channel, alert_config) -> AlertDispatcher:
    return AlertDispatcher([recording_channel], alert_config)
