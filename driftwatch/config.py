# driftwatch/config.py
"""
Configuration for driftwatch.

All configuration flows through this module. Values are loaded from environment
variables (optionally via a .env file) and validated with Pydantic. Every
subsystem receives its slice of config from ``DriftwatchConfig``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

# Resolve .env relative to the project root (one level above driftwatch/),
# so the config works regardless of the current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

# Factory default, used to detect whether the user explicitly set a db path.
_DEFAULT_DB_PATH = Path("./driftwatch_data/sessions.db")


class StoreConfig(BaseSettings):
    """Configuration for the durable session store."""

    data_dir: Path = Field(Path("./driftwatch_data"), alias="DRIFTWATCH_DATA_DIR")
    db_path: Path = Field(Path("./driftwatch_data/sessions.db"), alias="DRIFTWATCH_DB")

    # Every storage call is bounded by this timeout and retried with backoff.
    timeout_seconds: float = Field(5.0, alias="DRIFTWATCH_STORAGE_TIMEOUT")
    retry_max_retries: int = Field(3, alias="DRIFTWATCH_STORAGE_MAX_RETRIES")
    retry_base_delay: float = Field(0.1, alias="DRIFTWATCH_STORAGE_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(2.0, alias="DRIFTWATCH_STORAGE_RETRY_MAX_DELAY")

    # Drift events retained per session for audit (0 => keep all).
    audit_retention: int = Field(1000, alias="DRIFTWATCH_AUDIT_RETENTION")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def derive_paths_from_data_dir(self) -> "StoreConfig":
        """Derive the db path from data_dir when the user hasn't overridden it."""
        if self.db_path == _DEFAULT_DB_PATH:
            self.db_path = self.data_dir / "sessions.db"
        return self

    @model_validator(mode="after")
    def normalize_limits(self) -> "StoreConfig":
        self.timeout_seconds = max(0.1, float(self.timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.0, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.audit_retention = max(0, int(self.audit_retention))
        return self


class DriftConfig(BaseSettings):
    """Configuration for the drift detector."""

    # Defaults used by `create` when a schedule does not specify them.
    default_interval_seconds: float = Field(300.0, alias="DRIFTWATCH_DEFAULT_INTERVAL")
    default_tolerance_seconds: float = Field(60.0, alias="DRIFTWATCH_DEFAULT_TOLERANCE")

    # Overdue spans covering this many whole intervals are reported as omissions.
    omission_intervals: int = Field(2, alias="DRIFTWATCH_OMISSION_INTERVALS")
    # Keyword overlap below this fraction of the expected pattern is content drift.
    content_threshold: float = Field(0.3, alias="DRIFTWATCH_CONTENT_THRESHOLD")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "DriftConfig":
        self.default_interval_seconds = max(1.0, float(self.default_interval_seconds))
        self.default_tolerance_seconds = max(0.0, float(self.default_tolerance_seconds))
        self.omission_intervals = max(1, int(self.omission_intervals))
        self.content_threshold = max(0.0, min(1.0, float(self.content_threshold)))
        return self


class CompressionConfig(BaseSettings):
    """Configuration for the tiered context compressor."""

    # Compression is triggered once raw history exceeds this many actions.
    max_raw_actions: int = Field(200, alias="DRIFTWATCH_MAX_RAW_ACTIONS")

    immediate_actions: int = Field(10, alias="DRIFTWATCH_IMMEDIATE_ACTIONS")
    recent_actions: int = Field(50, alias="DRIFTWATCH_RECENT_ACTIONS")

    # Size bounds in characters for each tier's summary text.
    immediate_size_bound: int = Field(4000, alias="DRIFTWATCH_IMMEDIATE_SIZE_BOUND")
    recent_size_bound: int = Field(2000, alias="DRIFTWATCH_RECENT_SIZE_BOUND")
    historical_size_bound: int = Field(1000, alias="DRIFTWATCH_HISTORICAL_SIZE_BOUND")

    # Keywords listed in summarized tiers.
    summary_keywords: int = Field(8, alias="DRIFTWATCH_SUMMARY_KEYWORDS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "CompressionConfig":
        self.max_raw_actions = max(1, int(self.max_raw_actions))
        self.immediate_actions = max(1, int(self.immediate_actions))
        self.recent_actions = max(1, int(self.recent_actions))
        self.immediate_size_bound = max(100, int(self.immediate_size_bound))
        self.recent_size_bound = max(100, int(self.recent_size_bound))
        self.historical_size_bound = max(100, int(self.historical_size_bound))
        self.summary_keywords = max(0, int(self.summary_keywords))
        return self


class RecoveryConfig(BaseSettings):
    """Configuration for the recovery controller."""

    # Re-injection attempts allowed before a session escalates.
    retry_budget: int = Field(3, alias="DRIFTWATCH_RECOVERY_RETRY_BUDGET")
    # Also re-inject the compressed context digest alongside the instructions.
    include_compressed_context: bool = Field(True, alias="DRIFTWATCH_REINJECT_CONTEXT")
    # In-memory drift event audit window.
    audit_history_size: int = Field(500, alias="DRIFTWATCH_RECOVERY_AUDIT_SIZE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "RecoveryConfig":
        self.retry_budget = max(0, int(self.retry_budget))
        self.audit_history_size = max(1, int(self.audit_history_size))
        return self


class AlertConfig(BaseSettings):
    """Configuration for operator alerting."""

    webhook_url: Optional[str] = Field(None, alias="DRIFTWATCH_ALERT_WEBHOOK_URL")
    timeout_seconds: float = Field(10.0, alias="DRIFTWATCH_ALERT_TIMEOUT")
    max_retries: int = Field(3, alias="DRIFTWATCH_ALERT_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="DRIFTWATCH_ALERT_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="DRIFTWATCH_ALERT_RETRY_MAX_DELAY")

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "env_ignore_empty": True,
    }

    @model_validator(mode="after")
    def normalize_limits(self) -> "AlertConfig":
        if isinstance(self.webhook_url, str):
            self.webhook_url = self.webhook_url.strip() or None
        self.timeout_seconds = max(0.5, float(self.timeout_seconds))
        self.max_retries = max(0, int(self.max_retries))
        self.retry_base_delay = max(0.0, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        return self


class MonitorConfig(BaseSettings):
    """Configuration for the periodic monitor loop."""

    interval: float = Field(30.0, alias="DRIFTWATCH_MONITOR_INTERVAL")

    # Circuit breaker: opens after consecutive failed passes.
    circuit_max_consecutive: int = Field(5, alias="DRIFTWATCH_MONITOR_CIRCUIT_MAX_CONSECUTIVE")
    circuit_base_seconds: float = Field(30.0, alias="DRIFTWATCH_MONITOR_CIRCUIT_BASE_SECONDS")
    circuit_max_seconds: float = Field(600.0, alias="DRIFTWATCH_MONITOR_CIRCUIT_MAX_SECONDS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "MonitorConfig":
        self.interval = max(0.1, float(self.interval))
        self.circuit_max_consecutive = max(1, int(self.circuit_max_consecutive))
        self.circuit_base_seconds = max(0.1, float(self.circuit_base_seconds))
        self.circuit_max_seconds = max(self.circuit_base_seconds, float(self.circuit_max_seconds))
        return self


class DriftwatchConfig:
    """
    Master configuration that composes all subsystem configs.

    This is the single source of truth. Every component receives its config
    from here.
    """

    def __init__(self):
        self.store = StoreConfig()
        self.drift = DriftConfig()
        self.compression = CompressionConfig()
        self.recovery = RecoveryConfig()
        self.alerts = AlertConfig()
        self.monitor = MonitorConfig()

        self._resolve_paths()

    def _resolve_paths(self) -> None:
        """Resolve relative Path fields against the project root, not the CWD."""
        def _resolve(p: Path) -> Path:
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.store.data_dir = _resolve(self.store.data_dir)
        self.store.db_path = _resolve(self.store.db_path)

    def __repr__(self) -> str:
        return (
            f"DriftwatchConfig(db={self.store.db_path}, "
            f"monitor={self.monitor.interval}s, "
            f"retry_budget={self.recovery.retry_budget})"
        )
