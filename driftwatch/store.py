"""
Session Store — durable per-session state.

Every monitored session lives here: its schedule, its original instruction
set, the ordered log of recorded actions, and the latest compressed context.
The store is the only owner of ``Session`` objects. Readers get immutable
``SessionSnapshot`` copies taken under the session's lock, so a drift check
running next to an append or a terminate never sees a half-applied change.

Persistence is SQLite (WAL mode). The synchronous backend runs in worker
threads; every call is bounded by a timeout and retried with backoff before a
``StorageError`` surfaces. Writes hit disk before memory, so a failed write
leaves the in-memory session untouched.

Drift events and recovery states are persisted here too, so escalations and
the audit trail survive restarts.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import sqlite3
import string
import threading
import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Optional, TypeVar

import structlog

from driftwatch.config import StoreConfig
from driftwatch.errors import NotFoundError, StorageError
from driftwatch.harness.retry import RetryConfig, with_retries
from driftwatch.types import (
    Action,
    ActionSource,
    CompressionLevel,
    DriftEvent,
    RecoveryPhase,
    RecoveryState,
    ScheduleDescriptor,
    Session,
    SessionSnapshot,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SESSIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    created_at REAL NOT NULL,
    schedule TEXT NOT NULL,
    instructions TEXT DEFAULT '[]',
    compressed_context TEXT DEFAULT '[]'
);
"""

ACTIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS actions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    action_id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL,
    timestamp REAL NOT NULL,
    payload TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'agent',
    FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_actions_session ON actions(session_id, seq);
"""

DRIFT_EVENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS drift_events (
    event_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    deviation TEXT NOT NULL,
    severity REAL DEFAULT 0.5,
    detected_at REAL NOT NULL,
    detail TEXT DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_drift_session ON drift_events(session_id, detected_at);
"""

RECOVERY_SCHEMA = """
CREATE TABLE IF NOT EXISTS recovery_states (
    session_id TEXT PRIMARY KEY,
    phase TEXT NOT NULL,
    attempts INTEGER DEFAULT 0,
    updated_at REAL NOT NULL,
    last_reason TEXT DEFAULT ''
);
"""


def new_session_id(started_at: Optional[float] = None) -> str:
    """Build a session id of the form YYYYMMDD-HHMMSS-xxxx."""
    ts = started_at if started_at is not None else time.time()
    ts_str = datetime.fromtimestamp(ts).strftime("%Y%m%d-%H%M%S")
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(4))
    return f"{ts_str}-{suffix}"


class SqliteSessionBackend:
    """
    Synchronous SQLite persistence for sessions.

    Called from worker threads by ``SessionStore``; a lock serialises access to
    the shared connection.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        """Open the connection and ensure the schema exists."""
        with self._lock:
            if self._conn is not None:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.executescript(SESSIONS_SCHEMA)
            conn.executescript(ACTIONS_SCHEMA)
            conn.executescript(DRIFT_EVENTS_SCHEMA)
            conn.executescript(RECOVERY_SCHEMA)
            conn.commit()
            self._conn = conn
        logger.info("session_backend.initialized", path=str(self._db_path))

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SqliteSessionBackend is not initialized. Call initialize() first.")
        return self._conn

    # -- sessions --------------------------------------------------------

    def insert_session(self, session: Session) -> None:
        # OR IGNORE: a retry after a timed-out attempt that did commit is a no-op.
        with self._lock:
            conn = self._require_connection()
            with conn:
                conn.execute(
                    """INSERT OR IGNORE INTO sessions
                       (session_id, created_at, schedule, instructions, compressed_context)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        session.session_id,
                        session.created_at,
                        json.dumps(session.schedule.to_dict()),
                        json.dumps(session.instructions),
                        json.dumps([lvl.model_dump() for lvl in session.compressed_context]),
                    ),
                )

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            conn = self._require_connection()
            with conn:
                conn.execute("DELETE FROM actions WHERE session_id = ?", (session_id,))
                conn.execute("DELETE FROM recovery_states WHERE session_id = ?", (session_id,))
                conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))

    def insert_action(self, session_id: str, action: Action) -> None:
        # OR IGNORE keeps a retried insert idempotent when the first attempt landed.
        with self._lock:
            conn = self._require_connection()
            with conn:
                conn.execute(
                    """INSERT OR IGNORE INTO actions
                       (action_id, session_id, timestamp, payload, source)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        action.action_id,
                        session_id,
                        action.timestamp,
                        action.payload,
                        action.source.value,
                    ),
                )

    def update_compressed(self, session_id: str, levels: list[CompressionLevel]) -> None:
        with self._lock:
            conn = self._require_connection()
            with conn:
                conn.execute(
                    "UPDATE sessions SET compressed_context = ? WHERE session_id = ?",
                    (json.dumps([lvl.model_dump() for lvl in levels]), session_id),
                )

    def load_sessions(self) -> list[Session]:
        with self._lock:
            conn = self._require_connection()
            rows = conn.execute(
                "SELECT * FROM sessions ORDER BY created_at ASC"
            ).fetchall()
            sessions: dict[str, Session] = {}
            for row in rows:
                sessions[row["session_id"]] = Session(
                    session_id=row["session_id"],
                    created_at=row["created_at"],
                    schedule=ScheduleDescriptor.from_dict(json.loads(row["schedule"])),
                    instructions=list(json.loads(row["instructions"] or "[]")),
                    compressed_context=[
                        CompressionLevel.model_validate(item)
                        for item in json.loads(row["compressed_context"] or "[]")
                    ],
                )
            for row in conn.execute("SELECT * FROM actions ORDER BY seq ASC"):
                session = sessions.get(row["session_id"])
                if session is None:
                    continue
                session.actions.append(
                    Action(
                        payload=row["payload"],
                        source=ActionSource(row["source"]),
                        timestamp=row["timestamp"],
                        action_id=row["action_id"],
                    )
                )
        return list(sessions.values())

    # -- drift events ----------------------------------------------------

    def insert_drift_events(self, events: list[DriftEvent], retention: int = 0) -> None:
        with self._lock:
            conn = self._require_connection()
            with conn:
                conn.executemany(
                    """INSERT OR IGNORE INTO drift_events
                       (event_id, session_id, deviation, severity, detected_at, detail)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    [
                        (e.event_id, e.session_id, e.deviation, e.severity, e.detected_at, e.detail)
                        for e in events
                    ],
                )
                if retention > 0:
                    for session_id in {e.session_id for e in events}:
                        conn.execute(
                            """DELETE FROM drift_events
                               WHERE session_id = ? AND event_id NOT IN (
                                   SELECT event_id FROM drift_events
                                   WHERE session_id = ?
                                   ORDER BY detected_at DESC LIMIT ?
                               )""",
                            (session_id, session_id, retention),
                        )

    def load_drift_events(self, session_id: Optional[str], limit: int = 100) -> list[DriftEvent]:
        with self._lock:
            conn = self._require_connection()
            if session_id is None:
                rows = conn.execute(
                    "SELECT * FROM drift_events ORDER BY detected_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT * FROM drift_events WHERE session_id = ?
                       ORDER BY detected_at DESC LIMIT ?""",
                    (session_id, limit),
                ).fetchall()
        return [
            DriftEvent(
                event_id=row["event_id"],
                session_id=row["session_id"],
                deviation=row["deviation"],
                severity=row["severity"],
                detected_at=row["detected_at"],
                detail=row["detail"] or "",
            )
            for row in rows
        ]

    # -- recovery states -------------------------------------------------

    def upsert_recovery_state(self, state: RecoveryState) -> None:
        with self._lock:
            conn = self._require_connection()
            with conn:
                conn.execute(
                    """INSERT OR REPLACE INTO recovery_states
                       (session_id, phase, attempts, updated_at, last_reason)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        state.session_id,
                        state.phase.value,
                        state.attempts,
                        state.updated_at,
                        state.last_reason,
                    ),
                )

    def load_recovery_states(self) -> list[RecoveryState]:
        with self._lock:
            conn = self._require_connection()
            rows = conn.execute("SELECT * FROM recovery_states").fetchall()
        return [
            RecoveryState(
                session_id=row["session_id"],
                phase=RecoveryPhase(row["phase"]),
                attempts=row["attempts"],
                updated_at=row["updated_at"],
                last_reason=row["last_reason"] or "",
            )
            for row in rows
        ]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            conn = self._require_connection()
            return {
                "sessions": conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0],
                "actions": conn.execute("SELECT COUNT(*) FROM actions").fetchone()[0],
                "drift_events": conn.execute("SELECT COUNT(*) FROM drift_events").fetchone()[0],
                "db_path": str(self._db_path),
            }


class SessionStore:
    """
    Async facade over the session backend.

    One writer per session: appends, compression saves and termination are
    serialised by a per-session ``asyncio.Lock``. Snapshots are taken under the
    same lock, so every reader sees either the state before or after a
    mutation.
    """

    def __init__(
        self,
        backend: SqliteSessionBackend,
        config: Optional[StoreConfig] = None,
    ) -> None:
        self._backend = backend
        self._config = config or StoreConfig()
        self._retry = RetryConfig(
            max_retries=self._config.retry_max_retries,
            base_delay=self._config.retry_base_delay,
            max_delay=self._config.retry_max_delay,
        )
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._recovery_states: dict[str, RecoveryState] = {}
        self._initialized = False

    @classmethod
    def from_config(cls, config: StoreConfig) -> "SessionStore":
        return cls(SqliteSessionBackend(config.db_path), config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open storage and load every persisted session into memory."""
        if self._initialized:
            return
        await self._call(self._backend.initialize, operation="initialize")
        sessions = await self._call(self._backend.load_sessions, operation="load_sessions")
        states = await self._call(
            self._backend.load_recovery_states, operation="load_recovery_states"
        )
        self._sessions = {s.session_id: s for s in sessions}
        self._locks = {s.session_id: asyncio.Lock() for s in sessions}
        self._recovery_states = {
            st.session_id: st for st in states if st.session_id in self._sessions
        }
        self._initialized = True
        logger.info(
            "session_store.loaded",
            sessions=len(self._sessions),
            actions=sum(len(s.actions) for s in self._sessions.values()),
        )

    async def close(self) -> None:
        await asyncio.to_thread(self._backend.close)
        self._initialized = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create(
        self,
        schedule: ScheduleDescriptor,
        instructions: Iterable[str] = (),
        session_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> SessionSnapshot:
        """Register a new session. Raises ValueError if the id is taken."""
        created = created_at if created_at is not None else time.time()
        sid = session_id or new_session_id(created)
        if sid in self._sessions:
            raise ValueError(f"Session already exists: {sid}")

        session = Session(
            session_id=sid,
            schedule=schedule,
            created_at=created,
            instructions=[str(text) for text in instructions if str(text).strip()],
        )
        self._locks[sid] = asyncio.Lock()
        try:
            await self._call(self._backend.insert_session, session, operation="create")
        except StorageError:
            self._locks.pop(sid, None)
            raise
        self._sessions[sid] = session
        logger.info(
            "session_store.created",
            session_id=sid,
            interval_seconds=schedule.interval_seconds,
            instructions=len(session.instructions),
        )
        return session.snapshot()

    async def append(self, session_id: str, action: Action) -> None:
        """Record an action. Raises NotFoundError for unknown sessions."""
        async with self._locked(session_id) as session:
            await self._call(
                self._backend.insert_action, session_id, action, operation="append"
            )
            session.actions.append(action)
        logger.debug(
            "session_store.appended",
            session_id=session_id,
            source=action.source.value,
            count=len(session.actions),
        )

    async def get_history(self, session_id: str) -> list[Action]:
        """Return every recorded action in insertion order."""
        snap = await self.snapshot(session_id)
        return list(snap.actions)

    async def snapshot(self, session_id: str) -> SessionSnapshot:
        async with self._locked(session_id) as session:
            return session.snapshot()

    async def terminate(self, session_id: str) -> None:
        """Destroy a session and its persisted state. Drift events stay for audit."""
        async with self._locked(session_id):
            await self._call(
                self._backend.delete_session, session_id, operation="terminate"
            )
            del self._sessions[session_id]
            self._recovery_states.pop(session_id, None)
        self._locks.pop(session_id, None)
        logger.info("session_store.terminated", session_id=session_id)

    async def save_compressed(self, session_id: str, levels: list[CompressionLevel]) -> None:
        async with self._locked(session_id) as session:
            await self._call(
                self._backend.update_compressed, session_id, levels, operation="save_compressed"
            )
            session.compressed_context = [lvl.model_copy(deep=True) for lvl in levels]

    def list_sessions(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # -- audit and recovery persistence ---------------------------------

    async def record_drift_events(self, events: list[DriftEvent]) -> None:
        if not events:
            return
        await self._call(
            self._backend.insert_drift_events,
            list(events),
            self._config.audit_retention,
            operation="record_drift_events",
        )

    async def load_drift_events(
        self, session_id: Optional[str] = None, limit: int = 100
    ) -> list[DriftEvent]:
        return await self._call(
            self._backend.load_drift_events,
            session_id,
            max(1, int(limit)),
            operation="load_drift_events",
        )

    async def save_recovery_state(self, state: RecoveryState) -> None:
        """Persist a recovery state. Raises NotFoundError once the session is gone."""
        async with self._locked(state.session_id):
            await self._call(
                self._backend.upsert_recovery_state, state, operation="save_recovery_state"
            )
            self._recovery_states[state.session_id] = state.model_copy()

    def load_recovery_state(self, session_id: str) -> Optional[RecoveryState]:
        state = self._recovery_states.get(session_id)
        return state.model_copy() if state is not None else None

    async def stats(self) -> dict[str, Any]:
        return await self._call(self._backend.stats, operation="stats")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[Session]:
        lock = self._locks.get(session_id)
        if lock is None or session_id not in self._sessions:
            raise NotFoundError(session_id)
        async with lock:
            # A terminate may have won the lock while we were waiting.
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError(session_id)
            yield session

    async def _call(self, fn: Callable[..., T], *args: Any, operation: str) -> T:
        """Run a backend call in a thread with timeout and bounded retry."""
        try:
            return await with_retries(
                lambda: asyncio.to_thread(fn, *args),
                config=self._retry,
                timeout=self._config.timeout_seconds,
                operation=f"session_store.{operation}",
            )
        except (sqlite3.Error, OSError, asyncio.TimeoutError) as e:
            logger.error("session_store.storage_failed", operation=operation, error=str(e))
            raise StorageError(f"{operation} failed: {e}") from e
