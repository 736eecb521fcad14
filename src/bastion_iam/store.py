"""SQLite store of record shared by every IAM repository.

All workers (and all replicas on one host) open the same database file, so
the database, not process memory, is the source of truth for lockout
counters, sessions, MFA state and RBAC. Every read-modify-write runs inside
``BEGIN IMMEDIATE`` so concurrent requests for the same principal serialize
on SQLite's write lock instead of losing updates.

Schema
------
principals      principal_id PK, username UNIQUE (lower-cased), status, ...
credentials     principal_id PK, password_hash, algorithm
mfa_methods     (principal_id, type) PK, enabled, priority, secret, last_used_step
backup_codes    (principal_id, code_hash) PK
mfa_challenges  challenge_id PK, principal_id, expires_at, method, otp_hash
lockouts        principal_id PK, failed_attempts, first_failure_at, locked_until
sessions        session_id PK, principal_id, last_activity, expires_at, revoked
roles / role_permissions / groups / group_roles / group_members /
principal_roles / principal_grants
meta            key PK, value  -- rbac_version counter, live IAM policy JSON
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator

from bastion_iam.config import IAMPolicy
from bastion_iam.errors import StoreUnavailable

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path.home() / ".bastion-iam" / "iam.db"

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS principals (
        principal_id  TEXT PRIMARY KEY,
        username      TEXT NOT NULL UNIQUE,
        email         TEXT NOT NULL DEFAULT '',
        display_name  TEXT NOT NULL DEFAULT '',
        status        TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at    TEXT NOT NULL,
        updated_at    TEXT NOT NULL,
        last_login    TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credentials (
        principal_id  TEXT PRIMARY KEY REFERENCES principals(principal_id),
        password_hash TEXT NOT NULL,
        algorithm     TEXT NOT NULL,
        updated_at    TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_methods (
        principal_id   TEXT NOT NULL REFERENCES principals(principal_id),
        type           TEXT NOT NULL,
        enabled        INTEGER NOT NULL DEFAULT 1,
        priority       INTEGER NOT NULL DEFAULT 0,
        secret         TEXT NOT NULL DEFAULT '',
        destination    TEXT NOT NULL DEFAULT '',
        reference      TEXT NOT NULL DEFAULT '',
        last_used_step INTEGER NOT NULL DEFAULT -1,
        created_at     TEXT NOT NULL,
        PRIMARY KEY (principal_id, type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backup_codes (
        principal_id TEXT NOT NULL REFERENCES principals(principal_id),
        code_hash    TEXT NOT NULL,
        PRIMARY KEY (principal_id, code_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_challenges (
        challenge_id   TEXT PRIMARY KEY,
        principal_id   TEXT NOT NULL REFERENCES principals(principal_id),
        created_at     TEXT NOT NULL,
        expires_at     TEXT NOT NULL,
        method         TEXT,
        otp_hash       TEXT NOT NULL DEFAULT '',
        otp_expires_at TEXT,
        ip_address     TEXT NOT NULL DEFAULT 'unknown',
        user_agent     TEXT NOT NULL DEFAULT 'unknown',
        device_id      TEXT NOT NULL DEFAULT '',
        consumed       INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lockouts (
        principal_id     TEXT PRIMARY KEY REFERENCES principals(principal_id),
        failed_attempts  INTEGER NOT NULL DEFAULT 0,
        first_failure_at TEXT,
        locked_until     TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id    TEXT PRIMARY KEY,
        principal_id  TEXT NOT NULL REFERENCES principals(principal_id),
        created_at    TEXT NOT NULL,
        last_activity TEXT NOT NULL,
        expires_at    TEXT NOT NULL,
        ip_address    TEXT NOT NULL DEFAULT 'unknown',
        user_agent    TEXT NOT NULL DEFAULT 'unknown',
        device_id     TEXT NOT NULL DEFAULT '',
        mfa_verified  INTEGER NOT NULL DEFAULT 0,
        risk_score    REAL NOT NULL DEFAULT 0,
        revoked       INTEGER NOT NULL DEFAULT 0,
        revoked_at    TEXT,
        revoke_reason TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS roles (
        name        TEXT PRIMARY KEY,
        description TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permissions (
        role    TEXT NOT NULL REFERENCES roles(name),
        pattern TEXT NOT NULL,
        effect  TEXT NOT NULL DEFAULT 'ALLOW',
        PRIMARY KEY (role, pattern, effect)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS groups (
        name        TEXT PRIMARY KEY,
        description TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_roles (
        group_name TEXT NOT NULL REFERENCES groups(name),
        role       TEXT NOT NULL,
        PRIMARY KEY (group_name, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_name   TEXT NOT NULL REFERENCES groups(name),
        principal_id TEXT NOT NULL REFERENCES principals(principal_id),
        PRIMARY KEY (group_name, principal_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_roles (
        principal_id TEXT NOT NULL REFERENCES principals(principal_id),
        role         TEXT NOT NULL,
        PRIMARY KEY (principal_id, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_grants (
        principal_id TEXT NOT NULL REFERENCES principals(principal_id),
        pattern      TEXT NOT NULL,
        effect       TEXT NOT NULL,
        PRIMARY KEY (principal_id, pattern, effect)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS meta (
        key   TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_principal "
    "ON sessions(principal_id, revoked, last_activity)",
    "CREATE INDEX IF NOT EXISTS idx_challenges_expiry ON mfa_challenges(expires_at)",
    "INSERT OR IGNORE INTO meta (key, value) VALUES ('rbac_version', '0')",
]


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ts(dt: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO-8601 (sortable as text)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Database:
    """Thread-safe SQLite connection factory with the IAM schema.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"`` for an
            in-process database (tests). Created on first use.
        busy_timeout: Seconds a writer waits for another writer's lock.
    """

    def __init__(self, db_path: Path | str | None = None, busy_timeout: float = 5.0) -> None:
        self._busy_timeout = busy_timeout
        self._memory_lock = threading.RLock()
        if db_path == ":memory:":
            # A single persistent connection, since :memory: creates a new
            # empty DB on each connect() call.
            self._db_path_str = ":memory:"
            self._memory_conn: sqlite3.Connection | None = sqlite3.connect(
                ":memory:", check_same_thread=False
            )
            self._memory_conn.row_factory = sqlite3.Row
        else:
            db_file = Path(db_path).expanduser() if db_path else _DEFAULT_DB_PATH
            db_file.parent.mkdir(parents=True, exist_ok=True)
            self._db_path_str = str(db_file)
            self._memory_conn = None
        self._init_schema()
        logger.info("IAM database initialised at %s", self._db_path_str)

    @property
    def path(self) -> str:
        return self._db_path_str

    @contextmanager
    def connect(
        self, write: bool = False, snapshot: bool = False
    ) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection; ``write=True`` holds the write lock for the whole block.

        ``snapshot=True`` opens a deferred read transaction: every SELECT in the
        block sees the same committed state without taking the write lock.

        Any ``sqlite3.Error`` is logged and re-raised as :class:`StoreUnavailable`.
        """
        try:
            if self._memory_conn is not None:
                with self._memory_lock:
                    yield from self._transaction(self._memory_conn, write, snapshot)
            else:
                conn = sqlite3.connect(
                    self._db_path_str,
                    timeout=self._busy_timeout,
                    check_same_thread=False,
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")  # concurrent reads while writing
                conn.execute("PRAGMA foreign_keys=ON")
                try:
                    yield from self._transaction(conn, write, snapshot)
                finally:
                    conn.close()
        except sqlite3.Error as e:
            logger.error("IAM store failure on %s: %s", self._db_path_str, e, exc_info=True)
            raise StoreUnavailable() from e

    @staticmethod
    def _transaction(
        conn: sqlite3.Connection, write: bool, snapshot: bool = False
    ) -> Generator[sqlite3.Connection, None, None]:
        if write:
            conn.execute("BEGIN IMMEDIATE")
        elif snapshot:
            conn.execute("BEGIN")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise

    def _init_schema(self) -> None:
        with self.connect(write=True) as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    # ---- RBAC version counter ----

    @staticmethod
    def bump_rbac_version(conn: sqlite3.Connection) -> None:
        """Increment the RBAC version inside the caller's write transaction."""
        conn.execute(
            "UPDATE meta SET value = CAST(CAST(value AS INTEGER) + 1 AS TEXT) "
            "WHERE key = 'rbac_version'"
        )

    def rbac_version(self) -> int:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = 'rbac_version'").fetchone()
        return int(row["value"]) if row else 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except StoreUnavailable:
            return False


class PolicyStore:
    """Persists the live :class:`IAMPolicy` so every replica enforces the same values.

    Args:
        db: Shared database.
        seed: Policy written on first use when none is stored yet.
    """

    _KEY = "iam_policy"

    def __init__(self, db: Database, seed: IAMPolicy) -> None:
        self._db = db
        with self._db.connect(write=True) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES (?, ?)",
                (self._KEY, seed.model_dump_json()),
            )

    def get(self) -> IAMPolicy:
        with self._db.connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (self._KEY,)).fetchone()
        return IAMPolicy.model_validate(json.loads(row["value"]))

    def put(self, policy: IAMPolicy) -> None:
        with self._db.connect(write=True) as conn:
            conn.execute(
                "UPDATE meta SET value = ? WHERE key = ?",
                (policy.model_dump_json(), self._KEY),
            )

    def update(self, patch: dict[str, Any]) -> tuple[IAMPolicy, IAMPolicy]:
        """Apply a patch atomically. Returns ``(old, new)``; raises ConfigurationError."""
        with self._db.connect(write=True) as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (self._KEY,)).fetchone()
            old = IAMPolicy.model_validate(json.loads(row["value"]))
            new = old.merged(patch)
            conn.execute(
                "UPDATE meta SET value = ? WHERE key = ?",
                (new.model_dump_json(), self._KEY),
            )
        return old, new
