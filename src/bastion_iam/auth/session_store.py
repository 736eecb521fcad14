"""SQLite repository for sessions."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from bastion_iam.auth.models import Session
from bastion_iam.store import Database, parse_ts, ts

logger = logging.getLogger(__name__)

# Least recently active first; ties broken deterministically.
_EVICTION_ORDER = "ORDER BY last_activity ASC, created_at ASC, session_id ASC"


def _session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        session_id=row["session_id"],
        principal_id=row["principal_id"],
        created_at=parse_ts(row["created_at"]),
        last_activity=parse_ts(row["last_activity"]),
        expires_at=parse_ts(row["expires_at"]),
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        device_id=row["device_id"],
        mfa_verified=bool(row["mfa_verified"]),
        risk_score=row["risk_score"],
        revoked=bool(row["revoked"]),
        revoked_at=parse_ts(row["revoked_at"]),
        revoke_reason=row["revoke_reason"],
    )


class SessionStore:
    """Session persistence. All timestamps are compared as fixed-width UTC text."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def insert_with_cap(
        self, session: Session, max_active: int, now: datetime
    ) -> list[str]:
        """Insert *session*, revoking the least-recently-active sessions over the cap.

        Runs in one write transaction so two concurrent logins cannot both
        observe room under the cap.

        Returns:
            IDs of the evicted sessions, oldest first.
        """
        now_s = ts(now)
        with self._db.connect(write=True) as conn:
            active = conn.execute(
                "SELECT session_id FROM sessions WHERE principal_id = ? AND revoked = 0 "
                f"AND expires_at > ? {_EVICTION_ORDER}",
                (session.principal_id, now_s),
            ).fetchall()
            overflow = len(active) + 1 - max_active
            evicted = [r["session_id"] for r in active[: max(overflow, 0)]]
            for sid in evicted:
                conn.execute(
                    "UPDATE sessions SET revoked = 1, revoked_at = ?, revoke_reason = ? "
                    "WHERE session_id = ?",
                    (now_s, "concurrency_limit", sid),
                )
            conn.execute(
                "INSERT INTO sessions (session_id, principal_id, created_at, last_activity, "
                "expires_at, ip_address, user_agent, device_id, mfa_verified, risk_score) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.session_id,
                    session.principal_id,
                    ts(session.created_at),
                    ts(session.last_activity),
                    ts(session.expires_at),
                    session.ip_address,
                    session.user_agent,
                    session.device_id,
                    int(session.mfa_verified),
                    session.risk_score,
                ),
            )
        return evicted

    def enforce_cap(self, principal_id: str, max_active: int, now: datetime) -> list[str]:
        """Revoke least-recently-active sessions until at most *max_active* remain."""
        now_s = ts(now)
        with self._db.connect(write=True) as conn:
            active = conn.execute(
                "SELECT session_id FROM sessions WHERE principal_id = ? AND revoked = 0 "
                f"AND expires_at > ? {_EVICTION_ORDER}",
                (principal_id, now_s),
            ).fetchall()
            evicted = [r["session_id"] for r in active[: max(len(active) - max_active, 0)]]
            for sid in evicted:
                conn.execute(
                    "UPDATE sessions SET revoked = 1, revoked_at = ?, revoke_reason = ? "
                    "WHERE session_id = ?",
                    (now_s, "concurrency_limit", sid),
                )
        return evicted

    def get(self, session_id: str) -> Session | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def touch(self, session_id: str, now: datetime) -> Session | None:
        """Set ``last_activity`` on a live session and return it; None if not live."""
        now_s = ts(now)
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "UPDATE sessions SET last_activity = ? "
                "WHERE session_id = ? AND revoked = 0 AND expires_at > ?",
                (now_s, session_id, now_s),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return _session_from_row(row)

    def extend(self, session_id: str, new_expiry: datetime, now: datetime) -> Session | None:
        """Move ``expires_at`` forward on a live session. Never shortens it."""
        now_s = ts(now)
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "UPDATE sessions SET expires_at = MAX(expires_at, ?), last_activity = ? "
                "WHERE session_id = ? AND revoked = 0 AND expires_at > ?",
                (ts(new_expiry), now_s, session_id, now_s),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return _session_from_row(row)

    def revoke(self, session_id: str, reason: str, now: datetime) -> bool:
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "UPDATE sessions SET revoked = 1, revoked_at = ?, revoke_reason = ? "
                "WHERE session_id = ? AND revoked = 0",
                (ts(now), reason, session_id),
            )
        return cur.rowcount == 1

    def revoke_all(
        self, principal_id: str, reason: str, now: datetime, except_session: str | None = None
    ) -> list[str]:
        with self._db.connect(write=True) as conn:
            rows = conn.execute(
                "SELECT session_id FROM sessions WHERE principal_id = ? AND revoked = 0 "
                "AND session_id != ?",
                (principal_id, except_session or ""),
            ).fetchall()
            ids = [r["session_id"] for r in rows]
            conn.executemany(
                "UPDATE sessions SET revoked = 1, revoked_at = ?, revoke_reason = ? "
                "WHERE session_id = ?",
                [(ts(now), reason, sid) for sid in ids],
            )
        return ids

    def list_active(self, principal_id: str, now: datetime) -> list[Session]:
        """Unrevoked, unexpired sessions, most recently active first."""
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE principal_id = ? AND revoked = 0 "
                "AND expires_at > ? ORDER BY last_activity DESC, created_at DESC, session_id",
                (principal_id, ts(now)),
            ).fetchall()
        return [_session_from_row(r) for r in rows]

    def has_seen_ip(self, principal_id: str, ip_address: str) -> bool:
        """True if any past session of *principal_id* came from *ip_address*."""
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM sessions WHERE principal_id = ? AND ip_address = ? LIMIT 1",
                (principal_id, ip_address),
            ).fetchone()
        return row is not None
