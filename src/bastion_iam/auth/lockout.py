"""Failed-attempt accounting and temporary account lockout.

Counters live in the ``lockouts`` table and every change happens inside one
``BEGIN IMMEDIATE`` transaction, so parallel failed logins for the same
principal (from any worker) are all counted. Reaching the threshold sets
``locked_until`` and the principal's status to LOCKED in the same transaction.
An elapsed lock is cleared lazily the next time the guard looks at it.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Callable

from bastion_iam.auth.models import AccountStatus, LockoutState
from bastion_iam.config import SecurityPolicy
from bastion_iam.errors import AccountLocked
from bastion_iam.store import Clock, Database, parse_ts, ts, utcnow

logger = logging.getLogger(__name__)


def _state_from_row(principal_id: str, row: sqlite3.Row | None) -> LockoutState:
    if row is None:
        return LockoutState(principal_id=principal_id)
    return LockoutState(
        principal_id=principal_id,
        failed_attempts=row["failed_attempts"],
        first_failure_at=parse_ts(row["first_failure_at"]),
        locked_until=parse_ts(row["locked_until"]),
    )


class LockoutGuard:
    """Tracks failures per principal and refuses attempts while locked.

    Args:
        db: Shared database.
        policy: Callable returning the live :class:`SecurityPolicy` (read on
            every call so runtime policy updates apply immediately).
        clock: Source of "now".
    """

    def __init__(
        self,
        db: Database,
        policy: Callable[[], SecurityPolicy],
        clock: Clock | None = None,
    ) -> None:
        self._db = db
        self._policy = policy
        self._clock = clock or utcnow

    def state(self, principal_id: str) -> LockoutState:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM lockouts WHERE principal_id = ?", (principal_id,)
            ).fetchone()
        return _state_from_row(principal_id, row)

    def check_allowed(self, principal_id: str) -> None:
        """Raise :class:`AccountLocked` if the principal is inside a lock window.

        Must be called before any password hash is computed.
        """
        now = self._clock()
        state = self.state(principal_id)
        if state.is_locked(now):
            raise AccountLocked(retry_after=self._retry_after(state.locked_until, now))
        if state.locked_until is not None:
            self._expire_lock(principal_id, now)

    def record_failure(self, principal_id: str) -> LockoutState:
        """Count one failed attempt; lock the account when the threshold is reached."""
        policy = self._policy()
        now = self._clock()
        now_s = ts(now)
        window_start = now - timedelta(minutes=policy.lockout_window)
        with self._db.connect(write=True) as conn:
            row = conn.execute(
                "SELECT * FROM lockouts WHERE principal_id = ?", (principal_id,)
            ).fetchone()
            state = _state_from_row(principal_id, row)
            if state.is_locked(now):
                return state
            if state.first_failure_at is None or state.first_failure_at < window_start:
                # outside the sliding window: start a new count
                state.failed_attempts = 0
                state.first_failure_at = now
            state.failed_attempts += 1
            state.locked_until = None
            newly_locked = state.failed_attempts >= policy.max_login_attempts
            if newly_locked:
                state.locked_until = now + timedelta(minutes=policy.lockout_duration)
            conn.execute(
                "INSERT INTO lockouts (principal_id, failed_attempts, first_failure_at, "
                "locked_until) VALUES (?, ?, ?, ?) ON CONFLICT(principal_id) DO UPDATE SET "
                "failed_attempts = excluded.failed_attempts, "
                "first_failure_at = excluded.first_failure_at, "
                "locked_until = excluded.locked_until",
                (
                    principal_id,
                    state.failed_attempts,
                    ts(state.first_failure_at),
                    ts(state.locked_until),
                ),
            )
            if newly_locked:
                conn.execute(
                    "UPDATE principals SET status = ?, updated_at = ? "
                    "WHERE principal_id = ? AND status = ?",
                    (AccountStatus.LOCKED.value, now_s, principal_id, AccountStatus.ACTIVE.value),
                )
        if newly_locked:
            logger.warning(
                "Principal %s locked for %ds after %d failed attempt(s)",
                principal_id,
                policy.lockout_duration * 60,
                state.failed_attempts,
            )
        else:
            logger.info(
                "Failed attempt %d/%d for principal %s",
                state.failed_attempts,
                policy.max_login_attempts,
                principal_id,
            )
        return state

    def record_success(self, principal_id: str) -> None:
        """Reset the failure counter after a fully successful authentication."""
        with self._db.connect(write=True) as conn:
            conn.execute(
                "UPDATE lockouts SET failed_attempts = 0, first_failure_at = NULL, "
                "locked_until = NULL WHERE principal_id = ?",
                (principal_id,),
            )

    def unlock(self, principal_id: str) -> bool:
        """Administrative unlock. Returns True if the principal was locked."""
        now_s = ts(self._clock())
        with self._db.connect(write=True) as conn:
            row = conn.execute(
                "SELECT locked_until FROM lockouts WHERE principal_id = ?", (principal_id,)
            ).fetchone()
            was_locked = bool(row and row["locked_until"] and row["locked_until"] > now_s)
            conn.execute(
                "UPDATE lockouts SET failed_attempts = 0, first_failure_at = NULL, "
                "locked_until = NULL WHERE principal_id = ?",
                (principal_id,),
            )
            cur = conn.execute(
                "UPDATE principals SET status = ?, updated_at = ? "
                "WHERE principal_id = ? AND status = ?",
                (AccountStatus.ACTIVE.value, now_s, principal_id, AccountStatus.LOCKED.value),
            )
        if was_locked or cur.rowcount:
            logger.info("Principal %s unlocked by administrator", principal_id)
            return True
        return False

    def _expire_lock(self, principal_id: str, now: datetime) -> None:
        now_s = ts(now)
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "UPDATE lockouts SET failed_attempts = 0, first_failure_at = NULL, "
                "locked_until = NULL WHERE principal_id = ? AND locked_until <= ?",
                (principal_id, now_s),
            )
            if cur.rowcount:
                conn.execute(
                    "UPDATE principals SET status = ?, updated_at = ? "
                    "WHERE principal_id = ? AND status = ?",
                    (AccountStatus.ACTIVE.value, now_s, principal_id, AccountStatus.LOCKED.value),
                )
        if cur.rowcount:
            logger.info("Lock on principal %s expired", principal_id)

    @staticmethod
    def _retry_after(locked_until: datetime, now: datetime) -> int:
        return max(math.ceil((locked_until - now).total_seconds()), 1)
