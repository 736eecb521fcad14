"""Session lifecycle: create, validate, renew, revoke, list."""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Callable

from bastion_iam.auth.models import RequestContext, Session
from bastion_iam.auth.session_store import SessionStore
from bastion_iam.config import SessionPolicy
from bastion_iam.errors import SessionExpired, SessionNotFound
from bastion_iam.store import Clock, utcnow

logger = logging.getLogger(__name__)


class SessionManager:
    """Issues and checks server-side sessions.

    Expiry is fixed at creation (``now + timeout``). :meth:`validate` only
    records activity and never moves ``expires_at``; :meth:`renew` slides it
    when ``sliding_expiration`` is on, and never past
    ``created_at + absolute_timeout``.

    Args:
        store: Session repository.
        policy: Callable returning the live :class:`SessionPolicy`.
        clock: Source of "now".
    """

    def __init__(
        self,
        store: SessionStore,
        policy: Callable[[], SessionPolicy],
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock or utcnow

    def create(
        self,
        principal_id: str,
        context: RequestContext,
        *,
        mfa_verified: bool = False,
        risk_score: float = 0.0,
    ) -> tuple[Session, list[str]]:
        """Create a session, evicting the least-recently-active ones over the cap.

        Returns:
            ``(session, evicted_session_ids)``
        """
        policy = self._policy()
        now = self._clock()
        session = Session(
            session_id=secrets.token_urlsafe(32),
            principal_id=principal_id,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(minutes=policy.timeout),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            device_id=context.device_id,
            mfa_verified=mfa_verified,
            risk_score=min(max(risk_score, 0.0), 1.0),
        )
        evicted = self._store.insert_with_cap(session, policy.max_concurrent_sessions, now)
        if evicted:
            logger.info(
                "Evicted %d session(s) of %s over the concurrency limit of %d",
                len(evicted),
                principal_id,
                policy.max_concurrent_sessions,
            )
        return session, evicted

    def validate(self, session_id: str) -> Session:
        """Return the live session and record activity on it.

        Raises:
            SessionNotFound: unknown or revoked session.
            SessionExpired: ``expires_at`` has passed.
        """
        now = self._clock()
        session = self._store.touch(session_id, now)
        if session is not None:
            return session
        existing = self._store.get(session_id)
        if existing is None or existing.revoked:
            raise SessionNotFound()
        raise SessionExpired()

    def renew(self, session_id: str) -> Session:
        """Slide the expiry of a live session (only with sliding expiration enabled)."""
        policy = self._policy()
        if not policy.sliding_expiration:
            return self.validate(session_id)
        now = self._clock()
        current = self._store.get(session_id)
        if current is None or current.revoked:
            raise SessionNotFound()
        if current.is_expired(now):
            raise SessionExpired()
        ceiling = current.created_at + timedelta(minutes=policy.absolute_timeout)
        new_expiry = min(now + timedelta(minutes=policy.timeout), ceiling)
        renewed = self._store.extend(session_id, new_expiry, now)
        if renewed is None:
            raise SessionExpired()
        return renewed

    def revoke(self, session_id: str, reason: str = "logout") -> bool:
        revoked = self._store.revoke(session_id, reason, self._clock())
        if revoked:
            logger.info("Session %s... revoked (%s)", session_id[:8], reason)
        return revoked

    def revoke_all(
        self, principal_id: str, reason: str, except_session: str | None = None
    ) -> list[str]:
        ids = self._store.revoke_all(principal_id, reason, self._clock(), except_session)
        if ids:
            logger.info("Revoked %d session(s) of %s (%s)", len(ids), principal_id, reason)
        return ids

    def get(self, session_id: str) -> Session | None:
        return self._store.get(session_id)

    def list_active(self, principal_id: str) -> list[Session]:
        return self._store.list_active(principal_id, self._clock())

    def enforce_concurrency_cap(self, principal_id: str) -> list[str]:
        """Re-apply the cap, e.g. after an administrator lowered it."""
        return self._store.enforce_cap(
            principal_id, self._policy().max_concurrent_sessions, self._clock()
        )

    def is_known_ip(self, principal_id: str, ip_address: str) -> bool:
        return self._store.has_seen_ip(principal_id, ip_address)
