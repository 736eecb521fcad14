"""Login orchestration: lockout -> password -> MFA -> session -> tokens.

Every step is written to the audit trail. Failures on the password or MFA
step feed the same lockout counter; only a fully successful login resets it.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from bastion_iam.audit.logger import AuditLogger
from bastion_iam.audit.models import AuditEvent, AuditEventType, AuditResult
from bastion_iam.auth import risk
from bastion_iam.auth.credentials import CredentialVerifier
from bastion_iam.auth.lockout import LockoutGuard
from bastion_iam.auth.mfa import MFAChallengeManager
from bastion_iam.auth.models import (
    AccountStatus,
    LoginRequest,
    LoginResult,
    MFAChallenge,
    MFAMethodType,
    Principal,
    RequestContext,
    Session,
    TokenBundle,
)
from bastion_iam.auth.sessions import SessionManager
from bastion_iam.auth.tokens import ACCESS, REFRESH, TokenSigner
from bastion_iam.auth.user_store import UserStore
from bastion_iam.config import IAMPolicy
from bastion_iam.errors import (
    AccountLocked,
    InvalidCredentials,
    MFAVerificationFailed,
    SessionNotFound,
)
from bastion_iam.store import Clock, utcnow

logger = logging.getLogger(__name__)

_INACTIVE = (AccountStatus.SUSPENDED, AccountStatus.PENDING)


class Authenticator:
    """Runs the two-step login and resolves bearer tokens to sessions.

    Args:
        users: Principal repository.
        credentials: Password verifier.
        lockout: Failed-attempt guard.
        mfa: Second-factor manager.
        sessions: Session manager.
        tokens: Token signer.
        audit: Audit trail.
        policy: Callable returning the live :class:`IAMPolicy`.
        clock: Source of "now".
    """

    def __init__(
        self,
        users: UserStore,
        credentials: CredentialVerifier,
        lockout: LockoutGuard,
        mfa: MFAChallengeManager,
        sessions: SessionManager,
        tokens: TokenSigner,
        audit: AuditLogger,
        policy: Callable[[], IAMPolicy],
        clock: Clock | None = None,
    ) -> None:
        self._users = users
        self._credentials = credentials
        self._lockout = lockout
        self._mfa = mfa
        self._sessions = sessions
        self._tokens = tokens
        self._audit = audit
        self._policy = policy
        self._clock = clock or utcnow

    # ---- Login ----

    def login(self, request: LoginRequest, context: RequestContext) -> LoginResult:
        """Password step. Returns tokens, or ``mfa_required`` with a challenge.

        Raises:
            AccountLocked: the principal is inside a lock window.
            InvalidCredentials: unknown user, wrong password or inactive account.
            MFAVerificationFailed: an inline MFA token was wrong.
        """
        principal = self._credentials.lookup(request.username)
        if principal is not None:
            self._check_not_locked(principal.principal_id, context)

        try:
            principal = self._credentials.verify(request.username, request.password, principal)
        except InvalidCredentials:
            if principal is None:
                self._emit(
                    AuditEventType.LOGIN_FAILURE,
                    AuditResult.FAILURE,
                    context=context,
                    details={"reason": "invalid_credentials", "username": request.username[:128]},
                    risk_score=risk.event_risk("LOGIN_FAILURE"),
                )
            else:
                self._register_failure(
                    principal.principal_id,
                    AuditEventType.LOGIN_FAILURE,
                    context,
                    {"reason": "invalid_credentials"},
                )
            raise

        self._credentials.upgrade_hash(principal.principal_id, request.password)
        score = self._score(principal.principal_id, context)
        methods = principal.enabled_mfa_methods
        if not methods:
            required = self._policy().session.require_mfa
            return self._complete(principal, context, False, score, enrollment_required=required)

        inline = self._inline_method(principal, request.mfa_method)
        if request.mfa_token and inline is not None:
            self._verify_factor(principal, inline, request.mfa_token, None, context)
            return self._complete(principal, context, True, score)

        challenge = self._mfa.open_challenge(principal, context)
        self._emit(
            AuditEventType.MFA_CHALLENGE,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            context=context,
            details={
                "methods": [m.type.value for m in methods],
                "selected": challenge.method.value if challenge.method else None,
            },
            risk_score=score,
        )
        logger.info("MFA challenge issued for %s", principal.principal_id)
        return LoginResult(
            principal=principal,
            mfa_required=True,
            mfa_challenge=challenge.challenge_id,
            mfa_methods=[m.type for m in methods],
        )

    def select_mfa_method(self, challenge_id: str, method: MFAMethodType) -> MFAChallenge:
        """Choose the factor for a pending challenge (sends SMS/EMAIL codes)."""
        challenge = self._mfa.get_challenge(challenge_id)
        principal = self._users.get(challenge.principal_id)
        if principal is None:
            raise MFAVerificationFailed()
        self._check_not_locked(principal.principal_id, challenge.context())
        updated = self._mfa.select_method(challenge_id, principal, method)
        self._emit(
            AuditEventType.MFA_CHALLENGE,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            context=challenge.context(),
            details={"selected": method.value},
        )
        return updated

    def verify_mfa(
        self, challenge_id: str, code: str, method: MFAMethodType | None = None
    ) -> LoginResult:
        """MFA step. Consumes the challenge and issues a session on success."""
        challenge = self._mfa.get_challenge(challenge_id)
        context = challenge.context()
        principal = self._users.get(challenge.principal_id)
        if principal is None:
            raise MFAVerificationFailed()
        self._check_not_locked(principal.principal_id, context)
        if principal.status in _INACTIVE:
            raise InvalidCredentials()

        chosen = method or challenge.method
        if chosen is None and len(principal.enabled_mfa_methods) == 1:
            chosen = principal.enabled_mfa_methods[0].type
        if chosen is None:
            raise MFAVerificationFailed("Select an MFA method first")
        if chosen.uses_one_time_code and chosen != challenge.method:
            raise MFAVerificationFailed()

        self._verify_factor(principal, chosen, code, challenge, context)
        if not self._mfa.consume_challenge(challenge_id):
            raise MFAVerificationFailed()
        score = self._score(principal.principal_id, context)
        return self._complete(principal, context, True, score)

    # ---- Tokens / sessions ----

    def refresh(self, refresh_token: str) -> TokenBundle:
        """Issue a new token bundle for the session behind *refresh_token*."""
        claims = self._tokens.verify(refresh_token, REFRESH)
        session = self._sessions.renew(claims["sid"])
        principal = self._session_principal(session, claims)
        bundle = self._tokens.issue(principal, session)
        self._emit(
            AuditEventType.TOKEN_REFRESH,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            session_id=session.session_id,
            context=RequestContext(ip_address=session.ip_address, user_agent=session.user_agent),
        )
        return bundle

    def resolve(self, access_token: str) -> tuple[Principal, Session]:
        """Map a bearer access token to its live principal and session.

        Raises:
            SessionError: bad/expired token, or the session is gone or expired.
        """
        claims = self._tokens.verify(access_token, ACCESS)
        session = self._sessions.validate(claims["sid"])
        return self._session_principal(session, claims), session

    def logout(self, session_id: str, context: RequestContext | None = None) -> bool:
        session = self._sessions.get(session_id)
        revoked = self._sessions.revoke(session_id, "logout")
        if revoked and session is not None:
            self._emit(
                AuditEventType.LOGOUT,
                AuditResult.SUCCESS,
                principal_id=session.principal_id,
                session_id=session_id,
                context=context,
            )
        return revoked

    # ---- Internals ----

    def _session_principal(self, session: Session, claims: dict[str, Any]) -> Principal:
        if session.principal_id != claims.get("sub"):
            raise SessionNotFound()
        principal = self._users.get(session.principal_id)
        if principal is None or principal.status in _INACTIVE:
            raise SessionNotFound()
        return principal

    def _check_not_locked(self, principal_id: str, context: RequestContext) -> None:
        try:
            self._lockout.check_allowed(principal_id)
        except AccountLocked as e:
            self._emit(
                AuditEventType.LOGIN_FAILURE,
                AuditResult.DENIED,
                principal_id=principal_id,
                context=context,
                details={"reason": "account_locked", "retryAfter": e.retry_after},
                risk_score=risk.event_risk("LOCKOUT"),
            )
            raise

    @staticmethod
    def _inline_method(
        principal: Principal, requested: MFAMethodType | None
    ) -> MFAMethodType | None:
        """The factor an inline token can be checked against, if unambiguous."""
        enabled = [m.type for m in principal.enabled_mfa_methods]
        if requested is not None:
            if requested in enabled and not requested.uses_one_time_code:
                return requested
            return None
        if len(enabled) == 1 and not enabled[0].uses_one_time_code:
            return enabled[0]
        return None

    def _verify_factor(
        self,
        principal: Principal,
        method: MFAMethodType,
        token: str,
        challenge: MFAChallenge | None,
        context: RequestContext,
    ) -> None:
        try:
            via = self._mfa.verify(principal, method, token, challenge)
        except MFAVerificationFailed:
            self._register_failure(
                principal.principal_id,
                AuditEventType.MFA_FAILURE,
                context,
                {"method": method.value},
            )
            raise
        self._emit(
            AuditEventType.MFA_SUCCESS,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            context=context,
            details={"method": method.value, "via": via},
        )

    def _register_failure(
        self,
        principal_id: str,
        event_type: AuditEventType,
        context: RequestContext,
        details: dict[str, Any],
    ) -> None:
        state = self._lockout.record_failure(principal_id)
        kind = "MFA_FAILURE" if event_type == AuditEventType.MFA_FAILURE else "LOGIN_FAILURE"
        self._emit(
            event_type,
            AuditResult.FAILURE,
            principal_id=principal_id,
            context=context,
            details={**details, "failedAttempts": state.failed_attempts},
            risk_score=risk.event_risk(kind),
        )
        if state.is_locked(self._clock()):
            self._emit(
                AuditEventType.LOCKOUT,
                AuditResult.SUCCESS,
                principal_id=principal_id,
                context=context,
                details={
                    "failedAttempts": state.failed_attempts,
                    "lockedUntil": state.locked_until.isoformat(),
                },
                risk_score=risk.event_risk("LOCKOUT"),
            )

    def _score(self, principal_id: str, context: RequestContext) -> float:
        return risk.score_login(
            context.ip_address,
            context.user_agent,
            failed_attempts=self._lockout.state(principal_id).failed_attempts,
            known_ip=self._sessions.is_known_ip(principal_id, context.ip_address),
        )

    def _complete(
        self,
        principal: Principal,
        context: RequestContext,
        mfa_verified: bool,
        risk_score: float,
        enrollment_required: bool = False,
    ) -> LoginResult:
        session, evicted = self._sessions.create(
            principal.principal_id, context, mfa_verified=mfa_verified, risk_score=risk_score
        )
        self._lockout.record_success(principal.principal_id)
        self._users.record_login(principal.principal_id)
        tokens = self._tokens.issue(principal, session)
        for sid in evicted:
            self._emit(
                AuditEventType.SESSION_EVICTED,
                AuditResult.SUCCESS,
                principal_id=principal.principal_id,
                session_id=sid,
                context=context,
                details={"reason": "concurrency_limit", "newSession": session.session_id},
                risk_score=risk.event_risk("SESSION_EVICTED"),
            )
        self._emit(
            AuditEventType.LOGIN_SUCCESS,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            session_id=session.session_id,
            context=context,
            details={"mfaVerified": mfa_verified, "enrollmentRequired": enrollment_required},
            risk_score=risk_score,
        )
        logger.info(
            "Principal %s logged in (mfa=%s, risk=%.2f)",
            principal.principal_id,
            mfa_verified,
            risk_score,
        )
        return LoginResult(
            principal=self._users.get(principal.principal_id) or principal,
            tokens=tokens,
            session_id=session.session_id,
            mfa_enrollment_required=enrollment_required,
            evicted_sessions=evicted,
        )

    def _emit(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        *,
        principal_id: str | None = None,
        session_id: str | None = None,
        context: RequestContext | None = None,
        details: dict[str, Any] | None = None,
        risk_score: float = 0.0,
    ) -> None:
        ctx = context or RequestContext()
        self._audit.record(
            AuditEvent(
                event_type=event_type,
                result=result,
                principal_id=principal_id,
                session_id=session_id,
                resource="auth",
                action=event_type.value.lower(),
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                details=details or {},
                risk_score=risk_score,
            )
        )
