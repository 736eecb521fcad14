"""The IAM service object: wires every component around one store of record.

Construct exactly one :class:`IAMService` per process and hand it to the
HTTP app or CLI; there is no module-level instance::

    service = IAMService(load_config())
    app = create_app(service)
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Any

from bastion_iam import __version__
from bastion_iam.audit.logger import AuditLogger
from bastion_iam.audit.models import (
    AuditEvent,
    AuditEventType,
    AuditPage,
    AuditQuery,
    AuditResult,
)
from bastion_iam.auth import passwords, risk
from bastion_iam.auth.authenticator import Authenticator
from bastion_iam.auth.authorizer import AuthContext
from bastion_iam.auth.credentials import CredentialVerifier
from bastion_iam.auth.lockout import LockoutGuard
from bastion_iam.auth.mfa import AttestationVerifier, CodeSender, MFAChallengeManager
from bastion_iam.auth.models import (
    AccountStatus,
    GrantEffect,
    Group,
    MFAEnrollment,
    MFAMethodType,
    PermissionDecision,
    PermissionGrant,
    Principal,
    RequestContext,
    Role,
    Session,
)
from bastion_iam.auth.permissions import PermissionEvaluator
from bastion_iam.auth.session_store import SessionStore
from bastion_iam.auth.sessions import SessionManager
from bastion_iam.auth.tokens import TokenSigner, load_or_create_secret
from bastion_iam.auth.user_store import UserStore
from bastion_iam.config import _DEFAULTS, IAMPolicy, _deep_merge
from bastion_iam.errors import ConfigurationError, PermissionDenied
from bastion_iam.store import Clock, Database, PolicyStore, utcnow

logger = logging.getLogger(__name__)

ELEVATED_ROLES = ("admin", "auditor")
ADMIN_ROLE = "admin"


def _policy_diff(old: IAMPolicy, new: IAMPolicy) -> dict[str, Any]:
    before, after = old.model_dump(by_alias=True), new.model_dump(by_alias=True)
    changes: dict[str, Any] = {}
    for section, values in after.items():
        for key, value in values.items():
            if before[section][key] != value:
                changes[f"{section}.{key}"] = {"from": before[section][key], "to": value}
    return changes


class IAMService:
    """Owns the IAM components and the administrative operations around them.

    Args:
        config: Loaded configuration dict (see :func:`bastion_iam.config.load_config`).
            Missing keys fall back to the built-in defaults.
        clock: Source of "now" shared by every component.
        code_sender: Delivery for SMS/EMAIL one-time codes.
        attestation_verifier: Checker for HARDWARE_TOKEN/BIOMETRIC assertions.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        clock: Clock | None = None,
        code_sender: CodeSender | None = None,
        attestation_verifier: AttestationVerifier | None = None,
    ) -> None:
        cfg = _deep_merge(_DEFAULTS, config or {})
        self._config = cfg
        self._clock = clock or utcnow
        storage, sec, sess, mfa_cfg, audit_cfg = (
            cfg["storage"],
            cfg["security"],
            cfg["session"],
            cfg["mfa"],
            cfg["audit"],
        )

        self.db = Database(storage["db_path"], busy_timeout=storage["busy_timeout_seconds"])
        self.policies = PolicyStore(self.db, IAMPolicy.from_config(cfg))
        self.users = UserStore(self.db, self._clock)
        self._bcrypt_rounds = int(sec.get("bcrypt_rounds", passwords.BCRYPT_ROUNDS))
        self.credentials = CredentialVerifier(self.users, self._bcrypt_rounds)
        self.lockout = LockoutGuard(self.db, lambda: self.policies.get().security, self._clock)
        self.sessions = SessionManager(
            SessionStore(self.db), lambda: self.policies.get().session, self._clock
        )
        self.permissions = PermissionEvaluator(self.users, self.db)
        self.mfa = MFAChallengeManager(
            self.db,
            self.users,
            issuer=mfa_cfg["issuer"],
            totp_window=mfa_cfg["totp_window"],
            backup_codes_count=mfa_cfg["backup_codes_count"],
            challenge_ttl=timedelta(minutes=mfa_cfg["challenge_ttl_minutes"]),
            otp_ttl=timedelta(minutes=mfa_cfg["otp_ttl_minutes"]),
            code_sender=code_sender,
            attestation_verifier=attestation_verifier,
            clock=self._clock,
        )
        self.tokens = TokenSigner(
            self._token_secret(sec.get("token_secret", ""), storage["db_path"]),
            access_ttl=timedelta(minutes=sess["access_token_minutes"]),
            clock=self._clock,
        )
        self.audit = AuditLogger(
            audit_cfg["dir"],
            background=audit_cfg["background"],
            fsync=audit_cfg["fsync"],
            default_page_size=audit_cfg["default_page_size"],
            max_page_size=audit_cfg["max_page_size"],
            clock=self._clock,
        )
        self.authenticator = Authenticator(
            self.users,
            self.credentials,
            self.lockout,
            self.mfa,
            self.sessions,
            self.tokens,
            self.audit,
            self.policies.get,
            self._clock,
        )
        logger.info("IAM service ready (profile=%s, db=%s)", cfg.get("profile"), self.db.path)

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    @staticmethod
    def _token_secret(configured: str, db_path: str) -> str:
        if configured:
            return configured
        if db_path == ":memory:":
            return secrets.token_hex(32)
        return load_or_create_secret(Path(db_path).expanduser().parent)

    # ---- Request-time helpers ----

    def auth_context(self, principal: Principal | None, session: Session | None) -> AuthContext:
        return AuthContext(
            principal=principal,
            session=session,
            permissions=self.permissions,
            mfa_required=self.policies.get().session.require_mfa,
        )

    @staticmethod
    def is_elevated(principal: Principal) -> bool:
        return any(r in principal.roles for r in ELEVATED_ROLES)

    def check_permission(
        self,
        principal: Principal,
        resource: str,
        action: str,
        *,
        session: Session | None = None,
        context: RequestContext | None = None,
    ) -> PermissionDecision:
        """Evaluate and audit one permission check."""
        decision = self.permissions.check(principal.principal_id, resource, action)
        self._emit(
            AuditEventType.PERMISSION_CHECK,
            AuditResult.SUCCESS if decision.allowed else AuditResult.DENIED,
            principal_id=principal.principal_id,
            session_id=session.session_id if session else None,
            context=context,
            resource=resource,
            action=action,
            details={"reason": decision.reason},
            risk_score=risk.event_risk(
                "PERMISSION_GRANTED" if decision.allowed else "PERMISSION_DENIED"
            ),
        )
        return decision

    # ---- Sessions ----

    def list_sessions(self, requester: Principal, principal_id: str | None = None) -> list[Session]:
        """Active sessions of *principal_id* (default: the requester).

        Raises:
            PermissionDenied: another principal's sessions without admin/auditor.
        """
        target = principal_id or requester.principal_id
        if target != requester.principal_id and not self.is_elevated(requester):
            raise PermissionDenied()
        return self.sessions.list_active(target)

    def revoke_session(
        self, requester: Principal, session_id: str, context: RequestContext | None = None
    ) -> bool:
        """Revoke one session. Non-admins may only revoke their own; others look absent."""
        session = self.sessions.get(session_id)
        if session is None or session.revoked:
            return False
        if session.principal_id != requester.principal_id and ADMIN_ROLE not in requester.roles:
            return False
        revoked = self.sessions.revoke(session_id, f"revoked_by:{requester.principal_id}")
        if revoked:
            self._emit(
                AuditEventType.SESSION_REVOKED,
                AuditResult.SUCCESS,
                principal_id=session.principal_id,
                session_id=session_id,
                context=context,
                details={"actor": requester.principal_id},
            )
        return revoked

    # ---- Self service ----

    def get_profile(self, principal_id: str) -> Principal:
        return self.users.require(principal_id)

    def setup_mfa(
        self,
        principal: Principal,
        method: MFAMethodType,
        *,
        enabled: bool = True,
        priority: int = 0,
        destination: str | None = None,
        reference: str | None = None,
        context: RequestContext | None = None,
    ) -> MFAEnrollment:
        enrollment = self.mfa.setup(
            principal,
            method,
            enabled=enabled,
            priority=priority,
            destination=destination,
            reference=reference,
        )
        self._emit(
            AuditEventType.MFA_SETUP,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            context=context,
            details={"method": method.value, "enabled": enabled, "priority": priority},
        )
        return enrollment

    def revoke_mfa(
        self, principal: Principal, method: MFAMethodType, context: RequestContext | None = None
    ) -> bool:
        removed = self.mfa.revoke(principal.principal_id, method)
        if removed:
            self._emit(
                AuditEventType.MFA_REVOKE,
                AuditResult.SUCCESS,
                principal_id=principal.principal_id,
                context=context,
                details={"method": method.value},
            )
        return removed

    def change_password(
        self,
        principal_id: str,
        new_password: str,
        *,
        current_password: str | None = None,
        keep_session: str | None = None,
        actor: str | None = None,
    ) -> list[str]:
        """Set a new password and revoke the principal's other sessions.

        Args:
            principal_id: Whose password changes.
            new_password: Must satisfy the live password policy.
            current_password: Required for self-service changes.
            keep_session: Session that survives the change (the caller's).
            actor: Administrator performing a reset, for the audit trail.

        Returns:
            IDs of the revoked sessions.
        """
        principal = self.users.require(principal_id)
        if current_password is not None:
            self.credentials.verify(principal.username, current_password, principal)
        passwords.check_password_policy(new_password, self.policies.get().password)
        self.credentials.set_password(principal_id, new_password)
        revoked = self.sessions.revoke_all(principal_id, "password_change", keep_session)
        self._emit(
            AuditEventType.PASSWORD_CHANGE,
            AuditResult.SUCCESS,
            principal_id=principal_id,
            details={"actor": actor or principal_id, "revokedSessions": len(revoked)},
        )
        return revoked

    # ---- Administration ----

    def create_principal(
        self,
        username: str,
        password: str,
        *,
        email: str = "",
        display_name: str = "",
        roles: list[str] | None = None,
        status: AccountStatus = AccountStatus.ACTIVE,
        actor: str = "system",
    ) -> Principal:
        if status == AccountStatus.LOCKED:
            raise ConfigurationError("A principal cannot be created locked")
        passwords.check_password_policy(password, self.policies.get().password)
        hashed, algorithm = passwords.hash_password(password, self._bcrypt_rounds)
        principal = self.users.create_principal(
            username,
            hashed,
            algorithm,
            email=email,
            display_name=display_name,
            status=status,
            roles=roles,
        )
        self._emit(
            AuditEventType.PRINCIPAL_CHANGE,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            details={"actor": actor, "change": "created", "roles": principal.roles},
        )
        return principal

    def set_status(
        self, principal_ref: str, status: AccountStatus, actor: str = "system"
    ) -> Principal:
        """Change a principal's lifecycle status. Suspending revokes every session."""
        if status == AccountStatus.LOCKED:
            raise ConfigurationError("LOCKED is set by the lockout guard only")
        principal = self.users.resolve(principal_ref)
        if principal.status == AccountStatus.LOCKED and status == AccountStatus.ACTIVE:
            self.lockout.unlock(principal.principal_id)
        self.users.set_status(principal.principal_id, status)
        revoked: list[str] = []
        if status != AccountStatus.ACTIVE:
            revoked = self.sessions.revoke_all(principal.principal_id, f"status:{status.value}")
        self._emit(
            AuditEventType.PRINCIPAL_CHANGE,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            details={
                "actor": actor,
                "change": "status",
                "from": principal.status.value,
                "to": status.value,
                "revokedSessions": len(revoked),
            },
        )
        return self.users.require(principal.principal_id)

    def unlock(self, principal_ref: str, actor: str = "system") -> bool:
        principal = self.users.resolve(principal_ref)
        unlocked = self.lockout.unlock(principal.principal_id)
        self._emit(
            AuditEventType.UNLOCK,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            details={"actor": actor, "wasLocked": unlocked},
        )
        return unlocked

    def define_role(self, role: Role, actor: str = "system") -> None:
        self.users.define_role(role)
        self.permissions.invalidate()
        self._emit(
            AuditEventType.ROLE_CHANGE,
            AuditResult.SUCCESS,
            details={
                "actor": actor,
                "change": "define_role",
                "role": role.name,
                "permissions": role.permissions,
                "denials": role.denials,
            },
        )

    def define_group(self, group: Group, actor: str = "system") -> None:
        missing = [r for r in group.roles if self.users.get_role(r) is None]
        if missing:
            raise ConfigurationError(f"Role(s) not defined: {', '.join(missing)}")
        self.users.define_group(group)
        self.permissions.invalidate()
        self._emit(
            AuditEventType.ROLE_CHANGE,
            AuditResult.SUCCESS,
            details={
                "actor": actor,
                "change": "define_group",
                "group": group.name,
                "roles": group.roles,
            },
        )

    def assign_role(
        self, principal_ref: str, role: str, *, remove: bool = False, actor: str = "system"
    ) -> bool:
        principal = self.users.resolve(principal_ref)
        if not remove and self.users.get_role(role) is None:
            raise ConfigurationError(f"Role '{role}' is not defined")
        changed = self.users.assign_role(principal.principal_id, role, remove=remove)
        self.permissions.invalidate(principal.principal_id)
        self._emit(
            AuditEventType.ROLE_CHANGE,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            details={
                "actor": actor,
                "change": "unassign_role" if remove else "assign_role",
                "role": role,
                "changed": changed,
            },
        )
        return changed

    def add_group_member(
        self, group: str, principal_ref: str, *, remove: bool = False, actor: str = "system"
    ) -> bool:
        principal = self.users.resolve(principal_ref)
        changed = self.users.add_group_member(group, principal.principal_id, remove=remove)
        self.permissions.invalidate(principal.principal_id)
        self._emit(
            AuditEventType.ROLE_CHANGE,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            details={
                "actor": actor,
                "change": "remove_member" if remove else "add_member",
                "group": group,
                "changed": changed,
            },
        )
        return changed

    def grant(
        self,
        principal_ref: str,
        pattern: str,
        effect: GrantEffect = GrantEffect.ALLOW,
        *,
        remove: bool = False,
        actor: str = "system",
    ) -> bool:
        principal = self.users.resolve(principal_ref)
        changed = self.users.grant(
            PermissionGrant(principal_id=principal.principal_id, pattern=pattern, effect=effect),
            remove=remove,
        )
        self.permissions.invalidate(principal.principal_id)
        self._emit(
            AuditEventType.ROLE_CHANGE,
            AuditResult.SUCCESS,
            principal_id=principal.principal_id,
            details={
                "actor": actor,
                "change": "revoke_grant" if remove else "grant",
                "pattern": pattern,
                "effect": effect.value,
                "changed": changed,
            },
        )
        return changed

    # ---- Policy ----

    def get_policy(self) -> IAMPolicy:
        return self.policies.get()

    def update_policy(self, patch: dict[str, Any], actor: str = "system") -> IAMPolicy:
        """Apply a partial policy update (camelCase or snake_case keys).

        Raises:
            ConfigurationError: unknown keys or out-of-range values.
        """
        old, new = self.policies.update(patch)
        changes = _policy_diff(old, new)
        self._emit(
            AuditEventType.CONFIG_CHANGE,
            AuditResult.SUCCESS,
            details={"actor": actor, "changes": changes},
        )
        logger.info("IAM policy updated by %s: %s", actor, ", ".join(changes) or "no changes")
        return new

    # ---- Audit / health / lifecycle ----

    def query_audit(self, query: AuditQuery | None = None) -> AuditPage:
        return self.audit.query(query)

    def health(self) -> dict[str, Any]:
        db_ok = self.db.ping()
        return {
            "status": "ok" if db_ok else "degraded",
            "database": db_ok,
            "version": __version__,
        }

    def close(self) -> None:
        self.audit.close()
        logger.info("IAM service closed")

    def _emit(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        *,
        principal_id: str | None = None,
        session_id: str | None = None,
        context: RequestContext | None = None,
        resource: str = "iam",
        action: str = "",
        details: dict[str, Any] | None = None,
        risk_score: float = 0.0,
    ) -> None:
        ctx = context or RequestContext()
        self.audit.record(
            AuditEvent(
                event_type=event_type,
                result=result,
                principal_id=principal_id,
                session_id=session_id,
                resource=resource,
                action=action or event_type.value.lower(),
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                details=details or {},
                risk_score=risk_score,
            )
        )
