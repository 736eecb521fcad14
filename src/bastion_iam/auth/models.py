"""Pydantic models for principals, credentials, MFA, sessions, lockout and RBAC."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, enum.Enum):
    """Lifecycle state of a principal. Principals are never deleted."""

    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    LOCKED = "LOCKED"
    PENDING = "PENDING"


class MFAMethodType(str, enum.Enum):
    TOTP = "TOTP"
    SMS = "SMS"
    EMAIL = "EMAIL"
    HARDWARE_TOKEN = "HARDWARE_TOKEN"
    BIOMETRIC = "BIOMETRIC"

    @property
    def uses_one_time_code(self) -> bool:
        """True for methods whose code is generated server-side per challenge."""
        return self in (MFAMethodType.SMS, MFAMethodType.EMAIL)


class GrantEffect(str, enum.Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class LockoutStatus(str, enum.Enum):
    OK = "OK"
    WARN = "WARN"
    LOCKED = "LOCKED"


class MFAMethod(BaseModel):
    """An enrolled second factor. Secrets never leave the core in API models."""

    type: MFAMethodType
    enabled: bool = True
    priority: int = 0
    secret: str = ""          # TOTP seed (base32)
    destination: str = ""     # phone number / e-mail address
    reference: str = ""       # hardware token id / biometric credential id
    last_used_step: int = -1  # highest accepted TOTP time step
    created_at: datetime = Field(default_factory=_utcnow)


class Principal(BaseModel):
    """A user account as seen by the IAM core."""

    principal_id: str
    username: str
    email: str = ""
    display_name: str = ""
    roles: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    mfa_methods: list[MFAMethod] = Field(default_factory=list)
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_login: datetime | None = None

    @property
    def enabled_mfa_methods(self) -> list[MFAMethod]:
        """Enabled methods, lowest priority value first (stable by type name)."""
        return sorted(
            (m for m in self.mfa_methods if m.enabled),
            key=lambda m: (m.priority, m.type.value),
        )

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.enabled_mfa_methods)

    def method(self, method_type: MFAMethodType) -> MFAMethod | None:
        for m in self.mfa_methods:
            if m.type == method_type:
                return m
        return None


class Credential(BaseModel):
    """Stored password hash. Replaced wholesale on password change."""

    principal_id: str
    password_hash: str
    algorithm: str
    updated_at: datetime = Field(default_factory=_utcnow)


class RequestContext(BaseModel):
    """Where a request came from."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
    device_id: str = ""


class Session(BaseModel):
    """Server-tracked authenticated context for one principal."""

    session_id: str
    principal_id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    device_id: str = ""
    mfa_verified: bool = False
    risk_score: float = Field(default=0.0, ge=0.0, le=1.0)
    revoked: bool = False
    revoked_at: datetime | None = None
    revoke_reason: str = ""

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class LockoutState(BaseModel):
    """Failed-attempt accounting for one principal."""

    principal_id: str
    failed_attempts: int = 0
    first_failure_at: datetime | None = None
    locked_until: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def status(self, now: datetime) -> LockoutStatus:
        if self.is_locked(now):
            return LockoutStatus.LOCKED
        if self.failed_attempts > 0:
            return LockoutStatus.WARN
        return LockoutStatus.OK


class MFAChallenge(BaseModel):
    """Short-lived token correlating the password step with the MFA step."""

    challenge_id: str
    principal_id: str
    created_at: datetime
    expires_at: datetime
    method: MFAMethodType | None = None
    otp_hash: str = ""
    otp_expires_at: datetime | None = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    device_id: str = ""
    consumed: bool = False

    def context(self) -> RequestContext:
        return RequestContext(
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            device_id=self.device_id,
        )


class Role(BaseModel):
    """Named set of permission patterns, plus explicit denials."""

    name: str
    description: str = ""
    permissions: list[str] = Field(default_factory=list)
    denials: list[str] = Field(default_factory=list)


class Group(BaseModel):
    """Named set of roles and principal memberships."""

    name: str
    description: str = ""
    roles: list[str] = Field(default_factory=list)
    members: list[str] = Field(default_factory=list)


class PermissionGrant(BaseModel):
    """Per-principal override: a direct allow or deny of a pattern."""

    principal_id: str
    pattern: str
    effect: GrantEffect = GrantEffect.ALLOW


class EffectivePermissions(BaseModel):
    """Resolved permission snapshot for one principal.

    ``allow``/``deny`` map each pattern to the first source that contributed it
    (``role:<name>``, ``group:<name>/role:<name>`` or ``direct``), in sorted order.
    """

    principal_id: str
    allow: dict[str, str] = Field(default_factory=dict)
    deny: dict[str, str] = Field(default_factory=dict)
    version: int = 0


class PermissionDecision(BaseModel):
    allowed: bool
    reason: str
    matched: str | None = None


class LoginRequest(BaseModel):
    """Password step of a login, optionally carrying an inline second factor."""

    username: str
    password: str
    mfa_token: str | None = None
    mfa_method: MFAMethodType | None = None
    device_id: str = ""


class TokenBundle(BaseModel):
    access_token: str
    refresh_token: str
    id_token: str
    expires_in: int
    token_type: str = "Bearer"


class MFAEnrollment(BaseModel):
    """Method-specific payload returned by MFA setup."""

    method: MFAMethodType
    enabled: bool
    priority: int
    secret: str | None = None
    provisioning_uri: str | None = None
    backup_codes: list[str] | None = None
    masked_destination: str | None = None
    reference: str | None = None


class LoginResult(BaseModel):
    """Outcome of a login or MFA verification step.

    Either ``tokens``/``session_id`` are set (fully authenticated) or
    ``mfa_required`` is true and only the challenge fields are set.
    """

    principal: Principal | None = None
    tokens: TokenBundle | None = None
    session_id: str | None = None
    mfa_required: bool = False
    mfa_challenge: str | None = None
    mfa_methods: list[MFAMethodType] = Field(default_factory=list)
    mfa_enrollment_required: bool = False
    evicted_sessions: list[str] = Field(default_factory=list)
