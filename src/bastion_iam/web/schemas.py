"""Request and response bodies for the HTTP API (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bastion_iam.audit.models import AuditEvent, AuditPage
from bastion_iam.auth.models import (
    AccountStatus,
    LoginResult,
    MFAEnrollment,
    MFAMethodType,
    Principal,
    Session,
    TokenBundle,
)


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self, **kwargs: Any) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", **kwargs)


# ---- Requests ----

class LoginBody(_Wire):
    username: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=1, max_length=1024)
    mfa_token: str | None = Field(default=None, max_length=64)
    mfa_method: MFAMethodType | None = None
    device_id: str = Field(default="", max_length=256)


class MFAChallengeBody(_Wire):
    challenge: str = Field(min_length=1)
    method: MFAMethodType


class MFAVerifyBody(_Wire):
    challenge: str = Field(min_length=1)
    code: str = Field(min_length=1, max_length=4096)
    method: MFAMethodType | None = None


class RefreshBody(_Wire):
    refresh_token: str = Field(min_length=1)


class MFASetupBody(_Wire):
    method: MFAMethodType
    enabled: bool = True
    priority: int = Field(default=0, ge=0, le=100)
    destination: str | None = Field(default=None, max_length=320)
    reference: str | None = Field(default=None, max_length=512)


class PermissionCheckBody(_Wire):
    resource: str = Field(min_length=1, max_length=256)
    action: str = Field(min_length=1, max_length=128)


# ---- Responses ----

class MFAMethodSummary(_Wire):
    type: MFAMethodType
    enabled: bool
    priority: int


class PrincipalSummary(_Wire):
    """A principal as shown to clients: no credentials, no MFA secrets."""

    principal_id: str
    username: str
    email: str
    display_name: str
    roles: list[str]
    groups: list[str]
    status: AccountStatus
    mfa_methods: list[MFAMethodSummary]
    created_at: datetime
    last_login: datetime | None = None

    @classmethod
    def from_principal(cls, p: Principal) -> PrincipalSummary:
        return cls(
            principal_id=p.principal_id,
            username=p.username,
            email=p.email,
            display_name=p.display_name,
            roles=p.roles,
            groups=p.groups,
            status=p.status,
            mfa_methods=[
                MFAMethodSummary(type=m.type, enabled=m.enabled, priority=m.priority)
                for m in p.mfa_methods
            ],
            created_at=p.created_at,
            last_login=p.last_login,
        )


class TokenBundleOut(_Wire):
    access_token: str
    refresh_token: str
    id_token: str
    expires_in: int
    token_type: str

    @classmethod
    def from_bundle(cls, b: TokenBundle) -> TokenBundleOut:
        return cls(**b.model_dump())


class LoginResponse(_Wire):
    success: bool = True
    principal: PrincipalSummary | None = None
    tokens: TokenBundleOut | None = None
    session_id: str | None = None
    mfa_required: bool = False
    mfa_challenge: str | None = None
    mfa_methods: list[MFAMethodType] | None = None
    mfa_enrollment_required: bool = False

    @classmethod
    def from_result(cls, r: LoginResult) -> LoginResponse:
        if r.mfa_required:
            # no principal detail or tokens before the second factor
            return cls(mfa_required=True, mfa_challenge=r.mfa_challenge, mfa_methods=r.mfa_methods)
        return cls(
            principal=PrincipalSummary.from_principal(r.principal) if r.principal else None,
            tokens=TokenBundleOut.from_bundle(r.tokens) if r.tokens else None,
            session_id=r.session_id,
            mfa_enrollment_required=r.mfa_enrollment_required,
        )


class MFAChallengeResponse(_Wire):
    challenge: str
    method: MFAMethodType
    expires_at: datetime
    masked_destination: str | None = None


class MFASetupResponse(_Wire):
    method: MFAMethodType
    enabled: bool
    priority: int
    secret: str | None = None
    provisioning_uri: str | None = None
    backup_codes: list[str] | None = None
    masked_destination: str | None = None
    reference: str | None = None

    @classmethod
    def from_enrollment(cls, e: MFAEnrollment) -> MFASetupResponse:
        return cls(**e.model_dump())


class PermissionCheckResponse(_Wire):
    allowed: bool
    reason: str


class SessionOut(_Wire):
    session_id: str
    principal_id: str
    ip_address: str
    user_agent: str
    device_id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    mfa_verified: bool
    risk_score: float
    current: bool = False

    @classmethod
    def from_session(cls, s: Session, current_id: str | None = None) -> SessionOut:
        return cls(
            session_id=s.session_id,
            principal_id=s.principal_id,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            device_id=s.device_id,
            created_at=s.created_at,
            last_activity=s.last_activity,
            expires_at=s.expires_at,
            mfa_verified=s.mfa_verified,
            risk_score=s.risk_score,
            current=s.session_id == current_id,
        )


class SessionsResponse(_Wire):
    sessions: list[SessionOut]
    total: int


class AuditEventOut(_Wire):
    event_id: str
    sequence: int
    timestamp: datetime
    principal_id: str | None
    session_id: str | None
    event_type: str
    resource: str
    action: str
    result: str
    ip_address: str
    user_agent: str
    details: dict[str, Any]
    risk_score: float
    prev_hash: str
    hash: str


class AuditPageOut(_Wire):
    events: list[AuditEventOut]
    next_cursor: str | None = None
    total: int

    @classmethod
    def from_page(cls, page: AuditPage) -> AuditPageOut:
        return cls(
            events=[AuditEventOut(**_event_fields(e)) for e in page.events],
            next_cursor=page.next_cursor,
            total=page.total,
        )


def _event_fields(e: AuditEvent) -> dict[str, Any]:
    data = e.model_dump()
    data["event_type"] = e.event_type.value
    data["result"] = e.result.value
    return data
