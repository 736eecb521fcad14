"""Pydantic models for the tamper-evident audit trail."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

GENESIS_HASH = "0" * 64


class AuditEventType(str, enum.Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOCKOUT = "LOCKOUT"
    UNLOCK = "UNLOCK"
    MFA_CHALLENGE = "MFA_CHALLENGE"
    MFA_SUCCESS = "MFA_SUCCESS"
    MFA_FAILURE = "MFA_FAILURE"
    MFA_SETUP = "MFA_SETUP"
    MFA_REVOKE = "MFA_REVOKE"
    LOGOUT = "LOGOUT"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_EVICTED = "SESSION_EVICTED"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PERMISSION_CHECK = "PERMISSION_CHECK"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PRINCIPAL_CHANGE = "PRINCIPAL_CHANGE"
    ROLE_CHANGE = "ROLE_CHANGE"
    CONFIG_CHANGE = "CONFIG_CHANGE"


class AuditResult(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    DENIED = "DENIED"


class AuditEvent(BaseModel):
    """One security-relevant action. Written once, never rewritten.

    ``sequence``, ``timestamp``, ``prev_hash`` and ``hash`` are assigned by
    the :class:`~bastion_iam.audit.logger.AuditLogger`.
    """

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sequence: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    principal_id: str | None = None
    session_id: str | None = None
    event_type: AuditEventType
    resource: str = ""
    action: str = ""
    result: AuditResult = AuditResult.SUCCESS
    ip_address: str = ""
    user_agent: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    risk_score: float = Field(default=0.0, ge=0.0, le=1.0)
    prev_hash: str = ""
    hash: str = ""


class AuditQuery(BaseModel):
    principal_id: str | None = None
    event_types: list[AuditEventType] = Field(default_factory=list)
    since: datetime | None = None
    until: datetime | None = None
    order: str = "asc"
    limit: int | None = None
    cursor: str | None = None

    @field_validator("order")
    @classmethod
    def _order(cls, v: str) -> str:
        v = v.lower()
        if v not in ("asc", "desc"):
            raise ValueError("order must be 'asc' or 'desc'")
        return v

    @field_validator("since", "until")
    @classmethod
    def _aware(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class AuditPage(BaseModel):
    events: list[AuditEvent] = Field(default_factory=list)
    next_cursor: str | None = None
    total: int = 0


class ChainVerification(BaseModel):
    """Result of re-computing the hash chain over every stored event."""

    ok: bool
    checked: int = 0
    broken_at: str | None = None  # event_id of the first bad link
    reason: str = ""
