"""Tamper-evident audit trail for authentication and authorization events."""

from __future__ import annotations

from bastion_iam.audit.models import (
    AuditEvent,
    AuditEventType,
    AuditPage,
    AuditQuery,
    AuditResult,
    ChainVerification,
)
from bastion_iam.audit.logger import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditPage",
    "AuditQuery",
    "AuditResult",
    "ChainVerification",
    "AuditLogger",
]
