"""Authentication and authorization core for Bastion-IAM."""

from __future__ import annotations

from bastion_iam.auth.models import (
    AccountStatus,
    LoginRequest,
    LoginResult,
    MFAMethodType,
    Principal,
    RequestContext,
    Session,
)
from bastion_iam.auth.authenticator import Authenticator
from bastion_iam.auth.authorizer import (
    AuthContext,
    PolicyDecision,
    authenticated,
    evaluate,
    require_mfa,
    require_permission,
    require_roles,
)

__all__ = [
    "AccountStatus",
    "LoginRequest",
    "LoginResult",
    "MFAMethodType",
    "Principal",
    "RequestContext",
    "Session",
    "Authenticator",
    "AuthContext",
    "PolicyDecision",
    "authenticated",
    "evaluate",
    "require_mfa",
    "require_permission",
    "require_roles",
]
