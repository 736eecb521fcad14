"""Ordered, named authorization predicates.

A :class:`Policy` inspects an :class:`AuthContext` and returns a
:class:`PolicyDecision`. Routes declare a list of policies; :func:`evaluate`
runs them in order and stops at the first denial::

    decision = evaluate([authenticated(), require_roles("admin")], ctx)
    if not decision.allowed:
        ...  # 401 if decision.status == 401, else 403
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from bastion_iam.auth.models import Principal, Session
from bastion_iam.auth.permissions import PermissionEvaluator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """What an authorization decision may look at."""

    principal: Principal | None = None
    session: Session | None = None
    permissions: PermissionEvaluator | None = None
    mfa_required: bool = False


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    policy: str
    reason: str = ""
    status: int = 200  # 401 unauthenticated, 403 forbidden

    @classmethod
    def allow(cls, policy: str) -> PolicyDecision:
        return cls(allowed=True, policy=policy)

    @classmethod
    def deny(cls, policy: str, reason: str, status: int = 403) -> PolicyDecision:
        return cls(allowed=False, policy=policy, reason=reason, status=status)


@dataclass(frozen=True)
class Policy:
    name: str
    check: Callable[[AuthContext], PolicyDecision]

    def __call__(self, ctx: AuthContext) -> PolicyDecision:
        return self.check(ctx)


def authenticated() -> Policy:
    def check(ctx: AuthContext) -> PolicyDecision:
        if ctx.principal is None or ctx.session is None:
            return PolicyDecision.deny("authenticated", "Authentication required", status=401)
        return PolicyDecision.allow("authenticated")

    return Policy("authenticated", check)


def require_roles(*roles: str) -> Policy:
    """Allow if the principal holds any of *roles* directly."""
    name = f"require_roles({','.join(roles)})"
    wanted = set(roles)

    def check(ctx: AuthContext) -> PolicyDecision:
        if ctx.principal is None:
            return PolicyDecision.deny(name, "Authentication required", status=401)
        if wanted.intersection(ctx.principal.roles):
            return PolicyDecision.allow(name)
        logger.warning(
            "Role check failed: principal %s lacks any of %s",
            ctx.principal.principal_id,
            sorted(wanted),
        )
        return PolicyDecision.deny(name, "Insufficient permissions")

    return Policy(name, check)


def require_mfa() -> Policy:
    """Deny sessions that have not completed MFA when policy requires it.

    A session without MFA passes if the live policy does not require MFA.
    """

    def check(ctx: AuthContext) -> PolicyDecision:
        if ctx.session is None:
            return PolicyDecision.deny("require_mfa", "Authentication required", status=401)
        if ctx.mfa_required and not ctx.session.mfa_verified:
            return PolicyDecision.deny("require_mfa", "Multi-factor authentication required")
        return PolicyDecision.allow("require_mfa")

    return Policy("require_mfa", check)


def require_permission(resource: str, action: str) -> Policy:
    name = f"require_permission({resource}:{action})"

    def check(ctx: AuthContext) -> PolicyDecision:
        if ctx.principal is None:
            return PolicyDecision.deny(name, "Authentication required", status=401)
        if ctx.permissions is None:
            return PolicyDecision.deny(name, "Insufficient permissions")
        decision = ctx.permissions.check(ctx.principal.principal_id, resource, action)
        if decision.allowed:
            return PolicyDecision.allow(name)
        return PolicyDecision.deny(name, "Insufficient permissions")

    return Policy(name, check)


def evaluate(policies: list[Policy], ctx: AuthContext) -> PolicyDecision:
    """Run *policies* in order; the first denial wins. An empty list allows."""
    for policy in policies:
        decision = policy(ctx)
        if not decision.allowed:
            return decision
    return PolicyDecision.allow(policies[-1].name if policies else "none")
