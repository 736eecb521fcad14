"""Effective-permission resolution and allow/deny decisions.

A permission pattern is ``resource:action``. A pattern matches a request when
it is identical to ``resource:action`` or when it ends in ``*`` and the
request starts with the part before the star (``reports:*``, ``*``).

Decision order for one ``(principal, resource, action)``:

1. any matching denial (role denial or principal DENY grant) -> deny
2. any matching allow (direct role, group role, principal ALLOW grant) -> allow
3. otherwise -> deny
"""

from __future__ import annotations

import logging
import threading

from bastion_iam.auth.models import EffectivePermissions, GrantEffect, PermissionDecision
from bastion_iam.auth.user_store import RBACSnapshot, UserStore
from bastion_iam.store import Database

logger = logging.getLogger(__name__)


def pattern_matches(pattern: str, resource: str, action: str) -> bool:
    target = f"{resource}:{action}"
    if pattern.endswith("*"):
        return target.startswith(pattern[:-1])
    return pattern == target


def _first_match(patterns: dict[str, str], resource: str, action: str) -> str | None:
    for pattern in sorted(patterns):
        if pattern_matches(pattern, resource, action):
            return pattern
    return None


def resolve_effective(snapshot: RBACSnapshot) -> EffectivePermissions:
    """Flatten a snapshot into pattern -> source maps."""
    allow: dict[str, str] = {}
    deny: dict[str, str] = {}
    for role in snapshot.direct_roles:
        for p in role.permissions:
            allow.setdefault(p, f"role:{role.name}")
        for p in role.denials:
            deny.setdefault(p, f"role:{role.name}")
    for group, role in snapshot.group_roles:
        for p in role.permissions:
            allow.setdefault(p, f"group:{group}/role:{role.name}")
        for p in role.denials:
            deny.setdefault(p, f"group:{group}/role:{role.name}")
    for grant in snapshot.grants:
        target = deny if grant.effect == GrantEffect.DENY else allow
        target.setdefault(grant.pattern, "direct")
    return EffectivePermissions(
        principal_id=snapshot.principal_id,
        allow=dict(sorted(allow.items())),
        deny=dict(sorted(deny.items())),
        version=snapshot.version,
    )


class PermissionEvaluator:
    """Answers permission checks from a per-principal cache.

    Cache entries are stamped with the database RBAC version. Any role,
    group or grant change (from any process) bumps that version, so a stale
    entry is detected on the next check and rebuilt.

    Args:
        users: Principal/RBAC repository.
        db: Shared database (for the version counter).
    """

    def __init__(self, users: UserStore, db: Database) -> None:
        self._users = users
        self._db = db
        self._cache: dict[str, EffectivePermissions] = {}
        self._lock = threading.Lock()

    def effective_permissions(self, principal_id: str) -> EffectivePermissions:
        version = self._db.rbac_version()
        with self._lock:
            cached = self._cache.get(principal_id)
        if cached is not None and cached.version == version:
            return cached
        effective = resolve_effective(self._users.rbac_snapshot(principal_id))
        with self._lock:
            self._cache[principal_id] = effective
        logger.debug(
            "Resolved %d allow / %d deny pattern(s) for %s at RBAC v%d",
            len(effective.allow),
            len(effective.deny),
            principal_id,
            effective.version,
        )
        return effective

    def check(self, principal_id: str, resource: str, action: str) -> PermissionDecision:
        """Decide whether *principal_id* may perform *action* on *resource*."""
        effective = self.effective_permissions(principal_id)
        denied = _first_match(effective.deny, resource, action)
        if denied is not None:
            return PermissionDecision(
                allowed=False,
                reason=f"Explicitly denied by {effective.deny[denied]}",
                matched=denied,
            )
        allowed = _first_match(effective.allow, resource, action)
        if allowed is not None:
            return PermissionDecision(
                allowed=True,
                reason=f"Granted by {effective.allow[allowed]}",
                matched=allowed,
            )
        return PermissionDecision(allowed=False, reason="No matching permission")

    def invalidate(self, principal_id: str | None = None) -> None:
        with self._lock:
            if principal_id is None:
                self._cache.clear()
            else:
                self._cache.pop(principal_id, None)
