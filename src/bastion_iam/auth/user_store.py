"""SQLite repository for principals, credentials, MFA enrolments and RBAC."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field

from bastion_iam.auth.models import (
    AccountStatus,
    Credential,
    GrantEffect,
    Group,
    MFAMethod,
    MFAMethodType,
    PermissionGrant,
    Principal,
    Role,
)
from bastion_iam.errors import ConfigurationError, PrincipalNotFound
from bastion_iam.store import Clock, Database, parse_ts, ts, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RBACSnapshot:
    """Everything that contributes to one principal's permissions, read at one version."""

    principal_id: str
    version: int
    direct_roles: list[Role] = field(default_factory=list)
    group_roles: list[tuple[str, Role]] = field(default_factory=list)
    grants: list[PermissionGrant] = field(default_factory=list)


def _normalise_username(username: str) -> str:
    return username.strip().lower()


class UserStore:
    """Principal/credential/RBAC persistence.

    Args:
        db: Shared database.
        clock: Source of "now" (injectable for tests).
    """

    def __init__(self, db: Database, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or utcnow

    # ---- Principals ----

    def create_principal(
        self,
        username: str,
        password_hash: str,
        algorithm: str,
        *,
        email: str = "",
        display_name: str = "",
        status: AccountStatus = AccountStatus.ACTIVE,
        roles: list[str] | None = None,
    ) -> Principal:
        """Insert a principal and its credential. Raises ConfigurationError on duplicates."""
        name = _normalise_username(username)
        if not name:
            raise ConfigurationError("Username must not be empty")
        principal_id = f"p-{uuid.uuid4().hex[:16]}"
        now = ts(self._clock())
        with self._db.connect(write=True) as conn:
            exists = conn.execute(
                "SELECT 1 FROM principals WHERE username = ?", (name,)
            ).fetchone()
            if exists:
                raise ConfigurationError(f"Username '{name}' already exists")
            conn.execute(
                "INSERT INTO principals (principal_id, username, email, display_name, "
                "status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (principal_id, name, email, display_name, status.value, now, now),
            )
            conn.execute(
                "INSERT INTO credentials (principal_id, password_hash, algorithm, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (principal_id, password_hash, algorithm, now),
            )
            conn.execute(
                "INSERT INTO lockouts (principal_id, failed_attempts) VALUES (?, 0)",
                (principal_id,),
            )
            for role in roles or []:
                conn.execute(
                    "INSERT OR IGNORE INTO principal_roles (principal_id, role) VALUES (?, ?)",
                    (principal_id, role),
                )
            if roles:
                Database.bump_rbac_version(conn)
            row = conn.execute(
                "SELECT * FROM principals WHERE principal_id = ?", (principal_id,)
            ).fetchone()
            principal = self._principal_from_row(conn, row)
        logger.info("Created principal %s (%s)", principal_id, name)
        return principal

    def get(self, principal_id: str) -> Principal | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM principals WHERE principal_id = ?", (principal_id,)
            ).fetchone()
            return self._principal_from_row(conn, row) if row else None

    def get_by_username(self, username: str) -> Principal | None:
        """Case-insensitive lookup."""
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM principals WHERE username = ?", (_normalise_username(username),)
            ).fetchone()
            return self._principal_from_row(conn, row) if row else None

    def require(self, principal_id: str) -> Principal:
        principal = self.get(principal_id)
        if principal is None:
            raise PrincipalNotFound()
        return principal

    def resolve(self, principal_id_or_username: str) -> Principal:
        """Look a principal up by id, falling back to username (admin tooling)."""
        principal = self.get(principal_id_or_username) or self.get_by_username(
            principal_id_or_username
        )
        if principal is None:
            raise PrincipalNotFound(f"Principal '{principal_id_or_username}' not found")
        return principal

    def list_principals(self) -> list[Principal]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT * FROM principals ORDER BY created_at, username").fetchall()
            return [self._principal_from_row(conn, r) for r in rows]

    def set_status(self, principal_id: str, status: AccountStatus) -> bool:
        """Returns True if the principal exists."""
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "UPDATE principals SET status = ?, updated_at = ? WHERE principal_id = ?",
                (status.value, ts(self._clock()), principal_id),
            )
        if cur.rowcount > 0:
            logger.info("Principal %s status set to %s", principal_id, status.value)
            return True
        return False

    def record_login(self, principal_id: str) -> None:
        with self._db.connect(write=True) as conn:
            conn.execute(
                "UPDATE principals SET last_login = ? WHERE principal_id = ?",
                (ts(self._clock()), principal_id),
            )

    def _principal_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Principal:
        pid = row["principal_id"]
        roles = [
            r["role"]
            for r in conn.execute(
                "SELECT role FROM principal_roles WHERE principal_id = ? ORDER BY role", (pid,)
            )
        ]
        groups = [
            r["group_name"]
            for r in conn.execute(
                "SELECT group_name FROM group_members WHERE principal_id = ? ORDER BY group_name",
                (pid,),
            )
        ]
        methods = [
            MFAMethod(
                type=MFAMethodType(m["type"]),
                enabled=bool(m["enabled"]),
                priority=m["priority"],
                secret=m["secret"],
                destination=m["destination"],
                reference=m["reference"],
                last_used_step=m["last_used_step"],
                created_at=parse_ts(m["created_at"]),
            )
            for m in conn.execute(
                "SELECT * FROM mfa_methods WHERE principal_id = ? ORDER BY priority, type",
                (pid,),
            )
        ]
        status = AccountStatus(row["status"])
        if status == AccountStatus.LOCKED and not self._lock_in_force(conn, pid):
            # lock window elapsed; the stored row is cleared on the next login attempt
            status = AccountStatus.ACTIVE
        return Principal(
            principal_id=pid,
            username=row["username"],
            email=row["email"],
            display_name=row["display_name"],
            roles=roles,
            groups=groups,
            mfa_methods=methods,
            status=status,
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            last_login=parse_ts(row["last_login"]),
        )

    def _lock_in_force(self, conn: sqlite3.Connection, principal_id: str) -> bool:
        row = conn.execute(
            "SELECT locked_until FROM lockouts WHERE principal_id = ?", (principal_id,)
        ).fetchone()
        return bool(row and row["locked_until"] and row["locked_until"] > ts(self._clock()))

    # ---- Credentials ----

    def get_credential(self, principal_id: str) -> Credential | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE principal_id = ?", (principal_id,)
            ).fetchone()
        if row is None:
            return None
        return Credential(
            principal_id=row["principal_id"],
            password_hash=row["password_hash"],
            algorithm=row["algorithm"],
            updated_at=parse_ts(row["updated_at"]),
        )

    def set_credential(self, principal_id: str, password_hash: str, algorithm: str) -> None:
        """Replace the stored credential wholesale."""
        now = ts(self._clock())
        with self._db.connect(write=True) as conn:
            conn.execute(
                "INSERT INTO credentials (principal_id, password_hash, algorithm, updated_at) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(principal_id) DO UPDATE SET "
                "password_hash = excluded.password_hash, algorithm = excluded.algorithm, "
                "updated_at = excluded.updated_at",
                (principal_id, password_hash, algorithm, now),
            )

    # ---- MFA enrolments ----

    def upsert_mfa_method(self, principal_id: str, method: MFAMethod) -> None:
        with self._db.connect(write=True) as conn:
            conn.execute(
                "INSERT INTO mfa_methods (principal_id, type, enabled, priority, secret, "
                "destination, reference, last_used_step, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(principal_id, type) DO UPDATE SET enabled = excluded.enabled, "
                "priority = excluded.priority, secret = excluded.secret, "
                "destination = excluded.destination, reference = excluded.reference, "
                "last_used_step = excluded.last_used_step",
                (
                    principal_id,
                    method.type.value,
                    int(method.enabled),
                    method.priority,
                    method.secret,
                    method.destination,
                    method.reference,
                    method.last_used_step,
                    ts(method.created_at),
                ),
            )

    def delete_mfa_method(self, principal_id: str, method_type: MFAMethodType) -> bool:
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "DELETE FROM mfa_methods WHERE principal_id = ? AND type = ?",
                (principal_id, method_type.value),
            )
            if method_type == MFAMethodType.TOTP:
                conn.execute("DELETE FROM backup_codes WHERE principal_id = ?", (principal_id,))
        return cur.rowcount > 0

    def advance_totp_step(self, principal_id: str, step: int) -> bool:
        """Record *step* as used. False if it is not newer than the last accepted step."""
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "UPDATE mfa_methods SET last_used_step = ? "
                "WHERE principal_id = ? AND type = ? AND last_used_step < ?",
                (step, principal_id, MFAMethodType.TOTP.value, step),
            )
        return cur.rowcount == 1

    def replace_backup_codes(self, principal_id: str, code_hashes: list[str]) -> None:
        with self._db.connect(write=True) as conn:
            conn.execute("DELETE FROM backup_codes WHERE principal_id = ?", (principal_id,))
            conn.executemany(
                "INSERT OR IGNORE INTO backup_codes (principal_id, code_hash) VALUES (?, ?)",
                [(principal_id, h) for h in code_hashes],
            )

    def consume_backup_code(self, principal_id: str, code_hash: str) -> bool:
        """Delete a matching backup code. True only for the caller that removed it."""
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "DELETE FROM backup_codes WHERE principal_id = ? AND code_hash = ?",
                (principal_id, code_hash),
            )
        return cur.rowcount == 1

    def backup_code_count(self, principal_id: str) -> int:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS cnt FROM backup_codes WHERE principal_id = ?", (principal_id,)
            ).fetchone()
        return row["cnt"]

    # ---- RBAC ----
    # Every mutation bumps the RBAC version in the same transaction.

    def define_role(self, role: Role) -> None:
        """Create or replace a role and its permission/denial patterns."""
        with self._db.connect(write=True) as conn:
            conn.execute(
                "INSERT INTO roles (name, description) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET description = excluded.description",
                (role.name, role.description),
            )
            conn.execute("DELETE FROM role_permissions WHERE role = ?", (role.name,))
            conn.executemany(
                "INSERT OR IGNORE INTO role_permissions (role, pattern, effect) VALUES (?, ?, ?)",
                [(role.name, p, GrantEffect.ALLOW.value) for p in role.permissions]
                + [(role.name, p, GrantEffect.DENY.value) for p in role.denials],
            )
            Database.bump_rbac_version(conn)
        logger.info("Defined role '%s'", role.name)

    def get_role(self, name: str) -> Role | None:
        with self._db.connect() as conn:
            return self._load_role(conn, name)

    def list_roles(self) -> list[Role]:
        with self._db.connect() as conn:
            names = [r["name"] for r in conn.execute("SELECT name FROM roles ORDER BY name")]
            return [r for r in (self._load_role(conn, n) for n in names) if r is not None]

    def define_group(self, group: Group) -> None:
        """Create or replace a group's description and role list (members are kept)."""
        with self._db.connect(write=True) as conn:
            conn.execute(
                "INSERT INTO groups (name, description) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET description = excluded.description",
                (group.name, group.description),
            )
            conn.execute("DELETE FROM group_roles WHERE group_name = ?", (group.name,))
            conn.executemany(
                "INSERT OR IGNORE INTO group_roles (group_name, role) VALUES (?, ?)",
                [(group.name, r) for r in group.roles],
            )
            conn.executemany(
                "INSERT OR IGNORE INTO group_members (group_name, principal_id) VALUES (?, ?)",
                [(group.name, m) for m in group.members],
            )
            Database.bump_rbac_version(conn)
        logger.info("Defined group '%s'", group.name)

    def list_groups(self) -> list[Group]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT * FROM groups ORDER BY name").fetchall()
            groups = []
            for row in rows:
                roles = [
                    r["role"]
                    for r in conn.execute(
                        "SELECT role FROM group_roles WHERE group_name = ? ORDER BY role",
                        (row["name"],),
                    )
                ]
                members = [
                    r["principal_id"]
                    for r in conn.execute(
                        "SELECT principal_id FROM group_members WHERE group_name = ? "
                        "ORDER BY principal_id",
                        (row["name"],),
                    )
                ]
                groups.append(
                    Group(
                        name=row["name"],
                        description=row["description"],
                        roles=roles,
                        members=members,
                    )
                )
            return groups

    def assign_role(self, principal_id: str, role: str, *, remove: bool = False) -> bool:
        """Attach (or detach) a role directly to a principal. Returns True on change."""
        with self._db.connect(write=True) as conn:
            if remove:
                cur = conn.execute(
                    "DELETE FROM principal_roles WHERE principal_id = ? AND role = ?",
                    (principal_id, role),
                )
            else:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO principal_roles (principal_id, role) VALUES (?, ?)",
                    (principal_id, role),
                )
            if cur.rowcount:
                Database.bump_rbac_version(conn)
        return cur.rowcount > 0

    def add_group_member(self, group: str, principal_id: str, *, remove: bool = False) -> bool:
        with self._db.connect(write=True) as conn:
            if conn.execute("SELECT 1 FROM groups WHERE name = ?", (group,)).fetchone() is None:
                raise ConfigurationError(f"Group '{group}' is not defined")
            if remove:
                cur = conn.execute(
                    "DELETE FROM group_members WHERE group_name = ? AND principal_id = ?",
                    (group, principal_id),
                )
            else:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO group_members (group_name, principal_id) VALUES (?, ?)",
                    (group, principal_id),
                )
            if cur.rowcount:
                Database.bump_rbac_version(conn)
        return cur.rowcount > 0

    def grant(self, grant: PermissionGrant, *, remove: bool = False) -> bool:
        """Add (or remove) a direct ALLOW/DENY pattern for a principal."""
        with self._db.connect(write=True) as conn:
            if remove:
                cur = conn.execute(
                    "DELETE FROM principal_grants WHERE principal_id = ? AND pattern = ? "
                    "AND effect = ?",
                    (grant.principal_id, grant.pattern, grant.effect.value),
                )
            else:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO principal_grants (principal_id, pattern, effect) "
                    "VALUES (?, ?, ?)",
                    (grant.principal_id, grant.pattern, grant.effect.value),
                )
            if cur.rowcount:
                Database.bump_rbac_version(conn)
        return cur.rowcount > 0

    def rbac_snapshot(self, principal_id: str) -> RBACSnapshot:
        """Read roles, group roles and direct grants for a principal in one transaction."""
        # one read transaction so the version and the rows it stamps agree
        with self._db.connect(snapshot=True) as conn:
            version_row = conn.execute(
                "SELECT value FROM meta WHERE key = 'rbac_version'"
            ).fetchone()
            snap = RBACSnapshot(principal_id=principal_id, version=int(version_row["value"]))
            for r in conn.execute(
                "SELECT role FROM principal_roles WHERE principal_id = ? ORDER BY role",
                (principal_id,),
            ).fetchall():
                role = self._load_role(conn, r["role"])
                if role is not None:
                    snap.direct_roles.append(role)
            for r in conn.execute(
                "SELECT gr.group_name, gr.role FROM group_members gm "
                "JOIN group_roles gr ON gr.group_name = gm.group_name "
                "WHERE gm.principal_id = ? ORDER BY gr.group_name, gr.role",
                (principal_id,),
            ).fetchall():
                role = self._load_role(conn, r["role"])
                if role is not None:
                    snap.group_roles.append((r["group_name"], role))
            snap.grants = [
                PermissionGrant(
                    principal_id=principal_id,
                    pattern=g["pattern"],
                    effect=GrantEffect(g["effect"]),
                )
                for g in conn.execute(
                    "SELECT pattern, effect FROM principal_grants WHERE principal_id = ? "
                    "ORDER BY pattern, effect",
                    (principal_id,),
                )
            ]
        return snap

    @staticmethod
    def _load_role(conn: sqlite3.Connection, name: str) -> Role | None:
        row = conn.execute("SELECT * FROM roles WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        perms = conn.execute(
            "SELECT pattern, effect FROM role_permissions WHERE role = ? ORDER BY pattern",
            (name,),
        ).fetchall()
        return Role(
            name=row["name"],
            description=row["description"],
            permissions=[p["pattern"] for p in perms if p["effect"] == GrantEffect.ALLOW.value],
            denials=[p["pattern"] for p in perms if p["effect"] == GrantEffect.DENY.value],
        )
