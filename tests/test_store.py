"""Tests for the SQLite store of record and the live policy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from bastion_iam.auth import passwords
from bastion_iam.auth.models import LoginRequest, Role
from bastion_iam.auth.user_store import UserStore
from bastion_iam.config import IAMPolicy
from bastion_iam.errors import ConfigurationError, StoreUnavailable
from bastion_iam.service import IAMService
from bastion_iam.store import Database, PolicyStore, parse_ts, ts

from conftest import PASSWORD


@pytest.fixture
def db():
    """In-memory SQLite store, discarded after each test."""
    return Database(":memory:")


class TestTimestamps:
    def test_fixed_width_utc(self):
        dt = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)
        assert ts(dt) == "2026-10-18T09:00:00.000000+00:00"

    def test_offsets_normalised(self):
        local = datetime(2026, 10, 18, 11, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert ts(local) == "2026-10-18T09:00:00.000000+00:00"

    def test_text_order_matches_time_order(self):
        a = datetime(2026, 10, 18, 9, 0, 0, 999, tzinfo=timezone.utc)
        b = datetime(2026, 10, 18, 9, 0, 1, tzinfo=timezone.utc)
        assert ts(a) < ts(b)

    def test_round_trip_and_none(self):
        dt = datetime(2026, 10, 18, 9, 0, 0, 123456, tzinfo=timezone.utc)
        assert parse_ts(ts(dt)) == dt
        assert ts(None) is None
        assert parse_ts(None) is None


class TestDatabase:
    def test_schema_and_ping(self, db):
        assert db.ping()
        assert db.rbac_version() == 0
        assert db.path == ":memory:"

    def test_bump_rbac_version(self, db):
        with db.connect(write=True) as conn:
            Database.bump_rbac_version(conn)
            Database.bump_rbac_version(conn)
        assert db.rbac_version() == 2

    def test_write_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db.connect(write=True) as conn:
                conn.execute("INSERT INTO meta (key, value) VALUES ('rollback-check', '1')")
                raise RuntimeError("abort")
        with db.connect() as conn:
            assert conn.execute("SELECT 1 FROM meta WHERE key = 'rollback-check'").fetchone() is None

    def test_sqlite_errors_become_store_unavailable(self, db):
        with pytest.raises(StoreUnavailable):
            with db.connect() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_file_database(self, tmp_path):
        path = tmp_path / "nested" / "iam.db"
        db = Database(path)
        assert path.exists()
        assert db.ping()

    def test_snapshot_reads_while_writer_holds_lock(self, tmp_path):
        db = Database(tmp_path / "iam.db", busy_timeout=0.2)
        with db.connect(write=True) as writer:
            Database.bump_rbac_version(writer)
            with db.connect(snapshot=True) as reader:
                row = reader.execute(
                    "SELECT value FROM meta WHERE key = 'rbac_version'"
                ).fetchone()
                assert row["value"] == "0"
        assert db.rbac_version() == 1

    def test_rbac_snapshot_does_not_wait_for_writers(self, tmp_path, clock):
        db = Database(tmp_path / "iam.db", busy_timeout=0.2)
        users = UserStore(db, clock)
        users.define_role(Role(name="reader", permissions=["reports:read"]))
        hashed, algorithm = passwords.hash_password(PASSWORD, rounds=4)
        alice = users.create_principal("alice", hashed, algorithm, roles=["reader"])
        with db.connect(write=True):
            snap = users.rbac_snapshot(alice.principal_id)
        assert [r.name for r in snap.direct_roles] == ["reader"]
        assert snap.version == db.rbac_version()


class TestPolicyStore:
    def test_seed_only_on_first_use(self, db):
        PolicyStore(db, IAMPolicy())
        store = PolicyStore(db, IAMPolicy.model_validate({"security": {"maxLoginAttempts": 9}}))
        assert store.get().security.max_login_attempts == 5

    def test_update_returns_old_and_new(self, db):
        store = PolicyStore(db, IAMPolicy())
        old, new = store.update({"session": {"timeout": 30}})
        assert old.session.timeout == 60
        assert new.session.timeout == 30
        assert store.get().session.timeout == 30

    def test_invalid_update_leaves_policy_unchanged(self, db):
        store = PolicyStore(db, IAMPolicy())
        with pytest.raises(ConfigurationError):
            store.update({"security": {"lockoutDuration": -1}})
        assert store.get() == IAMPolicy()


class TestSharedStore:
    """Two service instances on one database file behave like two replicas."""

    @pytest.fixture
    def replicas(self, iam_config, tmp_path, clock, sender):
        cfg = {**iam_config, "storage": {"db_path": str(tmp_path / "iam.db")}}
        first = IAMService(cfg, clock=clock, code_sender=sender)
        second = IAMService(cfg, clock=clock, code_sender=sender)
        yield first, second
        first.close()
        second.close()

    def test_policy_change_seen_by_other_replica(self, replicas):
        first, second = replicas
        first.update_policy({"security": {"maxLoginAttempts": 2}})
        assert second.get_policy().security.max_login_attempts == 2

    def test_rbac_change_invalidates_other_replica_cache(self, replicas):
        first, second = replicas
        alice = first.create_principal("alice", PASSWORD)
        first.define_role(Role(name="reader", permissions=["reports:read"]))
        first.assign_role("alice", "reader")
        assert second.permissions.check(alice.principal_id, "reports", "read").allowed

        first.assign_role("alice", "reader", remove=True)
        assert not second.permissions.check(alice.principal_id, "reports", "read").allowed

    def test_session_from_one_replica_valid_on_other(self, replicas, ctx):
        first, second = replicas
        first.create_principal("alice", PASSWORD)
        result = first.authenticator.login(LoginRequest(username="alice", password=PASSWORD), ctx)
        principal, _ = second.authenticator.resolve(result.tokens.access_token)
        assert principal.username == "alice"
