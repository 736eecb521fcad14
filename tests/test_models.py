"""Tests for the IAM data models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from bastion_iam.audit.models import AuditEvent, AuditEventType, AuditQuery, AuditResult
from bastion_iam.auth.models import (
    AccountStatus,
    LockoutState,
    LockoutStatus,
    MFAMethod,
    MFAMethodType,
    Principal,
    Session,
)

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


class TestEnums:
    def test_values_are_wire_names(self):
        assert AccountStatus.LOCKED.value == "LOCKED"
        assert MFAMethodType.HARDWARE_TOKEN.value == "HARDWARE_TOKEN"
        assert AuditResult("DENIED") == AuditResult.DENIED

    def test_one_time_code_methods(self):
        assert MFAMethodType.SMS.uses_one_time_code
        assert MFAMethodType.EMAIL.uses_one_time_code
        assert not MFAMethodType.TOTP.uses_one_time_code
        assert not MFAMethodType.BIOMETRIC.uses_one_time_code


class TestPrincipal:
    def _principal(self, *methods: MFAMethod) -> Principal:
        return Principal(principal_id="p-1", username="alice", mfa_methods=list(methods))

    def test_defaults(self):
        p = self._principal()
        assert p.status == AccountStatus.ACTIVE
        assert p.roles == []
        assert not p.mfa_enabled

    def test_enabled_methods_sorted_by_priority(self):
        p = self._principal(
            MFAMethod(type=MFAMethodType.SMS, priority=2),
            MFAMethod(type=MFAMethodType.TOTP, priority=1),
            MFAMethod(type=MFAMethodType.EMAIL, priority=1),
            MFAMethod(type=MFAMethodType.BIOMETRIC, enabled=False),
        )
        assert [m.type for m in p.enabled_mfa_methods] == [
            MFAMethodType.EMAIL,
            MFAMethodType.TOTP,
            MFAMethodType.SMS,
        ]
        assert p.mfa_enabled

    def test_method_lookup(self):
        p = self._principal(MFAMethod(type=MFAMethodType.TOTP, secret="ABC"))
        assert p.method(MFAMethodType.TOTP).secret == "ABC"
        assert p.method(MFAMethodType.SMS) is None


class TestSession:
    def test_expiry_boundary(self):
        s = Session(
            session_id="s-1",
            principal_id="p-1",
            created_at=NOW,
            last_activity=NOW,
            expires_at=NOW + timedelta(minutes=60),
        )
        assert not s.is_expired(NOW + timedelta(minutes=59, seconds=59))
        assert s.is_expired(NOW + timedelta(minutes=60))

    def test_risk_score_bounds(self):
        with pytest.raises(ValidationError):
            Session(
                session_id="s-1",
                principal_id="p-1",
                created_at=NOW,
                last_activity=NOW,
                expires_at=NOW,
                risk_score=1.5,
            )


class TestLockoutState:
    def test_ok(self):
        assert LockoutState(principal_id="p-1").status(NOW) == LockoutStatus.OK

    def test_warn(self):
        state = LockoutState(principal_id="p-1", failed_attempts=2, first_failure_at=NOW)
        assert state.status(NOW) == LockoutStatus.WARN

    def test_locked_until_expiry(self):
        state = LockoutState(
            principal_id="p-1", failed_attempts=5, locked_until=NOW + timedelta(minutes=30)
        )
        assert state.status(NOW) == LockoutStatus.LOCKED
        assert state.is_locked(NOW + timedelta(minutes=29))
        assert not state.is_locked(NOW + timedelta(minutes=30))


class TestAuditModels:
    def test_event_defaults(self):
        ev = AuditEvent(event_type=AuditEventType.LOGOUT)
        assert ev.result == AuditResult.SUCCESS
        assert ev.sequence == 0
        assert len(ev.event_id) == 32
        assert ev.timestamp.tzinfo is not None

    def test_query_order_validated(self):
        assert AuditQuery(order="DESC").order == "desc"
        with pytest.raises(ValidationError):
            AuditQuery(order="sideways")

    def test_naive_bounds_are_utc(self):
        q = AuditQuery(since=datetime(2026, 10, 18, 9, 0))
        assert q.since == datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
