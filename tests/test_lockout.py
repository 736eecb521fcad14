"""Tests for failed-attempt accounting and account lockout."""

from __future__ import annotations

import pytest

from bastion_iam.auth.models import AccountStatus, LockoutStatus, LoginRequest
from bastion_iam.errors import AccountLocked, InvalidCredentials

from conftest import PASSWORD, run_parallel


def _fail_login(service, ctx, username="alice"):
    with pytest.raises(InvalidCredentials):
        service.authenticator.login(
            LoginRequest(username=username, password="Wrong-Horse-99"), ctx
        )


class TestLockoutGuard:
    def test_counts_failures_until_threshold(self, service, alice, clock):
        guard = service.lockout
        for expected in range(1, 5):
            state = guard.record_failure(alice.principal_id)
            assert state.failed_attempts == expected
            assert state.status(clock()) == LockoutStatus.WARN
        state = guard.record_failure(alice.principal_id)
        assert state.status(clock()) == LockoutStatus.LOCKED
        assert service.users.get(alice.principal_id).status == AccountStatus.LOCKED

    def test_check_allowed_reports_retry_after(self, service, alice, clock):
        for _ in range(5):
            service.lockout.record_failure(alice.principal_id)
        clock.advance(minutes=10)
        with pytest.raises(AccountLocked) as exc:
            service.lockout.check_allowed(alice.principal_id)
        assert exc.value.retry_after == 20 * 60

    def test_lock_expires_lazily(self, service, alice, clock):
        for _ in range(5):
            service.lockout.record_failure(alice.principal_id)
        clock.advance(minutes=30)
        service.lockout.check_allowed(alice.principal_id)
        assert service.lockout.state(alice.principal_id).failed_attempts == 0
        assert service.users.get(alice.principal_id).status == AccountStatus.ACTIVE

    def test_elapsed_lock_reads_as_active_before_next_attempt(self, service, alice, clock):
        for _ in range(5):
            service.lockout.record_failure(alice.principal_id)
        assert service.get_profile(alice.principal_id).status == AccountStatus.LOCKED
        clock.advance(minutes=30)
        assert service.get_profile(alice.principal_id).status == AccountStatus.ACTIVE
        assert [p.status for p in service.users.list_principals()] == [AccountStatus.ACTIVE]
        assert not service.lockout.state(alice.principal_id).is_locked(clock())

    def test_failures_outside_window_start_a_new_count(self, service, alice, clock):
        for _ in range(4):
            service.lockout.record_failure(alice.principal_id)
        clock.advance(minutes=16)
        state = service.lockout.record_failure(alice.principal_id)
        assert state.failed_attempts == 1
        assert not state.is_locked(clock())

    def test_threshold_follows_live_policy(self, service, alice, clock):
        service.update_policy({"security": {"maxLoginAttempts": 2}})
        service.lockout.record_failure(alice.principal_id)
        state = service.lockout.record_failure(alice.principal_id)
        assert state.is_locked(clock())

    def test_unlock(self, service, alice):
        for _ in range(5):
            service.lockout.record_failure(alice.principal_id)
        assert service.unlock("alice")
        assert service.users.get(alice.principal_id).status == AccountStatus.ACTIVE
        service.lockout.check_allowed(alice.principal_id)
        assert not service.unlock("alice")

    def test_suspended_principal_stays_suspended_when_locked(self, service, alice):
        service.set_status("alice", AccountStatus.SUSPENDED)
        for _ in range(5):
            service.lockout.record_failure(alice.principal_id)
        assert service.users.get(alice.principal_id).status == AccountStatus.SUSPENDED


class TestLoginLockout:
    def test_n_failures_lock_and_correct_password_still_fails(self, service, alice, ctx):
        for _ in range(5):
            _fail_login(service, ctx)
        assert service.users.get(alice.principal_id).status == AccountStatus.LOCKED

        with pytest.raises(AccountLocked) as exc:
            service.authenticator.login(LoginRequest(username="alice", password=PASSWORD), ctx)
        assert exc.value.retry_after == 30 * 60

    def test_success_resets_counter_below_threshold(self, service, alice, ctx):
        for _ in range(4):
            _fail_login(service, ctx)
        assert service.lockout.state(alice.principal_id).failed_attempts == 4

        result = service.authenticator.login(
            LoginRequest(username="alice", password=PASSWORD), ctx
        )
        assert result.tokens is not None
        assert service.lockout.state(alice.principal_id).failed_attempts == 0

        # a fresh run of failures is needed to lock again
        for _ in range(4):
            _fail_login(service, ctx)
        assert service.users.get(alice.principal_id).status == AccountStatus.ACTIVE

    def test_unknown_user_does_not_lock_anyone(self, service, alice, ctx):
        for _ in range(6):
            _fail_login(service, ctx, username="mallory")
        assert service.lockout.state(alice.principal_id).failed_attempts == 0

    def test_login_allowed_after_lock_expires(self, service, alice, ctx, clock):
        for _ in range(5):
            _fail_login(service, ctx)
        clock.advance(minutes=31)
        result = service.authenticator.login(
            LoginRequest(username="alice", password=PASSWORD), ctx
        )
        assert result.session_id is not None
        assert service.users.get(alice.principal_id).status == AccountStatus.ACTIVE


class TestParallelFailures:
    """Concurrent failures on a file-backed store, one connection per call."""

    @pytest.fixture
    def bob(self, file_service):
        return file_service.create_principal("bob", PASSWORD)

    def test_no_failure_is_lost(self, file_service, bob):
        file_service.update_policy({"security": {"maxLoginAttempts": 100}})
        run_parallel(20, lambda _: file_service.lockout.record_failure(bob.principal_id))
        assert file_service.lockout.state(bob.principal_id).failed_attempts == 20

    def test_threshold_reached_exactly_once(self, file_service, bob, clock):
        states = run_parallel(
            12, lambda _: file_service.lockout.record_failure(bob.principal_id)
        )
        assert max(s.failed_attempts for s in states) == 5
        assert sum(1 for s in states if s.status(clock()) == LockoutStatus.LOCKED) == 12 - 4
        assert file_service.users.get(bob.principal_id).status == AccountStatus.LOCKED
