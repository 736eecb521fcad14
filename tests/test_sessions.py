"""Tests for session lifecycle, concurrency caps and expiry."""

from __future__ import annotations

from datetime import timedelta

import pytest

from bastion_iam.auth.models import RequestContext
from bastion_iam.errors import SessionExpired, SessionNotFound

from conftest import PASSWORD, run_parallel


class TestSessionManager:
    def test_create_and_validate(self, service, alice, ctx, clock):
        session, evicted = service.sessions.create(alice.principal_id, ctx, risk_score=0.3)
        assert evicted == []
        assert session.expires_at == clock() + timedelta(minutes=60)
        clock.advance(minutes=5)
        validated = service.sessions.validate(session.session_id)
        assert validated.last_activity == clock()
        assert validated.ip_address == "10.0.0.5"
        assert validated.risk_score == 0.3

    def test_expiry_is_fixed_at_creation(self, service, alice, ctx, clock):
        session, _ = service.sessions.create(alice.principal_id, ctx)
        assert (session.expires_at - session.created_at).total_seconds() == 60 * 60

    def test_expired_even_with_recent_activity(self, service, alice, ctx, clock):
        session, _ = service.sessions.create(alice.principal_id, ctx)
        for _ in range(5):
            clock.advance(minutes=11)
            service.sessions.validate(session.session_id)
        clock.advance(minutes=6)  # 61 minutes after creation
        with pytest.raises(SessionExpired):
            service.sessions.validate(session.session_id)

    def test_unknown_and_revoked_sessions(self, service, alice, ctx):
        with pytest.raises(SessionNotFound):
            service.sessions.validate("no-such-session")
        session, _ = service.sessions.create(alice.principal_id, ctx)
        assert service.sessions.revoke(session.session_id)
        assert not service.sessions.revoke(session.session_id)
        with pytest.raises(SessionNotFound):
            service.sessions.validate(session.session_id)

    def test_renew_without_sliding_does_not_extend(self, service, alice, ctx, clock):
        session, _ = service.sessions.create(alice.principal_id, ctx)
        clock.advance(minutes=30)
        renewed = service.sessions.renew(session.session_id)
        assert renewed.expires_at == session.expires_at

    def test_sliding_renewal_before_expiry(self, service, alice, ctx, clock):
        service.update_policy({"session": {"slidingExpiration": True}})
        session, _ = service.sessions.create(alice.principal_id, ctx)
        clock.advance(minutes=50)
        renewed = service.sessions.renew(session.session_id)
        assert renewed.expires_at == clock() + timedelta(minutes=60)
        clock.advance(minutes=20)  # past the original expiry, inside the renewed one
        assert service.sessions.validate(session.session_id).session_id == session.session_id

    def test_sliding_renewal_capped_by_absolute_timeout(self, service, alice, ctx, clock):
        service.update_policy(
            {"session": {"slidingExpiration": True, "timeout": 60, "absoluteTimeout": 90}}
        )
        session, _ = service.sessions.create(alice.principal_id, ctx)
        clock.advance(minutes=50)
        renewed = service.sessions.renew(session.session_id)
        assert (renewed.expires_at - session.created_at).total_seconds() == 90 * 60

    def test_renew_after_expiry_fails(self, service, alice, ctx, clock):
        service.update_policy({"session": {"slidingExpiration": True}})
        session, _ = service.sessions.create(alice.principal_id, ctx)
        clock.advance(minutes=61)
        with pytest.raises(SessionExpired):
            service.sessions.renew(session.session_id)


class TestConcurrencyCap:
    def test_k_plus_one_login_evicts_least_recently_active(self, service, alice, ctx, clock):
        service.update_policy({"session": {"maxConcurrentSessions": 3}})
        ids = []
        for _ in range(3):
            session, _ = service.sessions.create(alice.principal_id, ctx)
            ids.append(session.session_id)
            clock.advance(seconds=10)
        # the first session is used again, so the second becomes least recently active
        service.sessions.validate(ids[0])
        clock.advance(seconds=10)

        newest, evicted = service.sessions.create(alice.principal_id, ctx)
        assert evicted == [ids[1]]
        active = {s.session_id for s in service.sessions.list_active(alice.principal_id)}
        assert active == {ids[0], ids[2], newest.session_id}
        assert service.sessions.get(ids[1]).revoke_reason == "concurrency_limit"

    def test_expired_sessions_do_not_count(self, service, alice, ctx, clock):
        service.update_policy({"session": {"maxConcurrentSessions": 1}})
        service.sessions.create(alice.principal_id, ctx)
        clock.advance(minutes=61)
        _, evicted = service.sessions.create(alice.principal_id, ctx)
        assert evicted == []

    def test_enforce_cap_after_policy_lowered(self, service, alice, ctx, clock):
        for _ in range(4):
            service.sessions.create(alice.principal_id, ctx)
            clock.advance(seconds=1)
        service.update_policy({"session": {"maxConcurrentSessions": 2}})
        evicted = service.sessions.enforce_concurrency_cap(alice.principal_id)
        assert len(evicted) == 2
        assert len(service.sessions.list_active(alice.principal_id)) == 2

    def test_list_active_most_recent_first(self, service, alice, ctx, clock):
        first, _ = service.sessions.create(alice.principal_id, ctx)
        clock.advance(seconds=5)
        second, _ = service.sessions.create(
            alice.principal_id, RequestContext(ip_address="192.168.1.9")
        )
        listed = service.sessions.list_active(alice.principal_id)
        assert [s.session_id for s in listed] == [second.session_id, first.session_id]

    def test_revoke_all_keeps_current(self, service, alice, ctx):
        keep, _ = service.sessions.create(alice.principal_id, ctx)
        service.sessions.create(alice.principal_id, ctx)
        revoked = service.sessions.revoke_all(alice.principal_id, "password_change", keep.session_id)
        assert len(revoked) == 1
        assert [s.session_id for s in service.sessions.list_active(alice.principal_id)] == [
            keep.session_id
        ]


class TestParallelLogins:
    def test_cap_holds_under_concurrent_creation(self, file_service, ctx):
        bob = file_service.create_principal("bob", PASSWORD)
        cap = file_service.get_policy().session.max_concurrent_sessions
        results = run_parallel(
            cap + 6, lambda _: file_service.sessions.create(bob.principal_id, ctx)
        )
        assert len(file_service.sessions.list_active(bob.principal_id)) == cap
        assert sum(len(evicted) for _, evicted in results) == 6
