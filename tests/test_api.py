"""Tests for FastAPI endpoints using httpx TestClient."""

from __future__ import annotations

import pyotp
import pytest
from fastapi.testclient import TestClient

from bastion_iam.auth.models import MFAMethodType, Role
from bastion_iam.web.api import create_app

from conftest import PASSWORD


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def _login(client, username="alice", password=PASSWORD, **extra):
    return client.post("/login", json={"username": username, "password": password, **extra})


def _bearer(response) -> dict[str, str]:
    return {"Authorization": f"Bearer {response.json()['tokens']['accessToken']}"}


# ---------------------------------------------------------------------------
# Login flows
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_without_mfa_returns_tokens(self, client, alice):
        resp = _login(client)
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["mfaRequired"] is False
        assert data["sessionId"]
        assert set(data["tokens"]) == {
            "accessToken",
            "refreshToken",
            "idToken",
            "expiresIn",
            "tokenType",
        }
        assert data["principal"]["username"] == "alice"

        sessions = client.get("/sessions", headers=_bearer(resp)).json()
        assert sessions["total"] == 1
        assert sessions["sessions"][0]["current"] is True
        assert sessions["sessions"][0]["ipAddress"] == "testclient"

    def test_login_with_totp_requires_second_step(self, client, service, alice, clock):
        enrollment = service.setup_mfa(alice, MFAMethodType.TOTP)

        resp = _login(client)
        assert resp.status_code == 200
        data = resp.json()
        assert data["mfaRequired"] is True
        assert data["mfaMethods"] == ["TOTP"]
        assert "tokens" not in data
        assert "principal" not in data

        code = pyotp.TOTP(enrollment.secret).at(clock())
        verified = client.post(
            "/mfa/verify", json={"challenge": data["mfaChallenge"], "code": code}
        )
        assert verified.status_code == 200
        assert "accessToken" in verified.json()["tokens"]

        sessions = client.get("/sessions", headers=_bearer(verified)).json()
        assert sessions["sessions"][0]["mfaVerified"] is True

    def test_lockout_after_repeated_failures(self, client, alice):
        for _ in range(5):
            assert _login(client, password="Wrong-Horse-99").status_code == 401

        resp = _login(client)
        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["retryAfter"] == 1800
        assert resp.headers["Retry-After"] == "1800"

    def test_unknown_user_and_wrong_password_look_alike(self, client, alice):
        unknown = _login(client, username="nobody")
        wrong = _login(client, password="Wrong-Horse-99")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_login_body_validation(self, client):
        assert client.post("/login", json={"username": ""}).status_code == 422

    def test_wrong_mfa_code(self, client, service, alice):
        service.setup_mfa(alice, MFAMethodType.TOTP)
        challenge = _login(client).json()["mfaChallenge"]
        resp = client.post("/mfa/verify", json={"challenge": challenge, "code": "000000"})
        assert resp.status_code == 401

    def test_select_email_factor(self, client, service, alice, sender):
        service.setup_mfa(alice, MFAMethodType.TOTP)
        service.setup_mfa(alice, MFAMethodType.EMAIL)
        challenge = _login(client).json()["mfaChallenge"]

        resp = client.post("/mfa/challenge", json={"challenge": challenge, "method": "EMAIL"})
        assert resp.status_code == 200
        assert resp.json()["maskedDestination"] == "a***@example.com"

        verified = client.post(
            "/mfa/verify", json={"challenge": challenge, "code": sender.last_code}
        )
        assert verified.status_code == 200


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


class TestSessionEndpoints:
    def test_requires_bearer_token(self, client):
        resp = client.get("/profile")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_garbage_token(self, client):
        resp = client.get("/profile", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_profile(self, client, alice):
        resp = client.get("/profile", headers=_bearer(_login(client)))
        assert resp.status_code == 200
        data = resp.json()
        assert data["principalId"] == alice.principal_id
        assert data["mfaMethods"] == []
        assert "passwordHash" not in data

    def test_logout_invalidates_token(self, client, alice):
        headers = _bearer(_login(client))
        assert client.post("/logout", headers=headers).json() == {"success": True}
        assert client.get("/profile", headers=headers).status_code == 401

    def test_refresh(self, client, alice, clock):
        login = _login(client).json()
        clock.advance(minutes=16)
        stale = {"Authorization": f"Bearer {login['tokens']['accessToken']}"}
        assert client.get("/profile", headers=stale).status_code == 401

        resp = client.post(
            "/token/refresh", json={"refreshToken": login["tokens"]["refreshToken"]}
        )
        assert resp.status_code == 200
        fresh = {"Authorization": f"Bearer {resp.json()['accessToken']}"}
        assert client.get("/profile", headers=fresh).status_code == 200

    def test_refresh_with_access_token_rejected(self, client, alice):
        login = _login(client).json()
        resp = client.post(
            "/token/refresh", json={"refreshToken": login["tokens"]["accessToken"]}
        )
        assert resp.status_code == 401

    def test_revoke_own_session(self, client, alice):
        first = _login(client)
        second = _login(client)
        resp = client.delete(
            f"/sessions/{first.json()['sessionId']}", headers=_bearer(second)
        )
        assert resp.status_code == 200
        assert client.get("/profile", headers=_bearer(first)).status_code == 401

    def test_revoke_other_principals_session_looks_absent(self, client, service, alice):
        service.create_principal("bob", PASSWORD)
        bob = _login(client, username="bob")
        resp = client.delete(
            f"/sessions/{bob.json()['sessionId']}", headers=_bearer(_login(client))
        )
        assert resp.status_code == 404
        assert client.get("/profile", headers=_bearer(bob)).status_code == 200

    def test_list_other_principals_sessions_forbidden(self, client, service, alice):
        bob = service.create_principal("bob", PASSWORD)
        resp = client.get(
            "/sessions",
            params={"principalId": bob.principal_id},
            headers=_bearer(_login(client)),
        )
        assert resp.status_code == 403

    def test_mfa_setup_and_revoke(self, client, alice):
        headers = _bearer(_login(client))
        resp = client.post("/mfa/setup", json={"method": "TOTP"}, headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["provisioningUri"].startswith("otpauth://")
        assert len(data["backupCodes"]) == 10

        assert client.delete("/mfa/TOTP", headers=headers).status_code == 200
        assert client.delete("/mfa/TOTP", headers=headers).status_code == 404

    def test_mfa_setup_error(self, client, alice):
        headers = _bearer(_login(client))
        resp = client.post("/mfa/setup", json={"method": "SMS"}, headers=headers)
        assert resp.status_code == 400

    def test_permission_check(self, client, service, alice):
        service.define_role(Role(name="reader", permissions=["reports:read"]))
        service.assign_role("alice", "reader")
        headers = _bearer(_login(client))

        allowed = client.post(
            "/permissions/check", json={"resource": "reports", "action": "read"}, headers=headers
        ).json()
        assert allowed == {"allowed": True, "reason": "Granted by role:reader"}
        denied = client.post(
            "/permissions/check", json={"resource": "reports", "action": "write"}, headers=headers
        ).json()
        assert denied["allowed"] is False


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class TestAdminEndpoints:
    def test_non_admin_forbidden(self, client, alice):
        headers = _bearer(_login(client))
        assert client.get("/audit/events", headers=headers).status_code == 403
        assert client.get("/config", headers=headers).status_code == 403
        assert client.put("/config", json={}, headers=headers).status_code == 403

    def test_audit_events(self, client, admin, alice):
        _login(client, password="Wrong-Horse-99")
        headers = _bearer(_login(client, username="root"))
        resp = client.get(
            "/audit/events",
            params={"principalId": alice.principal_id, "eventType": "LOGIN_FAILURE"},
            headers=headers,
        )
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] == 1
        event = page["events"][0]
        assert event["eventType"] == "LOGIN_FAILURE"
        assert event["result"] == "FAILURE"
        assert event["ipAddress"] == "testclient"

    def test_audit_events_bad_cursor(self, client, admin):
        headers = _bearer(_login(client, username="root"))
        resp = client.get("/audit/events", params={"cursor": "x"}, headers=headers)
        assert resp.status_code == 422

    def test_config_round_trip(self, client, admin):
        headers = _bearer(_login(client, username="root"))
        policy = client.get("/config", headers=headers).json()
        assert policy["security"]["maxLoginAttempts"] == 5

        resp = client.put(
            "/config", json={"security": {"maxLoginAttempts": 3}}, headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["security"]["maxLoginAttempts"] == 3
        assert resp.json()["session"]["timeout"] == 60

    def test_config_invalid_value(self, client, admin):
        headers = _bearer(_login(client, username="root"))
        resp = client.put(
            "/config", json={"security": {"maxLoginAttempts": 0}}, headers=headers
        )
        assert resp.status_code == 422
        assert "maxLoginAttempts" in resp.json()["error"]

    def test_require_mfa_blocks_unverified_sessions(self, client, admin):
        headers = _bearer(_login(client, username="root"))
        resp = client.put("/config", json={"session": {"requireMfa": True}}, headers=headers)
        assert resp.status_code == 200
        # the current session never completed MFA
        assert client.get("/config", headers=headers).status_code == 403
        assert client.get("/profile", headers=headers).status_code == 200

    def test_require_mfa_login_flags_enrollment(self, client, service, alice):
        service.update_policy({"session": {"requireMfa": True}})
        data = _login(client).json()
        assert data["mfaEnrollmentRequired"] is True
        assert "tokens" in data


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["database"] is True
        assert data["version"]
