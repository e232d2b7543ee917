"""Integration tests for sessions, revocation and one-time tokens over HTTP."""

import asyncio

import pytest

from conftest import TEST_PASSWORD
from promptvault.service.runtime import get_runtime


@pytest.fixture(autouse=True)
def roomy_auth_limits(configure):
    configure(RATE_LIMIT_AUTH_MAX=100)


def _login(client, identifier, password=TEST_PASSWORD):
    return client.post(
        "/api/auth/login", json={"identifier": identifier, "password": password}
    )


class TestRegisterAndLogin:
    def test_register_creates_usable_session(self, client, register):
        data, headers = register()
        assert data["token_type"] == "bearer"
        assert data["verification_token"]

        me = client.get("/api/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["data"]["username"] == "alice"
        assert me.json()["data"]["session_id"] == data["session_id"]

    def test_session_id_header_authenticates(self, client, register):
        data, _ = register()
        me = client.get("/api/auth/me", headers={"session_id": data["session_id"]})
        assert me.status_code == 200

    def test_login_by_username_or_email(self, client, register):
        register()
        assert _login(client, "alice").status_code == 200
        assert _login(client, "alice@example.com").status_code == 200

    def test_wrong_password_is_unauthorized(self, client, register):
        register()
        response = _login(client, "alice", "not-the-password")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_duplicate_username_conflicts(self, client, register):
        register()
        response = client.post(
            "/api/auth/register",
            json={"email": "other@example.com", "password": TEST_PASSWORD, "username": "alice"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"


class TestLoginLockout:
    def test_repeated_failures_lock_the_account(self, client, register, configure):
        configure(RATE_LIMIT_AUTH_MAX=100, LOGIN_MAX_ATTEMPTS=2)
        register()
        assert _login(client, "alice", "wrong-password").status_code == 401
        assert _login(client, "alice", "wrong-password").status_code == 401

        locked = _login(client, "alice")
        assert locked.status_code == 429
        body = locked.json()
        assert body["success"] is False
        assert body["retryAfter"] == 900
        assert locked.headers["Retry-After"] == "900"

    def test_success_clears_failures(self, client, register, configure):
        configure(RATE_LIMIT_AUTH_MAX=100, LOGIN_MAX_ATTEMPTS=2)
        register()
        _login(client, "alice", "wrong-password")
        assert _login(client, "alice").status_code == 200
        assert _login(client, "alice", "wrong-password").status_code == 401
        assert _login(client, "alice").status_code == 200


class TestLogout:
    def test_logout_revokes_token_and_session(self, client, register):
        data, headers = register()
        assert client.post("/api/auth/logout", headers=headers).status_code == 200

        assert client.get("/api/auth/me", headers=headers).status_code == 401
        assert (
            client.get("/api/auth/me", headers={"session_id": data["session_id"]}).status_code
            == 401
        )
        revoked = asyncio.run(get_runtime().revocations.revoked_for_subject(data["user_id"]))
        assert len(revoked) == 1

    def test_logout_all_ends_every_session(self, client, register):
        _, first = register()
        second = {"Authorization": f"Bearer {_login(client, 'alice').json()['data']['access_token']}"}

        response = client.post("/api/auth/logout-all", headers=first)
        assert response.json()["data"]["sessions_removed"] == 2
        assert client.get("/api/auth/me", headers=first).status_code == 401
        assert client.get("/api/auth/me", headers=second).status_code == 401

    def test_sessions_listing_marks_current(self, client, register):
        data, headers = register()
        _login(client, "alice")
        sessions = client.get("/api/auth/sessions", headers=headers).json()["data"]["sessions"]
        assert len(sessions) == 2
        current = [s for s in sessions if s["current"]]
        assert [s["session_id"] for s in current] == [data["session_id"]]

    def test_tampered_token_rejected(self, client, register):
        _, headers = register()
        header, payload, signature = headers["Authorization"].split(" ", 1)[1].split(".")
        forged = f"Bearer {header}.{payload}.{'A' * len(signature)}"
        assert client.get("/api/auth/me", headers={"Authorization": forged}).status_code == 401


class TestPasswordReset:
    def test_reset_flow_replaces_password_and_ends_sessions(self, client, register):
        _, old_headers = register()
        requested = client.post(
            "/api/auth/password-reset/request", json={"email": "alice@example.com"}
        )
        token = requested.json()["data"]["token"]

        confirm = client.post(
            "/api/auth/password-reset/confirm",
            json={"token": token, "new_password": "BrandNewPass42"},
        )
        assert confirm.status_code == 200
        assert client.get("/api/auth/me", headers=old_headers).status_code == 401
        assert _login(client, "alice").status_code == 401
        assert _login(client, "alice", "BrandNewPass42").status_code == 200

    def test_token_is_single_use(self, client, register):
        register()
        token = client.post(
            "/api/auth/password-reset/request", json={"email": "alice@example.com"}
        ).json()["data"]["token"]
        payload = {"token": token, "new_password": "BrandNewPass42"}
        assert client.post("/api/auth/password-reset/confirm", json=payload).status_code == 200
        reused = client.post("/api/auth/password-reset/confirm", json=payload)
        assert reused.status_code == 400
        assert reused.json()["error"]["code"] == "validation_error"

    def test_unknown_email_looks_the_same(self, client):
        response = client.post(
            "/api/auth/password-reset/request", json={"email": "ghost@example.com"}
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"requested": True}


class TestEmailVerification:
    def test_verification_token_from_registration(self, client, register):
        data, headers = register()
        confirm = client.post(
            "/api/auth/verify-email/confirm", json={"token": data["verification_token"]}
        )
        assert confirm.status_code == 200
        assert client.get("/api/auth/me", headers=headers).json()["data"]["email_verified"]

        again = client.post(
            "/api/auth/verify-email/confirm", json={"token": data["verification_token"]}
        )
        assert again.status_code == 400

    def test_request_new_verification_token(self, client, register):
        _, headers = register()
        response = client.post("/api/auth/verify-email/request", headers=headers)
        token = response.json()["data"]["token"]
        assert client.post(
            "/api/auth/verify-email/confirm", json={"token": token}
        ).status_code == 200


class TestPresence:
    def test_authenticated_requests_mark_users_active(self, client, register):
        register("alice")
        register("bob")
        stats = client.get("/api/stats/active-users").json()["data"]
        assert stats["active_users"] == 2
        assert stats["window_seconds"] == 900
