"""Integration tests for the authentication HTTP flow.

Covers, end to end through the FastAPI app:
- Login, refresh and logout
- Lockout and rate limiting
- Password change and reset
- Email verification
- /auth/me
"""

import json

import pytest

from hrmsauth.service.delivery import DeliveryPurpose

MANAGER = "manager@example.com"
PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "An0ther#Secret"


def _login(client, email=MANAGER, password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def session(client, manager):
    response = _login(client)
    assert response.status_code == 200
    return response.json()["data"]


class TestLogin:
    """Tests for POST /auth/login."""

    def test_login_returns_token_pair_and_profile(self, client, manager):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["accessToken"] and data["refreshToken"]
        assert data["tokenType"] == "bearer"
        assert data["profile"]["staffId"] == "EMP-001"
        assert data["profile"]["roles"] == ["HR Manager"]
        assert data["profile"]["lastLogin"] is not None

    def test_login_sets_rate_limit_headers(self, client, manager):
        response = _login(client)
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_invalid_credentials_use_error_envelope(self, client, manager):
        response = _login(client, password="Wr0ng!Password")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["details"]["kind"] == "invalid_credentials"
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_unknown_email_gets_same_response(self, client, manager):
        unknown = _login(client, email="nobody@example.com")
        wrong = _login(client, password="Wr0ng!Password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_malformed_email_is_a_validation_error(self, client):
        response = client.post("/auth/login", json={"email": "not-an-email", "password": "x"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_missing_body_fields(self, client):
        response = client.post("/auth/login", json={"email": MANAGER})
        assert response.status_code == 400
        assert any("password" in err["loc"] for err in response.json()["error"]["details"])

    def test_locked_account_returns_403(self, client, runtime, manager):
        for _ in range(5):
            assert _login(client, password="Wr0ng!Password").status_code == 401
        runtime.rate_limiter.counter.reset()

        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["details"]["kind"] == "account_locked"

    def test_sixth_attempt_is_rate_limited(self, client, manager):
        for _ in range(5):
            _login(client)
        response = _login(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_rate_limit_window_slides(self, client, monotonic, manager):
        for _ in range(5):
            _login(client)
        assert _login(client).status_code == 429
        monotonic.advance(15 * 60)
        assert _login(client).status_code == 200


class TestSessions:
    def test_refresh_returns_new_access_token(self, client, session):
        response = client.post("/auth/refresh-token", json={"refreshToken": session["refreshToken"]})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["accessToken"] != session["accessToken"]
        assert "refreshToken" not in data

    def test_refresh_with_garbage_is_unauthorized(self, client):
        response = client.post("/auth/refresh-token", json={"refreshToken": "garbage"})
        assert response.status_code == 401

    def test_logout_revokes_refresh_token(self, client, session):
        assert client.post("/auth/logout", json={"refreshToken": session["refreshToken"]}).status_code == 200
        response = client.post("/auth/refresh-token", json={"refreshToken": session["refreshToken"]})
        assert response.status_code == 401

    def test_logout_with_unknown_token_still_succeeds(self, client):
        response = client.post("/auth/logout", json={"refreshToken": "whatever"})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out"

    def test_logout_all_requires_bearer(self, client, session):
        assert client.post("/auth/logout-all").status_code == 401

        response = client.post("/auth/logout-all", headers=_bearer(session["accessToken"]))
        assert response.status_code == 200
        refresh = client.post("/auth/refresh-token", json={"refreshToken": session["refreshToken"]})
        assert refresh.status_code == 401


class TestMe:
    def test_me_returns_profile_and_permissions(self, client, session):
        response = client.get("/auth/me", headers=_bearer(session["accessToken"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == MANAGER
        assert data["isEmailVerified"] is False
        assert data["profile"]["roles"] == ["HR Manager"]
        assert data["permissions"] == {"leave": ["approve", "read"], "staff": ["read", "update"]}

    def test_me_without_token(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_with_expired_token(self, client, clock, session):
        clock.advance(minutes=15)
        response = client.get("/auth/me", headers=_bearer(session["accessToken"]))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "access token has expired"

    def test_me_for_disabled_profile(self, client, store, session):
        store.set_profile_active(session["profile"]["id"], False)
        response = client.get("/auth/me", headers=_bearer(session["accessToken"]))
        assert response.status_code == 403


class TestPasswordFlows:
    def test_change_password_signs_out_everywhere(self, client, session):
        response = client.post(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": NEW_PASSWORD},
            headers=_bearer(session["accessToken"]),
        )
        assert response.status_code == 200

        refresh = client.post("/auth/refresh-token", json={"refreshToken": session["refreshToken"]})
        assert refresh.status_code == 401
        assert _login(client, password=NEW_PASSWORD).status_code == 200

    def test_change_password_policy_errors_are_listed(self, client, session):
        response = client.post(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "short"},
            headers=_bearer(session["accessToken"]),
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"]["errors"]

    def test_forgot_password_response_is_uniform_and_tokenless(self, client, outbox, manager):
        known = client.post("/auth/forgot-password", json={"email": MANAGER})
        unknown = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        token = outbox.latest(MANAGER, DeliveryPurpose.PASSWORD_RESET)
        assert token not in json.dumps(known.json())

    def test_reset_password_flow(self, client, outbox, manager):
        client.post("/auth/forgot-password", json={"email": MANAGER})
        token = outbox.latest(MANAGER, DeliveryPurpose.PASSWORD_RESET)

        response = client.post("/auth/reset-password", json={"token": token, "newPassword": NEW_PASSWORD})
        assert response.status_code == 200
        assert _login(client, password=NEW_PASSWORD).status_code == 200

        replay = client.post("/auth/reset-password", json={"token": token, "newPassword": "Th1rd#Password"})
        assert replay.status_code == 400
        assert replay.json()["error"]["details"]["kind"] == "invalid_or_expired_token"

    def test_forgot_password_is_rate_limited(self, client, manager):
        for _ in range(3):
            assert client.post("/auth/forgot-password", json={"email": MANAGER}).status_code == 200
        response = client.post("/auth/forgot-password", json={"email": MANAGER})
        assert response.status_code == 429


class TestEmailVerification:
    def test_request_and_verify(self, client, outbox, session):
        headers = _bearer(session["accessToken"])
        assert client.post("/auth/request-email-verification", headers=headers).status_code == 200
        token = outbox.latest(MANAGER, DeliveryPurpose.EMAIL_VERIFICATION)

        assert client.post("/auth/verify-email", json={"token": token}).status_code == 200
        me = client.get("/auth/me", headers=headers).json()["data"]
        assert me["isEmailVerified"] is True

        again = client.post("/auth/request-email-verification", headers=headers)
        assert again.status_code == 400

    def test_bad_verification_token(self, client):
        response = client.post("/auth/verify-email", json={"token": "nope"})
        assert response.status_code == 400
