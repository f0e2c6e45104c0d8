"""Integration tests for the HTTP session flow.

Tests the complete flow including:
- Login with password
- Token refresh with rotation
- Logout and logout of all sessions
- Password change
- Per-IP throttling of login and refresh
- Error envelope mapping
"""

import pytest
from fastapi.testclient import TestClient

from sessionguard import app as app_module
from sessionguard.service.runtime import get_runtime, reset_runtime_for_tests
from sessionguard.storage.models import RevokeReason, UserRole, UserStatus

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def seeded_user():
    runtime = get_runtime()
    return runtime.store.create_user(
        "testuser@example.com",
        full_name="Test User",
        roles=[UserRole.MANAGER],
        password_hash=runtime.passwords.hash(PASSWORD),
    )


def _login(client, email="testuser@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestLogin:
    def test_login_returns_user_and_tokens(self, client, seeded_user):
        response = _login(client, email="  TestUser@Example.com")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"] == {
            "id": seeded_user.id,
            "email": "testuser@example.com",
            "full_name": "Test User",
            "role": "manager",
        }
        tokens = body["data"]["tokens"]
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 900
        assert tokens["access_token"] != tokens["refresh_token"]

    def test_wrong_password_is_unauthorized(self, client, seeded_user):
        response = _login(client, password="WrongPassword1!")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "invalid credentials"

    def test_unknown_user_is_indistinguishable(self, client, seeded_user):
        unknown = _login(client, email="ghost@example.com").json()
        wrong = _login(client, password="WrongPassword1!").json()
        assert unknown["error"] == wrong["error"]

    def test_inactive_user_is_forbidden(self, client, seeded_user):
        get_runtime().store.update_user_status(seeded_user.id, UserStatus.INACTIVE)

        response = _login(client)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_malformed_body_is_validation_error(self, client):
        response = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_request_id_is_echoed(self, client, seeded_user):
        response = client.post(
            "/v1/auth/login",
            json={"email": "testuser@example.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Cache-Control"] == "no-store"


class TestRefresh:
    def test_refresh_rotates_tokens(self, client, seeded_user):
        first = _login(client).json()["data"]["tokens"]

        response = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})

        assert response.status_code == 200
        second = response.json()["data"]["tokens"]
        assert second["refresh_token"] != first["refresh_token"]
        assert client.get("/v1/me", headers=_bearer(second)).status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "invalid refresh token"

    def test_garbage_refresh_token_is_unauthorized(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_non_ascii_refresh_token_is_unauthorized(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]
        header, payload, _ = tokens["refresh_token"].split(".")

        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": f"{header}.{payload}.é"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_empty_refresh_token_is_validation_error(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": ""})
        assert response.status_code == 400


class TestLogout:
    def test_logout_revokes_refresh_token(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]

        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": tokens["refresh_token"]},
            headers=_bearer(tokens),
        )

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "logged out"
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_requires_bearer(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]
        response = client.post(
            "/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid or expired token"

    def test_logout_with_garbage_token_still_succeeds(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]
        response = client.post(
            "/v1/auth/logout", json={"refresh_token": "garbage"}, headers=_bearer(tokens)
        )
        assert response.status_code == 200

    def test_logout_all_reports_revoked_count(self, client, seeded_user):
        sessions = [_login(client).json()["data"]["tokens"] for _ in range(3)]

        response = client.post("/v1/auth/logout-all", headers=_bearer(sessions[0]))

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 3
        for tokens in sessions:
            record_id = get_runtime().issuer.verify_refresh(tokens["refresh_token"]).refresh_id
            record = get_runtime().store.get_refresh_token(record_id)
            assert record.revoked_reason is RevokeReason.LOGOUT_ALL

        again = client.post("/v1/auth/logout-all", headers=_bearer(sessions[0]))
        assert again.json()["data"]["sessions_revoked"] == 0


class TestMe:
    def test_me_returns_current_role(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]
        get_runtime().store.set_user_roles(seeded_user.id, [UserRole.OWNER])

        response = client.get("/v1/me", headers=_bearer(tokens))

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "owner"

    def test_me_for_vanished_user_is_not_found(self, client, seeded_user, monkeypatch):
        tokens = _login(client).json()["data"]["tokens"]
        monkeypatch.setattr(get_runtime().sessions, "get_user_by_id", lambda user_id: None)

        response = client.get("/v1/me", headers=_bearer(tokens))

        assert response.status_code == 404
        assert response.json()["error"] == {
            "code": "not_found",
            "message": "user not found",
            "details": None,
        }

    @pytest.mark.parametrize(
        "header", ["", "Bearer", "Bearer garbage", "Basic dXNlcjpwYXNz"]
    )
    def test_me_rejects_bad_credentials(self, client, header):
        response = client.get("/v1/me", headers={"Authorization": header})
        assert response.status_code == 401

    def test_refresh_token_cannot_be_used_as_bearer(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]
        response = client.get(
            "/v1/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"}
        )
        assert response.status_code == 401


class TestPasswordChange:
    def test_password_change_ends_sessions(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]

        response = client.post(
            "/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "BrandNewPass42!"},
            headers=_bearer(tokens),
        )

        assert response.status_code == 200
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401
        assert _login(client).status_code == 401
        assert _login(client, password="BrandNewPass42!").status_code == 200

    def test_wrong_current_password_is_rejected(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]
        response = client.post(
            "/v1/auth/password",
            json={"current_password": "not-it-at-all", "new_password": "BrandNewPass42!"},
            headers=_bearer(tokens),
        )
        assert response.status_code == 401

    def test_short_new_password_is_validation_error(self, client, seeded_user):
        tokens = _login(client).json()["data"]["tokens"]
        response = client.post(
            "/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "short"},
            headers=_bearer(tokens),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestRateLimit:
    def test_login_throttled_after_allowance(self, client, seeded_user):
        for _ in range(5):
            response = _login(client, password="WrongPassword1!")
            assert response.status_code == 401

        response = _login(client)

        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "rate_limited"
        assert 0 < int(response.headers["Retry-After"]) <= 60

    def test_success_carries_rate_limit_headers(self, client, seeded_user):
        response = _login(client)

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert 0 < int(response.headers["X-RateLimit-Reset"]) <= 60

    def test_refresh_has_its_own_allowance(self, client, seeded_user):
        for _ in range(5):
            assert client.post("/v1/auth/refresh", json={"refresh_token": "garbage"}).status_code == 401

        throttled = client.post("/v1/auth/refresh", json={"refresh_token": "garbage"})

        assert throttled.status_code == 429
        assert throttled.json()["error"]["code"] == "rate_limited"
        assert _login(client).status_code == 200

    @pytest.mark.parametrize(
        "env", [{"AUTH_RATE_LIMIT_PER_WINDOW": "0"}, {"RATE_LIMIT_ENABLED": "false"}]
    )
    def test_throttle_can_be_switched_off(self, client, monkeypatch, env):
        for name, value in env.items():
            monkeypatch.setenv(name, value)
        runtime = reset_runtime_for_tests()
        runtime.store.create_user(
            "testuser@example.com",
            full_name="Test User",
            roles=[UserRole.MANAGER],
            password_hash=runtime.passwords.hash(PASSWORD),
        )

        statuses = {_login(client).status_code for _ in range(7)}

        assert statuses == {200}

    def test_cache_outage_admits_attempts(self, client, seeded_user, monkeypatch):
        async def _down(*args, **kwargs):
            raise ConnectionError("redis unavailable")

        monkeypatch.setattr(get_runtime().cache, "check_rate_limit", _down)

        statuses = {_login(client).status_code for _ in range(7)}

        assert statuses == {200}


class TestErrorMapping:
    def test_refresh_id_collision_is_server_error(self, client, seeded_user, monkeypatch):
        from sessionguard.storage.errors import DuplicateRefreshTokenId

        def _collide(*args, **kwargs):
            raise DuplicateRefreshTokenId("abc")

        monkeypatch.setattr(get_runtime().store, "record_refresh_token", _collide)

        response = _login(client)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"


def test_healthz_reports_components(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "MemoryStore"
    assert body["checks"]["cache"]["type"] == "MemoryCache"
