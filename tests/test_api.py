"""HTTP integration tests for the auth and admin routes."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from wikiauth import app as app_module
from wikiauth.service.permissions import Role
from wikiauth.service.runtime import get_runtime


@pytest.fixture
def client():
    # Session cookies are Secure, so talk to the app over https
    with TestClient(app_module.app, base_url="https://testserver") as test_client:
        yield test_client


def _csrf(client) -> str:
    response = client.get("/api/auth/csrf")
    assert response.status_code == 200
    return response.json()["data"]["csrf_token"]


def _create_user(username: str, email: str, role: Role = Role.VIEWER, password: str = "abc12345"):
    runtime = get_runtime()
    user, _ = asyncio.run(
        runtime.credentials.create_user(username, username.title(), email, password, role=role, confirmed=True)
    )
    return user


def _login(client, email: str, password: str = "abc12345"):
    return client.post(
        "/api/auth/login",
        json={"email": email, "password": password, "csrf_token": _csrf(client)},
    )


class TestCSRFEndpoint:
    def test_issues_token(self, client):
        data = client.get("/api/auth/csrf").json()["data"]
        assert ":" in data["csrf_token"]
        assert data["expires_in"] == 60

    def test_security_headers(self, client):
        response = client.get("/api/auth/csrf")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"].startswith("no-store")
        assert response.headers["X-Request-ID"]


class TestRegistration:
    def test_register_returns_generic_message(self, client):
        response = client.post(
            "/api/auth/register",
            json={
                "username": "alice",
                "name": "Alice",
                "email": "alice@example.com",
                "password": "abc12345",
                "csrf_token": _csrf(client),
            },
        )
        assert response.status_code == 201
        assert response.json()["data"]["message"].startswith("Registration successful")

    def test_register_csrf_header(self, client):
        response = client.post(
            "/api/auth/register",
            json={"username": "alice", "name": "Alice", "email": "alice@example.com", "password": "abc12345"},
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.status_code == 201

    def test_register_without_csrf_forbidden(self, client):
        response = client.post(
            "/api/auth/register",
            json={"username": "alice", "name": "Alice", "email": "alice@example.com", "password": "abc12345"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_register_invalid_password(self, client):
        response = client.post(
            "/api/auth/register",
            json={
                "username": "alice",
                "name": "Alice",
                "email": "alice@example.com",
                "password": "short",
                "csrf_token": _csrf(client),
            },
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "password"}


class TestLoginSession:
    def test_login_me_logout(self, client):
        _create_user("alice", "alice@example.com")
        response = _login(client, "alice@example.com")
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == "alice"
        set_cookie = response.headers["set-cookie"].lower()
        assert "wiki_session=" in set_cookie
        assert "httponly" in set_cookie and "secure" in set_cookie and "samesite=strict" in set_cookie

        me = client.get("/api/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"
        assert "password_hash" not in me.json()["data"]

        assert client.post("/api/auth/logout").status_code == 200
        assert client.get("/api/auth/me").status_code == 401

    def test_bad_credentials(self, client):
        _create_user("alice", "alice@example.com")
        response = _login(client, "alice@example.com", "wrong1234")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid email or password"

    def test_rate_limit_headers(self, client):
        for _ in range(5):
            assert _login(client, "ghost@example.com", "wrong1234").status_code == 401
        response = _login(client, "ghost@example.com", "wrong1234")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0
        assert "X-RateLimit-Reset" in response.headers

    def test_update_profile(self, client):
        _create_user("alice", "alice@example.com")
        _login(client, "alice@example.com")
        response = client.patch("/api/auth/me", json={"bio": "  hello  "})
        assert response.status_code == 200
        assert response.json()["data"]["bio"] == "hello"

    def test_export_account(self, client):
        _create_user("alice", "alice@example.com")
        _login(client, "alice@example.com")
        response = client.get("/api/auth/account/export")
        assert response.status_code == 200
        assert response.headers["Content-Disposition"] == 'attachment; filename="account-export.json"'
        data = response.json()["data"]
        assert data["user"]["id"] == "alice"
        assert data["user"]["email"] == "alice@example.com"
        assert data["export_date"]
        assert "password_hash" not in response.text
        assert "passwordHash" not in response.text

    def test_export_requires_session(self, client):
        response = client.get("/api/auth/account/export")
        assert response.status_code == 401

    def test_delete_account(self, client):
        _create_user("alice", "alice@example.com")
        _login(client, "alice@example.com")
        assert client.delete("/api/auth/account").status_code == 200
        assert client.get("/api/auth/me").status_code == 401


class TestConfirmAndReset:
    def test_confirm_invalid_token(self, client):
        response = client.get("/api/auth/confirm", params={"token": "nope"})
        assert response.status_code == 400

    def test_forgot_password_never_reveals(self, client):
        _create_user("alice", "alice@example.com")
        known = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password_invalid_token(self, client):
        response = client.post(
            "/api/auth/reset-password",
            json={"token": "nope", "password": "newpass99", "csrf_token": _csrf(client)},
        )
        assert response.status_code == 400


class TestAuthorize:
    def test_anonymous_public_read(self, client):
        response = client.post("/api/auth/authorize", json={"operation": "read"})
        assert response.json()["data"] == {"granted": True, "reason": "Public content readable by all"}

    def test_contributor_updates_own(self, client):
        _create_user("carol", "carol@example.com", Role.CONTRIBUTOR)
        _login(client, "carol@example.com")
        own = client.post("/api/auth/authorize", json={"operation": "update", "resource_owner_id": "carol"})
        other = client.post("/api/auth/authorize", json={"operation": "update", "resource_owner_id": "dave"})
        assert own.json()["data"]["granted"] is True
        assert other.json()["data"]["granted"] is False

    def test_unknown_operation_is_validation_error(self, client):
        response = client.post("/api/auth/authorize", json={"operation": "fly"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestAdmin:
    def test_requires_admin(self, client):
        assert client.get("/api/admin/users").status_code == 401
        _create_user("ed", "ed@example.com", Role.EDITOR)
        _login(client, "ed@example.com")
        assert client.get("/api/admin/users").status_code == 403

    def test_admin_crud(self, client):
        _create_user("root", "root@example.com", Role.ADMIN)
        _login(client, "root@example.com")

        created = client.post(
            "/api/admin/users",
            json={"username": "eddie", "name": "Eddie", "email": "eddie@example.com", "password": "abc12345", "role": "editor"},
        )
        assert created.status_code == 201
        assert created.json()["data"]["access_level"] == 5

        listing = client.get("/api/admin/users").json()["data"]
        assert listing["total"] == 2

        updated = client.put("/api/admin/users/eddie", json={"role": "viewer"})
        assert updated.json()["data"]["role"] == "viewer"

        assert client.delete("/api/admin/users/eddie").status_code == 200
        assert client.get("/api/admin/users/eddie").status_code == 404

    def test_duplicate_username_conflict(self, client):
        _create_user("root", "root@example.com", Role.ADMIN)
        _login(client, "root@example.com")
        response = client.post(
            "/api/admin/users",
            json={"username": "root", "name": "Root", "email": "other@example.com", "password": "abc12345"},
        )
        assert response.status_code == 409


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["checks"]["store"]["status"] == "ok"
