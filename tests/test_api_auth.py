"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> token service -> SessionStore/UserStore -> response model
serialization -> exception handler envelope.

Coverage:
  - Login: token pair, cookie, no-store, generic bad_credentials error
  - Register: non-admin account when users exist, 409 duplicate, 422 without
    echoing the password
  - /me via bearer header and via cookie; refresh tokens rejected there
  - Refresh rotation: new pair works, the old refresh token stops working
  - Logout and forced session revocation invalidate the refresh token
  - Admin and admin-or-self access rules on /auth/users routes
  - The login limit is registered on the limiter the app mounts

Fixtures used (from conftest.py):
  - api_client: (client, admin_id). The admin is admin@example.com /
    adminpass123 and exists before the client starts.
"""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from auth.hashing import hash_password
from auth.models import User

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"


@pytest.fixture(autouse=True)
def _no_cookies(api_client: tuple[TestClient, str]) -> None:
    """Responses set the access cookie; start every test without one."""
    client, _ = api_client
    client.cookies.clear()


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def login(client: TestClient, email: str, password: str) -> dict:
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _register(client: TestClient, password: str = "userpass123") -> dict:
    email = f"user-{uuid.uuid4().hex[:8]}@example.com"
    resp = client.post("/api/v1/auth/register", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestLogin:
    def test_login_success(self, api_client: tuple[TestClient, str]) -> None:
        client, admin_id = api_client
        resp = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["user_id"] == admin_id
        assert data["is_admin"] is True
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["access_token"] and data["refresh_token"]
        assert resp.headers["Cache-Control"] == "no-store"
        assert "gruff_access_token" in resp.cookies

    def test_login_email_case_insensitive(self, api_client: tuple[TestClient, str]) -> None:
        client, admin_id = api_client
        data = login(client, ADMIN_EMAIL.upper(), ADMIN_PASSWORD)
        assert data["user_id"] == admin_id

    def test_wrong_password(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        resp = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_unknown_email_same_error(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        unknown = client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "whatever"})
        wrong = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong-password"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_password_whitespace_preserved(self, api_client: tuple[TestClient, str]) -> None:
        """Leading and trailing spaces are part of the password, never trimmed."""
        client, _ = api_client
        email = f"spaces-{uuid.uuid4().hex[:8]}@example.com"
        resp = client.post("/api/v1/auth/register", json={"email": email, "password": "  Sup3rSecret!  "})
        assert resp.status_code == 200, resp.text

        assert login(client, email, "  Sup3rSecret!  ")["email"] == email
        stripped = client.post("/api/v1/auth/login", json={"email": email, "password": "Sup3rSecret!"})
        assert stripped.status_code == 401

    def test_existing_hash_with_spaces_logs_in(self, api_client: tuple[TestClient, str]) -> None:
        """A stored salt:key hash of a space-padded password still verifies at login."""
        client, _ = api_client
        email = f"legacy-{uuid.uuid4().hex[:8]}@example.com"
        client.app.state.user_store.create_user(User(email=email, password_hash=hash_password("  Sup3rSecret!  ")))

        resp = client.post("/api/v1/auth/login", json={"email": email, "password": "  Sup3rSecret!  "})
        assert resp.status_code == 200, resp.text

    def test_email_whitespace_trimmed(self, api_client: tuple[TestClient, str]) -> None:
        client, admin_id = api_client
        data = login(client, f"  {ADMIN_EMAIL}  ", ADMIN_PASSWORD)
        assert data["user_id"] == admin_id

    def test_missing_fields_validation_error(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        resp = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestLoginRateLimit:
    def test_middleware_and_route_share_one_limiter(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        assert client.app.state.limiter is limiter
        assert "api.routes.v1.auth.login" in limiter._route_limits


class TestRegister:
    def test_register_returns_non_admin_pair(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        data = _register(client)
        assert data["is_admin"] is False
        assert data["access_token"] and data["refresh_token"]

    def test_duplicate_email_conflict(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        resp = client.post("/api/v1/auth/register", json={"email": ADMIN_EMAIL, "password": "somepassword"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_invalid_email_does_not_echo_password(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "not-an-email", "password": "hunter2hunter2"})
        assert resp.status_code == 422
        assert "hunter2hunter2" not in resp.text

    def test_short_password_rejected(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "short@example.com", "password": "short"})
        assert resp.status_code == 422


class TestMe:
    def test_me_with_bearer(self, api_client: tuple[TestClient, str]) -> None:
        client, admin_id = api_client
        tokens = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 200
        data = resp.json()
        assert data["user_id"] == admin_id
        assert data["email"] == ADMIN_EMAIL
        assert data["is_admin"] is True

    def test_me_with_cookie(self, api_client: tuple[TestClient, str]) -> None:
        client, admin_id = api_client
        login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["user_id"] == admin_id

    def test_me_unauthenticated(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_me_rejects_refresh_token(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers=_bearer(tokens["refresh_token"]))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"


class TestRefresh:
    def test_refresh_rotates(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = _register(client)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200, resp.text
        rotated = resp.json()
        assert rotated["refresh_token"] != tokens["refresh_token"]
        assert resp.headers["Cache-Control"] == "no-store"

        # Old refresh token is dead, the new one works.
        old = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert old.status_code == 401
        assert old.json()["error"]["code"] == "invalid_token"
        again = client.post("/api/v1/auth/refresh", json={"refresh_token": rotated["refresh_token"]})
        assert again.status_code == 200

    def test_new_access_token_works(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = _register(client)
        rotated = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).json()
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers=_bearer(rotated["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["user_id"] == tokens["user_id"]

    def test_access_token_rejected_at_refresh(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = _register(client)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["access_token"]})
        assert resp.status_code == 401

    def test_garbage_refresh_token(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert resp.status_code == 401

    def test_second_login_kills_first_session(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        first = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
        login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert resp.status_code == 401


class TestLogout:
    def test_logout_invalidates_refresh_token(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = _register(client)
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logged out."
        after = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert after.status_code == 401

    def test_logout_with_invalid_token(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": "garbage"})
        assert resp.status_code == 401


class TestUserRoutes:
    def test_admin_lists_users(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        token = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        resp = client.get("/api/v1/auth/users", headers=_bearer(token))
        assert resp.status_code == 200
        emails = [u["email"] for u in resp.json()]
        assert ADMIN_EMAIL in emails
        assert all("password_hash" not in u for u in resp.json())

    def test_non_admin_cannot_list_users(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        token = _register(client)["access_token"]
        resp = client.get("/api/v1/auth/users", headers=_bearer(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_user_reads_self(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = _register(client)
        resp = client.get(f"/api/v1/auth/users/{tokens['user_id']}", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["email"] == tokens["email"]

    def test_user_cannot_read_other(self, api_client: tuple[TestClient, str]) -> None:
        client, admin_id = api_client
        token = _register(client)["access_token"]
        resp = client.get(f"/api/v1/auth/users/{admin_id}", headers=_bearer(token))
        assert resp.status_code == 403

    def test_admin_reads_any_user(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        other = _register(client)
        token = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        resp = client.get(f"/api/v1/auth/users/{other['user_id']}", headers=_bearer(token))
        assert resp.status_code == 200

    def test_unknown_user_404(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        token = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        resp = client.get("/api/v1/auth/users/does-not-exist", headers=_bearer(token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestSessionRoutes:
    def test_list_own_session(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = _register(client)
        resp = client.get(f"/api/v1/auth/users/{tokens['user_id']}/sessions", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 200
        listed = resp.json()
        assert len(listed) == 1
        assert listed[0]["user_id"] == tokens["user_id"]
        assert listed[0]["legacy"] is False
        assert "refresh_token_hash" not in listed[0]

    def test_revoke_own_session(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = _register(client)
        path = f"/api/v1/auth/users/{tokens['user_id']}/sessions"
        resp = client.delete(path, headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 204
        assert client.get(path, headers=_bearer(tokens["access_token"])).json() == []
        refresh = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_cannot_revoke_other_session(self, api_client: tuple[TestClient, str]) -> None:
        client, admin_id = api_client
        token = _register(client)["access_token"]
        resp = client.delete(f"/api/v1/auth/users/{admin_id}/sessions", headers=_bearer(token))
        assert resp.status_code == 403

    def test_admin_cleanup(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        other = _register(client)
        token = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        resp = client.post(f"/api/v1/auth/users/{other['user_id']}/sessions/cleanup", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json() == {"purged": 0}

    def test_cleanup_requires_admin(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        tokens = _register(client)
        resp = client.post(
            f"/api/v1/auth/users/{tokens['user_id']}/sessions/cleanup",
            headers=_bearer(tokens["access_token"]),
        )
        assert resp.status_code == 403
