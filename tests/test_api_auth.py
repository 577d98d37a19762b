"""
tests/test_api_auth.py -- Login, logout, identity and OIDC endpoints.

Uses the module-scoped app_client from conftest.py (local auth on, an admin
and a member seeded). Every unsafe request carries the anti-forgery header.

Coverage:
  - password login: success, generic failure body, no-store, 400 on blanks
  - session rotation on re-login, logout clears cookie and row
  - /api/auth/me and /api/auth/config
  - per-IP login budget shared by both login paths, 429 with Retry-After
  - OIDC endpoints when no provider is configured
  - GET / redirects anonymous users to the login page
"""

from __future__ import annotations

from auth.sessions import SESSION_COOKIE
from conftest import ADMIN_PASSWORD, ADMIN_USERNAME, MEMBER_PASSWORD, MEMBER_USERNAME

GENERIC_FAILURE = "Invalid username or password"


class TestLogin:
    def test_success_sets_session_cookie(self, app_client, login) -> None:
        client, _store = app_client
        resp = login(client, ADMIN_USERNAME, ADMIN_PASSWORD)
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.headers["cache-control"] == "no-store"
        assert client.cookies.get(SESSION_COOKIE)

    def test_wrong_password_is_generic(self, app_client, login) -> None:
        client, _store = app_client
        resp = login(client, ADMIN_USERNAME, "not-the-password")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == GENERIC_FAILURE
        assert resp.headers["cache-control"] == "no-store"

    def test_unknown_user_is_generic(self, app_client, login) -> None:
        client, _store = app_client
        resp = login(client, "nobody", "whatever123")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == GENERIC_FAILURE

    def test_blank_fields_rejected(self, app_client, csrf) -> None:
        client, _store = app_client
        resp = client.post("/api/auth/login", json={"username": "admin"}, headers=csrf(client))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "bad_request"

    def test_failed_login_is_audited(self, app_client, login) -> None:
        client, store = app_client
        login(client, MEMBER_USERNAME, "wrong-password")
        entries = store.get_audit_logs(5)
        assert any(e.action == "login_failed" and e.username == MEMBER_USERNAME for e in entries)

    def test_relogin_rotates_session(self, app_client, login) -> None:
        client, store = app_client
        login(client, MEMBER_USERNAME, MEMBER_PASSWORD)
        first = client.cookies.get(SESSION_COOKIE)
        login(client, MEMBER_USERNAME, MEMBER_PASSWORD)
        second = client.cookies.get(SESSION_COOKIE)
        assert first != second
        assert store.get_session_user(first) is None
        assert store.get_session_user(second).username == MEMBER_USERNAME

    def test_form_path_shares_handler(self, app_client, csrf) -> None:
        client, _store = app_client
        client.cookies.clear()
        resp = client.post(
            "/login",
            json={"username": MEMBER_USERNAME, "password": MEMBER_PASSWORD},
            headers=csrf(client),
        )
        assert resp.status_code == 200


class TestRateLimit:
    def test_budget_exhausted_returns_429(self, app_client, login) -> None:
        client, _store = app_client
        for _ in range(5):
            assert login(client, ADMIN_USERNAME, "wrong-password").status_code == 401
        resp = login(client, ADMIN_USERNAME, ADMIN_PASSWORD)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) >= 1

    def test_both_paths_share_one_budget(self, app_client, csrf) -> None:
        client, _store = app_client
        headers = csrf(client)
        bad = {"username": ADMIN_USERNAME, "password": "wrong-password"}
        for path in ("/login", "/api/auth/login", "/login", "/api/auth/login", "/login"):
            assert client.post(path, json=bad, headers=headers).status_code == 401
        assert client.post("/api/auth/login", json=bad, headers=headers).status_code == 429


class TestIdentity:
    def test_me_requires_auth(self, app_client) -> None:
        client, _store = app_client
        client.cookies.clear()
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_for_admin(self, admin_client) -> None:
        data = admin_client.get("/api/auth/me").json()
        assert data["username"] == ADMIN_USERNAME
        assert data["isAdmin"] is True
        assert data["source"] == "local"
        assert data["displayName"] == "Administrator"

    def test_me_for_member(self, member_client) -> None:
        data = member_client.get("/api/auth/me").json()
        assert data["isAdmin"] is False
        assert data["groups"] == ["media"]

    def test_logout_clears_session(self, admin_client, app_client, csrf) -> None:
        _client, store = app_client
        token = admin_client.cookies.get(SESSION_COOKIE)
        resp = admin_client.post("/api/auth/logout", headers=csrf(admin_client))
        assert resp.status_code == 200
        assert not admin_client.cookies.get(SESSION_COOKIE)
        assert store.get_session_user(token) is None
        assert admin_client.get("/api/auth/me").status_code == 401

    def test_auth_config(self, app_client) -> None:
        client, _store = app_client
        data = client.get("/api/auth/config").json()
        assert data["localEnabled"] is True
        assert data["oidcEnabled"] is False
        assert data["loginRedirect"] == "/login"


class TestOIDC:
    def test_start_without_provider(self, app_client) -> None:
        client, _store = app_client
        resp = client.get("/auth/oidc")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "oidc_unavailable"

    def test_callback_unknown_state(self, app_client) -> None:
        client, _store = app_client
        resp = client.get("/auth/oidc/callback", params={"code": "abc", "state": "forged"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_state"

    def test_callback_provider_error_redirects(self, app_client) -> None:
        client, _store = app_client
        resp = client.get("/auth/oidc/callback", params={"error": "access_denied"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=oidc_failed"

    def test_state_is_single_use(self, app_client) -> None:
        """A valid state is consumed even when the provider is gone, so replay gets 400."""
        client, store = app_client
        store.save_oidc_state("one-shot", "/")
        assert client.get("/auth/oidc/callback", params={"code": "c", "state": "one-shot"}).status_code == 503
        assert client.get("/auth/oidc/callback", params={"code": "c", "state": "one-shot"}).status_code == 400


class TestRootRedirect:
    def test_anonymous_redirected_to_login(self, app_client) -> None:
        client, _store = app_client
        client.cookies.clear()
        resp = client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_logged_in_gets_dashboard(self, member_client) -> None:
        resp = member_client.get("/")
        assert resp.status_code == 200
        assert resp.json()["title"] == "Test Dashboard"
