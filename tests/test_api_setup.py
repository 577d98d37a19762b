"""
tests/test_api_setup.py -- Fresh installs and environment-pinned sources.

Each test starts its own app (running_app) on an empty or specially
configured store, so nothing leaks into the shared module clients.

Coverage:
  - GET / redirects to /setup until setup completes
  - enabling local auth with no local user is refused (409)
  - AUTH_MODE seeds providers on a fresh install
  - a *_DISCOVERY pinned source cannot be edited (409)
"""

from __future__ import annotations

from pathlib import Path

from auth.apikeys import generate_api_key, hash_api_key
from auth.models import ApiKey
from auth.store import CredentialStore

from conftest import ADMIN_PASSWORD, ADMIN_USERNAME, csrf_headers, login_as, running_app


def _admin_key(store: CredentialStore) -> str:
    raw, prefix = generate_api_key()
    store.create_api_key(
        ApiKey(name="bootstrap", key_hash=hash_api_key(raw), key_prefix=prefix, username="root", groups=["admin"])
    )
    return raw


def test_fresh_install_redirects_to_setup(tmp_path: Path) -> None:
    with running_app("setup_redirect", tmp_path, seed=False) as (client, _store):
        resp = client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/setup"


def test_local_auth_needs_a_local_user(tmp_path: Path) -> None:
    with running_app("setup_local", tmp_path, seed=False) as (client, store):
        raw = _admin_key(store)
        client.app.state.settings_manager.apply(lambda s: setattr(s, "api_key_enabled", True))
        headers = {"Authorization": f"Bearer {raw}"}

        resp = client.put("/api/admin/system-config", json={"localAuthEnabled": True}, headers=headers)
        assert resp.status_code == 409

        resp = client.post(
            "/api/admin/local-users",
            json={"username": "owner", "password": "ownerpass1", "groups": ["admin"]},
            headers=headers,
        )
        assert resp.status_code == 201
        resp = client.put("/api/admin/system-config", json={"localAuthEnabled": True}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["localAuthEnabled"] is True
        assert resp.json()["setupCompleted"] is True


def test_auth_mode_seeds_fresh_install(tmp_path: Path) -> None:
    with running_app("setup_mode", tmp_path, seed=False, auth_mode="hybrid") as (client, _store):
        config = client.get("/api/auth/config").json()
        assert config["localEnabled"] is True
        assert config["proxyEnabled"] is True


def test_pinned_source_is_locked(tmp_path: Path) -> None:
    with running_app("setup_pinned", tmp_path, nginx_discovery=True) as (client, _store):
        assert login_as(client, ADMIN_USERNAME, ADMIN_PASSWORD).status_code == 200
        view = client.get("/api/admin/discovery/nginx").json()
        assert view["envOverride"] is True
        assert view["enabled"] is True

        resp = client.put(
            "/api/admin/discovery/nginx",
            json={"enabled": False},
            headers=csrf_headers(client),
        )
        assert resp.status_code == 409
