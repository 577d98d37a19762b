"""
tests/conftest.py -- Shared test fixtures for DashGate.

This module provides:
  - _make_store(): isolated in-memory CredentialStore per test module
  - _make_env(): Settings pointing at a throwaway static config file
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - running_app(): start the app on a fresh store (optionally seeded)
  - app_client: TestClient with local auth, API keys, an admin and a member
  - csrf / login fixtures: helpers that carry the anti-forgery token

Design: Named shared-memory SQLite URIs (not plain :memory:) keep one database
per name for the whole process, so the store a fixture seeds is the store the
route handlers read from the threadpool.

Cookies: TestClient talks to http://testserver, where a Secure cookie would
never be sent back. Every env built here sets cookie_secure=False.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import auth.apikeys
import auth.passwords

# Fast bcrypt for tests. Production cost stays at 12.
auth.passwords.BCRYPT_ROUNDS = 4
auth.apikeys.BCRYPT_ROUNDS = 4

from api.limiter import limiter
from api.main import app, init_state
from api.middleware import CSRF_COOKIE, CSRF_HEADER
from auth.models import User
from auth.passwords import hash_password
from auth.store import CredentialStore
from core.config import Settings

TEST_KEY = bytes(range(32))

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "adminpass123"
MEMBER_USERNAME = "alice"
MEMBER_PASSWORD = "alicepass123"

STATIC_CONFIG = """\
title: Test Dashboard
categories:
  - name: Media
    apps:
      - name: Jellyfin
        url: https://jellyfin.test
        icon: mdi:jellyfish
        groups: [media]
      - name: Sonarr
        url: https://sonarr.test
        groups: [media, ops]
        depends_on: [Jellyfin]
  - name: Infrastructure
    apps:
      - name: Portainer
        url: https://portainer.test
        groups: []
"""


# ---------------------------------------------------------------------------
# Store and settings helpers
# ---------------------------------------------------------------------------


def _make_store(db_suffix: str) -> CredentialStore:
    """Create an isolated named shared-memory store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'admin').
    """
    return CredentialStore(f"sqlite:///file:test_dashgate_{db_suffix}?mode=memory&cache=shared&uri=true")


def _make_env(tmp_dir: Path, **overrides) -> Settings:
    config_path = tmp_dir / "config.yaml"
    config_path.write_text(STATIC_CONFIG, encoding="utf-8")
    values = {
        "db_path": str(tmp_dir / "dashgate.db"),
        "config_path": str(config_path),
        "cookie_secure": False,
        "encryption_key": "",
        "auth_mode": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _patch_lifespan(store: CredentialStore, env: Settings, transport=None):
    """Return an async context manager that replaces the real lifespan.

    Runs the same init_state() as production against the test store, but
    starts no background loop so tests never race a health sweep.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, store, env, TEST_KEY, transport=transport)
        app.state.tasks = [asyncio.create_task(asyncio.sleep(99999))]
        yield
        for task in app.state.tasks:
            task.cancel()
        await app.state.discovery.stop_all()

    return test_lifespan


def _seed_users(store: CredentialStore) -> tuple[int, int]:
    admin_id = store.create_user(
        User(
            username=ADMIN_USERNAME,
            password_hash=hash_password(ADMIN_PASSWORD),
            email="admin@example.com",
            display_name="Administrator",
            groups=["admin"],
        )
    )
    member_id = store.create_user(
        User(
            username=MEMBER_USERNAME,
            password_hash=hash_password(MEMBER_PASSWORD),
            display_name="Alice",
            groups=["media"],
        )
    )
    return admin_id, member_id


def _enable_local_and_keys(s) -> None:
    s.local_auth_enabled = True
    s.api_key_enabled = True
    s.setup_completed = True


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def csrf_headers(client: TestClient) -> dict[str, str]:
    """Header echoing the anti-forgery cookie, fetching one first if needed."""
    token = client.cookies.get(CSRF_COOKIE)
    if not token:
        client.get("/api/auth/config")
        token = client.cookies.get(CSRF_COOKIE)
    return {CSRF_HEADER: token}


def login_as(client: TestClient, username: str, password: str):
    """Drop every cookie, then log in through the JSON endpoint."""
    client.cookies.clear()
    return client.post(
        "/api/auth/login",
        json={"username": username, "password": password},
        headers=csrf_headers(client),
    )


@pytest.fixture
def csrf() -> Callable[[TestClient], dict[str, str]]:
    return csrf_headers


@pytest.fixture
def login() -> Callable:
    return login_as


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> Generator[None, None, None]:
    """Login budgets are per process; start every test with a clean counter."""
    limiter.reset()
    yield
    limiter.reset()


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@contextmanager
def running_app(
    suffix: str,
    tmp_dir: Path,
    transport=None,
    seed: bool = True,
    **env_overrides,
) -> Generator[tuple[TestClient, CredentialStore], None, None]:
    """Start the app against a fresh store and yield (client, store).

    With seed=True the two standard users exist and local auth plus API keys
    are enabled; with seed=False the store is empty and setup is pending.
    """
    store = _make_store(suffix)
    env = _make_env(tmp_dir, **env_overrides)
    if seed:
        _seed_users(store)

    app.router.lifespan_context = _patch_lifespan(store, env, transport)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        if seed:
            app.state.settings_manager.apply(_enable_local_and_keys)
        yield client, store

    store.close()


@pytest.fixture(scope="module")
def app_client(request, tmp_path_factory) -> Generator[tuple[TestClient, CredentialStore], None, None]:
    """Yield (client, store) with local auth and API keys enabled.

    Two users are seeded: 'admin' (group admin) and 'alice' (group media).
    follow_redirects=False so tests can assert on Location headers.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    with running_app(suffix, tmp_path_factory.mktemp(suffix)) as pair:
        yield pair


@pytest.fixture
def admin_client(app_client, login) -> TestClient:
    """The shared client, logged in as the admin."""
    client, _store = app_client
    resp = login(client, ADMIN_USERNAME, ADMIN_PASSWORD)
    assert resp.status_code == 200, resp.text
    return client


@pytest.fixture
def member_client(app_client, login) -> TestClient:
    """The shared client, logged in as the non-admin member."""
    client, _store = app_client
    resp = login(client, MEMBER_USERNAME, MEMBER_PASSWORD)
    assert resp.status_code == 200, resp.text
    return client
