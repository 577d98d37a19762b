"""
auth/resolver.py -- Map an incoming request to an AuthenticatedUser.

Strategies, tried in this fixed order; the first non-None result wins:
  1. ApiKeyIdentifier   -- X-API-Key or Authorization: Bearer / ApiKey
  2. ProxyIdentifier    -- Remote-User headers from a trusted proxy address
  3. SessionIdentifier  -- dashgate_session cookie

Each strategy reads the current AuthRuntime snapshot passed in by the resolver
and decides for itself whether it is enabled. The resolver does nothing but
walk the list.

API-key cost cap:
  Candidates share an 8-character prefix. At most MAX_KEY_CANDIDATES bcrypt
  comparisons run per request; a further candidate aborts the strategy with a
  warning. last_used_at is stamped after candidate iteration has finished.

Layer rule: no imports from api/, discovery/ or health/. starlette.requests is
allowed; the resolver reads headers, cookies and the transport address only.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Protocol

from starlette.requests import Request

from auth.apikeys import PREFIX_LENGTH, extract_api_key, verify_api_key
from auth.models import AuthenticatedUser
from auth.sessions import SESSION_COOKIE
from auth.settings import AuthRuntime
from auth.store import CredentialStore, iso

logger = logging.getLogger("dashgate.auth.resolver")

MAX_KEY_CANDIDATES = 3


class Identifier(Protocol):
    def identify(self, request: Request, runtime: AuthRuntime) -> AuthenticatedUser | None: ...


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class ApiKeyIdentifier:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def identify(self, request: Request, runtime: AuthRuntime) -> AuthenticatedUser | None:
        if not runtime.api_key_enabled:
            return None
        raw_key = extract_api_key(request.headers)
        if len(raw_key) < PREFIX_LENGTH:
            return None

        prefix = raw_key[:PREFIX_LENGTH]
        candidates = self.store.list_api_keys_by_prefix(prefix)
        now = iso(datetime.now(timezone.utc))

        matched = None
        checked = 0
        for key in candidates:
            if key.expires_at and key.expires_at <= now:
                continue
            checked += 1
            if checked > MAX_KEY_CANDIDATES:
                logger.warning("API key prefix %s has too many candidates; lookup aborted", prefix)
                return None
            if verify_api_key(raw_key, key.key_hash):
                matched = key
                break

        if matched is None:
            return None

        self.store.touch_api_key(matched.id)
        return AuthenticatedUser(
            username=matched.username,
            display_name=matched.username,
            groups=list(matched.groups),
            source="apikey",
            is_admin=runtime.is_admin(matched.groups),
            user_id=matched.user_id,
        )


class ProxyIdentifier:
    """Trust Remote-* headers only from addresses inside the trusted networks."""

    def identify(self, request: Request, runtime: AuthRuntime) -> AuthenticatedUser | None:
        username = request.headers.get("remote-user", "")
        if not username or not runtime.proxy_strategy_enabled:
            return None
        if not self._from_trusted_proxy(request, runtime):
            return None

        groups_header = request.headers.get("remote-groups", "")
        groups = [g.strip() for g in groups_header.split(",")] if groups_header else []

        return AuthenticatedUser(
            username=username,
            display_name=request.headers.get("remote-name", "") or username,
            groups=groups,
            source="proxy",
            is_admin=runtime.is_admin(groups),
            email=request.headers.get("remote-email", ""),
        )

    @staticmethod
    def _from_trusted_proxy(request: Request, runtime: AuthRuntime) -> bool:
        if not runtime.has_trusted_proxies:
            return False
        host = request.client.host if request.client else ""
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            logger.warning("Could not parse remote address %r", host)
            return False
        if any(address in network for network in runtime.trusted_networks):
            return True
        logger.warning("Proxy auth headers rejected from untrusted address %s", host)
        return False


class SessionIdentifier:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def identify(self, request: Request, runtime: AuthRuntime) -> AuthenticatedUser | None:
        if not runtime.session_strategy_enabled:
            return None
        token = request.cookies.get(SESSION_COOKIE, "")
        if not token:
            return None
        user = self.store.get_session_user(token)
        if user is None:
            return None
        return AuthenticatedUser(
            username=user.username,
            display_name=user.display_name or user.username,
            groups=list(user.groups),
            source=user.source,
            is_admin=runtime.is_admin(user.groups),
            email=user.email or "",
            user_id=user.id,
        )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class IdentityResolver:
    """Walk the identifiers in order against the current runtime snapshot.

    Usage:
        resolver = IdentityResolver.default(store, settings_manager.runtime)
        user = resolver.resolve(request)
    """

    def __init__(self, identifiers: Sequence[Identifier], runtime: Callable[[], AuthRuntime]) -> None:
        self.identifiers = tuple(identifiers)
        self._runtime = runtime

    @classmethod
    def default(cls, store: CredentialStore, runtime: Callable[[], AuthRuntime]) -> IdentityResolver:
        return cls(
            [ApiKeyIdentifier(store), ProxyIdentifier(), SessionIdentifier(store)],
            runtime,
        )

    def resolve(self, request: Request) -> AuthenticatedUser | None:
        runtime = self._runtime()
        for identifier in self.identifiers:
            user = identifier.identify(request, runtime)
            if user is not None:
                return user
        return None
