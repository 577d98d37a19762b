"""
auth/settings.py -- Runtime-editable system settings and the derived auth snapshot.

SystemSettings is persisted row-per-key in system_config. Booleans are stored
as "true"/"false", ints as decimal strings. Keys in SENSITIVE_KEYS are sealed
with auth/crypto.encrypt_value() on the way in and opened on the way out.

AuthRuntime is the immutable view every request reads: auth mode, parsed
trusted networks, directory config and the discovered OIDC provider. It is
rebuilt on each change and swapped in one assignment.

Two-phase update (SettingsManager.update):
  Phase 1 (apply, under the lock): mutate a copy, persist, publish a runtime
      with the previous provider, bump the generation counter.
  Phase 2 (bootstrap_oidc, no lock held): copy the OIDC fields, run discovery
      (network, up to 30 s), then re-take the lock and publish only if no
      newer apply() happened in between.

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

import asyncio
import dataclasses
import ipaddress
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from auth.crypto import DecryptionError, decrypt_value, encrypt_value
from auth.ldap import DirectoryConfig
from auth.oidc import DEFAULT_SCOPES, OIDCConfig, OIDCError, OIDCProvider
from auth.sessions import DEFAULT_SESSION_DAYS
from auth.store import CredentialStore
from core.config import Settings

logger = logging.getLogger("dashgate.auth.settings")

SENSITIVE_KEYS = frozenset(
    {
        "ldap_bind_password",
        "oidc_client_secret",
        "traefik_password",
        "npm_password",
        "caddy_password",
    }
)

PRIVATE_RANGES = "172.16.0.0/12, 10.0.0.0/8, 192.168.0.0/16"

AUTH_MODE_AUTHELIA = "authelia"
AUTH_MODE_LOCAL = "local"
AUTH_MODE_HYBRID = "hybrid"


@dataclass
class SystemSettings:
    # General
    session_days: int = 0
    cookie_secure: bool = True
    setup_completed: bool = False
    admin_group: str = "admin"
    trusted_proxies: str = ""
    trusted_proxies_migrated: bool = False

    # Providers
    proxy_auth_enabled: bool = False
    local_auth_enabled: bool = False
    ldap_auth_enabled: bool = False
    oidc_auth_enabled: bool = False
    api_key_enabled: bool = False

    # Directory
    ldap_server: str = ""
    ldap_bind_dn: str = ""
    ldap_bind_password: str = ""
    ldap_base_dn: str = ""
    ldap_user_filter: str = ""
    ldap_group_filter: str = ""
    ldap_user_attr: str = ""
    ldap_email_attr: str = ""
    ldap_display_attr: str = ""
    ldap_group_attr: str = ""
    ldap_start_tls: bool = False
    ldap_skip_verify: bool = False

    # OIDC
    oidc_issuer: str = ""
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_redirect_url: str = ""
    oidc_scopes: str = ""
    oidc_groups_claim: str = ""

    # Discovery
    docker_discovery_enabled: bool = False
    docker_socket_path: str = ""
    traefik_discovery_enabled: bool = False
    traefik_url: str = ""
    traefik_username: str = ""
    traefik_password: str = ""
    nginx_discovery_enabled: bool = False
    nginx_config_path: str = ""
    npm_discovery_enabled: bool = False
    npm_url: str = ""
    npm_email: str = ""
    npm_password: str = ""
    caddy_discovery_enabled: bool = False
    caddy_admin_url: str = ""
    caddy_username: str = ""
    caddy_password: str = ""

    def copy(self) -> SystemSettings:
        return dataclasses.replace(self)


# ---------------------------------------------------------------------------
# Row codec
# ---------------------------------------------------------------------------


def settings_from_rows(rows: dict[str, str], key: bytes) -> SystemSettings:
    """Build SystemSettings from system_config rows. Unknown keys are ignored."""
    settings = SystemSettings()
    for f in dataclasses.fields(SystemSettings):
        if f.name not in rows:
            continue
        raw = rows[f.name]
        if f.name in SENSITIVE_KEYS:
            try:
                raw = decrypt_value(key, raw)
            except DecryptionError as exc:
                logger.warning("Failed to decrypt setting %r: %s", f.name, exc)
                raw = ""
        kind = type(f.default)
        if kind is bool:
            setattr(settings, f.name, raw == "true")
        elif kind is int:
            try:
                setattr(settings, f.name, int(raw))
            except ValueError:
                logger.warning("Setting %r is not an integer: %r", f.name, raw)
        else:
            setattr(settings, f.name, raw)
    return settings


def settings_to_rows(settings: SystemSettings, key: bytes) -> dict[str, str]:
    rows: dict[str, str] = {}
    for f in dataclasses.fields(SystemSettings):
        value = getattr(settings, f.name)
        if isinstance(value, bool):
            rows[f.name] = "true" if value else "false"
        elif f.name in SENSITIVE_KEYS:
            rows[f.name] = encrypt_value(key, value)
        else:
            rows[f.name] = str(value)
    return rows


# ---------------------------------------------------------------------------
# Environment overlay
# ---------------------------------------------------------------------------


def apply_environment(settings: SystemSettings, env: Settings) -> SystemSettings:
    """Overlay process environment onto stored settings. Returns a new object.

    AUTH_MODE only seeds the provider toggles until setup has been completed;
    after that the stored toggles win.
    """
    s = settings.copy()

    if not s.setup_completed and env.auth_mode:
        if env.auth_mode == AUTH_MODE_LOCAL:
            s.local_auth_enabled = True
        elif env.auth_mode == AUTH_MODE_HYBRID:
            s.local_auth_enabled = True
            s.proxy_auth_enabled = True
        else:
            s.proxy_auth_enabled = True

    if env.docker_socket:
        s.docker_socket_path = env.docker_socket
    if env.docker_discovery:
        s.docker_discovery_enabled = True

    if env.traefik_url:
        s.traefik_url = env.traefik_url
    if env.traefik_username:
        s.traefik_username = env.traefik_username
    if env.traefik_password:
        s.traefik_password = env.traefik_password
    if env.traefik_url and env.traefik_discovery:
        s.traefik_discovery_enabled = True

    if env.nginx_config_path:
        s.nginx_config_path = env.nginx_config_path
    if env.nginx_discovery:
        s.nginx_discovery_enabled = True

    if env.npm_url and env.npm_email and env.npm_password:
        s.npm_url = env.npm_url
        s.npm_email = env.npm_email
        s.npm_password = env.npm_password
        if env.npm_discovery:
            s.npm_discovery_enabled = True

    if env.caddy_admin_url:
        s.caddy_admin_url = env.caddy_admin_url
    if env.caddy_username:
        s.caddy_username = env.caddy_username
    if env.caddy_password:
        s.caddy_password = env.caddy_password
    if env.caddy_discovery:
        s.caddy_discovery_enabled = True

    return s


def parse_trusted_proxies(raw: str) -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
    """Parse a comma-separated list of IPs and CIDRs. Invalid entries are skipped."""
    networks = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Ignoring invalid trusted proxy entry %r", entry)
    return tuple(networks)


# ---------------------------------------------------------------------------
# Runtime snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthRuntime:
    mode: str = AUTH_MODE_AUTHELIA
    session_days: int = DEFAULT_SESSION_DAYS
    cookie_secure: bool = True
    admin_groups: frozenset[str] = frozenset({"admin"})
    trusted_networks: tuple = ()
    has_trusted_proxies: bool = False
    proxy_enabled: bool = False
    local_enabled: bool = False
    ldap_enabled: bool = False
    oidc_enabled: bool = False
    api_key_enabled: bool = False
    ldap: DirectoryConfig | None = None
    oidc: OIDCProvider | None = field(default=None, compare=False)

    def is_admin(self, groups: list[str]) -> bool:
        return any(g.strip().lower() in self.admin_groups for g in groups)

    @property
    def proxy_strategy_enabled(self) -> bool:
        return self.proxy_enabled or self.mode in (AUTH_MODE_AUTHELIA, AUTH_MODE_HYBRID)

    @property
    def session_strategy_enabled(self) -> bool:
        return (
            self.local_enabled
            or self.ldap_enabled
            or self.oidc_enabled
            or self.mode in (AUTH_MODE_LOCAL, AUTH_MODE_HYBRID)
        )

    @property
    def oidc_available(self) -> bool:
        return self.oidc_enabled and self.oidc is not None


def login_redirect_target(runtime: AuthRuntime) -> str | None:
    """Where an unauthenticated browser should go, or None for a plain 401."""
    interactive_local = runtime.local_enabled or runtime.ldap_enabled
    if runtime.oidc_available and not interactive_local:
        return "/auth/oidc"
    if interactive_local or runtime.oidc_available:
        return "/login"
    return None


def _admin_groups(raw: str) -> frozenset[str]:
    names = {g.strip().lower() for g in (raw or "admin").split(",") if g.strip()}
    return frozenset(names or {"admin"})


def _directory_config(s: SystemSettings) -> DirectoryConfig | None:
    if not (s.ldap_auth_enabled and s.ldap_server):
        return None
    return DirectoryConfig(
        server=s.ldap_server,
        base_dn=s.ldap_base_dn,
        bind_dn=s.ldap_bind_dn,
        bind_password=s.ldap_bind_password,
        user_filter=s.ldap_user_filter or "(uid=%s)",
        group_filter=s.ldap_group_filter,
        user_attr=s.ldap_user_attr or "uid",
        email_attr=s.ldap_email_attr or "mail",
        display_attr=s.ldap_display_attr or "displayName",
        group_attr=s.ldap_group_attr or "memberOf",
        start_tls=s.ldap_start_tls,
        skip_verify=s.ldap_skip_verify,
    )


def oidc_config(s: SystemSettings) -> OIDCConfig | None:
    if not (s.oidc_auth_enabled and s.oidc_issuer and s.oidc_client_id):
        return None
    return OIDCConfig(
        issuer=s.oidc_issuer,
        client_id=s.oidc_client_id,
        client_secret=s.oidc_client_secret,
        redirect_url=s.oidc_redirect_url,
        scopes=s.oidc_scopes or DEFAULT_SCOPES,
        groups_claim=s.oidc_groups_claim or "groups",
    )


def build_runtime(s: SystemSettings, env: Settings, oidc: OIDCProvider | None = None) -> AuthRuntime:
    if s.proxy_auth_enabled and s.local_auth_enabled:
        mode = AUTH_MODE_HYBRID
    elif s.local_auth_enabled:
        mode = AUTH_MODE_LOCAL
    else:
        mode = AUTH_MODE_AUTHELIA

    if s.session_days > 0:
        days = s.session_days
    elif env.session_duration_days > 0:
        days = env.session_duration_days
    else:
        days = DEFAULT_SESSION_DAYS

    secure = s.cookie_secure if env.cookie_secure is None else env.cookie_secure
    networks = parse_trusted_proxies(s.trusted_proxies)

    return AuthRuntime(
        mode=mode,
        session_days=days,
        cookie_secure=secure,
        admin_groups=_admin_groups(s.admin_group),
        trusted_networks=networks,
        has_trusted_proxies=bool(networks),
        proxy_enabled=s.proxy_auth_enabled,
        local_enabled=s.local_auth_enabled,
        ldap_enabled=s.ldap_auth_enabled,
        oidc_enabled=s.oidc_auth_enabled,
        api_key_enabled=s.api_key_enabled,
        ldap=_directory_config(s),
        oidc=oidc if s.oidc_auth_enabled else None,
    )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


def _warn_untrusted_proxy(runtime: AuthRuntime) -> None:
    if runtime.proxy_strategy_enabled and not runtime.has_trusted_proxies:
        logger.warning("Proxy auth headers will be ignored: no trusted proxies configured")


class SettingsManager:
    """Owns SystemSettings and the published AuthRuntime.

    Usage:
        manager = SettingsManager(store, key, get_settings())
        manager.load()
        await manager.bootstrap_oidc()
        runtime = manager.runtime()
    """

    def __init__(
        self,
        store: CredentialStore,
        key: bytes,
        env: Settings,
        oidc_discover: Callable[[OIDCConfig], Awaitable[OIDCProvider]] = OIDCProvider.discover,
    ) -> None:
        self.store = store
        self.key = key
        self.env = env
        self._discover = oidc_discover
        self._lock = threading.RLock()
        self._generation = 0
        self._settings = SystemSettings()
        self._runtime = build_runtime(self._settings, env)

    def load(self) -> SystemSettings:
        """Read rows, overlay the environment, run one-time migrations, publish."""
        settings = settings_from_rows(self.store.load_system_config(), self.key)
        settings = apply_environment(settings, self.env)

        if settings.setup_completed and not settings.trusted_proxies_migrated:
            if settings.proxy_auth_enabled and not settings.trusted_proxies:
                settings.trusted_proxies = PRIVATE_RANGES
                logger.warning(
                    "MIGRATION: proxy auth enabled without trusted proxies, set to private ranges (%s). "
                    "Review this in the admin settings.",
                    PRIVATE_RANGES,
                )
            settings.trusted_proxies_migrated = True
            self.store.save_system_config(settings_to_rows(settings, self.key))

        with self._lock:
            self._settings = settings
            self._runtime = build_runtime(settings, self.env)
            self._generation += 1
        _warn_untrusted_proxy(self._runtime)
        return settings.copy()

    def current(self) -> SystemSettings:
        with self._lock:
            return self._settings.copy()

    def runtime(self) -> AuthRuntime:
        return self._runtime

    def needs_setup(self) -> bool:
        with self._lock:
            completed = self._settings.setup_completed
        return not completed and not self.store.has_users()

    def apply(self, mutator: Callable[[SystemSettings], None]) -> SystemSettings:
        """Phase 1: mutate, persist and publish without touching the network.

        The previous OIDC provider is carried over until bootstrap_oidc()
        replaces it. Store errors propagate and leave the published state as it was.
        """
        with self._lock:
            updated = self._settings.copy()
            mutator(updated)
            updated = apply_environment(updated, self.env)
            self.store.save_system_config(settings_to_rows(updated, self.key))
            self._settings = updated
            self._runtime = build_runtime(updated, self.env, self._runtime.oidc)
            self._generation += 1
            _warn_untrusted_proxy(self._runtime)
            return updated.copy()

    async def bootstrap_oidc(self) -> bool:
        """Phase 2: discover the OIDC provider outside the lock, then publish.

        Returns True when a provider is available afterwards.
        """
        with self._lock:
            config = oidc_config(self._settings)
            generation = self._generation

        provider = None
        if config is not None:
            try:
                provider = await self._discover(config)
            except OIDCError as exc:
                logger.error("Failed to initialize OIDC provider: %s", exc)

        with self._lock:
            if self._generation != generation:
                logger.info("Settings changed during OIDC bootstrap; discarding result")
                return self._runtime.oidc is not None
            self._runtime = build_runtime(self._settings, self.env, provider)
        return provider is not None

    async def update(self, mutator: Callable[[SystemSettings], None]) -> SystemSettings:
        """apply() on a worker thread (SQLite writes block), then bootstrap_oidc()."""
        updated = await asyncio.to_thread(self.apply, mutator)
        await self.bootstrap_oidc()
        return updated
