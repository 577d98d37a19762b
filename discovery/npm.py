"""
discovery/npm.py -- Proxy-host discovery via the Nginx Proxy Manager API.

Auth:   POST {npm_url}/api/tokens {"identity": email, "secret": password}
        -> {"token", "expires"}. The token is cached and refreshed when it is
        within TOKEN_REFRESH_BUFFER of expiry. Check-and-refresh runs under
        one asyncio.Lock so concurrent polls never refresh twice.
Hosts:  GET {npm_url}/api/nginx/proxy-hosts with Authorization: Bearer.

The first domain name of each host becomes the URL (https when ssl_forced).
Status is "online" when the host is enabled and meta.nginx_online is true.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from auth.settings import SystemSettings
from core.models import DiscoveredApp
from discovery.base import DiscoveryError, DiscoverySource, fetch_json, host_label, screen_url

logger = logging.getLogger("dashgate.discovery.npm")

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


def _parse_expiry(raw) -> datetime:
    if isinstance(raw, str) and raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) + DEFAULT_TOKEN_LIFETIME


def proxy_hosts_to_apps(hosts: list[dict]) -> list[DiscoveredApp]:
    apps = []
    for host in hosts:
        domains = host.get("domain_names") or []
        if not domains:
            continue
        domain = domains[0]
        meta = host.get("meta") or {}
        online = bool(host.get("enabled")) and bool(meta.get("nginx_online"))
        upstream = f"{host.get('forward_scheme', '')}://{host.get('forward_host', '')}:{host.get('forward_port', '')}"
        apps.append(
            DiscoveredApp(
                name=host_label(domain),
                url=f"{'https' if host.get('ssl_forced') else 'http'}://{domain}",
                source="npm",
                description=f"Discovered via NPM (proxied to {upstream})",
                status="online" if online else "offline",
            )
        )
    return apps


class NPMSource(DiscoverySource):
    tag = "npm"

    def __init__(self, settings, transport=None):
        super().__init__(settings, transport)
        self._token = ""
        self._token_expiry = datetime.min.replace(tzinfo=timezone.utc)
        self._token_lock = asyncio.Lock()

    def _on_stop(self) -> None:
        self._token = ""
        self._token_expiry = datetime.min.replace(tzinfo=timezone.utc)

    async def _get_token(self, client, settings: SystemSettings) -> str:
        async with self._token_lock:
            if self._token and datetime.now(timezone.utc) + TOKEN_REFRESH_BUFFER < self._token_expiry:
                return self._token
            payload = await fetch_json(
                client,
                "POST",
                settings.npm_url.rstrip("/") + "/api/tokens",
                json={"identity": settings.npm_email, "secret": settings.npm_password},
            )
            token = payload.get("token") if isinstance(payload, dict) else None
            if not token:
                raise DiscoveryError("NPM returned empty token")
            self._token = token
            self._token_expiry = _parse_expiry(payload.get("expires"))
            return token

    async def poll(self, settings: SystemSettings) -> list[DiscoveredApp]:
        base_url = settings.npm_url.rstrip("/")
        if not base_url:
            return []
        await screen_url(base_url)

        async with self._client() as client:
            token = await self._get_token(client, settings)
            hosts = await fetch_json(
                client,
                "GET",
                base_url + "/api/nginx/proxy-hosts",
                headers={"Authorization": f"Bearer {token}"},
            )
        if not isinstance(hosts, list):
            raise DiscoveryError("unexpected proxy host payload")
        return proxy_hosts_to_apps(hosts)
