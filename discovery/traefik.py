"""
discovery/traefik.py -- Router discovery via the Traefik API.

Endpoint: GET {traefik_url}/api/http/routers (HTTP basic auth when both
username and password are set).

For each router not named api@... or dashboard@..., the first Host(`...`)
of the rule becomes the URL. Scheme is http when any entry point is "web" or
"http", else https.
"""

from __future__ import annotations

import logging
import re

import httpx

from auth.settings import SystemSettings
from core.models import DiscoveredApp
from discovery.base import DiscoveryError, DiscoverySource, fetch_json, screen_url, title_name

logger = logging.getLogger("dashgate.discovery.traefik")

_HOST_RULE = re.compile(r"Host\(`([^`]*)`")
_INTERNAL_PREFIXES = ("api@", "dashboard@")


def extract_host(rule: str) -> str:
    """Host(`a.example.com`) || Host(`b.example.com`) -> "a.example.com"."""
    match = _HOST_RULE.search(rule or "")
    return match.group(1) if match else ""


def routers_to_apps(routers: list[dict]) -> list[DiscoveredApp]:
    apps = []
    for router in routers:
        router_name = router.get("name", "")
        if router_name.startswith(_INTERNAL_PREFIXES):
            continue
        host = extract_host(router.get("rule", ""))
        if not host:
            continue

        entry_points = router.get("entryPoints") or []
        scheme = "http" if any(ep in ("web", "http") for ep in entry_points) else "https"
        name = router.get("service") or router_name.split("@", 1)[0]

        apps.append(
            DiscoveredApp(
                name=title_name(name),
                url=f"{scheme}://{host}",
                source="traefik",
                description=f"Discovered via Traefik ({router.get('provider', '')})",
                status="online" if router.get("status") == "enabled" else "offline",
            )
        )
    return apps


class TraefikSource(DiscoverySource):
    tag = "traefik"

    async def poll(self, settings: SystemSettings) -> list[DiscoveredApp]:
        base_url = settings.traefik_url.rstrip("/")
        if not base_url:
            return []
        await screen_url(base_url)

        auth = None
        if settings.traefik_username and settings.traefik_password:
            auth = httpx.BasicAuth(settings.traefik_username, settings.traefik_password)

        async with self._client() as client:
            routers = await fetch_json(client, "GET", base_url + "/api/http/routers", auth=auth)
        if not isinstance(routers, list):
            raise DiscoveryError("unexpected router list payload")
        return routers_to_apps(routers)
