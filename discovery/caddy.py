"""
discovery/caddy.py -- Route discovery via the Caddy admin API.

Endpoint: GET {caddy_admin_url}/config/apps/http/servers/ (HTTP basic auth
when both username and password are set). The payload maps server names to
{listen: [...], routes: [{match: [{host: [...]}], handle: [...]}]}.

Hosts come from route matches. subroute handlers carry their own routes and
are walked recursively, both for further hosts and for the first
reverse_proxy upstream dial address. A server listening on :443 (or with
"https" in a listen address) yields https URLs.
"""

from __future__ import annotations

import logging

import httpx

from auth.settings import SystemSettings
from core.models import DiscoveredApp
from discovery.base import DiscoveryError, DiscoverySource, fetch_json, host_label, screen_url

logger = logging.getLogger("dashgate.discovery.caddy")


def find_upstream(handlers: list) -> str:
    """First reverse_proxy upstream dial address in a handler tree, or ""."""
    for handler in handlers or []:
        if not isinstance(handler, dict):
            continue
        kind = handler.get("handler")
        if kind == "reverse_proxy":
            upstreams = handler.get("upstreams") or []
            if upstreams and isinstance(upstreams[0], dict) and upstreams[0].get("dial"):
                return upstreams[0]["dial"]
        if kind == "subroute":
            for route in handler.get("routes") or []:
                if isinstance(route, dict):
                    dial = find_upstream(route.get("handle") or [])
                    if dial:
                        return dial
    return ""


def _route_hosts(route: dict) -> list[str]:
    hosts = []
    for match in route.get("match") or []:
        if isinstance(match, dict):
            hosts.extend(h for h in match.get("host") or [] if isinstance(h, str) and h)
    return hosts


def collect_routes(routes: list, inherited_upstream: str = "") -> list[tuple[str, str]]:
    """Walk routes and nested subroutes; return (host, upstream) pairs in order."""
    found = []
    for route in routes or []:
        if not isinstance(route, dict):
            continue
        handlers = route.get("handle") or []
        upstream = find_upstream(handlers) or inherited_upstream
        for host in _route_hosts(route):
            found.append((host, upstream))
        for handler in handlers:
            if isinstance(handler, dict) and handler.get("handler") == "subroute":
                found.extend(collect_routes(handler.get("routes") or [], upstream))
    return found


def servers_to_apps(servers: dict) -> list[DiscoveredApp]:
    apps = []
    seen: set[str] = set()
    for server in servers.values():
        if not isinstance(server, dict):
            continue
        listen = server.get("listen") or []
        https = any(":443" in addr or "https" in addr for addr in listen)
        for host, upstream in collect_routes(server.get("routes") or []):
            if host in seen:
                continue
            seen.add(host)
            description = f"Discovered via Caddy (proxied to {upstream})" if upstream else "Discovered via Caddy"
            apps.append(
                DiscoveredApp(
                    name=host_label(host),
                    url=f"{'https' if https else 'http'}://{host}",
                    source="caddy",
                    description=description,
                    status="online",
                )
            )
    return apps


class CaddySource(DiscoverySource):
    tag = "caddy"

    async def poll(self, settings: SystemSettings) -> list[DiscoveredApp]:
        base_url = settings.caddy_admin_url.rstrip("/")
        if not base_url:
            return []
        await screen_url(base_url)

        auth = None
        if settings.caddy_username and settings.caddy_password:
            auth = httpx.BasicAuth(settings.caddy_username, settings.caddy_password)

        async with self._client() as client:
            servers = await fetch_json(client, "GET", base_url + "/config/apps/http/servers/", auth=auth)
        if not isinstance(servers, dict):
            raise DiscoveryError("unexpected server config payload")
        return servers_to_apps(servers)
