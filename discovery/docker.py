"""
discovery/docker.py -- Container runtime discovery via the Docker Engine API.

Endpoint: GET /containers/json?all=true

Transport by docker_socket_path:
  ""  or a filesystem path  -> Unix socket (default /var/run/docker.sock)
  tcp://host:port, http://  -> plain TCP, SSRF-screened first
  npipe://                  -> unsupported, poll fails with a hint

Only containers labelled dashgate.enable=true and carrying dashgate.url are
listed. Labels read:
  dashgate.name         display name (default: container name)
  dashgate.url          link target (required)
  dashgate.icon         icon reference
  dashgate.description  free text
  dashgate.groups       comma-separated allow-list
  dashgate.depends_on   comma-separated dependency names
Status is "online" when the container state is "running", else "offline".
"""

from __future__ import annotations

import logging
import os

import httpx

from auth.settings import SystemSettings
from core.models import DiscoveredApp
from discovery.base import DiscoveryError, DiscoverySource, fetch_json, screen_url

logger = logging.getLogger("dashgate.discovery.docker")

DEFAULT_SOCKET = "/var/run/docker.sock"
LABEL_PREFIX = "dashgate."


def _split_label(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()] if value else []


def containers_to_apps(containers: list[dict]) -> list[DiscoveredApp]:
    apps = []
    for container in containers:
        labels = container.get("Labels") or {}
        if labels.get(LABEL_PREFIX + "enable") != "true":
            continue

        name = labels.get(LABEL_PREFIX + "name", "")
        if not name:
            names = container.get("Names") or []
            if not names:
                continue
            name = names[0].lstrip("/")

        url = labels.get(LABEL_PREFIX + "url", "")
        if not url:
            continue

        apps.append(
            DiscoveredApp(
                name=name,
                url=url,
                source="docker",
                icon=labels.get(LABEL_PREFIX + "icon", ""),
                description=labels.get(LABEL_PREFIX + "description", ""),
                groups=_split_label(labels.get(LABEL_PREFIX + "groups", "")),
                depends_on=_split_label(labels.get(LABEL_PREFIX + "depends_on", "")),
                status="online" if container.get("State") == "running" else "offline",
            )
        )
    return apps


class DockerSource(DiscoverySource):
    tag = "docker"

    async def poll(self, settings: SystemSettings) -> list[DiscoveredApp]:
        socket_path = settings.docker_socket_path or DEFAULT_SOCKET

        if socket_path.startswith(("tcp://", "http://")):
            base_url = socket_path.replace("tcp://", "http://", 1)
            await screen_url(base_url)
            client = self._client()
        elif socket_path.startswith("npipe://"):
            raise DiscoveryError(
                "Windows named pipes (npipe://) are not supported; use tcp://localhost:2375 instead"
            )
        else:
            if not os.path.exists(socket_path):
                raise DiscoveryError(f"Docker socket not found at {socket_path}")
            base_url = "http://localhost"
            client = httpx.AsyncClient(timeout=10.0, transport=httpx.AsyncHTTPTransport(uds=socket_path))

        async with client:
            containers = await fetch_json(client, "GET", base_url.rstrip("/") + "/containers/json", params={"all": "true"})
        if not isinstance(containers, list):
            raise DiscoveryError("unexpected container list payload")
        return containers_to_apps(containers)
