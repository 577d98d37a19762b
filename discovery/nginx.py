"""
discovery/nginx.py -- Reverse-proxy discovery from an nginx config directory.

Reads every *.conf directly under nginx_config_path (default
/etc/nginx/conf.d), then follows include directives one level deep. Each
include target (globs allowed) is resolved through symlinks and must stay
inside the base directory.

A server block yields an app when it has:
  server_name  with a usable host (not "_", "localhost" or "default_server")
  proxy_pass   (static file servers are skipped)
Scheme is https when any listen directive uses 443 or ssl. The first
occurrence of a host wins.

All file I/O runs in a worker thread; the parser itself is pure.
"""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import re

from auth.settings import SystemSettings
from core.models import DiscoveredApp
from core.urlvalidation import PathValidationError, resolve_within, validate_nginx_config_path
from discovery.base import DiscoveryError, DiscoverySource, host_label

logger = logging.getLogger("dashgate.discovery.nginx")

DEFAULT_CONFIG_PATH = "/etc/nginx/conf.d"

_SERVER_NAME = re.compile(r"server_name\s+([^;]+);")
_PROXY_PASS = re.compile(r"proxy_pass\s+([^;]+);")
_LISTEN = re.compile(r"listen\s+(?:[^\s;]*:)?(\d+)([^;]*);")
_INCLUDE = re.compile(r"include\s+([^;]+);")
_SERVER_OPEN = re.compile(r"\bserver\s*\{")
_SKIP_HOSTS = {"_", "localhost", "default_server", ""}


def _server_blocks(text: str) -> list[str]:
    blocks = []
    for match in _SERVER_OPEN.finditer(text):
        depth = 1
        start = match.end()
        end = len(text)
        for i in range(start, len(text)):
            char = text[i]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        blocks.append(text[start:end])
    return blocks


def parse_server_blocks(text: str) -> list[tuple[str, str, bool]]:
    """Return (host, upstream, https) for every proxied server block in text."""
    results = []
    for block in _server_blocks(text):
        names = _SERVER_NAME.search(block)
        if names is None:
            continue
        host = next((n for n in names.group(1).split() if n not in _SKIP_HOSTS and "*" not in n), "")
        if not host:
            continue
        upstream = _PROXY_PASS.search(block)
        if upstream is None:
            continue
        https = any(port == "443" or "ssl" in rest.split() for port, rest in _LISTEN.findall(block))
        results.append((host, upstream.group(1).strip(), https))
    return results


def _read(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as fh:
        return fh.read()


def scan_config_dir(base: str) -> list[DiscoveredApp]:
    """Blocking scan of base and its one-level includes."""
    if not os.path.isdir(base):
        raise DiscoveryError(f"nginx config path is not a directory: {base}")

    top_level = sorted(
        os.path.join(base, name)
        for name in os.listdir(base)
        if name.endswith(".conf") and os.path.isfile(os.path.join(base, name))
    )

    files: list[str] = []
    seen_files: set[str] = set()
    for path in top_level:
        real = os.path.realpath(path)
        if real not in seen_files:
            seen_files.add(real)
            files.append(path)

    for path in top_level:
        try:
            content = _read(path)
        except OSError:
            continue
        for include in _INCLUDE.findall(content):
            pattern = include.strip().strip("\"'")
            if not os.path.isabs(pattern):
                pattern = os.path.join(base, pattern)
            for candidate in sorted(glob.glob(pattern)):
                if not candidate.endswith(".conf"):
                    continue
                try:
                    real = resolve_within(base, candidate)
                except PathValidationError:
                    logger.warning("nginx include %s escapes base directory, skipping", candidate)
                    continue
                if real not in seen_files:
                    seen_files.add(real)
                    files.append(real)

    apps = []
    seen_hosts: set[str] = set()
    for path in files:
        try:
            content = _read(path)
        except OSError as exc:
            logger.warning("Error reading nginx config file %s: %s", path, exc)
            continue
        for host, upstream, https in parse_server_blocks(content):
            if host in seen_hosts:
                continue
            seen_hosts.add(host)
            apps.append(
                DiscoveredApp(
                    name=host_label(host),
                    url=f"{'https' if https else 'http'}://{host}",
                    source="nginx",
                    description=f"Discovered via Nginx (proxied to {upstream})",
                    status="online",
                )
            )
    return apps


class NginxSource(DiscoverySource):
    tag = "nginx"

    async def poll(self, settings: SystemSettings) -> list[DiscoveredApp]:
        base = settings.nginx_config_path or DEFAULT_CONFIG_PATH
        try:
            validate_nginx_config_path(base)
        except PathValidationError as exc:
            raise DiscoveryError(f"invalid nginx config path: {exc}") from exc
        return await asyncio.to_thread(scan_config_dir, base)
