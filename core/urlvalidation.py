"""
core/urlvalidation.py -- Outbound URL (SSRF) and filesystem path screening.

Every URL a discovery source will call and every directory it will read is
driven by admin-editable configuration, so both pass through this module
before any socket or file is opened.

URL rules:
  - http/https only; empty URLs rejected.
  - Cloud metadata hosts rejected by name before any DNS lookup.
  - The hostname is resolved; unresolvable names are rejected, and so is any
    address that is loopback, link-local, link-local multicast or unspecified.
  - RFC 1918 private addresses are allowed (home-lab deployments) and logged.

Path rules:
  - Absolute, no "..", and outside the kernel pseudo-filesystems and the
    credential files.
  - resolve_within() re-checks include targets after symlink resolution.

Layer rule: core/ is the kernel. No imports from api/, auth/, discovery/ or health/.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import socket
from collections.abc import Callable
from urllib.parse import urlparse

logger = logging.getLogger("dashgate.urlvalidation")

_METADATA_HOSTS = {"169.254.169.254", "metadata.google.internal", "metadata.google.com"}

_PRIVATE_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
]

_LINK_LOCAL_MULTICAST = [
    ipaddress.ip_network("224.0.0.0/24"),
    ipaddress.ip_network("ff02::/16"),
]

_DANGEROUS_PREFIXES = ("/proc/", "/sys/", "/dev/", "/boot/", "/root/", "/etc/shadow", "/etc/passwd")
_DANGEROUS_EXACT = {"/proc", "/sys", "/dev", "/boot", "/root"}


class URLValidationError(ValueError):
    """An outbound URL failed SSRF screening."""


class PathValidationError(ValueError):
    """A configured filesystem path failed traversal screening."""


def _system_resolve(hostname: str) -> list[str]:
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return [info[4][0] for info in infos]


def _is_disallowed(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if ip.is_loopback or ip.is_link_local or ip.is_unspecified:
        return True
    return any(ip in net for net in _LINK_LOCAL_MULTICAST if net.version == ip.version)


def validate_discovery_url(raw_url: str, resolve: Callable[[str], list[str]] = _system_resolve) -> None:
    """Raise URLValidationError unless raw_url is safe to fetch from the server.

    `resolve` maps a hostname to a list of address strings; tests pass a stub
    to keep DNS out of the picture. IP literals never reach the resolver.
    """
    if not raw_url:
        raise URLValidationError("URL is empty")

    try:
        parsed = urlparse(raw_url)
        hostname = parsed.hostname or ""
    except ValueError as exc:
        raise URLValidationError(f"invalid URL: {exc}") from exc

    if parsed.scheme not in ("http", "https"):
        raise URLValidationError("URL scheme must be http or https")
    if not hostname:
        raise URLValidationError("URL has no host")

    lowered = hostname.lower()
    if lowered in _METADATA_HOSTS or lowered.endswith(".google.internal"):
        raise URLValidationError("URL points to cloud metadata endpoint")

    try:
        addresses = [str(ipaddress.ip_address(hostname))]
    except ValueError:
        try:
            addresses = resolve(hostname)
        except OSError as exc:
            raise URLValidationError(f"cannot resolve hostname {hostname!r}: {exc}") from exc
        if not addresses:
            raise URLValidationError(f"cannot resolve hostname {hostname!r}")

    for addr in addresses:
        try:
            ip = ipaddress.ip_address(addr.split("%", 1)[0])
        except ValueError:
            continue
        if str(ip) in _METADATA_HOSTS:
            raise URLValidationError("URL points to cloud metadata endpoint")
        if _is_disallowed(ip):
            raise URLValidationError(f"URL resolves to disallowed address: {addr}")
        if any(ip in net for net in _PRIVATE_NETWORKS if net.version == ip.version):
            logger.info("Discovery URL %s resolves to private address %s (allowed)", raw_url, addr)


def validate_nginx_config_path(path: str) -> None:
    """Raise PathValidationError unless path is an acceptable config directory."""
    if not path:
        raise PathValidationError("path is empty")
    for prefix in _DANGEROUS_PREFIXES:
        if path.startswith(prefix):
            raise PathValidationError(f"path {prefix} is not allowed")
    if path in _DANGEROUS_EXACT:
        raise PathValidationError(f"path {path} is not allowed")
    if not os.path.isabs(path):
        raise PathValidationError("path must be absolute")
    if ".." in path:
        raise PathValidationError("path must not contain '..'")


def resolve_within(base: str, candidate: str) -> str:
    """Return the real path of candidate if it stays inside base after symlinks.

    Relative candidates are taken relative to base. Raises PathValidationError
    when the resolved target escapes the base directory.
    """
    real_base = os.path.realpath(base)
    target = candidate if os.path.isabs(candidate) else os.path.join(real_base, candidate)
    real_target = os.path.realpath(target)
    if real_target != real_base and not real_target.startswith(real_base + os.sep):
        raise PathValidationError(f"include {candidate!r} escapes {base!r}")
    return real_target
