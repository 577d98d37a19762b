"""
discovery/manager.py -- Aggregator over the five discovery sources.

Source order is fixed: docker, traefik, nginx, npm, caddy. A source counts as
enabled while its poll loop is running.

raw_entries() is the public read: every enabled source's snapshot, each app
paired with its override row (if one exists). The dashboard applies the
opt-in rule on top of that (core/access.py).

Pins: a source switched on through its *_DISCOVERY environment variable is
pinned. The admin API refuses to change a pinned source (409); sync() still
keeps it running.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import httpx

from auth.settings import SystemSettings
from core.models import DiscoveredApp, DiscoveredEntry
from discovery.base import DiscoverySource
from discovery.caddy import CaddySource
from discovery.docker import DockerSource
from discovery.nginx import NginxSource
from discovery.npm import NPMSource
from discovery.overrides import OverrideCache
from discovery.traefik import TraefikSource

logger = logging.getLogger("dashgate.discovery")

SOURCE_CLASSES: dict[str, type[DiscoverySource]] = {
    "docker": DockerSource,
    "traefik": TraefikSource,
    "nginx": NginxSource,
    "npm": NPMSource,
    "caddy": CaddySource,
}
SOURCE_ORDER = tuple(SOURCE_CLASSES)


def enabled_in(settings: SystemSettings, tag: str) -> bool:
    return bool(getattr(settings, f"{tag}_discovery_enabled"))


class DiscoveryManager:
    """Usage:
    manager = DiscoveryManager(settings_manager.current, overrides, env.discovery_pins())
    await manager.sync(settings_manager.current())
    entries = manager.raw_entries()
    await manager.stop_all()
    """

    def __init__(
        self,
        settings: Callable[[], SystemSettings],
        overrides: OverrideCache,
        pins: dict[str, bool] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self.overrides = overrides
        self.pins = dict(pins or {})
        self.sources: dict[str, DiscoverySource] = {
            tag: cls(settings, transport=transport) for tag, cls in SOURCE_CLASSES.items()
        }

    def source(self, tag: str) -> DiscoverySource:
        """Raises KeyError for an unknown tag."""
        return self.sources[tag]

    def is_pinned(self, tag: str) -> bool:
        return bool(self.pins.get(tag))

    async def sync(self, settings: SystemSettings) -> None:
        """Start every source enabled in settings and stop every other one."""
        for tag in SOURCE_ORDER:
            source = self.sources[tag]
            if enabled_in(settings, tag) or self.is_pinned(tag):
                await source.start()
            elif source.running:
                await source.stop()

    async def stop_all(self) -> None:
        await asyncio.gather(*(source.stop() for source in self.sources.values()))

    async def probe(self, tag: str, settings: SystemSettings) -> list[DiscoveredApp]:
        """One-shot poll with candidate settings on a throwaway source instance.

        Raises DiscoveryError; the running source and its cache are untouched.
        """
        source = SOURCE_CLASSES[tag](lambda: settings, transport=self._transport)
        return await source.poll(settings)

    def raw_entries(self) -> list[DiscoveredEntry]:
        entries = []
        for tag in SOURCE_ORDER:
            source = self.sources[tag]
            if not source.running:
                continue
            for app in source.snapshot():
                entries.append(DiscoveredEntry(app=app, override=self.overrides.get(app.url)))
        return entries

    def all_urls(self) -> list[str]:
        return [entry.app.url for entry in self.raw_entries()]
