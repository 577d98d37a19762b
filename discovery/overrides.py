"""
discovery/overrides.py -- In-memory cache of discovered-app overrides, keyed by URL.

Write-through: save() and delete() hit the store first and only update the
cache once the row is committed. Readers get copies.
"""

from __future__ import annotations

import logging
import threading

from auth.store import CredentialStore
from core.models import DiscoveredAppOverride

logger = logging.getLogger("dashgate.discovery.overrides")


class OverrideCache:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._by_url: dict[str, DiscoveredAppOverride] = {}

    def load(self) -> int:
        rows = self.store.list_discovered_overrides()
        with self._lock:
            self._by_url = {row.url: row for row in rows}
        logger.info("Loaded %d discovered app overrides", len(rows))
        return len(rows)

    def get(self, url: str) -> DiscoveredAppOverride | None:
        with self._lock:
            row = self._by_url.get(url)
            return row.copy() if row is not None else None

    def all(self) -> list[DiscoveredAppOverride]:
        with self._lock:
            return [row.copy() for row in self._by_url.values()]

    def save(self, override: DiscoveredAppOverride) -> DiscoveredAppOverride:
        stored = self.store.save_discovered_override(override)
        with self._lock:
            self._by_url[stored.url] = stored
        return stored.copy()

    def delete(self, url: str) -> bool:
        removed = self.store.delete_discovered_override(url)
        with self._lock:
            self._by_url.pop(url, None)
        return removed
