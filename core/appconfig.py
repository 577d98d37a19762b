"""
core/appconfig.py -- Static dashboard file and group mappings.

The static file (config.yaml) holds the operator's categories and apps. The
mappings file overrides an app's `groups` by URL without editing config.yaml:

    mappings:
      - app_url: https://grafana.example.com
        groups: [ops, admin]

AppCatalog is the in-memory holder for both. Readers get deep copies, so a
filter or a route handler can never mutate shared state.

Writes are atomic: serialize to a sibling ".tmp" file, then os.replace().

Layer rule: core/ is the kernel. No imports from api/, auth/, discovery/ or health/.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

import yaml

from core.models import App, Category, DashboardConfig

logger = logging.getLogger("dashgate.config")

DEFAULT_CONFIG = """# DashGate Configuration
# Add your applications organized by category.
categories: []
#  - name: Services
#    apps:
#      - name: Example
#        url: https://example.com
#        icon: mdi:web
#        description: An example application
"""


class ConfigFileError(Exception):
    """The static file or mappings file is unreadable or malformed."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _str_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def parse_config(text: str) -> DashboardConfig:
    """Parse YAML text into a DashboardConfig. Raises ConfigFileError on bad input."""
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigFileError(f"invalid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigFileError("top level must be a mapping")

    categories: list[Category] = []
    for raw_cat in raw.get("categories") or []:
        if not isinstance(raw_cat, dict):
            raise ConfigFileError("each category must be a mapping")
        apps = []
        for raw_app in raw_cat.get("apps") or []:
            if not isinstance(raw_app, dict):
                raise ConfigFileError("each app must be a mapping")
            apps.append(
                App(
                    name=str(raw_app.get("name", "")),
                    url=str(raw_app.get("url", "")),
                    icon=str(raw_app.get("icon") or ""),
                    description=str(raw_app.get("description") or ""),
                    groups=_str_list(raw_app.get("groups")),
                    depends_on=_str_list(raw_app.get("depends_on")),
                )
            )
        categories.append(Category(name=str(raw_cat.get("name", "")), apps=apps))

    return DashboardConfig(title=str(raw.get("title") or "DashGate"), categories=categories)


# ---------------------------------------------------------------------------
# File I/O
# ---------------------------------------------------------------------------


def _atomic_write(path: str, data: str) -> None:
    tmp_path = path + ".tmp"
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def load_config(path: str) -> DashboardConfig:
    """Read the static file, creating a default one on first run.

    The parent directory is created with mode 0700 and the file with 0600.
    """
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("Config file not found at %s, creating default config", path)
        file_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        _atomic_write(path, DEFAULT_CONFIG)
        text = DEFAULT_CONFIG
    except OSError as exc:
        raise ConfigFileError(f"cannot read {path}: {exc}") from exc
    return parse_config(text)


def load_mappings(path: str) -> dict[str, list[str]]:
    """Read app_url -> groups overrides. A missing file means no overrides."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("No app mappings file found at %s, using config defaults", path)
        return {}
    except OSError as exc:
        raise ConfigFileError(f"cannot read {path}: {exc}") from exc

    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigFileError(f"invalid mappings YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigFileError("mappings file must be a mapping")
    items = raw.get("mappings") or []
    if not isinstance(items, list):
        raise ConfigFileError("mappings must be a list")

    mappings: dict[str, list[str]] = {}
    for item in items:
        if isinstance(item, dict) and item.get("app_url"):
            mappings[str(item["app_url"])] = _str_list(item.get("groups"))
    logger.info("Loaded %d app mappings", len(mappings))
    return mappings


def save_mappings(path: str, mappings: dict[str, list[str]]) -> None:
    items = [{"app_url": url, "groups": list(groups)} for url, groups in mappings.items()]
    _atomic_write(path, yaml.safe_dump({"mappings": items}, sort_keys=False))


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class AppCatalog:
    """Thread-safe holder for the static config plus its group mappings.

    Usage:
        catalog = AppCatalog.from_files(config_path, mappings_path)
        config = catalog.snapshot()   # mappings already applied
    """

    def __init__(
        self,
        config: DashboardConfig | None = None,
        mappings: dict[str, list[str]] | None = None,
        mappings_path: str | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._config = config or DashboardConfig()
        self._mappings = dict(mappings or {})
        self._mappings_path = mappings_path

    @classmethod
    def from_files(cls, config_path: str, mappings_path: str) -> AppCatalog:
        return cls(load_config(config_path), load_mappings(mappings_path), mappings_path)

    def snapshot(self) -> DashboardConfig:
        """Deep copy of the static config with effective groups applied."""
        with self._lock:
            config = self._config.copy()
            mappings = {k: list(v) for k, v in self._mappings.items()}
        for _cat, app in config.iter_apps():
            if app.url in mappings:
                app.groups = mappings[app.url]
        return config

    def all_urls(self) -> list[str]:
        with self._lock:
            return [app.url for _cat, app in self._config.iter_apps() if app.url]

    def flattened(self) -> list[dict]:
        """One row per static app for the admin apps table."""
        config = self.snapshot()
        return [
            {"name": app.name, "url": app.url, "icon": app.icon, "category": cat.name, "groups": app.groups}
            for cat, app in config.iter_apps()
        ]

    def set_mapping(self, app_url: str, groups: list[str]) -> None:
        """Replace the group mapping for one static app and persist the file.

        Empty groups removes the mapping. Raises KeyError for a URL that is not
        in the static config.
        """
        groups = [g.strip() for g in groups if g.strip()]
        with self._lock:
            if app_url not in {app.url for _cat, app in self._config.iter_apps()}:
                raise KeyError(app_url)
            previous = dict(self._mappings)
            if groups:
                self._mappings[app_url] = groups
            else:
                self._mappings.pop(app_url, None)
            if self._mappings_path:
                try:
                    save_mappings(self._mappings_path, self._mappings)
                except OSError:
                    self._mappings = previous
                    raise
