"""
core/models.py -- Domain dataclasses for dashboard entries.

Pattern: Data class (pure data container, zero logic beyond small copy helpers).
Loaders, filters and stores do the work; these types only carry shape.

Layer rule: core/ is the kernel. No imports from api/, auth/, discovery/ or health/.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace


@dataclass
class App:
    """One launcher tile.

    groups is the allow-list of groups that may see the entry. An empty list
    means admin-only. depends_on holds other app *names* (not URLs).
    status is runtime-only ("online", "offline", "unknown") and never
    written back to the static file.
    """

    name: str
    url: str
    icon: str = ""
    description: str = ""
    groups: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    status: str = ""

    def copy(self) -> App:
        return replace(self, groups=list(self.groups), depends_on=list(self.depends_on))


@dataclass
class Category:
    name: str
    apps: list[App] = field(default_factory=list)


@dataclass
class DashboardConfig:
    """Parsed form of the static YAML configuration file."""

    title: str = "DashGate"
    categories: list[Category] = field(default_factory=list)

    def copy(self) -> DashboardConfig:
        return DashboardConfig(
            title=self.title,
            categories=[Category(name=c.name, apps=[a.copy() for a in c.apps]) for c in self.categories],
        )

    def iter_apps(self):
        for category in self.categories:
            for app in category.apps:
                yield category, app


@dataclass
class DiscoveredApp:
    """An entry surfaced by one discovery poll. Rebuilt on every poll, never persisted.

    groups / depends_on are only populated by sources that can express them
    (container labels). status is set when the source itself reports
    liveness (container state, router status, proxy host online flag).
    """

    name: str
    url: str
    source: str
    icon: str = ""
    description: str = ""
    groups: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    status: str = ""


@dataclass
class DiscoveredAppOverride:
    """Admin-saved customisation of a discovered URL.

    The existence of a row is what opts a discovered URL into the dashboard.
    Empty *_override fields mean "keep the discovered value".
    """

    url: str
    source: str = ""
    name_override: str = ""
    url_override: str = ""
    icon_override: str = ""
    description_override: str = ""
    category: str = ""
    groups: list[str] = field(default_factory=list)
    hidden: bool = False
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def copy(self) -> DiscoveredAppOverride:
        return replace(self, groups=list(self.groups))


@dataclass
class DiscoveredEntry:
    """A discovered app as seen by readers: the app plus its override, if any."""

    app: DiscoveredApp
    override: DiscoveredAppOverride | None = None
