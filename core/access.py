"""
core/access.py -- Per-user visibility of dashboard entries.

Rules, evaluated per entry:
  1. Admins see every entry.
  2. An entry with an empty allow-list is admin-only.
  3. Otherwise the entry is visible when the user's groups intersect the
     allow-list (case-sensitive, whitespace trimmed).

Discovered entries are opt-in: for non-admins one only becomes a dashboard
entry once an override row exists for its URL and that row is not hidden.
Admins also see entries without an override, under "Discovered". The
override's fields replace the discovered ones when non-empty, and the
override's groups are the entry's allow-list.

Nothing in this module mutates its inputs; callers pass snapshots and get
fresh Category lists back.

Layer rule: core/ is the kernel. No imports from api/, auth/, discovery/ or health/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from core.models import App, Category, DiscoveredApp, DiscoveredAppOverride, DiscoveredEntry

DEFAULT_DISCOVERED_CATEGORY = "Discovered"


def _no_status(url: str) -> str:
    return ""


def can_view(allowed_groups: Iterable[str], user_groups: Iterable[str], is_admin: bool) -> bool:
    """Return True if a user with user_groups may see an entry restricted to allowed_groups."""
    if is_admin:
        return True
    allowed = {g.strip() for g in allowed_groups if g.strip()}
    if not allowed:
        return False
    return bool(allowed & {g.strip() for g in user_groups})


def filter_categories(
    categories: list[Category],
    user_groups: Iterable[str],
    is_admin: bool,
    status_of: Callable[[str], str] = _no_status,
) -> list[Category]:
    """Return the visible subset of categories, with status filled in per app.

    Category order is preserved; categories left with no visible app are dropped.
    """
    groups = list(user_groups)
    visible: list[Category] = []
    for cat in categories:
        apps = []
        for app in cat.apps:
            if not can_view(app.groups, groups, is_admin):
                continue
            shown = app.copy()
            shown.status = status_of(app.url)
            apps.append(shown)
        if apps:
            visible.append(Category(name=cat.name, apps=apps))
    return visible


def discovered_to_app(base: DiscoveredApp, override: DiscoveredAppOverride) -> tuple[str, App]:
    """Apply an override to a discovered app and return (category name, App)."""
    app = App(
        name=override.name_override or base.name,
        url=override.url_override or base.url,
        icon=override.icon_override or base.icon,
        description=override.description_override or base.description,
        groups=list(override.groups),
        depends_on=list(base.depends_on),
    )
    return override.category or DEFAULT_DISCOVERED_CATEGORY, app


def merge_discovered(
    categories: list[Category],
    entries: Iterable[DiscoveredEntry],
    static_urls: Iterable[str],
    user_groups: Iterable[str],
    is_admin: bool,
    status_of: Callable[[str], str] = _no_status,
) -> list[Category]:
    """Return categories plus every opted-in discovered entry the user may see.

    Discovered URLs already present in the static file are skipped. Entries
    land in their override category, merged into an existing category of the
    same name or appended as a new one in first-seen order.
    """
    groups = list(user_groups)
    known = set(static_urls)
    merged = [Category(name=c.name, apps=list(c.apps)) for c in categories]
    by_name = {c.name: c for c in merged}

    for entry in entries:
        override = entry.override
        if entry.app.url in known:
            continue
        if override is None:
            # Not opted in yet: only admins see it, in the default category.
            if not is_admin:
                continue
            cat_name = DEFAULT_DISCOVERED_CATEGORY
            app = App(
                name=entry.app.name,
                url=entry.app.url,
                icon=entry.app.icon,
                description=entry.app.description,
                depends_on=list(entry.app.depends_on),
            )
        elif override.hidden or not can_view(override.groups, groups, is_admin):
            continue
        else:
            cat_name, app = discovered_to_app(entry.app, override)
        app.status = status_of(app.url)
        target = by_name.get(cat_name)
        if target is None:
            target = Category(name=cat_name)
            by_name[cat_name] = target
            merged.append(target)
        target.apps.append(app)
        known.add(entry.app.url)
    return merged


def visible_dashboard(
    categories: list[Category],
    entries: Iterable[DiscoveredEntry],
    user_groups: Iterable[str],
    is_admin: bool,
    status_of: Callable[[str], str] = _no_status,
) -> list[Category]:
    """Static entries filtered for the user, then opted-in discovered entries merged in."""
    groups = list(user_groups)
    static_urls = [app.url for cat in categories for app in cat.apps]
    filtered = filter_categories(categories, groups, is_admin, status_of)
    return merge_discovered(filtered, entries, static_urls, groups, is_admin, status_of)
