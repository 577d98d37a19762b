"""
tests/test_access.py -- Dashboard visibility rules.

Coverage:
  - empty allow-list is admin-only; admins see everything
  - group intersection is case-sensitive and whitespace-trimmed
  - empty categories are dropped, order preserved, inputs never mutated
  - discovered entries: opt-in via override, hidden, category merge,
    override field precedence, static URL wins over a discovered duplicate
  - discovered_to_app() requires an override and applies its fields
"""

from __future__ import annotations

from core.access import (
    DEFAULT_DISCOVERED_CATEGORY,
    can_view,
    discovered_to_app,
    filter_categories,
    visible_dashboard,
)
from core.models import App, Category, DiscoveredApp, DiscoveredAppOverride, DiscoveredEntry


def _categories() -> list[Category]:
    return [
        Category(
            name="Media",
            apps=[
                App(name="Jellyfin", url="https://jellyfin.test", groups=["media"]),
                App(name="Sonarr", url="https://sonarr.test", groups=["ops"]),
            ],
        ),
        Category(name="Infra", apps=[App(name="Portainer", url="https://portainer.test")]),
    ]


def _names(categories: list[Category]) -> dict[str, list[str]]:
    return {c.name: [a.name for a in c.apps] for c in categories}


class TestCanView:
    def test_admin_sees_everything(self) -> None:
        assert can_view([], [], is_admin=True)

    def test_empty_allow_list_is_admin_only(self) -> None:
        assert not can_view([], ["media"], is_admin=False)
        assert not can_view(["  "], ["media"], is_admin=False)

    def test_intersection(self) -> None:
        assert can_view(["media", "ops"], ["ops"], is_admin=False)
        assert not can_view(["media"], ["ops"], is_admin=False)

    def test_case_sensitive_and_trimmed(self) -> None:
        assert can_view([" media "], ["media"], is_admin=False)
        assert not can_view(["Media"], ["media"], is_admin=False)


class TestFilterCategories:
    def test_member_view(self) -> None:
        visible = filter_categories(_categories(), ["media"], is_admin=False)
        assert _names(visible) == {"Media": ["Jellyfin"]}

    def test_admin_view_keeps_order(self) -> None:
        visible = filter_categories(_categories(), [], is_admin=True)
        assert [c.name for c in visible] == ["Media", "Infra"]
        assert _names(visible)["Media"] == ["Jellyfin", "Sonarr"]

    def test_status_is_filled_in(self) -> None:
        visible = filter_categories(_categories(), ["media"], False, lambda url: "online")
        assert visible[0].apps[0].status == "online"

    def test_inputs_not_mutated(self) -> None:
        source = _categories()
        filter_categories(source, ["media"], False, lambda url: "offline")
        assert source[0].apps[0].status == ""
        assert len(source[0].apps) == 2


def _entry(url: str, name: str = "Grafana", override: DiscoveredAppOverride | None = None) -> DiscoveredEntry:
    return DiscoveredEntry(
        app=DiscoveredApp(name=name, url=url, source="traefik", icon="mdi:chart"),
        override=override,
    )


class TestDiscoveredEntries:
    def test_without_override_member_sees_nothing(self) -> None:
        visible = visible_dashboard([], [_entry("https://grafana.test")], ["media"], False)
        assert visible == []

    def test_without_override_admin_sees_default_category(self) -> None:
        visible = visible_dashboard([], [_entry("https://grafana.test")], [], True)
        assert _names(visible) == {DEFAULT_DISCOVERED_CATEGORY: ["Grafana"]}

    def test_override_opts_in_with_groups(self) -> None:
        override = DiscoveredAppOverride(url="https://grafana.test", groups=["media"], category="Media")
        visible = visible_dashboard(_categories(), [_entry("https://grafana.test", override=override)], ["media"], False)
        assert _names(visible) == {"Media": ["Jellyfin", "Grafana"]}

    def test_override_with_empty_groups_is_admin_only(self) -> None:
        override = DiscoveredAppOverride(url="https://grafana.test")
        entries = [_entry("https://grafana.test", override=override)]
        assert visible_dashboard([], entries, ["media"], False) == []
        assert _names(visible_dashboard([], entries, [], True)) == {DEFAULT_DISCOVERED_CATEGORY: ["Grafana"]}

    def test_hidden_override_is_never_shown(self) -> None:
        override = DiscoveredAppOverride(url="https://grafana.test", groups=["media"], hidden=True)
        entries = [_entry("https://grafana.test", override=override)]
        assert visible_dashboard([], entries, ["media"], False) == []
        assert visible_dashboard([], entries, [], True) == []

    def test_override_fields_win_when_set(self) -> None:
        override = DiscoveredAppOverride(
            url="https://grafana.test",
            name_override="Metrics",
            url_override="https://metrics.test",
            groups=["media"],
        )
        visible = visible_dashboard([], [_entry("https://grafana.test", override=override)], ["media"], False)
        app = visible[0].apps[0]
        assert app.name == "Metrics"
        assert app.url == "https://metrics.test"
        assert app.icon == "mdi:chart"

    def test_new_category_appended_after_static(self) -> None:
        override = DiscoveredAppOverride(url="https://grafana.test", groups=["media"], category="Monitoring")
        visible = visible_dashboard(_categories(), [_entry("https://grafana.test", override=override)], ["media"], False)
        assert [c.name for c in visible] == ["Media", "Monitoring"]

    def test_static_url_wins_over_discovered(self) -> None:
        override = DiscoveredAppOverride(url="https://jellyfin.test", groups=["media"])
        entries = [_entry("https://jellyfin.test", name="Jellyfin (traefik)", override=override)]
        visible = visible_dashboard(_categories(), entries, ["media"], False)
        assert _names(visible) == {"Media": ["Jellyfin"]}

    def test_static_url_hidden_from_member_is_not_leaked_by_discovery(self) -> None:
        """A static URL the member cannot see stays invisible even if a source also finds it."""
        override = DiscoveredAppOverride(url="https://sonarr.test", groups=["media"])
        entries = [_entry("https://sonarr.test", name="Sonarr", override=override)]
        visible = visible_dashboard(_categories(), entries, ["media"], False)
        assert _names(visible) == {"Media": ["Jellyfin"]}


class TestDiscoveredToApp:
    def test_override_fields_replace_discovered_values(self) -> None:
        base = DiscoveredApp(name="Grafana", url="https://grafana.test", source="traefik", icon="mdi:chart")
        override = DiscoveredAppOverride(
            url="https://grafana.test",
            name_override="Dashboards",
            url_override="https://grafana.home.test",
            groups=["ops"],
            category="Monitoring",
        )
        category, app = discovered_to_app(base, override)
        assert category == "Monitoring"
        assert (app.name, app.url, app.icon) == ("Dashboards", "https://grafana.home.test", "mdi:chart")
        assert app.groups == ["ops"]

    def test_blank_override_keeps_discovered_values(self) -> None:
        base = DiscoveredApp(name="Grafana", url="https://grafana.test", source="traefik", depends_on=["db"])
        category, app = discovered_to_app(base, DiscoveredAppOverride(url="https://grafana.test"))
        assert category == DEFAULT_DISCOVERED_CATEGORY
        assert (app.name, app.url, app.groups, app.depends_on) == ("Grafana", "https://grafana.test", [], ["db"])
