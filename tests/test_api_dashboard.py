"""
tests/test_api_dashboard.py -- User-facing dashboard endpoints.

Coverage:
  - GET / and /api/health filter by group; admins see admin-only entries
  - statuses come from the health probe ("unknown" before a sweep)
  - /api/dependencies covers only visible apps and derives depended_by
  - preferences round trip per user
"""

from __future__ import annotations


def _apps(payload: dict) -> dict[str, dict]:
    return {a["name"]: a for c in payload["categories"] for a in c["apps"]}


class TestDashboard:
    def test_member_view(self, member_client) -> None:
        body = member_client.get("/").json()
        assert body["title"] == "Test Dashboard"
        assert body["user"]["username"] == "alice"
        apps = _apps(body)
        assert set(apps) == {"Jellyfin", "Sonarr"}
        assert apps["Jellyfin"]["status"] == "unknown"
        assert apps["Sonarr"]["depends_on"] == ["Jellyfin"]

    def test_admin_sees_admin_only_entries(self, admin_client) -> None:
        body = admin_client.get("/").json()
        assert [c["name"] for c in body["categories"]] == ["Media", "Infrastructure"]
        assert "Portainer" in _apps(body)

    def test_api_health_matches_visibility(self, member_client) -> None:
        body = member_client.get("/api/health").json()
        assert set(_apps(body)) == {"Jellyfin", "Sonarr"}

    def test_api_health_requires_auth(self, app_client) -> None:
        client, _store = app_client
        client.cookies.clear()
        assert client.get("/api/health").status_code == 401

    def test_probe_status_is_reported(self, member_client, app_client) -> None:
        client, _store = app_client
        probe = client.app.state.probe
        with probe._lock:
            probe._statuses = {"https://jellyfin.test": "online"}
        try:
            apps = _apps(member_client.get("/api/health").json())
            assert apps["Jellyfin"]["status"] == "online"
            assert apps["Sonarr"]["status"] == "unknown"
        finally:
            with probe._lock:
                probe._statuses = {}


class TestDependencies:
    def test_graph(self, member_client) -> None:
        nodes = {n["name"]: n for n in member_client.get("/api/dependencies").json()}
        assert set(nodes) == {"Jellyfin", "Sonarr"}
        assert nodes["Sonarr"]["depends_on"] == ["Jellyfin"]
        assert nodes["Jellyfin"]["depended_by"] == ["Sonarr"]

    def test_admin_graph_includes_everything(self, admin_client) -> None:
        nodes = {n["name"] for n in admin_client.get("/api/dependencies").json()}
        assert nodes == {"Jellyfin", "Sonarr", "Portainer"}


class TestPreferences:
    def test_round_trip(self, member_client, csrf) -> None:
        assert member_client.get("/api/user/preferences").status_code == 200
        prefs = {"theme": "dark", "pinned": ["Jellyfin"], "collapsed": {"Media": False}}
        resp = member_client.put("/api/user/preferences", json=prefs, headers=csrf(member_client))
        assert resp.json() == {"status": "saved"}
        assert member_client.get("/api/user/preferences").json() == prefs

    def test_preferences_are_per_user(self, admin_client, csrf) -> None:
        admin_client.put("/api/user/preferences", json={"theme": "light"}, headers=csrf(admin_client))
        assert admin_client.get("/api/user/preferences").json() == {"theme": "light"}

    def test_put_requires_csrf(self, member_client) -> None:
        resp = member_client.put("/api/user/preferences", json={"theme": "dark"})
        assert resp.status_code == 403
