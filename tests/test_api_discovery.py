"""
tests/test_api_discovery.py -- Discovery admin endpoints and the opt-in flow.

The app runs with an httpx.MockTransport standing in for a Traefik API at
10.0.0.2:8080, so enabling the source through the admin API starts a real
poll loop without leaving the process.

Coverage:
  - source views, unknown source 404, refresh on a stopped source 400
  - URL and path screening on PUT (400) and on the connection test
  - enable -> refresh -> override -> member sees the entry in its category
  - hidden overrides, stale overrides, override delete
"""

from __future__ import annotations

import httpx
import pytest

from conftest import ADMIN_PASSWORD, ADMIN_USERNAME, MEMBER_PASSWORD, MEMBER_USERNAME, running_app

TRAEFIK_URL = "http://10.0.0.2:8080"

ROUTERS = [
    {
        "name": "grafana@docker",
        "rule": "Host(`grafana.home.lan`)",
        "service": "grafana",
        "entryPoints": ["websecure"],
        "status": "enabled",
        "provider": "docker",
    },
    {
        "name": "whoami@docker",
        "rule": "Host(`whoami.home.lan`)",
        "service": "whoami",
        "entryPoints": ["web"],
        "status": "enabled",
        "provider": "docker",
    },
]


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "10.0.0.2" and request.url.path == "/api/http/routers":
        return httpx.Response(200, json=ROUTERS)
    return httpx.Response(404)


@pytest.fixture(scope="module")
def app_client(tmp_path_factory):
    with running_app("api_discovery", tmp_path_factory.mktemp("discovery"), transport=httpx.MockTransport(_handler)) as pair:
        yield pair


def _names(client) -> dict[str, list[str]]:
    return {c["name"]: [a["name"] for a in c["apps"]] for c in client.get("/").json()["categories"]}


class TestSourceEndpoints:
    def test_unknown_source(self, admin_client) -> None:
        assert admin_client.get("/api/admin/discovery/consul").status_code == 404

    def test_view_shape(self, admin_client) -> None:
        view = admin_client.get("/api/admin/discovery/npm").json()
        assert view["source"] == "npm"
        assert view["enabled"] is False
        assert view["envOverride"] is False
        assert view["hasPassword"] is False
        assert "password" not in view
        assert view["url"] == "" and view["email"] == ""

    def test_refresh_stopped_source(self, admin_client, csrf) -> None:
        resp = admin_client.post("/api/admin/discovery/caddy", headers=csrf(admin_client))
        assert resp.status_code == 400

    def test_put_rejects_loopback_url(self, admin_client, csrf) -> None:
        resp = admin_client.put(
            "/api/admin/discovery/caddy",
            json={"url": "http://127.0.0.1:2019", "enabled": True},
            headers=csrf(admin_client),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_url"
        assert admin_client.get("/api/admin/discovery/caddy").json()["enabled"] is False

    def test_put_rejects_sensitive_nginx_path(self, admin_client, csrf) -> None:
        resp = admin_client.put(
            "/api/admin/discovery/nginx",
            json={"configPath": "/proc/self"},
            headers=csrf(admin_client),
        )
        assert resp.status_code == 400

    def test_put_nginx_path(self, admin_client, csrf) -> None:
        resp = admin_client.put(
            "/api/admin/discovery/nginx",
            json={"configPath": " /config/nginx "},
            headers=csrf(admin_client),
        )
        assert resp.status_code == 200
        assert resp.json()["configPath"] == "/config/nginx"
        assert resp.json()["enabled"] is False

    def test_password_is_write_only(self, admin_client, csrf) -> None:
        headers = csrf(admin_client)
        view = admin_client.put(
            "/api/admin/discovery/npm",
            json={"url": "http://10.0.0.3:81", "email": "a@b.c", "password": "secret"},
            headers=headers,
        ).json()
        assert view["hasPassword"] is True
        view = admin_client.put("/api/admin/discovery/npm", json={"password": ""}, headers=headers).json()
        assert view["hasPassword"] is True

    def test_connection_test_not_offered_for_docker(self, admin_client, csrf) -> None:
        resp = admin_client.post("/api/admin/discovery/docker/test", json={}, headers=csrf(admin_client))
        assert resp.status_code == 400

    def test_connection_test_blocks_metadata_url(self, admin_client, csrf) -> None:
        resp = admin_client.post(
            "/api/admin/discovery/traefik/test",
            json={"url": "http://169.254.169.254"},
            headers=csrf(admin_client),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is False
        assert "SSRF" in body["error"]

    def test_connection_test_success_saves_nothing(self, admin_client, csrf) -> None:
        resp = admin_client.post(
            "/api/admin/discovery/traefik/test",
            json={"url": TRAEFIK_URL},
            headers=csrf(admin_client),
        )
        body = resp.json()
        assert body["success"] is True
        assert body["count"] == 2
        assert {a["url"] for a in body["apps"]} == {"https://grafana.home.lan", "http://whoami.home.lan"}
        assert admin_client.get("/api/admin/discovery/traefik").json()["url"] == ""


class TestOptInFlow:
    def test_enable_override_and_view(self, app_client, login, csrf) -> None:
        client, _store = app_client
        login(client, ADMIN_USERNAME, ADMIN_PASSWORD)
        headers = csrf(client)

        view = client.put(
            "/api/admin/discovery/traefik",
            json={"url": TRAEFIK_URL, "enabled": True},
            headers=headers,
        ).json()
        assert view["enabled"] is True
        assert view["running"] is True

        refreshed = client.post("/api/admin/discovery/traefik", headers=headers).json()
        assert refreshed == {"status": "refreshed", "count": 2}

        listing = client.get("/api/admin/discovered-apps").json()
        assert {a["url"] for a in listing["active"]} == {"https://grafana.home.lan", "http://whoami.home.lan"}
        assert all(a["override"] is None for a in listing["active"])

        # Admin sees un-opted entries under the default category.
        assert set(_names(client)["Discovered"]) == {"Grafana", "Whoami"}

        resp = client.put(
            "/api/admin/discovered-apps",
            json={
                "url": "https://grafana.home.lan",
                "source": "traefik",
                "nameOverride": "Metrics",
                "category": "Monitoring",
                "groups": ["media"],
            },
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["nameOverride"] == "Metrics"

        login(client, MEMBER_USERNAME, MEMBER_PASSWORD)
        names = _names(client)
        assert names["Monitoring"] == ["Metrics"]
        assert "Discovered" not in names

    def test_hidden_override_removes_entry(self, admin_client, csrf) -> None:
        admin_client.put(
            "/api/admin/discovered-apps",
            json={"url": "http://whoami.home.lan", "hidden": True},
            headers=csrf(admin_client),
        )
        names = _names(admin_client)
        assert "Whoami" not in names.get("Discovered", [])

    def test_stale_override_and_delete(self, admin_client, csrf) -> None:
        headers = csrf(admin_client)
        admin_client.put(
            "/api/admin/discovered-apps",
            json={"url": "https://gone.home.lan", "groups": ["media"]},
            headers=headers,
        )
        listing = admin_client.get("/api/admin/discovered-apps").json()
        assert "https://gone.home.lan" in [o["url"] for o in listing["stale"]]

        resp = admin_client.delete("/api/admin/discovered-apps", params={"url": "https://gone.home.lan"}, headers=headers)
        assert resp.json() == {"status": "deleted"}
        resp = admin_client.delete("/api/admin/discovered-apps", params={"url": "https://gone.home.lan"}, headers=headers)
        assert resp.status_code == 404

    def test_blank_override_url(self, admin_client, csrf) -> None:
        resp = admin_client.put("/api/admin/discovered-apps", json={"url": "  "}, headers=csrf(admin_client))
        assert resp.status_code == 400

    def test_disable_stops_source(self, admin_client, csrf) -> None:
        view = admin_client.put(
            "/api/admin/discovery/traefik",
            json={"enabled": False},
            headers=csrf(admin_client),
        ).json()
        assert view["running"] is False
        assert view["appCount"] == 0
        listing = admin_client.get("/api/admin/discovered-apps").json()
        assert listing["active"] == []
