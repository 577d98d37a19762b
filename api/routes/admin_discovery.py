"""
api/routes/admin_discovery.py -- Discovered-app overrides and discovery sources.

Routes (mounted under /api/admin):
  GET    /discovered-apps             -- {active, stale}
  PUT    /discovered-apps             -- upsert an override (opts the URL in)
  DELETE /discovered-apps?url=...     -- remove an override
  GET    /discovery/{source}          -- enabled flag, settings, app count, pin
  POST   /discovery/{source}          -- trigger one refresh
  PUT    /discovery/{source}          -- enable/disable and edit settings
  POST   /discovery/{source}/test     -- one-shot poll with submitted settings

Sources: docker, traefik, nginx, npm, caddy. A source pinned by its
*_DISCOVERY environment variable cannot be changed here (409).

Every URL field is screened with validate_discovery_url() before it is stored
or fetched; the nginx path with validate_nginx_config_path().
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging

from fastapi import APIRouter, Depends, Request
from pydantic.alias_generators import to_camel

from api.models import (
    DiscoveredOverrideResponse,
    DiscoveredOverrideUpdate,
    DiscoverySourceUpdate,
    DiscoveryTestResponse,
)
from api.routes.common import audit, error
from auth.dependencies import require_admin
from auth.models import AuthenticatedUser
from auth.settings import SystemSettings
from core.urlvalidation import (
    PathValidationError,
    URLValidationError,
    validate_discovery_url,
    validate_nginx_config_path,
)
from discovery.base import DiscoveryError
from discovery.manager import SOURCE_CLASSES, enabled_in

logger = logging.getLogger("dashgate.api.admin")

# Request field -> SystemSettings field, per source.
SOURCE_FIELDS: dict[str, dict[str, str]] = {
    "docker": {"socket_path": "docker_socket_path"},
    "traefik": {"url": "traefik_url", "username": "traefik_username", "password": "traefik_password"},
    "nginx": {"config_path": "nginx_config_path"},
    "npm": {"url": "npm_url", "email": "npm_email", "password": "npm_password"},
    "caddy": {"url": "caddy_admin_url", "username": "caddy_username", "password": "caddy_password"},
}
TESTABLE_SOURCES = ("traefik", "npm", "caddy")

router = APIRouter()


def _check_source(tag: str) -> None:
    if tag not in SOURCE_CLASSES:
        raise error(404, "not_found", f"Unknown discovery source: {tag}")


def discovered_app_to_dict(app) -> dict:
    return dataclasses.asdict(app)


# ---------------------------------------------------------------------------
# Discovered apps
# ---------------------------------------------------------------------------


@router.get("/discovered-apps")
def list_discovered(request: Request, admin: AuthenticatedUser = Depends(require_admin)) -> dict:
    """Raw entries of every running source, plus overrides whose URL is gone."""
    state = request.app.state
    entries = state.discovery.raw_entries()
    active = []
    for entry in entries:
        item = discovered_app_to_dict(entry.app)
        item["override"] = (
            DiscoveredOverrideResponse.from_override(entry.override).model_dump(by_alias=True)
            if entry.override is not None
            else None
        )
        active.append(item)

    seen = {entry.app.url for entry in entries}
    stale = [
        DiscoveredOverrideResponse.from_override(row).model_dump(by_alias=True)
        for row in state.overrides.all()
        if row.url not in seen
    ]
    return {"active": active, "stale": stale}


@router.put("/discovered-apps")
def put_discovered(
    request: Request,
    body: DiscoveredOverrideUpdate,
    admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    if not body.url.strip():
        raise error(400, "bad_request", "URL is required")
    body.url = body.url.strip()
    stored = request.app.state.overrides.save(body.to_override())
    audit(request, admin, "discovered_app_updated", f"{stored.url} (hidden={stored.hidden})")
    return DiscoveredOverrideResponse.from_override(stored).model_dump(by_alias=True)


@router.delete("/discovered-apps")
def delete_discovered(request: Request, url: str, admin: AuthenticatedUser = Depends(require_admin)) -> dict:
    if not request.app.state.overrides.delete(url):
        raise error(404, "not_found", "Override not found")
    audit(request, admin, "discovered_app_deleted", url)
    return {"status": "deleted"}


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


def source_view(request: Request, tag: str) -> dict:
    state = request.app.state
    settings = state.settings_manager.current()
    source = state.discovery.source(tag)
    view = {
        "source": tag,
        "enabled": enabled_in(settings, tag) or state.discovery.is_pinned(tag),
        "running": source.running,
        "appCount": len(source.snapshot()),
        "envOverride": state.discovery.is_pinned(tag),
    }
    for field_name, attr in SOURCE_FIELDS[tag].items():
        if field_name == "password":
            view["hasPassword"] = bool(getattr(settings, attr))
        else:
            view[to_camel(field_name)] = getattr(settings, attr)
    return view


async def _screen(tag: str, changes: dict[str, str]) -> None:
    """Raise a 400 if any submitted location is unsafe."""
    try:
        if tag == "docker":
            socket_path = changes.get("docker_socket_path", "")
            if socket_path.startswith(("tcp://", "http://")):
                await asyncio.to_thread(validate_discovery_url, socket_path.replace("tcp://", "http://", 1))
        elif tag == "nginx":
            if changes.get("nginx_config_path"):
                validate_nginx_config_path(changes["nginx_config_path"])
        else:
            url_attr = SOURCE_FIELDS[tag]["url"]
            if changes.get(url_attr):
                await asyncio.to_thread(validate_discovery_url, changes[url_attr])
    except (URLValidationError, PathValidationError) as exc:
        raise error(400, "invalid_url", str(exc))


def _collect_changes(tag: str, body: DiscoverySourceUpdate) -> dict[str, str]:
    """Submitted values mapped onto SystemSettings names. Blank passwords are dropped."""
    changes = {}
    for field_name, attr in SOURCE_FIELDS[tag].items():
        value = getattr(body, field_name)
        if value is None:
            continue
        if field_name == "password":
            if value:
                changes[attr] = value
            continue
        changes[attr] = value.strip()
    return changes


@router.get("/discovery/{source}")
def get_source(request: Request, source: str, admin: AuthenticatedUser = Depends(require_admin)) -> dict:
    _check_source(source)
    return source_view(request, source)


@router.post("/discovery/{source}")
async def refresh_source(request: Request, source: str, admin: AuthenticatedUser = Depends(require_admin)) -> dict:
    _check_source(source)
    worker = request.app.state.discovery.source(source)
    if not worker.running:
        raise error(400, "bad_request", f"{source} discovery is not enabled")
    count = await worker.refresh()
    if count is None:
        raise error(502, "discovery_failed", f"{source} discovery refresh failed")
    await asyncio.to_thread(audit, request, admin, "discovery_refreshed", f"{source}: {count} apps")
    return {"status": "refreshed", "count": count}


@router.put("/discovery/{source}")
async def put_source(
    request: Request,
    source: str,
    body: DiscoverySourceUpdate,
    admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    _check_source(source)
    state = request.app.state
    if state.discovery.is_pinned(source):
        raise error(409, "conflict", f"{source} discovery is configured by environment variables")

    changes = _collect_changes(source, body)
    await _screen(source, changes)

    def mutate(s: SystemSettings) -> None:
        for attr, value in changes.items():
            setattr(s, attr, value)
        if body.enabled is not None:
            setattr(s, f"{source}_discovery_enabled", body.enabled)

    updated = await asyncio.to_thread(state.settings_manager.apply, mutate)
    await state.discovery.sync(updated)

    names = sorted(changes)
    if body.enabled is not None:
        names.insert(0, "enabled" if body.enabled else "disabled")
    detail = f"{source}: {', '.join(names) or 'no changes'}"
    await asyncio.to_thread(audit, request, admin, "discovery_updated", detail)
    logger.info("Admin %s updated %s discovery", admin.username, source)
    return source_view(request, source)


@router.post("/discovery/{source}/test", response_model=DiscoveryTestResponse)
async def test_source(
    request: Request,
    source: str,
    body: DiscoverySourceUpdate,
    admin: AuthenticatedUser = Depends(require_admin),
) -> DiscoveryTestResponse:
    """Poll once with the submitted settings over the stored ones. Nothing is saved."""
    _check_source(source)
    if source not in TESTABLE_SOURCES:
        raise error(400, "bad_request", f"Connection test is not available for {source}")

    state = request.app.state
    candidate = state.settings_manager.current()
    for attr, value in _collect_changes(source, body).items():
        setattr(candidate, attr, value)
    if not getattr(candidate, SOURCE_FIELDS[source]["url"]):
        raise error(400, "bad_request", "URL is required")

    try:
        apps = await state.discovery.probe(source, candidate)
    except DiscoveryError as exc:
        return DiscoveryTestResponse(success=False, error=str(exc))
    return DiscoveryTestResponse(success=True, count=len(apps), apps=[discovered_app_to_dict(a) for a in apps])
