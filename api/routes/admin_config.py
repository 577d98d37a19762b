"""
api/routes/admin_config.py -- System settings, audit log and static app groups.

Routes (mounted under /api/admin):
  GET  /system-config     -- non-secret settings plus has* flags for secrets
  PUT  /system-config     -- two-phase update (persist, then OIDC bootstrap)
  GET  /audit-log?limit=N -- newest first (default 100, max 1000)
  GET  /apps              -- static apps with effective groups
  PUT  /apps/mapping      -- replace one app's group mapping

PUT /system-config marks setup as completed. Blank secret fields keep the
stored value.
"""

from __future__ import annotations

import asyncio
import dataclasses
import ipaddress
import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic.alias_generators import to_camel

from api.models import AppMappingUpdate, AuditEntryResponse, SystemConfigUpdate
from api.routes.common import audit, error
from auth.dependencies import require_admin
from auth.models import AuthenticatedUser
from auth.settings import SENSITIVE_KEYS, SystemSettings

logger = logging.getLogger("dashgate.api.admin")

MAX_AUDIT_LIMIT = 1000
DEFAULT_AUDIT_LIMIT = 100

# Discovery fields are served by /discovery/{source}.
_DISCOVERY_PREFIXES = ("docker_", "traefik_", "nginx_", "npm_", "caddy_")
_INTERNAL_FIELDS = {"trusted_proxies_migrated"}
_SECRET_FIELDS = ("ldap_bind_password", "oidc_client_secret")

router = APIRouter()


def system_config_view(settings: SystemSettings) -> dict:
    view = {}
    for f in dataclasses.fields(settings):
        if f.name in SENSITIVE_KEYS or f.name in _INTERNAL_FIELDS or f.name.startswith(_DISCOVERY_PREFIXES):
            continue
        view[to_camel(f.name)] = getattr(settings, f.name)
    view["hasLdapBindPassword"] = bool(settings.ldap_bind_password)
    view["hasOidcClientSecret"] = bool(settings.oidc_client_secret)
    return view


def _validate_trusted_proxies(raw: str) -> None:
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError:
            raise error(400, "bad_request", f"Invalid trusted proxy entry: {entry}")


def _has_local_users(request: Request) -> bool:
    return any(u.source == "local" for u in request.app.state.store.list_users())


# ---------------------------------------------------------------------------
# System settings
# ---------------------------------------------------------------------------


@router.get("/system-config")
async def get_system_config(request: Request, admin: AuthenticatedUser = Depends(require_admin)) -> dict:
    return system_config_view(request.app.state.settings_manager.current())


@router.put("/system-config")
async def put_system_config(
    request: Request,
    body: SystemConfigUpdate,
    admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    changes = body.model_dump(exclude_none=True)
    for name in _SECRET_FIELDS:
        if name in changes and not changes[name]:
            del changes[name]
    for name, value in changes.items():
        if isinstance(value, str):
            changes[name] = value.strip() if name not in _SECRET_FIELDS else value

    if "trusted_proxies" in changes:
        _validate_trusted_proxies(changes["trusted_proxies"])

    manager = request.app.state.settings_manager
    if changes.get("local_auth_enabled") and not manager.current().local_auth_enabled:
        if not await asyncio.to_thread(_has_local_users, request):
            raise error(409, "conflict", "Create a local user before enabling local authentication")

    def mutate(s: SystemSettings) -> None:
        for name, value in changes.items():
            setattr(s, name, value)
        s.setup_completed = True

    updated = await manager.update(mutate)

    changed = sorted(k for k in changes if k not in _SECRET_FIELDS)
    secrets = sorted(k for k in changes if k in _SECRET_FIELDS)
    detail = "Updated " + ", ".join(changed + [f"{k} (secret)" for k in secrets]) if changes else "No changes"
    await asyncio.to_thread(audit, request, admin, "settings_updated", detail)
    logger.info("Admin %s updated system settings", admin.username)
    return system_config_view(updated)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


@router.get("/audit-log", response_model=list[AuditEntryResponse])
def audit_log(
    request: Request,
    limit: int = Query(DEFAULT_AUDIT_LIMIT, ge=1),
    admin: AuthenticatedUser = Depends(require_admin),
) -> list[AuditEntryResponse]:
    entries = request.app.state.store.get_audit_logs(min(limit, MAX_AUDIT_LIMIT))
    return [AuditEntryResponse(**dataclasses.asdict(e)) for e in entries]


# ---------------------------------------------------------------------------
# Static app groups
# ---------------------------------------------------------------------------


@router.get("/apps")
def list_apps(request: Request, admin: AuthenticatedUser = Depends(require_admin)) -> list[dict]:
    return request.app.state.catalog.flattened()


@router.put("/apps/mapping")
def put_app_mapping(
    request: Request,
    body: AppMappingUpdate,
    admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    try:
        request.app.state.catalog.set_mapping(body.app_url, body.groups)
    except KeyError:
        raise error(404, "not_found", "App not found")
    audit(request, admin, "app_mapping_updated", f"{body.app_url} -> {','.join(body.groups) or '(default)'}")
    return {"status": "saved"}
