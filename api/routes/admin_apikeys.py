"""
api/routes/admin_apikeys.py -- API key management (admin only).

Routes (mounted under /api/admin; /api-keys is an alias of /apikeys):
  GET    /apikeys          -- list key metadata (never the hash)
  POST   /apikeys          -- create; the raw key is in this response only
  DELETE /apikeys?id=N     -- revoke

A key acts as the username and groups given at creation. user_id is linked
when the username matches an existing user row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse
from api.routes.common import audit, error
from auth.apikeys import generate_api_key, hash_api_key
from auth.dependencies import require_admin
from auth.models import ApiKey, AuthenticatedUser
from auth.store import iso

logger = logging.getLogger("dashgate.api.admin")

DEFAULT_KEY_USERNAME = "api-key"
DEFAULT_PERMISSIONS = ["read"]

router = APIRouter()


@router.get("/apikeys", response_model=list[ApiKeyResponse])
@router.get("/api-keys", response_model=list[ApiKeyResponse], include_in_schema=False)
def list_keys(request: Request, admin: AuthenticatedUser = Depends(require_admin)) -> list[ApiKeyResponse]:
    return [ApiKeyResponse.from_key(k) for k in request.app.state.store.list_api_keys()]


@router.post("/apikeys", response_model=ApiKeyCreatedResponse, status_code=201)
@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201, include_in_schema=False)
def create_key(
    request: Request,
    body: ApiKeyCreate,
    admin: AuthenticatedUser = Depends(require_admin),
) -> ApiKeyCreatedResponse:
    """Generate a key. Only its bcrypt hash and 8-character prefix are stored."""
    store = request.app.state.store
    name = body.name.strip()
    if not name:
        raise error(400, "bad_request", "Name is required")

    username = body.username.strip() or DEFAULT_KEY_USERNAME
    owner = store.get_user_by_username(username)
    expires_at = None
    if body.expires_in > 0:
        expires_at = iso(datetime.now(timezone.utc) + timedelta(days=body.expires_in))

    raw_key, prefix = generate_api_key()
    key = ApiKey(
        name=name,
        key_hash=hash_api_key(raw_key),
        key_prefix=prefix,
        username=username,
        groups=body.groups,
        permissions=body.permissions or list(DEFAULT_PERMISSIONS),
        user_id=owner.id if owner is not None else None,
        expires_at=expires_at,
    )
    key.id = store.create_api_key(key)

    stored = next((k for k in store.list_api_keys_by_prefix(prefix) if k.id == key.id), key)
    audit(request, admin, "apikey_created", f"Created API key {name!r} (prefix={prefix}) for {username}")
    logger.info("Admin %s created API key %s (prefix=%s)", admin.username, name, prefix)
    return ApiKeyCreatedResponse(**ApiKeyResponse.from_key(stored).model_dump(), key=raw_key)


@router.delete("/apikeys")
@router.delete("/api-keys", include_in_schema=False)
def delete_key(request: Request, id: int, admin: AuthenticatedUser = Depends(require_admin)) -> dict:
    if not request.app.state.store.delete_api_key(id):
        raise error(404, "not_found", "API key not found")
    audit(request, admin, "apikey_deleted", f"Deleted API key id={id}")
    return {"status": "deleted"}
