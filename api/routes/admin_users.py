"""
api/routes/admin_users.py -- Local user management (admin only).

Routes (mounted under /api/admin):
  GET    /local-users                 -- list every user row
  POST   /local-users                 -- create a local user
  PUT    /local-users/{id}            -- edit email, display name, groups
  POST   /local-users/{id}/password   -- reset password
  DELETE /local-users/{id}            -- delete

Edit, reset and delete all invalidate every session of the target user, so a
changed privilege set takes effect on the next request.

Self-protection:
  An admin editing their own row must keep an admin group (403).
  An admin cannot delete their own row (400).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError

from api.models import LocalUserCreate, LocalUserResponse, LocalUserUpdate, PasswordReset
from api.routes.common import audit, error
from auth.dependencies import require_admin
from auth.models import AuthenticatedUser, User
from auth.passwords import hash_password

logger = logging.getLogger("dashgate.api.admin")

MIN_PASSWORD_LENGTH = 8

router = APIRouter()


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise error(400, "weak_password", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _get_user(request: Request, user_id: int) -> User:
    user = request.app.state.store.get_user_by_id(user_id)
    if user is None:
        raise error(404, "not_found", "User not found")
    return user


@router.get("/local-users", response_model=list[LocalUserResponse])
def list_users(request: Request, admin: AuthenticatedUser = Depends(require_admin)) -> list[LocalUserResponse]:
    return [LocalUserResponse.from_user(u) for u in request.app.state.store.list_users()]


@router.post("/local-users", status_code=201)
def create_user(
    request: Request,
    body: LocalUserCreate,
    admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    username = body.username.strip()
    if not username or not body.password:
        raise error(400, "bad_request", "Username and password required")
    _check_password(body.password)

    user = User(
        username=username,
        password_hash=hash_password(body.password),
        email=(body.email or "").strip() or None,
        display_name=body.display_name.strip() or username,
        groups=body.groups,
    )
    try:
        user_id = request.app.state.store.create_user(user)
    except IntegrityError:
        raise error(409, "conflict", "Username or email already exists")

    audit(request, admin, "user_created", f"Created user {username!r} (id={user_id})")
    logger.info("Admin %s created local user %s", admin.username, username)
    return {"status": "created", "id": user_id}


@router.put("/local-users/{user_id}")
def update_user(
    request: Request,
    user_id: int,
    body: LocalUserUpdate,
    admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    target = _get_user(request, user_id)
    runtime = request.app.state.settings_manager.runtime()
    if target.username == admin.username and not runtime.is_admin(body.groups):
        raise error(403, "forbidden", "Cannot remove admin role from your own account")

    store = request.app.state.store
    try:
        updated = store.update_user_profile(
            user_id,
            email=(body.email or "").strip() or None,
            display_name=body.display_name.strip() or target.username,
            groups=body.groups,
        )
    except IntegrityError:
        raise error(409, "conflict", "Email already exists")
    if not updated:
        raise error(404, "not_found", "User not found")

    request.app.state.sessions.invalidate_user(user_id)
    audit(request, admin, "user_updated", f"Updated user id={user_id}")
    return {"status": "updated"}


@router.post("/local-users/{user_id}/password")
def reset_password(
    request: Request,
    user_id: int,
    body: PasswordReset,
    admin: AuthenticatedUser = Depends(require_admin),
) -> dict:
    if not body.password:
        raise error(400, "bad_request", "Password required")
    _check_password(body.password)
    if not request.app.state.store.set_password_hash(user_id, hash_password(body.password)):
        raise error(404, "not_found", "User not found")

    request.app.state.sessions.invalidate_user(user_id)
    audit(request, admin, "password_reset", f"Reset password for user id={user_id}")
    return {"status": "password_reset"}


@router.delete("/local-users/{user_id}")
def delete_user(request: Request, user_id: int, admin: AuthenticatedUser = Depends(require_admin)) -> dict:
    target = _get_user(request, user_id)
    if target.username == admin.username:
        raise error(400, "bad_request", "Cannot delete yourself")

    request.app.state.sessions.invalidate_user(user_id)
    if not request.app.state.store.delete_user(user_id):
        raise error(404, "not_found", "User not found")

    audit(request, admin, "user_deleted", f"Deleted user {target.username!r} (id={user_id})")
    logger.info("Admin %s deleted user %s", admin.username, target.username)
    return {"status": "deleted"}
