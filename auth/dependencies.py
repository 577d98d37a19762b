"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The request is resolved once by app.state.resolver (auth/resolver.py) and the
result is cached on request.state.user for the rest of the request.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Layer rule: no imports from api/, discovery/ or health/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AuthenticatedUser

_UNSET = object()


def try_get_current_user(request: Request) -> AuthenticatedUser | None:
    """Resolve the request via API key, trusted proxy, or session cookie.

    Returns None when no strategy accepts the request. Never raises for a
    missing or bad credential; store errors propagate as 500.
    """
    cached = getattr(request.state, "user", _UNSET)
    if cached is not _UNSET:
        return cached
    user = request.app.state.resolver.resolve(request)
    request.state.user = user
    return user


def get_current_user(request: Request) -> AuthenticatedUser:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: AuthenticatedUser = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> AuthenticatedUser:
    """Require the admin flag. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
