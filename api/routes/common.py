"""
api/routes/common.py -- Small helpers shared by the route modules.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AuthenticatedUser


def client_ip(request: Request) -> str:
    """Transport peer address. Forwarded headers are never consulted."""
    return request.client.host if request.client else ""


def audit(request: Request, user: AuthenticatedUser | str, action: str, detail: str = "") -> None:
    """Fire-and-forget audit entry; CredentialStore.log_audit() never raises."""
    username = user if isinstance(user, str) else user.username
    request.app.state.store.log_audit(username, action, detail, client_ip(request))


def error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})
