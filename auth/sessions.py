"""
auth/sessions.py -- Server-side sessions bound to an HttpOnly cookie.

A session is a row (user_id, token, expires_at). The token is 32 random bytes,
hex-encoded, and is the whole cookie value. Validity is "row exists and
expires_at > now", checked in SQL by CredentialStore.get_session_user().

Every fresh login deletes the user's existing sessions before creating the new
one, so a token planted before login never becomes authenticated.

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from starlette.responses import Response

from auth.store import CredentialStore

logger = logging.getLogger("dashgate.auth")

SESSION_COOKIE = "dashgate_session"
DEFAULT_SESSION_DAYS = 7


def generate_session_token() -> str:
    return secrets.token_hex(32)


class SessionManager:
    """Issue and revoke sessions.

    Usage:
        sessions = SessionManager(store)
        token, expires = sessions.start(user.id, days=7)
        sessions.end(token)
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def start(self, user_id: int, days: int = DEFAULT_SESSION_DAYS) -> tuple[str, datetime]:
        """Rotate: drop every session of user_id, then create a new one.

        Store errors propagate; a login that cannot persist its session is a 500.
        """
        self.store.invalidate_user_sessions(user_id)
        token = generate_session_token()
        expires_at = datetime.now(timezone.utc) + timedelta(days=days)
        self.store.create_session(user_id, token, expires_at)
        return token, expires_at

    def end(self, token: str) -> None:
        if token:
            self.store.delete_session(token)

    def invalidate_user(self, user_id: int) -> int:
        removed = self.store.invalidate_user_sessions(user_id)
        if removed:
            logger.info("Invalidated %d session(s) for user id %d", removed, user_id)
        return removed

    def sweep(self) -> int:
        sessions, _states = self.store.sweep_expired()
        return sessions


def set_session_cookie(response: Response, token: str, days: int, secure: bool) -> None:
    """Attach the session cookie. Lifetime matches the row's expiry."""
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        max_age=days * 86400,
        path="/",
        httponly=True,
        samesite="lax",
        secure=secure,
    )


def clear_session_cookie(response: Response, secure: bool) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value="",
        max_age=0,
        path="/",
        httponly=True,
        samesite="lax",
        secure=secure,
    )
