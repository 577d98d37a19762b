"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and api/routes/auth.py
(to apply the login limit with @limiter.shared_limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. The key is the transport peer address (get_remote_address);
X-Forwarded-For is never consulted, a client could set it to anything.

client_key() records every address it hands to slowapi. prune_storage() runs
on a timer, counts the distinct addresses seen since its last run and resets
the whole counter store through Limiter.reset() when that count passes
MAX_TRACKED_KEYS.

The login budget comes from LOGIN_RATE_LIMIT / LOGIN_RATE_WINDOW_MINUTES
(default 5 per 15 minutes) and is resolved once, when the routes are imported.
The limit string must be static: slowapi only lets the route decorator own a
route when the limit is registered as a fixed value.
"""

from __future__ import annotations

import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from core.config import get_settings

logger = logging.getLogger("dashgate.api.limiter")

MAX_TRACKED_KEYS = 10_000
LOGIN_SCOPE = "login"

_seen_keys: set[str] = set()


def client_key(request: Request) -> str:
    key = get_remote_address(request)
    _seen_keys.add(key)
    return key


limiter = Limiter(key_func=client_key, storage_uri="memory://")


def login_rate_limit() -> str:
    cfg = get_settings()
    return f"{cfg.login_rate_limit} per {cfg.login_rate_window_minutes} minutes"


def prune_storage() -> int:
    """Reset the counter store when too many distinct clients were seen.

    Expired windows are dropped by the memory backend itself; this only caps
    growth under a flood of distinct addresses. Returns the number of distinct
    keys seen since the previous call.
    """
    tracked = len(_seen_keys)
    _seen_keys.clear()
    if tracked > MAX_TRACKED_KEYS:
        logger.warning("Rate limiter saw %d distinct clients; resetting counters", tracked)
        limiter.reset()
    return tracked
