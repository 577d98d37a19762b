"""
api/routes/auth.py -- Login, logout and OIDC endpoints.

Routes:
  POST /login, POST /api/auth/login     -- password login; sets session cookie
  POST /logout, POST /api/auth/logout   -- deletes the session, clears the cookie
  GET  /api/auth/me                     -- resolved identity (401 if none)
  GET  /api/auth/config                 -- enabled providers + login redirect (public)
  GET  /auth/oidc                       -- start the authorization-code flow
  GET  /auth/oidc/callback              -- finish it; sets session cookie

Security:
  Both login paths share one per-IP budget (LOGIN_RATE_LIMIT per
  LOGIN_RATE_WINDOW_MINUTES), keyed on the transport address.
  Every failure returns the same "Invalid username or password" body.
  Every successful login deletes the user's older sessions before issuing one.
  Cache-Control: no-store on login responses.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import LOGIN_SCOPE, limiter, login_rate_limit
from api.models import AuthConfigResponse, LoginRequest, LoginResponse
from api.routes.common import audit, client_ip, error
from auth.dependencies import get_current_user
from auth.models import OIDC_USER, AuthenticatedUser
from auth.oidc import OIDCError, is_valid_redirect, new_state
from auth.sessions import SESSION_COOKIE, clear_session_cookie, set_session_cookie
from auth.settings import login_redirect_target

logger = logging.getLogger("dashgate.api.auth")

OIDC_FAILED_REDIRECT = "/login?error=oidc_failed"

router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password login
# ---------------------------------------------------------------------------


@router.post("/login", response_model=LoginResponse)
@router.post("/api/auth/login", response_model=LoginResponse)
@limiter.shared_limit(login_rate_limit(), scope=LOGIN_SCOPE)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Verify (username, password) against local users, then the directory.

    The verifier runs bcrypt (and maybe an LDAP round trip), so this is a
    plain def and FastAPI runs it in the threadpool.
    """
    if not body.username or not body.password:
        raise error(400, "bad_request", "Username and password required")

    runtime = request.app.state.settings_manager.runtime()
    user = request.app.state.verifier.verify(body.username, body.password, runtime)
    if user is None:
        logger.info("Failed login for %r from %s", body.username, client_ip(request))
        audit(request, body.username, "login_failed")
        return _no_store(
            JSONResponse(
                status_code=401,
                content={"error": {"code": "bad_credentials", "message": "Invalid username or password"}},
            )
        )

    token, _expires = request.app.state.sessions.start(user.id, runtime.session_days)
    resp = _no_store(JSONResponse(content=LoginResponse().model_dump()))
    set_session_cookie(resp, token, runtime.session_days, runtime.cookie_secure)
    audit(request, user.username, "login", f"source={user.source}")
    logger.info("User %s logged in (%s)", user.username, user.source)
    return resp


@router.post("/logout")
@router.post("/api/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Delete the session row (if any) and expire the cookie."""
    token = request.cookies.get(SESSION_COOKIE, "")
    request.app.state.sessions.end(token)
    runtime = request.app.state.settings_manager.runtime()
    resp = JSONResponse(content={"status": "ok"})
    clear_session_cookie(resp, runtime.cookie_secure)
    return resp


# ---------------------------------------------------------------------------
# Identity and provider info
# ---------------------------------------------------------------------------


@router.get("/api/auth/me")
async def me(current_user: AuthenticatedUser = Depends(get_current_user)) -> dict:
    return current_user.to_dict()


@router.get("/api/auth/config", response_model=AuthConfigResponse)
async def auth_config(request: Request) -> AuthConfigResponse:
    """Public: the login page uses this to decide which forms and buttons to show."""
    runtime = request.app.state.settings_manager.runtime()
    return AuthConfigResponse(
        local_enabled=runtime.local_enabled,
        ldap_enabled=runtime.ldap_enabled,
        oidc_enabled=runtime.oidc_enabled,
        proxy_enabled=runtime.proxy_enabled,
        login_redirect=login_redirect_target(runtime),
    )


# ---------------------------------------------------------------------------
# OIDC authorization-code flow
# ---------------------------------------------------------------------------


@router.get("/auth/oidc")
def oidc_start(request: Request, redirect: str = "/") -> RedirectResponse:
    runtime = request.app.state.settings_manager.runtime()
    if not runtime.oidc_available:
        raise error(503, "oidc_unavailable", "OIDC is not configured")

    target = redirect if is_valid_redirect(redirect) else "/"
    state = new_state()
    request.app.state.store.save_oidc_state(state, target)
    return RedirectResponse(runtime.oidc.authorization_url(state), status_code=302)


@router.get("/auth/oidc/callback")
async def oidc_callback(request: Request, code: str = "", state: str = "") -> RedirectResponse:
    provider_error = request.query_params.get("error", "")
    if provider_error:
        logger.warning("OIDC provider returned error: %s", provider_error)
        return RedirectResponse(OIDC_FAILED_REDIRECT, status_code=302)

    store = request.app.state.store
    target = await asyncio.to_thread(store.consume_oidc_state, state) if state else None
    if target is None:
        raise error(400, "invalid_state", "Invalid or expired state")

    runtime = request.app.state.settings_manager.runtime()
    if not runtime.oidc_available:
        raise error(503, "oidc_unavailable", "OIDC is not configured")
    if not code:
        return RedirectResponse(OIDC_FAILED_REDIRECT, status_code=302)

    try:
        identity = await runtime.oidc.exchange(code)
    except OIDCError as exc:
        logger.warning("OIDC callback failed: %s", exc)
        return RedirectResponse(OIDC_FAILED_REDIRECT, status_code=302)

    try:
        user = await asyncio.to_thread(
            store.upsert_external_user,
            identity.username,
            OIDC_USER,
            email=identity.email or None,
            display_name=identity.display_name,
            groups=identity.groups,
        )
    except IntegrityError:
        logger.warning("OIDC user %s conflicts with an existing account email", identity.username)
        return RedirectResponse(OIDC_FAILED_REDIRECT, status_code=302)

    token, _expires = await asyncio.to_thread(request.app.state.sessions.start, user.id, runtime.session_days)
    resp = RedirectResponse(target, status_code=302)
    set_session_cookie(resp, token, runtime.session_days, runtime.cookie_secure)
    await asyncio.to_thread(audit, request, user.username, "login", "source=oidc")
    logger.info("User %s logged in (oidc)", user.username)
    return resp
