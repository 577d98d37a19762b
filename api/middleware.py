"""
api/middleware.py -- Per-request security middleware.

  SecurityHeadersMiddleware -- 128-bit CSP nonce on request.state.csp_nonce,
                               fixed hardening headers on every response.
  CSRFMiddleware            -- double-submit cookie. Every response carries a
                               dashgate_csrf cookie (readable by scripts); every
                               POST/PUT/DELETE/PATCH must echo it in X-CSRF-Token.
  MaxBodySizeMiddleware     -- byte cap on request bodies of non-safe methods.

/health skips the CSRF layer entirely so container health checkers do not
collect tokens. Requests with "Authorization: Bearer ..." or "ApiKey ..." are
exempt from the token check; they carry explicit credentials, not cookies.

Layer rule: api/ may import from auth/ and core/; nothing outside api/ imports this.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from urllib.parse import urlsplit

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("dashgate.api.security")

CSRF_COOKIE = "dashgate_csrf"
CSRF_HEADER = "X-CSRF-Token"
CSRF_TOKEN_BYTES = 32
CSRF_EXEMPT_PATHS = frozenset({"/health"})

UNSAFE_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _forbidden(message: str) -> JSONResponse:
    return JSONResponse(status_code=403, content={"error": {"code": "csrf_failed", "message": message}})


# ---------------------------------------------------------------------------
# Security headers
# ---------------------------------------------------------------------------


def content_security_policy(nonce: str) -> str:
    return (
        "default-src 'self'; "
        f"script-src 'self' 'nonce-{nonce}'; "
        "script-src-attr 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "font-src 'self'; "
        "img-src 'self' data: https:; "
        "connect-src 'self'"
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        nonce = secrets.token_hex(16)
        request.state.csp_nonce = nonce
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-XSS-Protection"] = "0"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = content_security_policy(nonce)
        return response


# ---------------------------------------------------------------------------
# Anti-forgery
# ---------------------------------------------------------------------------


def cookie_values(raw_cookie_header: str, name: str) -> list[str]:
    """Every value sent under name. Browsers may send duplicates from stale paths."""
    values = []
    for part in raw_cookie_header.split(";"):
        key, sep, value = part.strip().partition("=")
        if sep and key == name and value:
            values.append(value)
    return values


def same_origin(origin_or_referer: str, request_host: str) -> bool:
    parts = urlsplit(origin_or_referer)
    if parts.scheme not in ("http", "https"):
        return False
    return parts.netloc.lower() == request_host.lower()


class CSRFMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        if request.url.path in CSRF_EXEMPT_PATHS:
            return await call_next(request)

        sent = cookie_values(request.headers.get("cookie", ""), CSRF_COOKIE)
        new_token = None if sent else secrets.token_hex(CSRF_TOKEN_BYTES)

        rejection = None
        if request.method in UNSAFE_METHODS:
            rejection = self._check(request, sent)

        response = rejection or await call_next(request)
        if new_token is not None:
            response.set_cookie(
                key=CSRF_COOKIE,
                value=new_token,
                path="/",
                httponly=False,
                samesite="lax",
                secure=request.url.scheme == "https",
            )
        return response

    @staticmethod
    def _check(request, sent: list[str]) -> JSONResponse | None:
        auth_header = request.headers.get("authorization", "")
        if auth_header.startswith(("Bearer ", "ApiKey ")):
            return None

        host = request.headers.get("host", "")
        origin = request.headers.get("origin", "")
        referer = request.headers.get("referer", "")
        if origin and not same_origin(origin, host):
            logger.warning("CSRF: blocked cross-origin %s request from %s", request.method, origin)
            return _forbidden("Cross-origin request blocked.")
        if not origin and referer and not same_origin(referer, host):
            logger.warning("CSRF: blocked cross-origin %s request from referer %s", request.method, referer)
            return _forbidden("Cross-origin request blocked.")

        header_token = request.headers.get(CSRF_HEADER, "")
        if not header_token:
            logger.warning("CSRF: missing %s header on %s %s", CSRF_HEADER, request.method, request.url.path)
            return _forbidden("Missing CSRF token.")

        matched = False
        for value in sent:
            # No early exit: every candidate is compared.
            if hmac.compare_digest(header_token.encode(), value.encode()):
                matched = True
        if not matched:
            logger.warning("CSRF: token mismatch on %s %s", request.method, request.url.path)
            return _forbidden("Invalid CSRF token.")
        return None


# ---------------------------------------------------------------------------
# Body size cap (pure ASGI so the body is never buffered here)
# ---------------------------------------------------------------------------


class MaxBodySizeMiddleware:
    def __init__(self, app: ASGIApp, max_bytes: int) -> None:
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] in SAFE_METHODS:
            await self.app(scope, receive, send)
            return

        declared = dict(scope["headers"]).get(b"content-length", b"")
        if declared.isdigit() and int(declared) > self.max_bytes:
            response = JSONResponse(
                status_code=413,
                content={"error": {"code": "payload_too_large", "message": "Request body too large."}},
            )
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    raise HTTPException(
                        status_code=413,
                        detail={"code": "payload_too_large", "message": "Request body too large."},
                    )
            return message

        await self.app(scope, limited_receive, send)
