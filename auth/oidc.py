"""
auth/oidc.py -- OpenID Connect authorization-code flow.

Flow:
  GET /auth/oidc
    1. new_state() -> 16 random bytes, urlsafe base64.
    2. The state row is stored with the caller's post-login redirect path
       (is_valid_redirect() gate, else "/").
    3. 302 to authorization_url(state).
  GET /auth/oidc/callback?code=...&state=...
    4. consume_oidc_state() deletes the row; unknown or stale -> 400.
    5. exchange(code) posts to the token endpoint, then verifies the ID token
       signature against the provider JWKS and checks iss / aud / exp.
    6. identity_from_claims() -> OIDCIdentity; the route upserts the user
       with the OIDC_USER marker and starts a fresh session.

Discovery (OIDCProvider.discover) is network I/O that can take up to 30 s.
SettingsManager calls it outside its lock and publishes the result after.

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass, field

import httpx
from authlib.jose import JsonWebKey, jwt
from authlib.jose.errors import JoseError
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri

logger = logging.getLogger("dashgate.auth.oidc")

DISCOVERY_TIMEOUT = 30.0
TOKEN_TIMEOUT = 10.0
DEFAULT_SCOPES = "openid profile email"


class OIDCError(Exception):
    """Provider discovery, code exchange, or ID token validation failed."""


@dataclass(frozen=True)
class OIDCConfig:
    issuer: str
    client_id: str
    client_secret: str
    redirect_url: str
    scopes: str = DEFAULT_SCOPES
    groups_claim: str = "groups"

    @property
    def scope_list(self) -> list[str]:
        return self.scopes.split() or DEFAULT_SCOPES.split()


@dataclass
class OIDCIdentity:
    username: str
    display_name: str
    email: str = ""
    groups: list[str] = field(default_factory=list)


def new_state() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(16)).decode("ascii")


def is_valid_redirect(url: str) -> bool:
    """Accept only strictly relative paths, so the callback cannot bounce off-site."""
    if not url or not url.startswith("/"):
        return False
    if url.startswith("//"):
        return False
    return "://" not in url and "\\" not in url


def _claim_strings(value) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return []


def identity_from_claims(claims: dict, groups_claim: str = "groups") -> OIDCIdentity:
    """Map standard claims plus the configured groups claim onto an identity.

    Username preference: preferred_username, then email, then sub.
    """
    email = claims.get("email") or ""
    username = claims.get("preferred_username") or email or claims.get("sub") or ""
    if not username:
        raise OIDCError("ID token has no usable subject")

    groups = _claim_strings(claims.get("groups"))
    if groups_claim and groups_claim != "groups":
        for name in _claim_strings(claims.get(groups_claim)):
            if name not in groups:
                groups.append(name)

    return OIDCIdentity(
        username=username,
        display_name=claims.get("name") or username,
        email=email,
        groups=groups,
    )


class OIDCProvider:
    """A discovered provider: endpoints plus signing keys.

    Usage:
        provider = await OIDCProvider.discover(config)
        url = provider.authorization_url(state)
        identity = await provider.exchange(code)
    """

    def __init__(self, config: OIDCConfig, metadata: dict, jwks: dict, transport=None) -> None:
        self.config = config
        self.metadata = metadata
        self._key_set = JsonWebKey.import_key_set(jwks)
        self._transport = transport

    @classmethod
    async def discover(cls, config: OIDCConfig, transport=None) -> OIDCProvider:
        """Fetch the discovery document and the JWKS. Raises OIDCError."""
        issuer = config.issuer.rstrip("/")
        discovery_url = f"{issuer}/.well-known/openid-configuration"
        try:
            async with httpx.AsyncClient(timeout=DISCOVERY_TIMEOUT, transport=transport) as client:
                response = await client.get(discovery_url)
                if response.status_code != 200:
                    raise OIDCError(f"Failed to fetch OIDC discovery: HTTP {response.status_code}")
                metadata = response.json()

                required = ["issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"]
                missing = [f for f in required if not metadata.get(f)]
                if missing:
                    raise OIDCError(f"OIDC discovery missing required fields: {', '.join(missing)}")
                if metadata["issuer"].rstrip("/") != issuer:
                    raise OIDCError(f"OIDC issuer mismatch: expected {issuer}, got {metadata['issuer']}")

                jwks_response = await client.get(metadata["jwks_uri"])
                if jwks_response.status_code != 200:
                    raise OIDCError(f"Failed to fetch JWKS: HTTP {jwks_response.status_code}")
                jwks = jwks_response.json()
        except httpx.HTTPError as exc:
            raise OIDCError(f"Network error during OIDC discovery: {exc}") from exc
        except ValueError as exc:
            raise OIDCError("OIDC provider returned invalid JSON") from exc

        try:
            provider = cls(config, metadata, jwks, transport=transport)
        except (JoseError, ValueError) as exc:
            raise OIDCError(f"Invalid JWKS: {exc}") from exc
        logger.info("OIDC provider initialized (issuer=%s)", metadata["issuer"])
        return provider

    def authorization_url(self, state: str) -> str:
        return prepare_grant_uri(
            self.metadata["authorization_endpoint"],
            client_id=self.config.client_id,
            response_type="code",
            redirect_uri=self.config.redirect_url,
            scope=self.config.scope_list,
            state=state,
        )

    async def exchange(self, code: str) -> OIDCIdentity:
        """Trade an authorization code for a verified identity. Raises OIDCError."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_url,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        try:
            async with httpx.AsyncClient(timeout=TOKEN_TIMEOUT, transport=self._transport) as client:
                response = await client.post(
                    self.metadata["token_endpoint"],
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise OIDCError(f"Token exchange failed: {exc}") from exc

        if response.status_code != 200:
            raise OIDCError(f"Token exchange failed: HTTP {response.status_code}")
        try:
            token = response.json()
        except ValueError as exc:
            raise OIDCError("Token endpoint returned invalid JSON") from exc

        id_token = token.get("id_token")
        if not id_token:
            raise OIDCError("No id_token in token response")

        claims = self.verify_id_token(id_token)
        return identity_from_claims(claims, self.config.groups_claim)

    def verify_id_token(self, id_token: str) -> dict:
        """Check signature, issuer, audience and expiry; return the claims."""
        claims_options = {
            "iss": {"essential": True, "value": self.metadata["issuer"]},
            "aud": {"essential": True, "value": self.config.client_id},
            "exp": {"essential": True},
        }
        try:
            claims = jwt.decode(id_token, self._key_set, claims_options=claims_options)
            claims.validate(leeway=60)
        except (JoseError, ValueError) as exc:
            raise OIDCError(f"Failed to verify ID token: {exc}") from exc
        return dict(claims)
