"""
API request and response models for DashGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py and
auth/models.py, which own the internal domain representation. Route handlers
map between the two.

Wire names are camelCase (the browser UI expects them); Python attribute names
stay snake_case and match the SystemSettings / domain field names so handlers
can copy values across with setattr().
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import ApiKey, User
from core.models import DiscoveredAppOverride

# Shared config: camelCase on the wire, snake_case in Python, both accepted on input.
_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clean_groups(values: list) -> list[str]:
    return [str(v).strip() for v in values if str(v).strip()]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Inner error object carried by every non-2xx response."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope: {"error": {"code", "message", "detail"?}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Body for POST /login and POST /api/auth/login.

    Both fields default to "" so a missing field reaches the handler and gets
    the 400 "Username and password required" answer instead of a 422.
    """

    username: str = ""
    password: str = ""


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    redirect: str = "/"


class AuthConfigResponse(BaseModel):
    """Public description of the enabled login providers (GET /api/auth/config)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    local_enabled: bool
    ldap_enabled: bool
    oidc_enabled: bool
    proxy_enabled: bool
    login_redirect: Optional[str] = None


# ---------------------------------------------------------------------------
# Local users (admin)
# ---------------------------------------------------------------------------


class LocalUserCreate(BaseModel):
    model_config = _CAMEL

    username: str = ""
    password: str = ""
    email: Optional[str] = None
    display_name: str = ""
    groups: list[str] = Field(default_factory=list)

    @field_validator("groups")
    @classmethod
    def strip_groups(cls, values: list) -> list[str]:
        return _clean_groups(values)


class LocalUserUpdate(BaseModel):
    model_config = _CAMEL

    email: Optional[str] = None
    display_name: str = ""
    groups: list[str] = Field(default_factory=list)

    @field_validator("groups")
    @classmethod
    def strip_groups(cls, values: list) -> list[str]:
        return _clean_groups(values)


class PasswordReset(BaseModel):
    password: str = ""


class LocalUserResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    username: str
    email: Optional[str] = None
    display_name: str = ""
    groups: list[str] = Field(default_factory=list)
    source: str = "local"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "LocalUserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            display_name=user.display_name,
            groups=list(user.groups),
            source=user.source,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


# ---------------------------------------------------------------------------
# API keys (admin)
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    """Body for POST /api/admin/apikeys. expires_in is in days; 0 means never."""

    model_config = _CAMEL

    name: str = Field(min_length=1, max_length=100)
    username: str = ""
    groups: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    expires_in: int = Field(default=0, ge=0, le=3650)

    @field_validator("groups", "permissions")
    @classmethod
    def strip_lists(cls, values: list) -> list[str]:
        return _clean_groups(values)


class ApiKeyResponse(BaseModel):
    """API key metadata. The hash is never returned."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    name: str
    key_prefix: str
    username: str
    groups: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    expires_at: Optional[str] = None
    last_used_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            name=key.name,
            key_prefix=key.key_prefix,
            username=key.username,
            groups=list(key.groups),
            permissions=list(key.permissions),
            expires_at=key.expires_at,
            last_used_at=key.last_used_at,
            created_at=key.created_at,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once at creation; the only time the raw key is visible."""

    key: str


# ---------------------------------------------------------------------------
# System settings (admin)
# ---------------------------------------------------------------------------


class SystemConfigUpdate(BaseModel):
    """Body for PUT /api/admin/system-config.

    Every field is optional; None means "leave unchanged". Blank secret fields
    (ldap_bind_password, oidc_client_secret) also keep the stored secret.
    """

    model_config = _CAMEL

    session_days: Optional[int] = Field(default=None, ge=0, le=365)
    cookie_secure: Optional[bool] = None
    admin_group: Optional[str] = None
    trusted_proxies: Optional[str] = None

    proxy_auth_enabled: Optional[bool] = None
    local_auth_enabled: Optional[bool] = None
    ldap_auth_enabled: Optional[bool] = None
    oidc_auth_enabled: Optional[bool] = None
    api_key_enabled: Optional[bool] = None

    ldap_server: Optional[str] = None
    ldap_bind_dn: Optional[str] = None
    ldap_bind_password: Optional[str] = None
    ldap_base_dn: Optional[str] = None
    ldap_user_filter: Optional[str] = None
    ldap_group_filter: Optional[str] = None
    ldap_user_attr: Optional[str] = None
    ldap_email_attr: Optional[str] = None
    ldap_display_attr: Optional[str] = None
    ldap_group_attr: Optional[str] = None
    ldap_start_tls: Optional[bool] = None
    ldap_skip_verify: Optional[bool] = None

    oidc_issuer: Optional[str] = None
    oidc_client_id: Optional[str] = None
    oidc_client_secret: Optional[str] = None
    oidc_redirect_url: Optional[str] = None
    oidc_scopes: Optional[str] = None
    oidc_groups_claim: Optional[str] = None


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    timestamp: str
    username: str
    action: str
    detail: str
    ip: str


# ---------------------------------------------------------------------------
# Static apps (admin)
# ---------------------------------------------------------------------------


class AppMappingUpdate(BaseModel):
    model_config = _CAMEL

    app_url: str = Field(min_length=1)
    groups: list[str] = Field(default_factory=list)

    @field_validator("groups")
    @classmethod
    def strip_groups(cls, values: list) -> list[str]:
        return _clean_groups(values)


# ---------------------------------------------------------------------------
# Discovered apps and sources (admin)
# ---------------------------------------------------------------------------


class DiscoveredOverrideUpdate(BaseModel):
    """Body for PUT /api/admin/discovered-apps. Saving a row opts the URL in."""

    model_config = _CAMEL

    url: str = ""
    source: str = ""
    name_override: str = ""
    url_override: str = ""
    icon_override: str = ""
    description_override: str = ""
    category: str = ""
    groups: list[str] = Field(default_factory=list)
    hidden: bool = False

    @field_validator("groups")
    @classmethod
    def strip_groups(cls, values: list) -> list[str]:
        return _clean_groups(values)

    def to_override(self) -> DiscoveredAppOverride:
        return DiscoveredAppOverride(
            url=self.url,
            source=self.source,
            name_override=self.name_override,
            url_override=self.url_override,
            icon_override=self.icon_override,
            description_override=self.description_override,
            category=self.category,
            groups=list(self.groups),
            hidden=self.hidden,
        )


class DiscoveredOverrideResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str
    source: str = ""
    name_override: str = ""
    url_override: str = ""
    icon_override: str = ""
    description_override: str = ""
    category: str = ""
    groups: list[str] = Field(default_factory=list)
    hidden: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_override(cls, row: DiscoveredAppOverride) -> "DiscoveredOverrideResponse":
        return cls(
            url=row.url,
            source=row.source,
            name_override=row.name_override,
            url_override=row.url_override,
            icon_override=row.icon_override,
            description_override=row.description_override,
            category=row.category,
            groups=list(row.groups),
            hidden=row.hidden,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class DiscoverySourceUpdate(BaseModel):
    """Body for PUT /api/admin/discovery/{source} and POST .../test.

    Only the fields the named source understands are read; blank passwords
    keep the stored secret.
    """

    model_config = _CAMEL

    enabled: Optional[bool] = None
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None
    socket_path: Optional[str] = None
    config_path: Optional[str] = None


class DiscoveryTestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    count: int = 0
    apps: list[dict] = Field(default_factory=list)
    error: Optional[str] = None
