"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in core/models.py -- dataclasses own domain shape; stores and routes do the work.

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# password_hash markers for users whose credential lives elsewhere. They can
# never match a bcrypt hash, so local login is impossible for these rows.
LDAP_USER = "LDAP_USER"
OIDC_USER = "OIDC_USER"


@dataclass
class User:
    """A row of the users table.

    password_hash is a bcrypt hash for local users, or one of the LDAP_USER /
    OIDC_USER markers for users provisioned on first external login. Groups
    are persisted as a JSON array in declaration order.
    """

    username: str
    password_hash: str
    id: int | None = None
    email: str | None = None
    display_name: str = ""
    groups: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def source(self) -> str:
        if self.password_hash == LDAP_USER:
            return "ldap"
        if self.password_hash == OIDC_USER:
            return "oidc"
        return "local"


@dataclass
class AuthenticatedUser:
    """The resolved identity attached to a request.

    Built by one of the resolver strategies; is_admin is always computed from
    the configured admin groups, never stored.
    source: "apikey", "proxy", "local", "ldap" or "oidc".
    """

    username: str
    display_name: str
    groups: list[str]
    source: str
    is_admin: bool = False
    email: str = ""
    user_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "displayName": self.display_name,
            "email": self.email,
            "groups": list(self.groups),
            "isAdmin": self.is_admin,
            "source": self.source,
        }


@dataclass
class ApiKey:
    """A long-lived credential for scripts and integrations.

    key_hash is a bcrypt hash of the full key; the raw key is returned once at
    creation and never stored. key_prefix is the first 8 characters of the raw
    key, kept verbatim so the resolver can narrow candidates before hashing.
    """

    name: str
    key_hash: str
    key_prefix: str
    username: str = ""
    groups: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=lambda: ["read"])
    id: int | None = None
    user_id: int | None = None
    expires_at: str | None = None
    last_used_at: str | None = None
    created_at: str | None = None


@dataclass
class AuditEntry:
    id: int
    timestamp: str
    username: str
    action: str
    detail: str
    ip: str
