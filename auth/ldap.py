"""
auth/ldap.py -- Directory (LDAP) bind authentication via ldap3.

Flow for one login attempt:
  1. Connect (ldap:// or ldaps:// URL, 10 s connect timeout), optional StartTLS.
  2. Bind as the service account (anonymous when no bind DN is set).
  3. Search base DN with the user filter, "%s" replaced by the escaped username.
     Exactly one entry must match.
  4. Read email, display name and group attributes. Group DNs are reduced to
     their first cn= component.
  5. Bind as the found DN with the submitted password.

Every failure raises DirectoryError; the caller maps that to the single
"invalid credentials" outcome.

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass, field

import ldap3
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

logger = logging.getLogger("dashgate.auth.ldap")

CONNECT_TIMEOUT = 10


class DirectoryError(Exception):
    """Directory login failed (connectivity, bind, search, or bad password)."""


@dataclass(frozen=True)
class DirectoryConfig:
    server: str
    base_dn: str
    bind_dn: str = ""
    bind_password: str = ""
    user_filter: str = "(uid=%s)"
    group_filter: str = ""
    user_attr: str = "uid"
    email_attr: str = "mail"
    display_attr: str = "displayName"
    group_attr: str = "memberOf"
    start_tls: bool = False
    skip_verify: bool = False


@dataclass
class DirectoryUser:
    username: str
    display_name: str
    email: str = ""
    groups: list[str] = field(default_factory=list)


def group_names(values: list[str]) -> list[str]:
    """Reduce group DNs like "cn=ops,ou=groups,dc=x" to "ops"; plain names pass through."""
    names = []
    for value in values:
        if value.lower().startswith("cn="):
            names.append(value.split(",", 1)[0].lower()[len("cn=") :])
        else:
            names.append(value)
    return names


def _values(attributes: dict, name: str) -> list[str]:
    raw = attributes.get(name)
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(v) for v in raw]
    return [str(raw)]


class DirectoryAuthenticator:
    """Bind-based login against one directory server.

    connection_factory defaults to ldap3.Connection; tests inject a mock.
    """

    def __init__(self, config: DirectoryConfig, connection_factory=ldap3.Connection) -> None:
        self.config = config
        self._connection_factory = connection_factory

    def _server(self) -> ldap3.Server:
        if self.config.skip_verify:
            logger.warning("LDAP TLS verification is disabled (skip_verify=true)")
        tls = ldap3.Tls(validate=ssl.CERT_NONE if self.config.skip_verify else ssl.CERT_REQUIRED)
        return ldap3.Server(self.config.server, tls=tls, connect_timeout=CONNECT_TIMEOUT)

    def _bind(self, server, user: str | None, password: str | None):
        conn = self._connection_factory(
            server,
            user=user or None,
            password=password or None,
            receive_timeout=CONNECT_TIMEOUT,
            raise_exceptions=False,
        )
        conn.open()
        if self.config.start_tls and not conn.start_tls():
            conn.unbind()
            raise DirectoryError("failed to start TLS")
        if not conn.bind():
            conn.unbind()
            return None
        return conn

    def authenticate(self, username: str, password: str) -> DirectoryUser:
        if not password:
            raise DirectoryError("invalid credentials")
        cfg = self.config
        try:
            server = self._server()
            service = self._bind(server, cfg.bind_dn, cfg.bind_password)
            if service is None:
                raise DirectoryError("service account bind failed")
            try:
                search_filter = cfg.user_filter.replace("%s", escape_filter_chars(username))
                service.search(
                    cfg.base_dn,
                    search_filter,
                    search_scope=ldap3.SUBTREE,
                    attributes=[cfg.user_attr, cfg.email_attr, cfg.display_attr, cfg.group_attr],
                    size_limit=2,
                )
                entries = [r for r in (service.response or []) if r.get("type") == "searchResEntry"]
            finally:
                service.unbind()

            if len(entries) != 1:
                raise DirectoryError("user not found or multiple matches")

            entry = entries[0]
            attributes = entry.get("attributes") or {}
            emails = _values(attributes, cfg.email_attr)
            displays = _values(attributes, cfg.display_attr)

            user_conn = self._bind(server, entry["dn"], password)
            if user_conn is None:
                raise DirectoryError("invalid credentials")
            user_conn.unbind()
        except LDAPException as exc:
            raise DirectoryError(f"LDAP error: {exc}") from exc

        return DirectoryUser(
            username=username,
            display_name=displays[0] if displays and displays[0] else username,
            email=emails[0] if emails else "",
            groups=group_names(_values(attributes, cfg.group_attr)),
        )
