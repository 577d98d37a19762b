"""
auth/verifier.py -- Interactive (username, password) verification.

Order: local password, then directory bind. The first success wins and the
caller only sees a User or None, never which mechanism rejected. The OIDC
flow is a separate redirect path (auth/oidc.py) and is not tried here.

Timing: an unknown local username is still run through verify_password()
against DUMMY_HASH so the response time matches a wrong password.

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.ldap import DirectoryAuthenticator, DirectoryError
from auth.models import LDAP_USER, OIDC_USER, User
from auth.passwords import DUMMY_HASH, verify_password
from auth.settings import AuthRuntime
from auth.store import CredentialStore

logger = logging.getLogger("dashgate.auth.verifier")


def authenticate_local(store: CredentialStore, username: str, password: str) -> User | None:
    user = store.get_user_by_username(username)
    if user is None or user.password_hash in (LDAP_USER, OIDC_USER):
        verify_password(password, DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


class CredentialVerifier:
    """Usage:
    verifier = CredentialVerifier(store)
    user = verifier.verify(username, password, runtime)
    """

    def __init__(self, store: CredentialStore, directory_factory=DirectoryAuthenticator) -> None:
        self.store = store
        self._directory_factory = directory_factory

    def verify(self, username: str, password: str, runtime: AuthRuntime) -> User | None:
        if not username or not password:
            return None

        if runtime.local_enabled:
            user = authenticate_local(self.store, username, password)
            if user is not None:
                return user

        if runtime.ldap_enabled and runtime.ldap is not None:
            try:
                found = self._directory_factory(runtime.ldap).authenticate(username, password)
            except DirectoryError as exc:
                logger.info("Directory login failed for %s: %s", username, exc)
                return None
            try:
                return self.store.upsert_external_user(
                    found.username,
                    LDAP_USER,
                    email=found.email or None,
                    display_name=found.display_name,
                    groups=found.groups,
                )
            except IntegrityError:
                logger.warning("Directory user %s conflicts with an existing account email", username)
                return None

        return None
