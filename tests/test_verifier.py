"""
tests/test_verifier.py -- Local and directory credential verification.

The directory is never contacted: DirectoryAuthenticator takes a connection
factory, and these tests hand it MagicMock connections.

Coverage:
  - local login: success, wrong password, unknown user, external markers
  - directory: search, group DN reduction, user bind, upsert with LDAP_USER
  - directory failures (service bind, no match, two matches, bad password)
  - local is tried first; the directory only runs when enabled
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from auth.ldap import DirectoryAuthenticator, DirectoryConfig, DirectoryError, group_names
from auth.models import LDAP_USER, OIDC_USER, User
from auth.passwords import hash_password
from auth.settings import AuthRuntime
from auth.store import CredentialStore
from auth.verifier import CredentialVerifier, authenticate_local

DIRECTORY = DirectoryConfig(
    server="ldap://10.0.0.8:389",
    base_dn="dc=home,dc=lab",
    bind_dn="cn=svc,dc=home,dc=lab",
    bind_password="svcpw",
)

ENTRY = {
    "type": "searchResEntry",
    "dn": "uid=carol,ou=people,dc=home,dc=lab",
    "attributes": {
        "uid": ["carol"],
        "mail": ["carol@home.lab"],
        "displayName": ["Carol"],
        "memberOf": ["cn=Media,ou=groups,dc=home,dc=lab", "cn=ops,ou=groups,dc=home,dc=lab"],
    },
}


def _factory(entries: list[dict], user_password: str = "carolpw", service_ok: bool = True):
    """Return (factory, calls). The first connection is the service bind, later ones user binds."""
    calls = []

    def make(server, user=None, password=None, **kwargs):
        conn = MagicMock()
        if not calls:
            conn.bind.return_value = service_ok
            conn.response = entries
        else:
            conn.bind.return_value = password == user_password
        calls.append((user, password, conn))
        return conn

    return make, calls


@pytest.fixture
def store():
    s = CredentialStore("sqlite://")
    s.create_user(User(username="dave", password_hash=hash_password("davepass1"), groups=["media"]))
    yield s
    s.close()


class TestLocal:
    def test_success(self, store: CredentialStore) -> None:
        assert authenticate_local(store, "dave", "davepass1").username == "dave"

    def test_wrong_password(self, store: CredentialStore) -> None:
        assert authenticate_local(store, "dave", "nope") is None

    def test_unknown_user(self, store: CredentialStore) -> None:
        assert authenticate_local(store, "nobody", "davepass1") is None

    @pytest.mark.parametrize("marker", [LDAP_USER, OIDC_USER])
    def test_external_rows_never_match(self, store: CredentialStore, marker: str) -> None:
        store.upsert_external_user("ext", marker, email=None, display_name="Ext", groups=[])
        assert authenticate_local(store, "ext", marker) is None


class TestDirectoryAuthenticator:
    def test_group_names(self) -> None:
        assert group_names(["cn=Media,ou=groups,dc=x", "plain"]) == ["media", "plain"]

    def test_success(self) -> None:
        factory, calls = _factory([ENTRY])
        found = DirectoryAuthenticator(DIRECTORY, connection_factory=factory).authenticate("carol", "carolpw")
        assert found.display_name == "Carol"
        assert found.email == "carol@home.lab"
        assert found.groups == ["media", "ops"]
        assert calls[0][0] == DIRECTORY.bind_dn
        assert calls[1][0] == ENTRY["dn"]
        search_filter = calls[0][2].search.call_args.args[1]
        assert search_filter == "(uid=carol)"

    def test_filter_input_is_escaped(self) -> None:
        factory, calls = _factory([ENTRY])
        DirectoryAuthenticator(DIRECTORY, connection_factory=factory).authenticate("*)(uid=*", "carolpw")
        assert calls[0][2].search.call_args.args[1] == r"(uid=\2a\29\28uid=\2a)"

    def test_service_bind_failure(self) -> None:
        factory, _calls = _factory([ENTRY], service_ok=False)
        with pytest.raises(DirectoryError):
            DirectoryAuthenticator(DIRECTORY, connection_factory=factory).authenticate("carol", "carolpw")

    @pytest.mark.parametrize("entries", [[], [ENTRY, dict(ENTRY, dn="uid=carol2,dc=home,dc=lab")]])
    def test_exactly_one_match_required(self, entries: list[dict]) -> None:
        factory, calls = _factory(entries)
        with pytest.raises(DirectoryError):
            DirectoryAuthenticator(DIRECTORY, connection_factory=factory).authenticate("carol", "carolpw")
        assert len(calls) == 1

    def test_wrong_password(self) -> None:
        factory, _calls = _factory([ENTRY])
        with pytest.raises(DirectoryError):
            DirectoryAuthenticator(DIRECTORY, connection_factory=factory).authenticate("carol", "wrong")

    def test_empty_password_never_binds(self) -> None:
        factory, calls = _factory([ENTRY])
        with pytest.raises(DirectoryError):
            DirectoryAuthenticator(DIRECTORY, connection_factory=factory).authenticate("carol", "")
        assert calls == []


class TestCredentialVerifier:
    def _verifier(self, store: CredentialStore, entries=None) -> CredentialVerifier:
        factory, _calls = _factory([ENTRY] if entries is None else entries)
        return CredentialVerifier(store, lambda cfg: DirectoryAuthenticator(cfg, connection_factory=factory))

    def test_local_first(self, store: CredentialStore) -> None:
        directory = MagicMock()
        verifier = CredentialVerifier(store, directory)
        runtime = AuthRuntime(local_enabled=True, ldap_enabled=True, ldap=DIRECTORY)
        assert verifier.verify("dave", "davepass1", runtime).username == "dave"
        directory.assert_not_called()

    def test_local_disabled(self, store: CredentialStore) -> None:
        assert self._verifier(store).verify("dave", "davepass1", AuthRuntime()) is None

    def test_directory_login_upserts_user(self, store: CredentialStore) -> None:
        runtime = AuthRuntime(local_enabled=True, ldap_enabled=True, ldap=DIRECTORY)
        user = self._verifier(store).verify("carol", "carolpw", runtime)
        assert user.username == "carol"
        assert user.source == "ldap"
        stored = store.get_user_by_username("carol")
        assert stored.password_hash == LDAP_USER
        assert stored.groups == ["media", "ops"]

    def test_directory_rejection_is_none(self, store: CredentialStore) -> None:
        runtime = AuthRuntime(ldap_enabled=True, ldap=DIRECTORY)
        assert self._verifier(store).verify("carol", "wrong", runtime) is None
        assert store.get_user_by_username("carol") is None

    def test_blank_fields(self, store: CredentialStore) -> None:
        runtime = AuthRuntime(local_enabled=True)
        assert self._verifier(store).verify("", "davepass1", runtime) is None
        assert self._verifier(store).verify("dave", "", runtime) is None
