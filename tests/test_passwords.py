"""
tests/test_passwords.py -- Password and API key hashing.

Covers:
  - hash/verify round trip and rejection of the wrong password
  - passwords longer than 72 bytes stay fully significant
  - legacy bcrypt(raw) hashes still verify
  - external-user markers never verify
  - API key format, prefix and header extraction
"""

from __future__ import annotations

import bcrypt

from auth.apikeys import PREFIX_LENGTH, extract_api_key, generate_api_key, hash_api_key, verify_api_key
from auth.models import LDAP_USER, OIDC_USER
from auth.passwords import DUMMY_HASH, hash_password, verify_password


class TestPasswords:
    def test_round_trip(self) -> None:
        hashed = hash_password("correct horse")
        assert hashed.startswith("$2")
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_long_passwords_differ_after_72_bytes(self) -> None:
        """Two passwords sharing their first 72 bytes must not verify against each other."""
        base = "x" * 80
        hashed = hash_password(base + "A")
        assert verify_password(base + "A", hashed)
        assert not verify_password(base + "B", hashed)

    def test_legacy_hash_still_verifies(self) -> None:
        legacy = bcrypt.hashpw(b"old-password", bcrypt.gensalt(rounds=4)).decode("utf-8")
        assert verify_password("old-password", legacy)
        assert not verify_password("other-password", legacy)

    def test_markers_never_verify(self) -> None:
        assert not verify_password(LDAP_USER, LDAP_USER)
        assert not verify_password("anything", OIDC_USER)

    def test_dummy_hash_is_a_real_hash(self) -> None:
        assert DUMMY_HASH.startswith("$2")
        assert not verify_password("guess", DUMMY_HASH)


class TestApiKeys:
    def test_generated_key_shape(self) -> None:
        raw, prefix = generate_api_key()
        assert len(raw) == 44
        assert prefix == raw[:PREFIX_LENGTH]
        assert len(prefix) == 8

    def test_keys_are_unique(self) -> None:
        assert generate_api_key()[0] != generate_api_key()[0]

    def test_hash_and_verify(self) -> None:
        raw, _prefix = generate_api_key()
        hashed = hash_api_key(raw)
        assert raw not in hashed
        assert verify_api_key(raw, hashed)
        assert not verify_api_key(raw[:-1] + ("A" if raw[-1] != "A" else "B"), hashed)

    def test_verify_bad_hash_is_false(self) -> None:
        assert not verify_api_key("key", "not-a-hash")

    def test_extract_prefers_x_api_key(self) -> None:
        headers = {"x-api-key": "from-header", "authorization": "Bearer from-bearer"}
        assert extract_api_key(headers) == "from-header"

    def test_extract_bearer_and_apikey_schemes(self) -> None:
        assert extract_api_key({"authorization": "Bearer abc"}) == "abc"
        assert extract_api_key({"authorization": "ApiKey xyz"}) == "xyz"

    def test_extract_other_scheme_is_empty(self) -> None:
        assert extract_api_key({"authorization": "Basic dXNlcjpwYXNz"}) == ""
        assert extract_api_key({}) == ""
