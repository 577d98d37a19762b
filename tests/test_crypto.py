"""
tests/test_crypto.py -- Unit tests for the secret-at-rest codec.

Covers:
  - encrypt/decrypt round trip, fresh nonce per call
  - pass-through rules: no key, empty value, legacy plaintext, already sealed
  - structural failures raise DecryptionError (tamper, wrong key, bad base64)
  - resolve_encryption_key(): env first, then stored row, else generate + persist
"""

from __future__ import annotations

import base64

import pytest

from auth.crypto import (
    ENC_PREFIX,
    KEY_ROW_NAME,
    DecryptionError,
    decrypt_value,
    encrypt_value,
    resolve_encryption_key,
)
from auth.store import CredentialStore

KEY = bytes(range(32))
OTHER_KEY = bytes(range(1, 33))


class TestEncryptValue:
    def test_round_trip(self) -> None:
        sealed = encrypt_value(KEY, "s3cret-bind-password")
        assert sealed.startswith(ENC_PREFIX)
        assert "s3cret" not in sealed
        assert decrypt_value(KEY, sealed) == "s3cret-bind-password"

    def test_nonce_differs_per_call(self) -> None:
        """Two encryptions of the same value must not produce the same ciphertext."""
        assert encrypt_value(KEY, "same") != encrypt_value(KEY, "same")

    def test_no_key_passes_through(self) -> None:
        assert encrypt_value(b"", "plain") == "plain"
        assert decrypt_value(b"", "plain") == "plain"

    def test_empty_value_passes_through(self) -> None:
        assert encrypt_value(KEY, "") == ""

    def test_already_sealed_is_not_sealed_twice(self) -> None:
        sealed = encrypt_value(KEY, "value")
        assert encrypt_value(KEY, sealed) == sealed

    def test_legacy_plaintext_decrypts_to_itself(self) -> None:
        """Rows written before encryption existed carry no prefix and stay readable."""
        assert decrypt_value(KEY, "legacy-password") == "legacy-password"

    def test_unicode_round_trip(self) -> None:
        assert decrypt_value(KEY, encrypt_value(KEY, "pässwörd-密码")) == "pässwörd-密码"


class TestDecryptFailures:
    def test_wrong_key_raises(self) -> None:
        sealed = encrypt_value(KEY, "value")
        with pytest.raises(DecryptionError):
            decrypt_value(OTHER_KEY, sealed)

    def test_tampered_ciphertext_raises(self) -> None:
        sealed = encrypt_value(KEY, "value")
        raw = bytearray(base64.b64decode(sealed[len(ENC_PREFIX) :]))
        raw[-1] ^= 0x01
        tampered = ENC_PREFIX + base64.b64encode(bytes(raw)).decode("ascii")
        with pytest.raises(DecryptionError):
            decrypt_value(KEY, tampered)

    def test_bad_base64_raises(self) -> None:
        with pytest.raises(DecryptionError):
            decrypt_value(KEY, ENC_PREFIX + "not base64 !!")

    def test_truncated_raises(self) -> None:
        short = ENC_PREFIX + base64.b64encode(b"abc").decode("ascii")
        with pytest.raises(DecryptionError):
            decrypt_value(KEY, short)


class TestResolveEncryptionKey:
    def test_env_key_wins(self) -> None:
        store = CredentialStore("sqlite://")
        assert resolve_encryption_key(store, KEY.hex()) == KEY
        assert store.get_encryption_key(KEY_ROW_NAME) is None
        store.close()

    def test_generated_key_is_persisted_and_reused(self) -> None:
        store = CredentialStore("sqlite://")
        first = resolve_encryption_key(store)
        assert len(first) == 32
        assert store.get_encryption_key(KEY_ROW_NAME) == first.hex()
        assert resolve_encryption_key(store) == first
        store.close()

    def test_invalid_stored_key_is_replaced(self) -> None:
        store = CredentialStore("sqlite://")
        store.put_encryption_key(KEY_ROW_NAME, "zz-not-hex")
        key = resolve_encryption_key(store)
        assert len(key) == 32
        assert store.get_encryption_key(KEY_ROW_NAME) == key.hex()
        store.close()
