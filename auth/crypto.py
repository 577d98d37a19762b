"""
auth/crypto.py -- Secret-at-rest codec for sensitive settings rows.

Format:  "enc:" + base64(nonce || AES-256-GCM ciphertext+tag), 12-byte nonce.

Values without the prefix are legacy plaintext and pass through decrypt()
untouched, as does everything when no key is configured. That keeps a
database written before encryption existed readable, and lets the next save
encrypt it.

Key resolution order (resolve_encryption_key):
  1. ENCRYPTION_KEY env var (64 hex chars, validated in core/config.py)
  2. The system_encryption_key row in the encryption_keys table
  3. A freshly generated key, persisted back to that row
If all three fail the process runs without encryption and logs one warning.

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("dashgate.crypto")

ENC_PREFIX = "enc:"
KEY_ROW_NAME = "system_encryption_key"
KEY_SIZE = 32
NONCE_SIZE = 12


class DecryptionError(Exception):
    """An enc:-prefixed value could not be opened (bad encoding, truncated, or wrong key)."""


def encrypt_value(key: bytes, plaintext: str) -> str:
    """Encrypt plaintext. Empty key, empty value, or an already-prefixed value pass through."""
    if not key or not plaintext or plaintext.startswith(ENC_PREFIX):
        return plaintext
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return ENC_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_value(key: bytes, value: str) -> str:
    """Decrypt an enc:-prefixed value. Raises DecryptionError on any structural failure."""
    if not key or not value.startswith(ENC_PREFIX):
        return value
    encoded = value[len(ENC_PREFIX) :]
    if not encoded:
        return ""
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("failed to base64 decode") from exc
    if len(data) < NONCE_SIZE:
        raise DecryptionError("ciphertext too short")
    nonce, sealed = data[:NONCE_SIZE], data[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, sealed, None).decode("utf-8")
    except InvalidTag as exc:
        raise DecryptionError("failed to decrypt") from exc


def resolve_encryption_key(store: CredentialStore, env_hex: str = "") -> bytes:
    """Return the 32-byte key to use for this process, or b"" if none could be set up."""
    if env_hex:
        logger.info("Encryption key loaded from ENCRYPTION_KEY environment variable")
        return bytes.fromhex(env_hex)

    try:
        stored = store.get_encryption_key(KEY_ROW_NAME)
    except SQLAlchemyError:
        logger.warning("Failed to read encryption key row; sensitive values will be stored in plaintext")
        return b""

    if stored:
        try:
            key = bytes.fromhex(stored)
        except ValueError:
            key = b""
        if len(key) == KEY_SIZE:
            logger.info("Encryption key loaded from database")
            return key
        logger.warning("Stored encryption key is invalid, generating a new one")

    key = AESGCM.generate_key(bit_length=256)
    try:
        store.put_encryption_key(KEY_ROW_NAME, key.hex())
    except SQLAlchemyError:
        logger.warning("Failed to persist encryption key; sensitive values will be stored in plaintext")
        return b""
    logger.info("Generated and stored new encryption key in database")
    return key
