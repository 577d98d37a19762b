"""
auth/apikeys.py -- API key generation, hashing and header extraction.

Key format: urlsafe base64 of 32 random bytes (44 characters, padded).
Storage: bcrypt(key) plus the first 8 characters verbatim as key_prefix.

The prefix narrows the bcrypt candidates to a handful of rows; the resolver
caps how many of those it will actually hash (see auth/resolver.py).

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

import base64
import os
from collections.abc import Mapping

import bcrypt

from auth.passwords import BCRYPT_ROUNDS

PREFIX_LENGTH = 8
KEY_BYTES = 32


def generate_api_key() -> tuple[str, str]:
    """Return (raw_key, prefix). The raw key must be shown to the caller exactly once."""
    raw_key = base64.urlsafe_b64encode(os.urandom(KEY_BYTES)).decode("ascii")
    return raw_key, raw_key[:PREFIX_LENGTH]


def hash_api_key(raw_key: str) -> str:
    return bcrypt.hashpw(raw_key.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_api_key(raw_key: str, key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(raw_key.encode("utf-8"), key_hash.encode("utf-8"))
    except ValueError:
        return False


def extract_api_key(headers: Mapping[str, str]) -> str:
    """Pull key material from X-API-Key, else from Authorization: Bearer / ApiKey.

    Returns "" when no key material is present.
    """
    key = headers.get("x-api-key", "")
    if key:
        return key
    auth_header = headers.get("authorization", "")
    for scheme in ("Bearer ", "ApiKey "):
        if auth_header.startswith(scheme):
            return auth_header[len(scheme) :]
    return ""
