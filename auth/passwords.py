"""
auth/passwords.py -- Password hashing (SHA-256 pre-hash + bcrypt).

bcrypt only looks at the first 72 bytes of its input and bcrypt>=4.1 rejects
longer input outright. Passwords are therefore reduced to a 64-character
SHA-256 hex digest before bcrypt sees them, so every password length is
accepted and fully significant.

Hashes created before the pre-hash scheme were bcrypt(raw password). They still
verify: verify_password() always runs both comparisons and combines the
results, so response time does not reveal which form matched.

Layer rule: no imports from api/, discovery/ or health/.
"""

from __future__ import annotations

import hashlib

import bcrypt

BCRYPT_ROUNDS = 12
_BCRYPT_MAX_INPUT = 72


def _prehash(plain: str) -> bytes:
    return hashlib.sha256(plain.encode("utf-8")).hexdigest().encode("ascii")


def _checkpw(candidate: bytes, hashed: bytes) -> bool:
    try:
        return bcrypt.checkpw(candidate, hashed)
    except ValueError:
        # Malformed hash (e.g. an LDAP_USER / OIDC_USER marker).
        return False


def hash_password(plain: str) -> str:
    """Return bcrypt(sha256_hex(plain)) as a str."""
    return bcrypt.hashpw(_prehash(plain), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if plain matches hashed in either the current or the legacy form."""
    hashed_bytes = hashed.encode("utf-8")
    raw = plain.encode("utf-8")

    current = _checkpw(_prehash(plain), hashed_bytes)
    # Legacy hashes could only ever be made from <=72-byte input. Longer input is
    # still run (truncated) so both branches cost the same, but cannot match.
    legacy = _checkpw(raw[:_BCRYPT_MAX_INPUT], hashed_bytes) and len(raw) <= _BCRYPT_MAX_INPUT
    return current or legacy


# Timing equalization dummy hash. Verified against when a username does not
# exist so the response time matches a wrong-password attempt.
DUMMY_HASH: str = hash_password("dashgate_timing_dummy")
