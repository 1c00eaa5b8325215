"""
auth/credentials.py -- Password digests, salts, and session tokens.

Passwords are stored as SHA-256(password + salt), hex encoded, with a
per-credential 16-byte random salt. The concatenation order is part of the
stored format: changing it invalidates every existing credential.

Randomness comes from the secrets module (OS CSPRNG). If the OS cannot
supply entropy the call raises and the caller fails; nothing here falls back
to a weaker source.

verify_password() compares with hmac.compare_digest so response time does not
leak how many leading characters of the digest matched.

Layer rule: stdlib only. No imports from api/, tenancy/, enforcement/, or cache/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

SALT_BYTES = 16
TOKEN_BYTES = 32


def hash_password(password: str, salt: str) -> str:
    """Return hex SHA-256 of password followed by salt."""
    return hashlib.sha256((password + salt).encode("utf-8")).hexdigest()


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    """Recompute the digest and compare it to expected_hash in constant time."""
    candidate = hash_password(password, salt)
    return hmac.compare_digest(candidate.encode("ascii"), expected_hash.encode("ascii"))


def generate_salt() -> str:
    """16 random bytes as 32 hex characters."""
    return secrets.token_hex(SALT_BYTES)


def generate_token() -> str:
    """32 random bytes as 64 hex characters. Used as the opaque session token."""
    return secrets.token_hex(TOKEN_BYTES)
