"""Unit tests for auth/credentials.py -- password digests, salts and tokens.

Covers:
- hash_password() is SHA-256 over password followed by salt, hex encoded
- verify_password() accepts the right password and rejects near misses
- generate_salt() / generate_token() lengths and uniqueness
"""

import hashlib

from auth.credentials import generate_salt, generate_token, hash_password, verify_password


def test_hash_is_sha256_of_password_then_salt():
    expected = hashlib.sha256(b"pw1" + b"abcd").hexdigest()
    assert hash_password("pw1", "abcd") == expected


def test_concatenation_order_matters():
    assert hash_password("ab", "cd") != hash_password("cd", "ab")


def test_hash_is_deterministic_for_same_salt():
    salt = generate_salt()
    assert hash_password("secret", salt) == hash_password("secret", salt)


def test_verify_accepts_correct_password():
    salt = generate_salt()
    digest = hash_password("correct horse", salt)
    assert verify_password("correct horse", salt, digest)


def test_verify_rejects_wrong_password_and_wrong_salt():
    salt = generate_salt()
    digest = hash_password("correct horse", salt)
    assert not verify_password("correct hors", salt, digest)
    assert not verify_password("correct horse", generate_salt(), digest)


def test_non_ascii_passwords_are_utf8_encoded():
    salt = "00"
    expected = hashlib.sha256("pässwörd00".encode("utf-8")).hexdigest()
    assert hash_password("pässwörd", salt) == expected


def test_salt_is_32_hex_chars_and_unique():
    salts = {generate_salt() for _ in range(50)}
    assert len(salts) == 50
    for salt in salts:
        assert len(salt) == 32
        int(salt, 16)


def test_token_is_64_hex_chars_and_unique():
    tokens = {generate_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(len(t) == 64 for t in tokens)
