"""Tests for confighub.crypto."""

import os

import pytest

from confighub.crypto import (
    FORMAT_VERSION,
    MAGIC,
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    CredentialCipher,
    decrypt,
    derive_key,
    encrypt,
)
from confighub.errors import AuthenticationFailedError, DecryptError, MalformedBlobError

HEADER = len(MAGIC) + 1 + SALT_SIZE + NONCE_SIZE


def test_encrypt_decrypt_roundtrip(master_key):
    blob = encrypt(b'{"token": "ghp_abc"}', master_key)
    assert decrypt(blob, master_key) == b'{"token": "ghp_abc"}'


def test_empty_plaintext_roundtrip(master_key):
    assert decrypt(encrypt(b"", master_key), master_key) == b""


def test_container_layout(master_key):
    blob = encrypt(b"data", master_key)
    assert blob[:4] == MAGIC
    assert blob[4] == FORMAT_VERSION
    assert len(blob) == HEADER + len(b"data") + TAG_SIZE


def test_ciphertext_does_not_contain_plaintext(master_key):
    blob = encrypt(b"super-secret-token", master_key)
    assert b"super-secret-token" not in blob


def test_two_encryptions_differ(master_key):
    b1 = encrypt(b"same", master_key)
    b2 = encrypt(b"same", master_key)
    assert b1 != b2
    assert b1[5 : 5 + SALT_SIZE] != b2[5 : 5 + SALT_SIZE]


def test_derive_key_is_deterministic(master_key):
    salt = os.urandom(SALT_SIZE)
    assert derive_key(master_key, salt) == derive_key(master_key, salt)
    assert len(derive_key(master_key, salt)) == 32


def test_derive_key_differs_with_different_salt(master_key):
    assert derive_key(master_key, os.urandom(SALT_SIZE)) != derive_key(master_key, os.urandom(SALT_SIZE))


def test_wrong_key_raises_authentication_failed(master_key):
    blob = encrypt(b"data", master_key)
    with pytest.raises(AuthenticationFailedError):
        decrypt(blob, os.urandom(32))


@pytest.mark.parametrize("offset", [5, 5 + SALT_SIZE, HEADER, -1])
def test_any_flipped_byte_fails_integrity(master_key, offset):
    blob = bytearray(encrypt(b"payload", master_key))
    blob[offset] ^= 0x01
    with pytest.raises(AuthenticationFailedError):
        decrypt(bytes(blob), master_key)


def test_flipped_magic_is_malformed(master_key):
    blob = bytearray(encrypt(b"payload", master_key))
    blob[0] ^= 0x01
    with pytest.raises(MalformedBlobError):
        decrypt(bytes(blob), master_key)


def test_unknown_version_is_malformed(master_key):
    blob = bytearray(encrypt(b"payload", master_key))
    blob[4] = FORMAT_VERSION + 1
    with pytest.raises(MalformedBlobError, match="version"):
        decrypt(bytes(blob), master_key)


def test_truncated_blob_is_malformed(master_key):
    blob = encrypt(b"payload", master_key)
    with pytest.raises(MalformedBlobError):
        decrypt(blob[: HEADER + TAG_SIZE - 1], master_key)


def test_decrypt_errors_share_a_base(master_key):
    with pytest.raises(DecryptError):
        decrypt(b"garbage", master_key)


def test_master_key_must_be_32_bytes():
    with pytest.raises(ValueError):
        encrypt(b"data", b"short")
    with pytest.raises(ValueError):
        CredentialCipher(b"x" * 31)


def test_cipher_repr_hides_key(master_key):
    cipher = CredentialCipher(master_key)
    assert master_key.hex() not in repr(cipher)
    assert "hidden" in repr(cipher)
    assert cipher.decrypt(cipher.encrypt(b"abc")) == b"abc"
