"""Cryptographic primitives for confighub.

Key derivation: HKDF-SHA256 over the installation master key, fresh 16-byte salt per call.
Encryption:     AES-256-GCM, fresh 12-byte nonce per call.

Container format
----------------
Offset  Length  Content
0       4       Magic bytes b"CHEC"
4       1       Format version (uint8)
5       16      HKDF salt
21      12      GCM nonce
33      …       Ciphertext + 16-byte GCM tag

The 33 header bytes are authenticated as associated data. The master key is
never part of the container.
"""

from __future__ import annotations

import os
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import AuthenticationFailedError, MalformedBlobError

MAGIC = b"CHEC"
FORMAT_VERSION = 1
KEY_LENGTH = 32
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16

_HKDF_INFO = b"confighub-credential-v1"
_HEADER_SIZE = len(MAGIC) + 1 + SALT_SIZE + NONCE_SIZE


def _check_master_key(master_key: bytes) -> None:
    if len(master_key) != KEY_LENGTH:
        raise ValueError(f"Master key must be exactly {KEY_LENGTH} bytes, got {len(master_key)}.")


def derive_key(master_key: bytes, salt: bytes) -> bytes:
    """Derive a 32-byte container key from *master_key* and *salt*."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        info=_HKDF_INFO,
    )
    return hkdf.derive(master_key)


def encrypt(plaintext: bytes, master_key: bytes) -> bytes:
    """Seal *plaintext* into a self-describing container."""
    _check_master_key(master_key)
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    header = MAGIC + struct.pack(">B", FORMAT_VERSION) + salt + nonce
    ciphertext = AESGCM(derive_key(master_key, salt)).encrypt(nonce, plaintext, header)
    return header + ciphertext


def decrypt(blob: bytes, master_key: bytes) -> bytes:
    """Open a container produced by :func:`encrypt`.

    Raises:
        MalformedBlobError: unknown magic/version or truncated container.
        AuthenticationFailedError: wrong key or tampered container.
    """
    _check_master_key(master_key)
    if len(blob) < _HEADER_SIZE + TAG_SIZE or not blob.startswith(MAGIC):
        raise MalformedBlobError("Not a confighub encrypted container.")

    offset = len(MAGIC)
    (version,) = struct.unpack_from(">B", blob, offset)
    offset += 1
    if version != FORMAT_VERSION:
        raise MalformedBlobError(f"Unsupported container format version: {version}.")

    salt = blob[offset : offset + SALT_SIZE]
    offset += SALT_SIZE
    nonce = blob[offset : offset + NONCE_SIZE]
    offset += NONCE_SIZE

    try:
        return AESGCM(derive_key(master_key, salt)).decrypt(nonce, blob[offset:], blob[:offset])
    except InvalidTag as exc:
        raise AuthenticationFailedError("Container failed integrity check: wrong key or tampered data.") from exc


class CredentialCipher:
    """Binds :func:`encrypt` / :func:`decrypt` to one master key."""

    def __init__(self, master_key: bytes) -> None:
        _check_master_key(master_key)
        self._master_key = master_key

    def __repr__(self) -> str:
        return "CredentialCipher(<master key hidden>)"

    def encrypt(self, plaintext: bytes) -> bytes:
        return encrypt(plaintext, self._master_key)

    def decrypt(self, blob: bytes) -> bytes:
        return decrypt(blob, self._master_key)
