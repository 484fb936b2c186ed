"""Master key loading.

The master key protects every encrypted container and is kept outside the
credential tree. Resolution order:

1. ``CONFIGHUB_MASTER_KEY`` environment variable (base64, 32 bytes)
2. the OS keychain via ``keyring`` (service ``config-hub``, account ``master-key``)
3. the key file from :class:`~confighub.config.Settings`
4. a freshly generated key, saved to the keychain or, failing that, the key file

A key is only generated while no encrypted containers exist; otherwise
:class:`~confighub.errors.MasterKeyUnavailableError` is raised.

Never log key material.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
from pathlib import Path

import keyring
from keyring.errors import KeyringError

from .config import Settings
from .crypto import KEY_LENGTH
from .errors import MasterKeyUnavailableError
from .store import CONTAINER_SUFFIX, SENSITIVE_DIR

logger = logging.getLogger(__name__)

MASTER_KEY_ENV = "CONFIGHUB_MASTER_KEY"
KEYRING_ACCOUNT = "master-key"


def generate_master_key() -> str:
    """Return a new random master key as a base64 string."""
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


def decode_master_key(value: str, source: str = "master key") -> bytes:
    """Decode a base64 master key, insisting on exactly 32 bytes."""
    try:
        key = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"{source} is not valid base64.") from exc
    if len(key) != KEY_LENGTH:
        raise ValueError(f"{source} must decode to exactly {KEY_LENGTH} bytes, got {len(key)}.")
    return key


def load_master_key(settings: Settings) -> bytes:
    """Resolve the installation master key, creating one on first use."""
    env_value = os.environ.get(MASTER_KEY_ENV)
    if env_value:
        logger.debug("Master key loaded from %s", MASTER_KEY_ENV)
        return decode_master_key(env_value, MASTER_KEY_ENV)

    if settings.use_keyring:
        stored = _keyring_get(settings.keyring_service)
        if stored:
            logger.debug("Master key loaded from OS keychain")
            return decode_master_key(stored, "keychain master key")

    key_file = settings.key_file.expanduser()
    if key_file.exists():
        logger.debug("Master key loaded from %s", key_file)
        return decode_master_key(key_file.read_text(encoding="ascii"), str(key_file))

    if _has_containers(settings):
        raise MasterKeyUnavailableError(
            f"Encrypted credentials exist in {settings.data_dir} but no master key was found in "
            f"{MASTER_KEY_ENV}, the OS keychain or {key_file}. Restore the original key."
        )

    encoded = generate_master_key()
    if settings.use_keyring and _keyring_set(settings.keyring_service, encoded):
        logger.info("Generated a new master key in the OS keychain")
    else:
        _write_key_file(key_file, encoded)
        logger.info("Generated a new master key at %s", key_file)
    return decode_master_key(encoded)


def describe_key_source(settings: Settings) -> str:
    """Human-readable name of where :func:`load_master_key` would read from."""
    if os.environ.get(MASTER_KEY_ENV):
        return f"environment ({MASTER_KEY_ENV})"
    if settings.use_keyring and _keyring_get(settings.keyring_service):
        return f"OS keychain ({settings.keyring_service})"
    if settings.key_file.expanduser().exists():
        return f"key file ({settings.key_file})"
    return "not created yet"


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


def _has_containers(settings: Settings) -> bool:
    sensitive_dir = settings.data_dir.expanduser() / SENSITIVE_DIR
    return sensitive_dir.is_dir() and any(sensitive_dir.glob(f"*{CONTAINER_SUFFIX}"))


def _keyring_get(service: str) -> str | None:
    try:
        return keyring.get_password(service, KEYRING_ACCOUNT)
    except KeyringError as exc:
        logger.debug("OS keychain unavailable: %s", exc)
        return None


def _keyring_set(service: str, value: str) -> bool:
    try:
        keyring.set_password(service, KEYRING_ACCOUNT, value)
    except KeyringError as exc:
        logger.debug("Could not store master key in OS keychain: %s", exc)
        return False
    return True


def _write_key_file(path: Path, value: str) -> None:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as fh:
        fh.write(value)
    os.chmod(path, 0o600)
