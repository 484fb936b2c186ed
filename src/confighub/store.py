"""Credential persistence.

On-disk layout (inside the data directory)
------------------------------------------
credentials-metadata.json   JSON object mapping id -> metadata (no secrets), mode 0600
sensitive/                  mode 0700
sensitive/<id>.enc          encrypted container with the secret fields, mode 0600

The container is always written before the metadata entry and removed before
it, so an interrupted write or delete can orphan an encrypted file but never
a plaintext secret.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import threading
import warnings
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from pydantic import ValidationError

from .crypto import CredentialCipher
from .errors import (
    CorruptStoreError,
    CorruptStoreWarning,
    DecryptError,
    PartialReadWarning,
    StoreIoError,
)
from .models import BackendKind, Credential, validate_credential_id

logger = logging.getLogger(__name__)

METADATA_FILE = "credentials-metadata.json"
SENSITIVE_DIR = "sensitive"
CONTAINER_SUFFIX = ".enc"

_ACCESS_CHECK_ID = "confighub-access-check"


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class CredentialStore:
    """Reads and writes credential metadata and encrypted containers."""

    def __init__(self, root: Path, cipher: CredentialCipher) -> None:
        self.root = Path(root)
        self.metadata_path = self.root / METADATA_FILE
        self.sensitive_dir = self.root / SENSITIVE_DIR
        self._cipher = cipher
        self._lock = _ReadWriteLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.metadata_path.exists()

    def container_path(self, credential_id: str) -> Path:
        return self.sensitive_dir / f"{validate_credential_id(credential_id)}{CONTAINER_SUFFIX}"

    def store(self, credential: Credential, *, clear_secrets: bool = False) -> None:
        """Persist *credential*, encrypting its sensitive fields, and stamp *updated_at*.

        An empty sensitive payload leaves any existing container in place, so
        re-saving a metadata-only record never loses its secrets. Pass
        ``clear_secrets=True`` to remove the container deliberately.
        """
        container = self.container_path(credential.id)
        payload = {k: v for k, v in credential.sensitive.items() if v}
        credential.touch()

        with self._lock.write():
            try:
                self._ensure_dirs()
                if payload:
                    blob = self._cipher.encrypt(json.dumps(payload).encode("utf-8"))
                    _write_private(container, blob)
                elif clear_secrets:
                    container.unlink(missing_ok=True)

                table = self._table_for_write()
                table[credential.id] = credential.metadata()
                _write_private(self.metadata_path, json.dumps(table, indent=2).encode("utf-8"))
            except OSError as exc:
                raise StoreIoError(f"Could not store credential {credential.id}: {exc}") from exc

        logger.info("Stored credential %s (%s)", credential.id, credential.session_key)

    def update(self, credential: Credential) -> None:
        """Re-save *credential* (e.g. after token rotation)."""
        self.store(credential)

    def get(self, credential_id: str) -> Optional[Credential]:
        """Return the credential with its secrets, or ``None`` if unknown.

        If the encrypted container cannot be opened the metadata-only record
        is returned and a :class:`PartialReadWarning` is emitted.
        """
        container = self.container_path(credential_id)

        with self._lock.read():
            entry = self._table_for_read().get(credential_id)
            if entry is None:
                return None
            credential = _parse_entry(credential_id, entry)
            if credential is None:
                return None
            try:
                blob = container.read_bytes()
            except FileNotFoundError:
                return credential
            except OSError as exc:
                raise StoreIoError(f"Could not read secrets for {credential_id}: {exc}") from exc

        try:
            fields = json.loads(self._cipher.decrypt(blob))
            if not isinstance(fields, dict):
                raise ValueError("secret payload is not an object")
        except (DecryptError, ValueError) as exc:
            logger.warning("Secrets for credential %s are unreadable: %s", credential_id, exc)
            warnings.warn(
                PartialReadWarning(f"Secrets for credential {credential_id} could not be decrypted."),
                stacklevel=2,
            )
            return credential

        credential.sensitive = {str(k): str(v) for k, v in fields.items()}
        return credential

    def list(
        self,
        kind: Optional[BackendKind] = None,
        environment: Optional[str] = None,
    ) -> list[Credential]:
        """Metadata-only records, most recently updated first."""
        with self._lock.read():
            table = self._table_for_read()

        credentials = [c for c in (_parse_entry(k, v) for k, v in table.items()) if c is not None]
        if kind is not None:
            credentials = [c for c in credentials if c.kind == kind]
        if environment is not None:
            credentials = [c for c in credentials if c.environment == environment]
        return sorted(credentials, key=lambda c: c.updated_at, reverse=True)

    def find(
        self,
        *,
        kind: Optional[BackendKind] = None,
        environment: Optional[str] = None,
        server_url: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> list[Credential]:
        """Filter :meth:`list` by normalised server URL and shared tags."""
        wanted_url = normalize_url(server_url) if server_url else None
        wanted_tags = set(tags or ())

        results = []
        for cred in self.list(kind, environment):
            if wanted_url and normalize_url(cred.server_url) != wanted_url:
                continue
            if wanted_tags and not wanted_tags.intersection(cred.tags):
                continue
            results.append(cred)
        return results

    def delete(self, credential_id: str) -> bool:
        """Remove the container then the metadata entry; ``True`` if anything was removed."""
        container = self.container_path(credential_id)
        removed = False

        with self._lock.write():
            try:
                if container.exists():
                    container.unlink()
                    removed = True
                try:
                    table = self._read_table()
                except CorruptStoreError as exc:
                    _warn_corrupt(self.metadata_path, exc)
                    return removed
                if table.pop(credential_id, None) is not None:
                    _write_private(self.metadata_path, json.dumps(table, indent=2).encode("utf-8"))
                    removed = True
            except OSError as exc:
                raise StoreIoError(f"Could not delete credential {credential_id}: {exc}") from exc

        if removed:
            logger.info("Deleted credential %s", credential_id)
        return removed

    def check_access(self) -> bool:
        """Store, read back and delete a throwaway credential."""
        expected = secrets.token_hex(16)
        sample = Credential(
            id=_ACCESS_CHECK_ID,
            name="Access check",
            kind=BackendKind.GIT,
            server_url="https://access-check.invalid/access-check.git",
            sensitive={"token": expected},
        )
        ok = False
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", PartialReadWarning)
                self.store(sample)
                retrieved = self.get(sample.id)
            ok = retrieved is not None and retrieved.secret("token") == expected
        except StoreIoError as exc:
            logger.error("Credential store access check failed: %s", exc)

        try:
            self.delete(sample.id)
        except StoreIoError as exc:
            logger.error("Could not remove the access check credential: %s", exc)
            return False
        return ok

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_dirs(self) -> None:
        self.root.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.sensitive_dir.mkdir(mode=0o700, exist_ok=True)
        os.chmod(self.sensitive_dir, 0o700)

    def _read_table(self) -> dict[str, Any]:
        try:
            raw = self.metadata_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StoreIoError(f"Could not read {self.metadata_path}: {exc}") from exc

        try:
            table = json.loads(raw)
        except ValueError as exc:
            raise CorruptStoreError(f"{self.metadata_path} is not valid JSON: {exc}") from exc
        if not isinstance(table, dict) or not all(isinstance(v, dict) for v in table.values()):
            raise CorruptStoreError(f"{self.metadata_path} is not a mapping of id to metadata.")
        return table

    def _table_for_read(self) -> dict[str, Any]:
        try:
            return self._read_table()
        except CorruptStoreError as exc:
            _warn_corrupt(self.metadata_path, exc)
            return {}

    def _table_for_write(self) -> dict[str, Any]:
        try:
            return self._read_table()
        except CorruptStoreError as exc:
            backup = self.metadata_path.with_name(self.metadata_path.name + ".corrupt")
            self.metadata_path.replace(backup)
            _warn_corrupt(self.metadata_path, exc, backup)
            return {}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Lower-case, trim, and drop a trailing ``/`` or ``.git`` for comparison."""
    url = url.strip().lower()
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url.rstrip("/")


def _parse_entry(credential_id: str, entry: dict[str, Any]) -> Optional[Credential]:
    try:
        return Credential.model_validate({**entry, "id": credential_id})
    except ValidationError as exc:
        logger.warning("Skipping unreadable metadata entry %s: %s", credential_id, exc.error_count())
        return None


def _warn_corrupt(path: Path, exc: Exception, backup: Optional[Path] = None) -> None:
    message = f"Credential metadata at {path} is corrupt and was treated as empty"
    if backup is not None:
        message += f" (moved to {backup})"
    logger.warning("%s: %s", message, exc)
    warnings.warn(CorruptStoreWarning(message), stacklevel=3)


def _write_private(path: Path, data: bytes) -> None:
    """Atomically replace *path* with *data*, owner read/write only."""
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(tmp, 0o600)
    tmp.replace(path)
    os.chmod(path, 0o600)
