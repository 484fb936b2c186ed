"""Domain models for confighub."""

from __future__ import annotations

import hashlib
import re
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional

from pydantic import BaseModel, Field, model_validator

# Field names that are always treated as secrets.
SENSITIVE_FIELDS = frozenset(
    {"token", "password", "private_key", "secret_id", "passphrase", "cert_file", "key_file", "ca_file"}
)

_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackendKind(str, Enum):
    """Category of remote system a credential targets."""

    GIT = "git"
    ARTIFACT_REGISTRY = "artifact-registry"
    GITOPS_CONTROLLER = "gitops-controller"
    SECRET_STORE = "secret-store"


class AuthMethod(str, Enum):
    """How a credential authenticates against its backend."""

    TOKEN = "token"
    USERPASS = "userpass"
    LDAP = "ldap"
    APPROLE = "approle"
    KUBERNETES = "kubernetes"
    SSH = "ssh"
    CERT = "cert"
    AWS = "aws"
    AZURE = "azure"


class SessionKey(NamedTuple):
    """Identifies one authenticated session: backend kind + environment."""

    kind: BackendKind
    environment: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.environment}"


def generate_credential_id(kind: BackendKind, identifier: str, now: Optional[float] = None) -> str:
    """Return a 16-hex-character id derived from *kind*, *identifier* and the creation time."""
    millis = int((time.time() if now is None else now) * 1000)
    digest = hashlib.sha256(f"{kind.value}-{identifier}-{millis}".encode("utf-8"))
    return digest.hexdigest()[:16]


def validate_credential_id(credential_id: str) -> str:
    """Reject ids that cannot safely name a file in the sensitive directory."""
    if not credential_id or credential_id in (".", "..") or not _ID_RE.match(credential_id):
        raise ValueError(f"Invalid credential id: {credential_id!r}")
    return credential_id


class Credential(BaseModel):
    """One set of access material for one backend.

    ``sensitive`` holds secret fields and is never part of :meth:`metadata`
    or ``repr``. Secret field names passed in ``extra`` are moved there.
    """

    id: str = ""
    name: str
    kind: BackendKind
    environment: str = "default"
    server_url: str
    auth_method: AuthMethod = AuthMethod.TOKEN
    username: Optional[str] = None
    namespace: Optional[str] = None
    mount_path: Optional[str] = None
    role: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)
    sensitive: dict[str, str] = Field(default_factory=dict, repr=False)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _finalise(self) -> "Credential":
        if not self.id:
            self.id = generate_credential_id(self.kind, self.server_url)
        validate_credential_id(self.id)
        for field_name in SENSITIVE_FIELDS & self.extra.keys():
            value = self.extra.pop(field_name)
            if value:
                self.sensitive[field_name] = str(value)
        return self

    @property
    def session_key(self) -> SessionKey:
        return SessionKey(self.kind, self.environment)

    def secret(self, field_name: str) -> Optional[str]:
        """Return a sensitive field, or ``None`` when absent or empty."""
        return self.sensitive.get(field_name) or None

    def metadata(self) -> dict[str, Any]:
        """JSON-ready dict of everything except the sensitive payload."""
        return self.model_dump(mode="json", exclude={"sensitive"})

    def without_secrets(self) -> "Credential":
        return self.model_copy(update={"sensitive": {}}, deep=True)

    def touch(self) -> None:
        """Update *updated_at* to now."""
        self.updated_at = _utcnow()
