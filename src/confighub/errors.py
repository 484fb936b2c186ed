"""Error and warning types for confighub.

Every exception derives from :class:`ConfigHubError`. The ``transient`` flag
marks failures a caller may retry with backoff; confighub itself never
retries.
"""

from __future__ import annotations

from typing import Optional


class ConfigHubError(Exception):
    """Base class for all confighub errors."""

    transient = False


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class StoreError(ConfigHubError):
    """Raised when the credential store cannot be read or written."""


class StoreIoError(StoreError):
    """Disk I/O failed while touching the store."""


class CorruptStoreError(StoreError):
    """The metadata table exists but cannot be parsed."""


# ---------------------------------------------------------------------------
# Encryption engine
# ---------------------------------------------------------------------------


class DecryptError(ConfigHubError):
    """Raised when an encrypted container cannot be opened."""


class MalformedBlobError(DecryptError):
    """The blob is truncated or carries an unknown format tag."""


class AuthenticationFailedError(DecryptError):
    """Integrity verification failed: wrong key or tampered blob."""


# ---------------------------------------------------------------------------
# Master key
# ---------------------------------------------------------------------------


class MasterKeyUnavailableError(ConfigHubError):
    """Encrypted secrets exist but the master key that protects them cannot be found."""


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class AuthError(ConfigHubError):
    """Raised when a session token cannot be obtained."""


class AuthUnreachableError(AuthError):
    """The login endpoint could not be reached."""

    transient = True


class AuthRejectedError(AuthError):
    """The backend (or the credential itself) refused the login."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Authentication rejected: {reason}")
        self.reason = reason


class UnsupportedAuthMethodError(AuthError):
    """The credential's auth method has no implementation for its backend."""

    def __init__(self, method: str, kind: Optional[str] = None) -> None:
        where = f" for {kind}" if kind else ""
        super().__init__(f"Authentication method {method!r} is not supported{where}.")
        self.method = method
        self.kind = kind


# ---------------------------------------------------------------------------
# Request gateway
# ---------------------------------------------------------------------------


class GatewayError(ConfigHubError):
    """Raised when an outbound request fails or is refused locally."""


class InvalidRequestError(GatewayError):
    """A required part of the request is missing or inconsistent."""


class InvalidConfigError(GatewayError):
    """The credential's connection settings are unusable."""


class InvalidPathError(GatewayError):
    """The request path is not allowed for the target backend."""


class GatewayTimeoutError(GatewayError):
    """The backend did not answer within the request timeout."""

    transient = True


class GatewayUnreachableError(GatewayError):
    """The backend could not be reached at the transport level."""

    transient = True


class RemoteError(GatewayError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


class PartialReadWarning(UserWarning):
    """A credential was returned without its secrets because they could not be decrypted."""


class CorruptStoreWarning(UserWarning):
    """The metadata table was unreadable and has been treated as empty."""
