"""Request gateway: the single path from integrations to backends.

Every request is validated before any network I/O, authenticated through the
:class:`~confighub.session.SessionManager`, and sent with a fixed timeout.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from urllib.parse import unquote, urlparse

import httpx

from .backends import get_profile
from .errors import (
    ConfigHubError,
    GatewayTimeoutError,
    GatewayUnreachableError,
    InvalidConfigError,
    InvalidPathError,
    InvalidRequestError,
    RemoteError,
)
from .models import BackendKind, Credential, SessionKey
from .session import SessionManager

logger = logging.getLogger(__name__)

METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "LIST"})


def validate_path(path: Optional[str], kind: Optional[BackendKind] = None) -> str:
    """Check *path* against the traversal rules and the backend's API prefix."""
    if not path:
        raise InvalidRequestError("Request path is required.")
    decoded = unquote(path)
    if not decoded.startswith("/"):
        raise InvalidPathError(f"Request path must be absolute: {path!r}")
    if "//" in decoded or "\\" in decoded:
        raise InvalidPathError(f"Request path contains an empty or backslash segment: {path!r}")
    if any(ch in path for ch in "?#"):
        raise InvalidPathError("Query strings and fragments belong in the query parameters, not the path.")
    if ".." in decoded.split("/"):
        raise InvalidPathError(f"Request path contains a parent-directory segment: {path!r}")
    if kind is not None:
        prefix = get_profile(kind).api_prefix
        if prefix and not decoded.startswith(prefix):
            raise InvalidPathError(f"{kind.value} request paths must start with {prefix!r}.")
    return path


def validate_base_url(url: Optional[str]) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise InvalidConfigError(f"Server URL is not an absolute http(s) URL: {url!r}")
    return url


@dataclass(frozen=True)
class RequestDescriptor:
    """A validated outbound request. Invalid descriptors cannot be constructed."""

    path: str
    method: str = "GET"
    query: Optional[Mapping[str, Any]] = None
    body: Any = None
    kind: Optional[BackendKind] = None

    def __post_init__(self) -> None:
        method = (self.method or "").upper()
        if method not in METHODS:
            raise InvalidRequestError(f"Unsupported HTTP method: {self.method!r}")
        object.__setattr__(self, "method", method)
        validate_path(self.path, self.kind)


@dataclass(frozen=True)
class GatewayResult:
    """Envelope handed to presentation code: ``ok`` plus ``data`` or ``error``."""

    ok: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def success(cls, data: Any) -> "GatewayResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, exc: ConfigHubError) -> "GatewayResult":
        return cls(ok=False, error=str(exc), error_type=type(exc).__name__)


class RequestGateway:
    """Validates, authenticates and performs backend requests."""

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    async def dispatch(
        self,
        key: Optional[SessionKey],
        credential: Optional[Credential],
        request: Optional[RequestDescriptor],
    ) -> Any:
        """Perform *request* against the backend of *credential*.

        Returns the decoded JSON body, the text body, or ``None`` for an empty
        response.

        Raises:
            InvalidRequestError, InvalidConfigError, InvalidPathError: before any network I/O.
            AuthError: from the session manager.
            GatewayTimeoutError, GatewayUnreachableError, RemoteError: from the call itself.
        """
        if key is None or credential is None or request is None:
            raise InvalidRequestError("A session key, credential and request are all required.")
        if not isinstance(request, RequestDescriptor):
            raise InvalidRequestError("Requests must be RequestDescriptor instances.")
        if credential.kind != key.kind or (request.kind is not None and request.kind != key.kind):
            raise InvalidRequestError(f"Credential or request kind does not match session {key}.")
        validate_base_url(credential.server_url)
        validate_path(request.path, key.kind)

        profile = get_profile(key.kind)
        handle = self.sessions.get_client(key, credential)
        token = await self.sessions.get_valid_token(key, credential)

        logger.info("%s %s [%s]", request.method, request.path, key)
        async with handle.open(self.sessions.transport) as client:
            try:
                # httpx timeouts apply per phase; bound the whole call as well.
                response = await asyncio.wait_for(
                    client.request(
                        request.method,
                        request.path,
                        params=request.query,
                        json=request.body,
                        headers=profile.auth_headers(token.value, basic=token.basic),
                    ),
                    handle.timeout,
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
                raise GatewayTimeoutError(
                    f"{request.method} {request.path} timed out after {handle.timeout:g}s."
                ) from exc
            except httpx.TransportError as exc:
                raise GatewayUnreachableError(f"Could not reach {handle.base_url}: {exc}") from exc

        if not response.is_success:
            if response.status_code == 401:
                self.sessions.drop_token(key)
            message = profile.error_message(response)
            logger.warning("%s %s [%s] -> HTTP %s", request.method, request.path, key, response.status_code)
            raise RemoteError(response.status_code, message)

        return _decode(response)

    async def request(
        self,
        kind: BackendKind,
        environment: str,
        path: str,
        method: str = "GET",
        query: Optional[Mapping[str, Any]] = None,
        body: Any = None,
    ) -> GatewayResult:
        """Resolve the credential for ``(kind, environment)`` and dispatch.

        confighub errors are returned as a failed :class:`GatewayResult`.
        """
        key = SessionKey(BackendKind(kind), environment)
        try:
            descriptor = RequestDescriptor(path, method, query, body, key.kind)
            credential = await self.sessions.resolve_credential(key)
            if credential is None:
                raise InvalidRequestError(f"No credential is configured for {key}.")
            return GatewayResult.success(await self.dispatch(key, credential, descriptor))
        except ConfigHubError as exc:
            return GatewayResult.failure(exc)

    async def test_connection(self, credential: Credential) -> GatewayResult:
        """Check that *credential* can reach its backend; failures are reported, not raised.

        Runs on a scratch session table so testing an unsaved credential never
        replaces the live session for its key.
        """
        key = credential.session_key
        scratch = RequestGateway(self.sessions.scratch())
        try:
            descriptor = RequestDescriptor(get_profile(key.kind).health_path, kind=key.kind)
            return GatewayResult.success(await scratch.dispatch(key, credential, descriptor))
        except ConfigHubError as exc:
            logger.info("Connection test for %s failed: %s", key, exc)
            return GatewayResult.failure(exc)


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    if "json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text
