"""Authenticated sessions, one per (backend kind, environment).

:class:`SessionManager` owns a keyed table of immutable client handles and
cached tokens. Logins for the same key are single-flight: concurrent callers
share one login task, and that task is shielded from caller cancellation so a
completed login always lands in the cache. Keys never block each other.

Security Note:
    Tokens are held in process memory only and never logged.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Mapping, Optional

import httpx

from .auth import (
    BasicCredentials,
    PlatformIdentityLogin,
    StaticToken,
    UnsupportedMethod,
    resolve_scheme,
)
from .backends import get_profile
from .errors import AuthRejectedError, AuthUnreachableError, UnsupportedAuthMethodError
from .models import Credential, SessionKey
from .store import CredentialStore

logger = logging.getLogger(__name__)

NEVER_EXPIRES = float("inf")
DEFAULT_SAFETY_MARGIN = 300.0
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class ClientHandle:
    """Immutable connection parameters for one session key."""

    key: SessionKey
    credential_id: str
    credential_version: datetime
    base_url: str
    headers: Mapping[str, str]
    timeout: float

    def open(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
        """A new HTTP client for this handle. TLS verification is always on."""
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=dict(self.headers),
            timeout=self.timeout,
            transport=transport,
            verify=True,
        )


@dataclass(frozen=True)
class SessionToken:
    value: str = field(repr=False)
    expires_at: float = NEVER_EXPIRES
    basic: bool = False

    def is_valid(self, now: float, safety_margin: float) -> bool:
        return now + safety_margin < self.expires_at


@dataclass
class _Session:
    client: ClientHandle
    token: Optional[SessionToken] = None


class SessionManager:
    """Keyed table of client handles and tokens.

    Args:
        store: Credential store used by :meth:`resolve_credential`.
        safety_margin: Seconds subtracted from a token's expiry before reuse.
        timeout: Network timeout in seconds for every call.
        transport: Optional httpx transport (tests inject a mock here).
        clock: Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        *,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.safety_margin = safety_margin
        self.timeout = timeout
        self.transport = transport
        self._clock = clock
        self._sessions: dict[SessionKey, _Session] = {}
        self._inflight: dict[SessionKey, asyncio.Future] = {}
        self._generations: dict[SessionKey, int] = {}

    def scratch(self) -> "SessionManager":
        """An empty manager with the same timeouts and transport but no store."""
        return SessionManager(
            safety_margin=self.safety_margin,
            timeout=self.timeout,
            transport=self.transport,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def get_client(self, key: SessionKey, credential: Credential) -> ClientHandle:
        """Return the handle for *key*, building it from *credential* if needed.

        A handle built from a different credential (or an older version of
        the same one) is discarded together with its token.
        """
        session = self._sessions.get(key)
        if session is not None:
            client = session.client
            if client.credential_id == credential.id and client.credential_version == credential.updated_at:
                return client
            logger.info("Credential for %s changed, dropping cached session", key)
            self.invalidate(key)

        profile = get_profile(key.kind)
        handle = ClientHandle(
            key=key,
            credential_id=credential.id,
            credential_version=credential.updated_at,
            base_url=credential.server_url.rstrip("/"),
            headers=MappingProxyType(profile.fixed_headers(credential)),
            timeout=self.timeout,
        )
        self._sessions[key] = _Session(handle)
        return handle

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def cached_token(self, key: SessionKey) -> Optional[SessionToken]:
        session = self._sessions.get(key)
        return session.token if session else None

    async def get_valid_token(self, key: SessionKey, credential: Credential) -> SessionToken:
        """Cached token if it outlives the safety margin, otherwise a fresh login."""
        self.get_client(key, credential)
        token = self.cached_token(key)
        if token is not None and token.is_valid(self._clock(), self.safety_margin):
            return token
        return await self.authenticate(key, credential)

    async def authenticate(self, key: SessionKey, credential: Credential) -> SessionToken:
        """Obtain a new token for *key* and cache it.

        Raises:
            UnsupportedAuthMethodError: the method has no implementation for this backend.
            AuthRejectedError: the backend refused the login or the credential is incomplete.
            AuthUnreachableError: the login endpoint could not be reached.
        """
        handle = self.get_client(key, credential)
        scheme = resolve_scheme(credential)

        if isinstance(scheme, UnsupportedMethod):
            raise UnsupportedAuthMethodError(scheme.method.value, key.kind.value)
        if isinstance(scheme, StaticToken):
            return self._cache(key, SessionToken(scheme.token))
        if isinstance(scheme, BasicCredentials):
            return self._cache(key, SessionToken(scheme.encoded(), basic=True))

        task = self._inflight.get(key)
        if task is None:
            generation = self._generations.get(key, 0)
            task = asyncio.ensure_future(self._login(key, handle, credential, scheme, generation))
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._login_done, key))
        return await asyncio.shield(task)

    def drop_token(self, key: SessionKey) -> None:
        """Forget the token for *key* but keep its client handle."""
        session = self._sessions.get(key)
        if session is not None:
            session.token = None

    def invalidate(self, key: SessionKey) -> None:
        """Drop the client handle and token for *key*."""
        self._sessions.pop(key, None)
        self._inflight.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1
        logger.debug("Invalidated session %s", key)

    def invalidate_all(self) -> None:
        for key in set(self._sessions) | set(self._inflight):
            self.invalidate(key)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def resolve_credential(self, key: SessionKey) -> Optional[Credential]:
        """Most recently updated credential for *key*, with its secrets."""
        if self.store is None:
            return None
        candidates = await asyncio.to_thread(self.store.list, key.kind, key.environment)
        if not candidates:
            return None
        return await asyncio.to_thread(self.store.get, candidates[0].id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cache(self, key: SessionKey, token: SessionToken, generation: Optional[int] = None) -> SessionToken:
        if generation is not None and self._generations.get(key, 0) != generation:
            logger.debug("Session %s was invalidated during login, not caching", key)
            return token
        session = self._sessions.get(key)
        if session is not None:
            session.token = token
        return token

    def _login_done(self, key: SessionKey, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Login for %s failed: %s", key, type(task.exception()).__name__)

    async def _login(self, key, handle, credential, scheme, generation) -> SessionToken:
        profile = get_profile(key.kind)
        if isinstance(scheme, PlatformIdentityLogin):
            scheme = replace(scheme, assertion=await _read_identity(scheme.jwt_path))
        path, body = profile.login_request(credential, scheme)

        logger.info("Authenticating %s with %s", key, credential.auth_method.value)
        async with handle.open(self.transport) as client:
            try:
                response = await asyncio.wait_for(client.post(path, json=body), handle.timeout)
            except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
                raise AuthUnreachableError(f"Login to {handle.base_url} timed out.") from exc
            except httpx.TransportError as exc:
                raise AuthUnreachableError(f"Could not reach {handle.base_url}: {exc}") from exc

        if response.status_code >= 500:
            raise AuthUnreachableError(f"Login endpoint answered HTTP {response.status_code}.")
        if response.status_code >= 400:
            logger.warning("Login rejected for %s (HTTP %s)", key, response.status_code)
            raise AuthRejectedError(profile.error_message(response))

        try:
            value, expires_at = profile.parse_login(response.json(), self._clock())
        except ValueError as exc:
            raise AuthUnreachableError(f"Unexpected login response from {handle.base_url}: {exc}") from exc

        token = SessionToken(value, NEVER_EXPIRES if expires_at is None else expires_at)
        return self._cache(key, token, generation)


async def _read_identity(path: str) -> str:
    try:
        assertion = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
    except OSError as exc:
        raise AuthUnreachableError(f"Platform identity assertion is not readable at {path}.") from exc
    assertion = assertion.strip()
    if not assertion:
        raise AuthRejectedError("platform identity assertion is empty")
    return assertion
