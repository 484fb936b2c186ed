"""Authentication schemes.

Each credential resolves to exactly one scheme variant. Static variants carry
the token material directly; login variants carry what the backend's login
endpoint needs; :class:`UnsupportedMethod` marks methods confighub cannot
perform yet and always fails with
:class:`~confighub.errors.UnsupportedAuthMethodError`.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Union

from .errors import AuthRejectedError
from .models import AuthMethod, BackendKind, Credential

DEFAULT_SERVICE_ACCOUNT_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"


@dataclass(frozen=True)
class StaticToken:
    """The stored secret is the bearer token."""

    token: str = field(repr=False)


@dataclass(frozen=True)
class BasicCredentials:
    """Username and password sent with every request as HTTP Basic."""

    username: str
    password: str = field(repr=False)

    def encoded(self) -> str:
        return base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")


@dataclass(frozen=True)
class PasswordLogin:
    """Username/password (or directory) login that returns a session token."""

    username: str
    password: str = field(repr=False)
    mount: str = "userpass"


@dataclass(frozen=True)
class AppRoleLogin:
    role_id: str
    secret_id: str = field(repr=False)
    mount: str = "approle"


@dataclass(frozen=True)
class PlatformIdentityLogin:
    """Exchange a platform-issued identity assertion (service-account JWT) for a token."""

    role: str
    jwt_path: str = DEFAULT_SERVICE_ACCOUNT_TOKEN
    mount: str = "kubernetes"
    assertion: str = field(default="", repr=False)


@dataclass(frozen=True)
class UnsupportedMethod:
    method: AuthMethod


AuthScheme = Union[
    StaticToken,
    BasicCredentials,
    PasswordLogin,
    AppRoleLogin,
    PlatformIdentityLogin,
    UnsupportedMethod,
]

STATIC_SCHEMES = (StaticToken, BasicCredentials)


def resolve_scheme(credential: Credential) -> AuthScheme:
    """Map a credential's kind and auth method onto its scheme variant.

    Raises:
        AuthRejectedError: the credential lacks a field its method requires.
    """
    method = credential.auth_method
    kind = credential.kind

    if method is AuthMethod.TOKEN:
        return StaticToken(_require(credential.secret("token"), "token"))

    if method is AuthMethod.USERPASS:
        username = _require(credential.username, "username")
        password = _require(credential.secret("password"), "password")
        if kind in (BackendKind.GIT, BackendKind.ARTIFACT_REGISTRY):
            return BasicCredentials(username, password)
        return PasswordLogin(username, password, mount=str(credential.extra.get("auth_mount", "userpass")))

    if kind is not BackendKind.SECRET_STORE:
        return UnsupportedMethod(method)

    if method is AuthMethod.LDAP:
        return PasswordLogin(
            _require(credential.username, "username"),
            _require(credential.secret("password"), "password"),
            mount=str(credential.extra.get("auth_mount", "ldap")),
        )
    if method is AuthMethod.APPROLE:
        return AppRoleLogin(
            _require(credential.extra.get("role_id") or credential.role, "role_id"),
            _require(credential.secret("secret_id"), "secret_id"),
            mount=str(credential.extra.get("auth_mount", "approle")),
        )
    if method is AuthMethod.KUBERNETES:
        return PlatformIdentityLogin(
            _require(credential.role, "role"),
            jwt_path=str(credential.extra.get("jwt_path", DEFAULT_SERVICE_ACCOUNT_TOKEN)),
            mount=str(credential.extra.get("auth_mount", "kubernetes")),
        )
    return UnsupportedMethod(method)


def _require(value, name: str) -> str:
    if not value:
        raise AuthRejectedError(f"credential has no {name}")
    return str(value)
