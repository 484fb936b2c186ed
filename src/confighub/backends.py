"""Per-backend connection profiles.

A profile knows the few backend-specific details the session layer needs:
the fixed API prefix, how a token is attached, the login endpoint and its
response shape, and where error messages live in a response body. Everything
else about a backend's API is the caller's business.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Optional
from urllib.parse import quote

import httpx

from .auth import AppRoleLogin, AuthScheme, PasswordLogin, PlatformIdentityLogin
from .errors import UnsupportedAuthMethodError
from .models import BackendKind, Credential

# Lifetime assumed for issued tokens that do not declare one.
DEFAULT_TOKEN_TTL = 24 * 60 * 60


class BackendProfile:
    """Defaults shared by every backend: bearer tokens, no fixed prefix, no login endpoint."""

    kind: BackendKind
    api_prefix: Optional[str] = None
    health_path: str = "/"
    token_header: str = "Authorization"

    def fixed_headers(self, credential: Credential) -> dict[str, str]:
        return {"Accept": "application/json"}

    def auth_headers(self, token: str, *, basic: bool = False) -> dict[str, str]:
        if basic:
            return {"Authorization": f"Basic {token}"}
        if self.token_header == "Authorization":
            return {"Authorization": f"Bearer {token}"}
        return {self.token_header: token}

    def login_request(self, credential: Credential, scheme: AuthScheme) -> tuple[str, dict[str, Any]]:
        """Return ``(path, json_body)`` for a login call."""
        raise UnsupportedAuthMethodError(credential.auth_method.value, self.kind.value)

    def parse_login(self, data: Any, now: float) -> tuple[str, Optional[float]]:
        """Return ``(token, expires_at)`` from a login response; ``None`` means the token does not expire."""
        raise NotImplementedError

    def error_message(self, response: httpx.Response) -> str:
        """Backend error text from *response*, else its reason phrase."""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            errors = body.get("errors")
            if isinstance(errors, list) and errors:
                return ", ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            for field in ("message", "error", "error_description"):
                if isinstance(body.get(field), str) and body[field]:
                    return body[field]
        return response.reason_phrase or f"HTTP {response.status_code}"


class GitHostProfile(BackendProfile):
    kind = BackendKind.GIT


class ArtifactRegistryProfile(BackendProfile):
    kind = BackendKind.ARTIFACT_REGISTRY
    health_path = "/v2/"


class GitOpsControllerProfile(BackendProfile):
    """Argo CD style controller: ``/api/v1`` API, session login with a JWT."""

    kind = BackendKind.GITOPS_CONTROLLER
    api_prefix = "/api/v1/"
    health_path = "/api/v1/applications"

    def fixed_headers(self, credential: Credential) -> dict[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    def login_request(self, credential: Credential, scheme: AuthScheme) -> tuple[str, dict[str, Any]]:
        if isinstance(scheme, PasswordLogin):
            return "/api/v1/session", {"username": scheme.username, "password": scheme.password}
        return super().login_request(credential, scheme)

    def parse_login(self, data: Any, now: float) -> tuple[str, Optional[float]]:
        token = data.get("token") if isinstance(data, dict) else None
        if not token or not isinstance(token, str):
            raise ValueError("login response has no token")
        exp = _jwt_expiry(token)
        return token, exp if exp is not None else now + DEFAULT_TOKEN_TTL


class SecretStoreProfile(BackendProfile):
    """HashiCorp Vault style store: ``/v1`` API, ``X-Vault-Token`` header."""

    kind = BackendKind.SECRET_STORE
    api_prefix = "/v1/"
    health_path = "/v1/auth/token/lookup-self"
    token_header = "X-Vault-Token"

    def fixed_headers(self, credential: Credential) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if credential.namespace:
            headers["X-Vault-Namespace"] = credential.namespace
        return headers

    def login_request(self, credential: Credential, scheme: AuthScheme) -> tuple[str, dict[str, Any]]:
        if isinstance(scheme, PasswordLogin):
            path = f"/v1/auth/{_segment(scheme.mount)}/login/{_segment(scheme.username)}"
            return path, {"password": scheme.password}
        if isinstance(scheme, AppRoleLogin):
            return f"/v1/auth/{_segment(scheme.mount)}/login", {
                "role_id": scheme.role_id,
                "secret_id": scheme.secret_id,
            }
        if isinstance(scheme, PlatformIdentityLogin):
            return f"/v1/auth/{_segment(scheme.mount)}/login", {"role": scheme.role, "jwt": scheme.assertion}
        return super().login_request(credential, scheme)

    def parse_login(self, data: Any, now: float) -> tuple[str, Optional[float]]:
        auth = data.get("auth") if isinstance(data, dict) else None
        if not isinstance(auth, dict) or not isinstance(auth.get("client_token"), str) or not auth["client_token"]:
            raise ValueError("login response has no auth.client_token")
        try:
            lease = float(auth.get("lease_duration") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid lease_duration: {auth.get('lease_duration')!r}") from exc
        # A zero lease means the token does not expire.
        return auth["client_token"], now + lease if lease else None


_PROFILES: dict[BackendKind, BackendProfile] = {
    profile.kind: profile
    for profile in (
        GitHostProfile(),
        ArtifactRegistryProfile(),
        GitOpsControllerProfile(),
        SecretStoreProfile(),
    )
}


def get_profile(kind: BackendKind) -> BackendProfile:
    return _PROFILES[BackendKind(kind)]


def _segment(value: str) -> str:
    return quote(value, safe="")


def _jwt_expiry(token: str) -> Optional[float]:
    """The ``exp`` claim of a JWT, read without verification (the backend verifies it)."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    padded = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        return float(json.loads(base64.urlsafe_b64decode(padded))["exp"])
    except (ValueError, KeyError, TypeError):
        return None
