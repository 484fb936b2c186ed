"""Tests for confighub.models."""

import time
from datetime import timezone

import pytest
from pydantic import ValidationError

from confighub.models import (
    AuthMethod,
    BackendKind,
    Credential,
    SessionKey,
    generate_credential_id,
    validate_credential_id,
)


def _cred(**kw) -> Credential:
    kw.setdefault("name", "github")
    kw.setdefault("kind", BackendKind.GIT)
    kw.setdefault("server_url", "https://github.com")
    return Credential(**kw)


def test_credential_defaults():
    c = _cred()
    assert len(c.id) == 16
    assert c.environment == "default"
    assert c.auth_method is AuthMethod.TOKEN
    assert c.tags == []
    assert c.sensitive == {}
    assert c.created_at.tzinfo == timezone.utc


def test_kind_accepts_wire_values():
    c = Credential(name="vault", kind="secret-store", server_url="https://vault.example")
    assert c.kind is BackendKind.SECRET_STORE
    assert c.session_key == SessionKey(BackendKind.SECRET_STORE, "default")
    assert str(c.session_key) == "secret-store/default"


def test_generated_id_is_deterministic_for_same_instant():
    a = generate_credential_id(BackendKind.GIT, "https://github.com", now=1.5)
    b = generate_credential_id(BackendKind.GIT, "https://github.com", now=1.5)
    assert a == b
    assert a != generate_credential_id(BackendKind.GIT, "https://github.com", now=2.5)


def test_explicit_id_is_kept():
    assert _cred(id="prod-git").id == "prod-git"


@pytest.mark.parametrize("bad", ["../etc", "a/b", "..", ".", "with space"])
def test_unsafe_ids_rejected(bad):
    with pytest.raises(ValueError):
        validate_credential_id(bad)
    with pytest.raises(ValidationError):
        _cred(id=bad)


def test_sensitive_extra_fields_are_moved():
    c = _cred(extra={"token": "ghp_x", "org": "acme"})
    assert c.extra == {"org": "acme"}
    assert c.secret("token") == "ghp_x"


def test_metadata_excludes_secrets():
    c = _cred(sensitive={"token": "ghp_x"})
    meta = c.metadata()
    assert "sensitive" not in meta
    assert "ghp_x" not in str(meta)
    assert meta["kind"] == "git"


def test_repr_hides_secrets():
    assert "ghp_x" not in repr(_cred(sensitive={"token": "ghp_x"}))


def test_without_secrets_is_a_copy():
    c = _cred(sensitive={"token": "ghp_x"})
    bare = c.without_secrets()
    assert bare.sensitive == {}
    assert c.secret("token") == "ghp_x"


def test_secret_returns_none_for_empty():
    assert _cred(sensitive={"token": ""}).secret("token") is None


def test_touch_updates_timestamp():
    c = _cred()
    before = c.updated_at
    time.sleep(0.01)
    c.touch()
    assert c.updated_at > before
