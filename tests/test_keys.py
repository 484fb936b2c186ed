"""Tests for confighub.keys and confighub.config."""

import base64

import keyring
import pytest
from keyring.errors import KeyringError
from pydantic import ValidationError

from confighub import keys
from confighub.config import Settings
from confighub.errors import MasterKeyUnavailableError
from confighub.keys import (
    MASTER_KEY_ENV,
    decode_master_key,
    describe_key_source,
    generate_master_key,
    load_master_key,
)


@pytest.fixture(autouse=True)
def _no_env_key(monkeypatch):
    monkeypatch.delenv(MASTER_KEY_ENV, raising=False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path / "data", key_file=tmp_path / "conf" / "master.key", use_keyring=False)


@pytest.fixture
def fake_keyring(monkeypatch):
    saved: dict[tuple[str, str], str] = {}
    monkeypatch.setattr(keyring, "get_password", lambda service, account: saved.get((service, account)))
    monkeypatch.setattr(
        keyring, "set_password", lambda service, account, value: saved.__setitem__((service, account), value)
    )
    return saved


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def test_generated_key_decodes_to_32_bytes():
    assert len(decode_master_key(generate_master_key())) == 32


def test_decode_rejects_wrong_length():
    with pytest.raises(ValueError, match="32 bytes"):
        decode_master_key(base64.b64encode(b"x" * 16).decode())


def test_decode_rejects_bad_base64():
    with pytest.raises(ValueError, match="base64"):
        decode_master_key("not base64 !!")


# ---------------------------------------------------------------------------
# Resolution order
# ---------------------------------------------------------------------------


def test_environment_key_wins(monkeypatch, settings):
    encoded = generate_master_key()
    monkeypatch.setenv(MASTER_KEY_ENV, encoded)
    assert load_master_key(settings) == base64.b64decode(encoded)
    assert not settings.key_file.exists()
    assert MASTER_KEY_ENV in describe_key_source(settings)


def test_invalid_environment_key_raises(monkeypatch, settings):
    monkeypatch.setenv(MASTER_KEY_ENV, "dG9vIHNob3J0")
    with pytest.raises(ValueError):
        load_master_key(settings)


def test_key_file_created_once_with_private_mode(settings):
    assert describe_key_source(settings) == "not created yet"
    first = load_master_key(settings)
    assert settings.key_file.exists()
    assert settings.key_file.stat().st_mode & 0o777 == 0o600
    assert load_master_key(settings) == first
    assert "key file" in describe_key_source(settings)


def test_keyring_is_preferred_when_enabled(tmp_path, fake_keyring):
    settings = Settings(data_dir=tmp_path / "data", key_file=tmp_path / "conf" / "master.key")
    first = load_master_key(settings)
    assert ("config-hub", keys.KEYRING_ACCOUNT) in fake_keyring
    assert not settings.key_file.exists()
    assert load_master_key(settings) == first


def test_unavailable_keyring_falls_back_to_key_file(tmp_path, monkeypatch):
    def broken(*args):
        raise KeyringError("no backend")

    monkeypatch.setattr(keyring, "get_password", broken)
    monkeypatch.setattr(keyring, "set_password", broken)
    settings = Settings(data_dir=tmp_path / "data", key_file=tmp_path / "conf" / "master.key")
    key = load_master_key(settings)
    assert settings.key_file.exists()
    assert load_master_key(settings) == key


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_key_file_inside_data_dir_is_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(data_dir=tmp_path, key_file=tmp_path / "master.key")


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CONFIGHUB_DATA_DIR", str(tmp_path / "d"))
    monkeypatch.setenv("CONFIGHUB_KEY_FILE", str(tmp_path / "k" / "master.key"))
    monkeypatch.setenv("CONFIGHUB_TIMEOUT", "5")
    monkeypatch.setenv("CONFIGHUB_SAFETY_MARGIN", "60")
    monkeypatch.setenv("CONFIGHUB_USE_KEYRING", "false")
    monkeypatch.setenv("CONFIGHUB_LOG_LEVEL", "debug")
    s = Settings.from_env()
    assert s.data_dir == tmp_path / "d"
    assert s.request_timeout == 5.0
    assert s.safety_margin == 60.0
    assert s.use_keyring is False
    assert s.log_level == "DEBUG"
    assert s.metadata_path == tmp_path / "d" / "credentials-metadata.json"


def test_invalid_log_level_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(data_dir=tmp_path / "d", key_file=tmp_path / "k", log_level="LOUD")


def test_timeout_must_be_positive(tmp_path):
    with pytest.raises(ValidationError):
        Settings(data_dir=tmp_path / "d", key_file=tmp_path / "k", request_timeout=0)


def test_no_new_key_when_containers_exist(tmp_path, fake_keyring, monkeypatch):
    settings = Settings(data_dir=tmp_path / "data", key_file=tmp_path / "conf" / "master.key")
    original = load_master_key(settings)
    sensitive = settings.data_dir / "sensitive"
    sensitive.mkdir(parents=True)
    (sensitive / "c1.enc").write_bytes(b"CHEC")

    def locked(*args):
        raise KeyringError("keychain locked")

    monkeypatch.setattr(keyring, "get_password", locked)
    monkeypatch.setattr(keyring, "set_password", locked)

    with pytest.raises(MasterKeyUnavailableError):
        load_master_key(settings)
    assert not settings.key_file.exists()

    monkeypatch.setenv(MASTER_KEY_ENV, base64.b64encode(original).decode())
    assert load_master_key(settings) == original
