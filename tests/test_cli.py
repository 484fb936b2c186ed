"""Tests for the confighub command line."""

import json

import pytest
from typer.testing import CliRunner

from confighub.cli import app
from confighub.keys import MASTER_KEY_ENV, generate_master_key

runner = CliRunner()


@pytest.fixture(autouse=True)
def _env(monkeypatch, tmp_path):
    monkeypatch.setenv("CONFIGHUB_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("CONFIGHUB_KEY_FILE", str(tmp_path / "conf" / "master.key"))
    monkeypatch.setenv("CONFIGHUB_USE_KEYRING", "0")
    monkeypatch.setenv(MASTER_KEY_ENV, generate_master_key())
    return tmp_path / "data"


def _add(*extra, secret="s.top-secret"):
    args = ["add", "secret-store", "vault", "--url", "https://vault.example", "--env", "prod",
            "--secret-stdin", *extra]
    return runner.invoke(app, args, input=secret + "\n")


def _only_id(data_dir):
    table = json.loads((data_dir / "credentials-metadata.json").read_text())
    assert len(table) == 1
    return next(iter(table))


def test_add_then_get_masks_secret(_env):
    result = _add("--tags", "ops,prod")
    assert result.exit_code == 0, result.output
    assert "saved" in result.output

    cred_id = _only_id(_env)
    shown = runner.invoke(app, ["get", cred_id])
    assert shown.exit_code == 0, shown.output
    assert "vault" in shown.output
    assert "s.top-secret" not in shown.output


def test_get_show_reveals_secret(_env):
    _add()
    result = runner.invoke(app, ["get", _only_id(_env), "--show"])
    assert result.exit_code == 0, result.output
    assert "s.top-secret" in result.output


def test_secret_never_written_in_plaintext(_env):
    _add()
    for path in _env.rglob("*"):
        if path.is_file():
            assert b"s.top-secret" not in path.read_bytes()


def test_list_and_filters(_env):
    _add()
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0, result.output
    assert "vault" in result.output

    empty = runner.invoke(app, ["list", "--kind", "git"])
    assert "No credentials" in empty.output


def test_update_rotates_secret(_env):
    _add()
    cred_id = _only_id(_env)
    result = runner.invoke(app, ["update", cred_id, "--rotate", "--secret-stdin"], input="s.rotated\n")
    assert result.exit_code == 0, result.output
    assert "updated" in result.output

    shown = runner.invoke(app, ["get", cred_id, "--show"])
    assert "s.rotated" in shown.output


def test_update_without_changes(_env):
    _add()
    result = runner.invoke(app, ["update", _only_id(_env)])
    assert result.exit_code == 0
    assert "No changes" in result.output


def test_delete_with_yes(_env):
    _add()
    cred_id = _only_id(_env)
    result = runner.invoke(app, ["delete", cred_id, "--yes"])
    assert result.exit_code == 0, result.output
    assert "deleted" in result.output

    again = runner.invoke(app, ["delete", cred_id, "--yes"])
    assert again.exit_code == 0
    assert "Nothing stored" in again.output


def test_get_unknown_id_fails():
    result = runner.invoke(app, ["get", "does-not-exist"])
    assert result.exit_code == 1


def test_invalid_id_fails():
    result = runner.invoke(app, ["get", "../etc"])
    assert result.exit_code == 1


def test_request_rejects_bad_json():
    result = runner.invoke(app, ["request", "secret-store", "prod", "/v1/sys/health", "--data", "{nope"])
    assert result.exit_code == 1
    assert "Invalid JSON" in result.output


def test_request_without_credential_reports_error():
    result = runner.invoke(app, ["request", "secret-store", "prod", "/v1/sys/health"])
    assert result.exit_code == 1
    assert "InvalidRequestError" in result.output


def test_check_access():
    result = runner.invoke(app, ["check"])
    assert result.exit_code == 0, result.output
    assert "readable and writable" in result.output


def test_keygen_prints_usable_key():
    result = runner.invoke(app, ["keygen"])
    assert result.exit_code == 0
    assert "CONFIGHUB_MASTER_KEY" in result.output


def test_info_shows_key_source(_env):
    _add()
    result = runner.invoke(app, ["info"])
    assert result.exit_code == 0, result.output
    assert MASTER_KEY_ENV in result.output
    assert "Credentials" in result.output


def test_update_refuses_to_drop_undecryptable_secrets(_env, monkeypatch):
    original_key = generate_master_key()
    monkeypatch.setenv(MASTER_KEY_ENV, original_key)
    _add()
    cred_id = _only_id(_env)

    monkeypatch.setenv(MASTER_KEY_ENV, generate_master_key())
    result = runner.invoke(app, ["update", cred_id, "--name", "renamed"])
    assert result.exit_code == 1
    assert "could not be decrypted" in result.output
    assert (_env / "sensitive" / f"{cred_id}.enc").exists()

    monkeypatch.setenv(MASTER_KEY_ENV, original_key)
    shown = runner.invoke(app, ["get", cred_id, "--show"])
    assert "s.top-secret" in shown.output
    assert "renamed" not in shown.output


def test_update_with_rotation_recovers_undecryptable_secrets(_env, monkeypatch):
    _add()
    cred_id = _only_id(_env)

    monkeypatch.setenv(MASTER_KEY_ENV, generate_master_key())
    result = runner.invoke(app, ["update", cred_id, "--rotate", "--secret-stdin"], input="s.fresh\n")
    assert result.exit_code == 0, result.output

    shown = runner.invoke(app, ["get", cred_id, "--show"])
    assert "s.fresh" in shown.output
