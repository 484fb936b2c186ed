"""Runtime settings for confighub.

Values come from ``CONFIGHUB_*`` environment variables:

    CONFIGHUB_DATA_DIR        Credential tree (metadata table + encrypted containers)
    CONFIGHUB_KEY_FILE        Master key file used when no OS keychain is available
    CONFIGHUB_TIMEOUT         Network timeout in seconds (default 30)
    CONFIGHUB_SAFETY_MARGIN   Seconds subtracted from token expiry (default 300)
    CONFIGHUB_USE_KEYRING     Set to 0/false/no to skip the OS keychain
    CONFIGHUB_LOG_LEVEL       Logging level name (default WARNING)
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

APP_NAME = "config-hub"

_FALSEY = {"0", "false", "no", "off"}


def default_data_dir() -> Path:
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", Path.home()))
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / APP_NAME


def default_key_file() -> Path:
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home()))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return base / APP_NAME / "master.key"


class Settings(BaseModel):
    """Validated confighub settings."""

    data_dir: Path = Field(default_factory=default_data_dir)
    key_file: Path = Field(default_factory=default_key_file)
    request_timeout: float = Field(default=30.0, gt=0)
    safety_margin: float = Field(default=300.0, ge=0)
    use_keyring: bool = True
    keyring_service: str = APP_NAME
    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept any standard logging level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_key_outside_data_dir(self) -> "Settings":
        """The master key must not live inside the credential tree it protects."""
        data_dir = self.data_dir.expanduser().resolve()
        key_file = self.key_file.expanduser().resolve()
        if key_file == data_dir or data_dir in key_file.parents:
            raise ValueError(
                f"key_file {key_file} must be outside the credential data directory {data_dir}"
            )
        return self

    @property
    def metadata_path(self) -> Path:
        return self.data_dir / "credentials-metadata.json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings from ``CONFIGHUB_*`` environment variables."""
        values: dict[str, object] = {}
        if os.environ.get("CONFIGHUB_DATA_DIR"):
            values["data_dir"] = Path(os.environ["CONFIGHUB_DATA_DIR"])
        if os.environ.get("CONFIGHUB_KEY_FILE"):
            values["key_file"] = Path(os.environ["CONFIGHUB_KEY_FILE"])
        if os.environ.get("CONFIGHUB_TIMEOUT"):
            values["request_timeout"] = os.environ["CONFIGHUB_TIMEOUT"]
        if os.environ.get("CONFIGHUB_SAFETY_MARGIN"):
            values["safety_margin"] = os.environ["CONFIGHUB_SAFETY_MARGIN"]
        if os.environ.get("CONFIGHUB_USE_KEYRING"):
            values["use_keyring"] = os.environ["CONFIGHUB_USE_KEYRING"].strip().lower() not in _FALSEY
        if os.environ.get("CONFIGHUB_LOG_LEVEL"):
            values["log_level"] = os.environ["CONFIGHUB_LOG_LEVEL"]
        return cls(**values)
