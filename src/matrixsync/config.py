"""Configuration for matrixsync.

Settings come from ~/.matrixsync/config.yaml, then MATRIXSYNC_* environment
variables, then whatever the CLI passes in. Later sources win.

Example config.yaml:
    homeserver: https://matrix.example.org
    data_dir: ~/.local/share/matrixsync
    sync_timeout_ms: 30000
    log_level: INFO
"""

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from matrixsync.errors import ConfigurationError

ENV_PREFIX = "MATRIXSYNC_"


def get_config_dir() -> Path:
    """Get the matrixsync configuration directory."""
    return Path.home() / ".matrixsync"


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    return get_config_dir() / "config.yaml"


class Settings(BaseModel):
    """Validated runtime settings."""

    # Where the session file and the local storage directory live
    data_dir: Path = Field(default_factory=lambda: get_config_dir() / "persist_session")
    session_file: str = "session"

    # Skip the homeserver prompt on cold start when set
    homeserver: str | None = None
    device_display_name: str = "login client"

    # Sync
    sync_timeout_ms: int = 30_000
    lazy_load_members: bool = True
    catchup_retry_delay: float = 0.0

    # SSO redirect listener
    sso_callback_host: str = "127.0.0.1"

    log_level: str = "WARNING"

    @field_validator("data_dir", mode="before")
    @classmethod
    def _expand_data_dir(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Path(value).expanduser()
        if isinstance(value, Path):
            return value.expanduser()
        return value

    @field_validator("sync_timeout_ms")
    @classmethod
    def _non_negative_timeout(cls, value: int) -> int:
        if value < 0:
            raise ValueError("sync_timeout_ms must be >= 0")
        return value

    @field_validator("catchup_retry_delay")
    @classmethod
    def _non_negative_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("catchup_retry_delay must be >= 0")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return level

    @property
    def session_path(self) -> Path:
        return self.data_dir / self.session_file


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load the YAML config file, or an empty dict if there is none."""
    config_path = path or get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")
    return data


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in Settings.model_fields:
        value = environ.get(ENV_PREFIX + name.upper())
        if value is not None:
            overrides[name] = value
    return overrides


def get_settings(
    overrides: Mapping[str, Any] | None = None,
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from file, environment and explicit overrides.

    Overrides whose value is None are ignored so CLI options that were not
    given do not mask the config file.
    """
    merged: dict[str, Any] = dict(load_config(config_path))
    merged.update(_env_overrides(os.environ if environ is None else environ))
    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return Settings(**merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
