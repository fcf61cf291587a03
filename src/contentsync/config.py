"""Configuration management for contentsync."""

from __future__ import annotations

import os
import re
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, model_validator

from contentsync.policy.models import Flow, Pool

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".contentsync"
_CONFIG_FILE = "config.toml"
_DB_FILE = "contentsync.db"
_LOG_DIR = "logs"


def get_base_dir() -> Path:
    """Return the base directory for all contentsync runtime files (~/.contentsync/)."""
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class EngineConfig(BaseModel):
    """Settings for the engine process itself."""

    log_level: str = Field(default="info", description="Logging level")
    site_base_url: str = Field(default="", description="Public URL the remote uses to reach this site")
    content_store: str = Field(default="", description="Import path (module:factory) of the host content store")


class RemoteConfig(BaseModel):
    """Transport settings shared by every pool connection."""

    timeout_seconds: int = Field(default=30, description="HTTP timeout per request")
    max_retries: int = Field(default=3, description="Retries for transport errors and rate limits")
    poll_interval_seconds: int = Field(default=5, description="First wait between job status polls")
    max_poll_interval_seconds: int = Field(default=60, description="Upper bound for the poll backoff")
    username: str = Field(default="", description="Account the remote uses to call back into this site")
    password: SecretStr = Field(default=SecretStr(""), description="Password for that account")


class AppConfig(BaseModel):
    """Top-level application configuration."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    pools: dict[str, Pool] = Field(default_factory=dict)
    flows: dict[str, Flow] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fill_ids(cls, data: Any) -> Any:
        # TOML tables are keyed by id, so the id field itself is optional there.
        if isinstance(data, dict):
            for section in ("pools", "flows"):
                for key, value in (data.get(section) or {}).items():
                    if isinstance(value, dict):
                        value.setdefault("id", key)
        return data

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def db_path(self) -> Path:
        return self.base_dir / _DB_FILE

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


_BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")

# Mappings written as inline tables instead of [section] headers.
_INLINE_KEYS = frozenset({"export_pools", "import_pools", "handler_settings"})


def _toml_key(key: str) -> str:
    if _BARE_KEY.match(key):
        return key
    escaped = key.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, SecretStr):
        return _format_toml_value(value.get_secret_value())
    if isinstance(value, Enum):
        return _format_toml_value(value.value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(value, list | tuple):
        return "[" + ", ".join(_format_toml_value(v) for v in value) + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = ", ".join(f"{_toml_key(str(k))} = {_format_toml_value(v)}" for k, v in value.items() if v is not None)
        return "{ " + items + " }"
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_table(path: list[str], data: dict[str, Any], lines: list[str]) -> None:
    scalars: list[tuple[str, Any]] = []
    tables: list[tuple[str, dict]] = []
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, dict) and value and key not in _INLINE_KEYS:
            tables.append((key, value))
        else:
            scalars.append((key, value))

    if path and (scalars or not tables):
        lines.append("[" + ".".join(_toml_key(p) for p in path) + "]")
    for key, value in scalars:
        lines.append(f"{_toml_key(key)} = {_format_toml_value(value)}")
    if path and (scalars or not tables):
        lines.append("")  # blank line between sections
    for key, value in tables:
        _dump_table([*path, key], value, lines)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to TOML.

    Handles exactly what the config models produce: nested tables, inline
    tables for pool maps and handler settings, scalar arrays.
    """
    raw = config.model_dump(mode="python", by_alias=True)
    for section in ("pools", "flows"):
        for entry in raw[section].values():
            entry.pop("id", None)
    # Field configs tell "not set" apart from "disabled", so only explicit options are written.
    for flow_id, flow in config.flows.items():
        raw["flows"][flow_id]["entity_types"] = {
            key: cfg.model_dump(mode="python", by_alias=True, exclude_unset=True)
            for key, cfg in flow.entity_types.items()
        }
    lines: list[str] = []
    _dump_table([], raw, lines)
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
