"""
Configuration — TOML file, then MEDIASEAL_* environment variables, then
explicit overrides.

    ~/.mediaseal/config.toml
        network = "calibration"
        storage_rpc_url = "http://127.0.0.1:8787"
        max_upload_attempts = 3
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from mediaseal import (
    DEFAULT_DATA_DIR,
    DEFAULT_GATEWAY_URL,
    DEFAULT_MIN_DEPOSIT,
    FETCH_TIMEOUT_SECS,
    REGISTER_TIMEOUT_SECS,
    UPLOAD_MAX_ATTEMPTS,
    UPLOAD_TIMEOUT_SECS,
)
from mediaseal.errors import ConfigError
from mediaseal.storage import NETWORKS

logger = logging.getLogger(__name__)

ENV_PREFIX = "MEDIASEAL_"


@dataclass(frozen=True)
class MediaSealConfig:
    network: str = "mainnet"
    gateway_url: str = DEFAULT_GATEWAY_URL
    storage_rpc_url: str = ""
    keys_rpc_url: str = ""
    registry_rpc_url: str = ""
    rpc_token: str = ""
    max_upload_attempts: int = UPLOAD_MAX_ATTEMPTS
    upload_timeout: float = UPLOAD_TIMEOUT_SECS
    register_timeout: float = REGISTER_TIMEOUT_SECS
    fetch_timeout: float = FETCH_TIMEOUT_SECS
    min_deposit: int = DEFAULT_MIN_DEPOSIT
    with_cdn: bool = True
    data_dir: str = DEFAULT_DATA_DIR

    def __post_init__(self) -> None:
        if self.network not in NETWORKS:
            raise ConfigError(f"network must be one of {sorted(NETWORKS)}, got {self.network!r}")
        if self.max_upload_attempts < 1:
            raise ConfigError("max_upload_attempts must be at least 1")
        for name in ("upload_timeout", "register_timeout", "fetch_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.min_deposit < 0:
            raise ConfigError("min_deposit must not be negative")

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def __repr__(self) -> str:
        # Never print the RPC token
        token = "***" if self.rpc_token else ""
        return f"MediaSealConfig(network={self.network!r}, data_dir={self.data_dir!r}, rpc_token={token!r})"


_FIELD_TYPES = {f.name: f.type for f in fields(MediaSealConfig)}


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw TOML/env value to the field's type."""
    kind = _FIELD_TYPES[name]
    try:
        if kind == "bool":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
            raise ValueError(value)
        if kind == "int":
            return int(value)
        if kind == "float":
            return float(value)
        return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name}: {value!r}")


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def load_config(config_path: str | Path | None = None, **overrides: Any) -> MediaSealConfig:
    """Load configuration, falling back to defaults."""
    values: dict[str, Any] = {}

    path = Path(config_path).expanduser() if config_path else (
        Path(DEFAULT_DATA_DIR).expanduser() / "config.toml"
    )
    if path.is_file():
        for key, val in _read_toml(path).items():
            if key not in _FIELD_TYPES:
                logger.warning("Ignoring unknown config key %r in %s", key, path)
                continue
            values[key] = _coerce(key, val)
    elif config_path:
        raise ConfigError(f"Config file not found: {path}")

    for name in _FIELD_TYPES:
        env_val = os.environ.get(ENV_PREFIX + name.upper())
        if env_val is not None and env_val != "":
            values[name] = _coerce(name, env_val)

    for key, val in overrides.items():
        if val is None:
            continue
        if key not in _FIELD_TYPES:
            raise ConfigError(f"Unknown config key: {key!r}")
        values[key] = _coerce(key, val)

    return MediaSealConfig(**values)
