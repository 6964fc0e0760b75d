"""User configuration for studio clients.

Settings live in ``~/.config/studio/config.toml`` (or ``$STUDIO_CONFIG_PATH``)::

    api_url = "http://127.0.0.1:3001"
    redis_url = "redis://localhost:6379/0"
    log_level = "INFO"

    [reconnect]
    max_attempts = 5
    initial_delay = 1.0
    max_delay = 30.0
    multiplier = 1.5

Every key is optional. Environment variables win over the file:
``STUDIO_API_URL``, ``STUDIO_REDIS_URL`` and ``STUDIO_LOG_LEVEL``.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, TypedDict

from studio.paths import DEFAULT_CONFIG_PATH

log = logging.getLogger(__name__)

DEFAULT_API_URL = "http://127.0.0.1:3001"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_LOG_LEVEL = "WARNING"
DEFAULT_NOTICE_LIMIT = 50


class ReconnectConfig(TypedDict):
    max_attempts: int
    initial_delay: float
    max_delay: float
    multiplier: float


class StudioConfig(TypedDict):
    api_url: str
    redis_url: str
    log_level: str
    notice_limit: int
    relay_enabled: bool
    reconnect: ReconnectConfig


def default_config() -> StudioConfig:
    return {
        "api_url": DEFAULT_API_URL,
        "redis_url": DEFAULT_REDIS_URL,
        "log_level": DEFAULT_LOG_LEVEL,
        "notice_limit": DEFAULT_NOTICE_LIMIT,
        "relay_enabled": False,
        "reconnect": {
            "max_attempts": 5,
            "initial_delay": 1.0,
            "max_delay": 30.0,
            "multiplier": 1.5,
        },
    }


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict when it is missing or unreadable."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s, using defaults", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _coerce(value: Any, default: Any, key: str) -> Any:
    """Return *value* converted to the type of *default*, or *default* if it can't be."""
    if value is None:
        return default
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        log.warning("config: '%s' must be a boolean, got %r", key, value)
        return default
    try:
        converted = type(default)(value)
    except (TypeError, ValueError):
        log.warning("config: '%s' has invalid value %r", key, value)
        return default
    if isinstance(converted, (int, float)) and converted < 0:
        log.warning("config: '%s' must be >= 0, got %r", key, value)
        return default
    return converted


def load_config(path: Path | None = None) -> StudioConfig:
    """Load configuration from TOML, layered over defaults and under env overrides."""
    config = default_config()
    document = _read_toml_file(path or DEFAULT_CONFIG_PATH)

    for key in ("api_url", "redis_url", "log_level", "notice_limit", "relay_enabled"):
        config[key] = _coerce(document.get(key), config[key], key)  # type: ignore[literal-required]

    reconnect = document.get("reconnect", {})
    if isinstance(reconnect, dict):
        for key, default in config["reconnect"].items():
            config["reconnect"][key] = _coerce(  # type: ignore[literal-required]
                reconnect.get(key), default, f"reconnect.{key}"
            )

    if env_api := os.environ.get("STUDIO_API_URL"):
        config["api_url"] = env_api
    if env_redis := os.environ.get("STUDIO_REDIS_URL"):
        config["redis_url"] = env_redis
    if env_level := os.environ.get("STUDIO_LOG_LEVEL"):
        config["log_level"] = env_level

    config["api_url"] = config["api_url"].rstrip("/")
    config["log_level"] = config["log_level"].upper()
    if config["reconnect"]["max_attempts"] < 1:
        config["reconnect"]["max_attempts"] = 1
    return config
