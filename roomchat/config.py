"""Configuration management for the room chat client."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

from .constants import (
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_CREDENTIAL_TIMEOUT_S,
    DEFAULT_HEARTBEAT_S,
    DEFAULT_HISTORY_TIMEOUT_S,
    DEFAULT_IMAGE_TIMEOUT_S,
    DEFAULT_SEND_TIMEOUT_S,
    MAX_IMAGE_BYTES,
    MAX_TIMELINE_ENTRIES,
)
from .utils import expand_path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".roomchat"
DEFAULT_CONFIG_FILE = "config.json"
MAX_CONFIG_FILE_SIZE = 1024 * 1024

PATH_KEYS = ("token_path",)


def get_default_config() -> dict[str, Any]:
    """Get default configuration values.

    Returns:
        Default configuration dictionary
    """
    return {
        "backend_url": "http://localhost:3000",
        "username": "",
        "token_path": str(DEFAULT_CONFIG_DIR / "token"),
        "connect_timeout_s": DEFAULT_CONNECT_TIMEOUT_S,
        "credential_timeout_s": DEFAULT_CREDENTIAL_TIMEOUT_S,
        "history_timeout_s": DEFAULT_HISTORY_TIMEOUT_S,
        "image_timeout_s": DEFAULT_IMAGE_TIMEOUT_S,
        "send_timeout_s": DEFAULT_SEND_TIMEOUT_S,
        "heartbeat_s": DEFAULT_HEARTBEAT_S,
        "max_image_bytes": MAX_IMAGE_BYTES,
        "max_timeline_entries": MAX_TIMELINE_ENTRIES,
    }


def get_config_path() -> str:
    """Get the configuration file path.

    Returns:
        Absolute path to config file
    """
    env_path = os.environ.get("ROOMCHAT_CONFIG")
    if env_path:
        return expand_path(env_path)

    return str(DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE)


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    backend_url = os.environ.get("ROOMCHAT_BACKEND_URL")
    if backend_url:
        config["backend_url"] = backend_url
    return config


def load_config() -> dict[str, Any]:
    """Load configuration from file.

    A missing file is created with defaults. Unreadable or oversized files
    fall back to defaults without being overwritten.

    Returns:
        Configuration dictionary
    """
    config_path = Path(get_config_path())

    if not config_path.is_file():
        logger.info("Config file not found, creating default at %s", config_path)
        config = get_default_config()
        save_config(config)
        return _apply_env_overrides(config)

    try:
        file_size = config_path.stat().st_size
        if file_size > MAX_CONFIG_FILE_SIZE:
            logger.error(
                "Config file too large: %d bytes (max %d)",
                file_size,
                MAX_CONFIG_FILE_SIZE,
            )
            return _apply_env_overrides(get_default_config())

        with open(config_path, encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            raise ValueError("config root must be a JSON object")
        logger.info("Loaded config from %s", config_path)

        for key, value in get_default_config().items():
            if key not in config:
                config[key] = value

        for key in PATH_KEYS:
            if isinstance(config.get(key), str) and config[key]:
                config[key] = expand_path(config[key])

        return _apply_env_overrides(cast(dict[str, Any], config))
    except (OSError, ValueError) as e:
        logger.error("Failed to load config from %s: %s", config_path, e)
        return _apply_env_overrides(get_default_config())


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to file.

    Args:
        config: Configuration dictionary to save
    """
    config_path = Path(get_config_path())

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        logger.info("Saved config to %s", config_path)
    except OSError as e:
        logger.error("Failed to save config to %s: %s", config_path, e)


@dataclass(frozen=True)
class SessionConfig:
    """Tunables for a single room session."""

    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    credential_timeout_s: float = DEFAULT_CREDENTIAL_TIMEOUT_S
    history_timeout_s: float = DEFAULT_HISTORY_TIMEOUT_S
    image_timeout_s: float = DEFAULT_IMAGE_TIMEOUT_S
    send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S
    heartbeat_s: float | None = DEFAULT_HEARTBEAT_S
    max_image_bytes: int = MAX_IMAGE_BYTES
    max_timeline_entries: int | None = MAX_TIMELINE_ENTRIES

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SessionConfig:
        """Build a session config from a loaded configuration dictionary.

        Unknown keys are ignored; values of the wrong type fall back to the
        default for that field.
        """
        defaults = cls()
        kwargs: dict[str, Any] = {}
        for name in (
            "connect_timeout_s",
            "credential_timeout_s",
            "history_timeout_s",
            "image_timeout_s",
            "send_timeout_s",
        ):
            value = config.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
                kwargs[name] = float(value)

        heartbeat = config.get("heartbeat_s", defaults.heartbeat_s)
        if heartbeat is None or (isinstance(heartbeat, (int, float)) and heartbeat <= 0):
            kwargs["heartbeat_s"] = None
        elif isinstance(heartbeat, (int, float)) and not isinstance(heartbeat, bool):
            kwargs["heartbeat_s"] = float(heartbeat)

        max_image = config.get("max_image_bytes")
        if isinstance(max_image, int) and not isinstance(max_image, bool) and max_image > 0:
            kwargs["max_image_bytes"] = max_image

        if "max_timeline_entries" in config:
            max_entries = config["max_timeline_entries"]
            if max_entries is None:
                kwargs["max_timeline_entries"] = None
            elif isinstance(max_entries, int) and not isinstance(max_entries, bool) and max_entries > 0:
                kwargs["max_timeline_entries"] = max_entries

        return cls(**kwargs)
