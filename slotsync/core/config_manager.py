"""Environment and .env configuration for the slotsync server."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ENV_PREFIX = "SLOTSYNC_"

# Environment variable suffix -> (config key, type)
_SCALAR_KEYS: dict[str, tuple[str, type]] = {
    "SERVER_BIND": ("server_bind", str),
    "SERVER_PORT": ("server_port", int),
    "LOG_LEVEL": ("log_level", str),
    "DEBUG": ("debug_logging", str),
    "DATABASE_PATH": ("database_path", str),
    "BUSINESS_TIMEZONE": ("business_timezone", str),
    "CACHE_TTL_SECONDS": ("cache_ttl_seconds", int),
    "PROVIDER_TIMEOUT_SECONDS": ("provider_timeout_seconds", float),
    "SYNC_INTERVAL_SECONDS": ("sync_interval_seconds", int),
    "SYNC_CONCURRENCY": ("sync_concurrency", int),
    "ADMIN_BEARER_TOKEN": ("admin_bearer_token", str),
}

_CALDAV_KEYS = {
    "CALDAV_URL": "base_url",
    "CALDAV_USERNAME": "username",
    "CALDAV_PASSWORD": "password",
    "CALDAV_CALENDAR_URLS": "calendar_urls",
}

_REST_KEYS = {
    "REST_BASE_URL": "base_url",
    "REST_ACCESS_TOKEN": "access_token",
    "REST_CALENDAR_IDS": "calendar_ids",
}


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file and return key-value pairs.

    Args:
        path: Path to .env file

    Returns:
        Dictionary of key-value pairs from the .env file.
        Empty dict if file doesn't exist or cannot be read.

    Note:
        - Skips empty lines and comments (lines starting with #)
        - Strips quotes (both single and double) from values
        - Handles KEY=VALUE format with optional whitespace
    """
    if not path.exists():
        return {}

    result: dict[str, str] = {}
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        logger.debug("Failed to read .env file (continuing): %s", str(path), exc_info=True)
        return result

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        if key:
            result[key] = val.strip().strip('"').strip("'")
    return result


class ConfigManager:
    """Manages application configuration from environment variables and .env files."""

    def __init__(self, env_file_path: Path | None = None):
        """Initialize configuration manager.

        Args:
            env_file_path: Optional path to .env file (defaults to .env in current directory)
        """
        self.env_file_path = env_file_path or Path.cwd() / ".env"

    def load_env_file(self) -> list[str]:
        """Load .env file into the environment without overriding existing keys.

        Returns:
            List of environment variable keys that were loaded from .env file
        """
        if not self.env_file_path.exists():
            logger.debug("No .env file found at %s", self.env_file_path)
            return []

        set_keys = []
        for key, val in parse_env_file(self.env_file_path).items():
            if key not in os.environ:
                os.environ[key] = val
                set_keys.append(key)

        if set_keys:
            logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))
        return set_keys

    def build_config_from_env(self) -> dict[str, Any]:
        """Build configuration overrides from ``SLOTSYNC_*`` environment variables.

        Recognizes the scalar settings (``SLOTSYNC_SERVER_PORT``,
        ``SLOTSYNC_CACHE_TTL_SECONDS``, ...), ``SLOTSYNC_CALDAV_*`` and
        ``SLOTSYNC_REST_*`` provider settings (list values comma separated).
        Values that fail type conversion are logged and ignored.

        Returns:
            Mapping suitable for ``load_config(overrides=...)``
        """
        cfg: dict[str, Any] = {}

        for suffix, (key, kind) in _SCALAR_KEYS.items():
            raw = os.environ.get(ENV_PREFIX + suffix)
            if raw is None or raw == "":
                continue
            try:
                cfg[key] = kind(raw)
            except ValueError:
                logger.warning("Invalid %s%s=%r; ignoring", ENV_PREFIX, suffix, raw)

        for section, keys in (("caldav", _CALDAV_KEYS), ("rest", _REST_KEYS)):
            values = {
                key: os.environ[ENV_PREFIX + suffix]
                for suffix, key in keys.items()
                if os.environ.get(ENV_PREFIX + suffix)
            }
            if values:
                cfg[section] = values

        return cfg

    def load_full_config(self) -> dict[str, Any]:
        """Load .env file and build configuration overrides from the environment."""
        self.load_env_file()
        return self.build_config_from_env()


def get_config_value(config: Any, key: str, default: Any = None) -> Any:
    """Get configuration value supporting both dict and dataclass-like objects."""
    if isinstance(config, dict):
        return config.get(key, default)
    return getattr(config, key, default)
