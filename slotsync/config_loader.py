"""slotsync.config_loader

Config loader for slotsync.

- Reads a YAML mapping (PyYAML ``safe_load``).
- Exposes a typed dataclass `Config` and a `load_config()` helper that accepts
  an optional path override.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from slotsync.domain.business_hours import DEFAULT_BUSINESS_HOURS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "slotsync.yaml"


@dataclass
class CalDavSettings:
    base_url: str
    username: str | None = None
    password: str | None = None
    calendar_urls: list[str] = field(default_factory=list)


@dataclass
class RestSettings:
    base_url: str
    access_token: str
    calendar_ids: list[str] = field(default_factory=list)


@dataclass
class Config:
    """Typed configuration for slotsync.

    Fields:
        server_bind: host to bind the HTTP server to
        server_port: port for the HTTP server
        log_level: logging level name
        debug_logging: force DEBUG for slotsync loggers
        database_path: SQLite file holding durable state
        business_timezone: IANA name or fixed offset defining business days
        cache_ttl_seconds: event cache TTL (30..3600)
        provider_timeout_seconds: time budget per provider call
        sync_interval_seconds: background sync period (60..3600)
        sync_concurrency: calendars synced at once (1..10)
        sync_backoff_step_minutes / sync_backoff_max_minutes: retry backoff
        sync_window_past_days / sync_window_future_days: background sync window
        default_event_minutes: duration of events without an end
        admin_bearer_token: optional token required by mutating endpoints
        business_hours: weekday -> span such as "9am - 5pm"
        caldav / rest: provider settings, None when the provider is disabled
    """

    server_bind: str = "0.0.0.0"  # nosec: B104 - intentional default; override via config/env
    server_port: int = 8080
    log_level: str = "INFO"
    debug_logging: bool = False
    database_path: str = "slotsync.db"
    business_timezone: str = "America/Denver"
    cache_ttl_seconds: int = 300
    provider_timeout_seconds: float = 20.0
    sync_interval_seconds: int = 300
    sync_concurrency: int = 3
    sync_backoff_step_minutes: int = 5
    sync_backoff_max_minutes: int = 60
    sync_window_past_days: int = 7
    sync_window_future_days: int = 90
    default_event_minutes: int = 30
    admin_bearer_token: str | None = None
    business_hours: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_BUSINESS_HOURS))
    caldav: CalDavSettings | None = None
    rest: RestSettings | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Config:
        """Create Config from a plain mapping, applying defaults and validation.

        Numeric-like values are coerced to int and bounded values clamped,
        logging a warning whenever a value is replaced.
        """
        if data is None:
            data = {}

        def _coerce_int(key: str, default: int) -> int:
            raw = data.get(key, default)
            try:
                return int(raw)
            except Exception:
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default

        def _bounded(key: str, default: int, low: int, high: int) -> int:
            value = _coerce_int(key, default)
            if value < low:
                logger.warning("%s %d below minimum; coercing to %d", key, value, low)
                return low
            if value > high:
                logger.warning("%s %d above maximum; coercing to %d", key, value, high)
                return high
            return value

        def _bool(key: str, default: bool = False) -> bool:
            raw = data.get(key, default)
            if isinstance(raw, str):
                return raw.strip().lower() in ("1", "true", "yes", "on")
            return bool(raw)

        def _str_list(raw: Any, key: str) -> list[str]:
            if raw is None:
                return []
            if isinstance(raw, str):
                return [s.strip() for s in raw.split(",") if s.strip()]
            if not isinstance(raw, (list, tuple)):
                logger.warning("Config `%s` is not a list; coercing to single-item list", key)
                return [str(raw)]
            return [str(s) for s in raw]

        server_bind = data.get("server_bind", "0.0.0.0")  # nosec: B104
        log_level = data.get("log_level", "INFO")

        try:
            timeout = float(data.get("provider_timeout_seconds", 20.0))
        except (TypeError, ValueError):
            logger.warning("Config provider_timeout_seconds is not a number; using 20")
            timeout = 20.0

        hours_raw = data.get("business_hours")
        if hours_raw is None:
            business_hours = dict(DEFAULT_BUSINESS_HOURS)
        elif isinstance(hours_raw, dict):
            business_hours = {str(k).lower(): str(v or "") for k, v in hours_raw.items()}
        else:
            logger.warning("Config `business_hours` is not a mapping; using defaults")
            business_hours = dict(DEFAULT_BUSINESS_HOURS)

        caldav = None
        caldav_raw = data.get("caldav")
        if isinstance(caldav_raw, dict) and caldav_raw.get("base_url"):
            caldav = CalDavSettings(
                base_url=str(caldav_raw["base_url"]),
                username=caldav_raw.get("username"),
                password=caldav_raw.get("password"),
                calendar_urls=_str_list(caldav_raw.get("calendar_urls"), "caldav.calendar_urls"),
            )

        rest = None
        rest_raw = data.get("rest")
        if isinstance(rest_raw, dict) and rest_raw.get("base_url"):
            if not rest_raw.get("access_token"):
                logger.warning("REST provider configured without access_token; disabled")
            else:
                rest = RestSettings(
                    base_url=str(rest_raw["base_url"]),
                    access_token=str(rest_raw["access_token"]),
                    calendar_ids=_str_list(rest_raw.get("calendar_ids"), "rest.calendar_ids"),
                )

        admin_token = data.get("admin_bearer_token")

        return cls(
            server_bind=str(server_bind) if server_bind is not None else "0.0.0.0",  # nosec: B104
            server_port=_coerce_int("server_port", 8080),
            log_level=str(log_level).upper() if log_level is not None else "INFO",
            debug_logging=_bool("debug_logging"),
            database_path=str(data.get("database_path") or "slotsync.db"),
            business_timezone=str(data.get("business_timezone") or "America/Denver"),
            cache_ttl_seconds=_bounded("cache_ttl_seconds", 300, 30, 3600),
            provider_timeout_seconds=timeout,
            sync_interval_seconds=_bounded("sync_interval_seconds", 300, 60, 3600),
            sync_concurrency=_bounded("sync_concurrency", 3, 1, 10),
            sync_backoff_step_minutes=_bounded("sync_backoff_step_minutes", 5, 1, 60),
            sync_backoff_max_minutes=_bounded("sync_backoff_max_minutes", 60, 1, 24 * 60),
            sync_window_past_days=_bounded("sync_window_past_days", 7, 0, 365),
            sync_window_future_days=_bounded("sync_window_future_days", 90, 1, 730),
            default_event_minutes=_bounded("default_event_minutes", 30, 1, 24 * 60),
            admin_bearer_token=str(admin_token) if admin_token else None,
            business_hours=business_hours,
            caldav=caldav,
            rest=rest,
        )


def _load_yaml(path: Path) -> Any:
    loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    # safe_load returns None for empty files
    return {} if loaded is None else loaded


def load_config(path: str | None = None, overrides: dict[str, Any] | None = None) -> Config:
    """Load configuration from a YAML file and return a Config instance.

    Args:
        path: Optional path to the config file. Defaults to ``$SLOTSYNC_CONFIG``
              or ./slotsync.yaml.
        overrides: Values (typically from the environment) applied over the file

    Returns:
        Config dataclass instance with values from file (or defaults).

    Behavior:
    - If file is missing: defaults (plus overrides).
    - If file exists but top-level is not a mapping: raises ValueError.
    """
    p = Path(path or os.environ.get("SLOTSYNC_CONFIG") or Path.cwd() / DEFAULT_CONFIG_FILENAME)
    logger.debug("Attempting to load config from %s", p)

    raw: Any = {}
    if p.exists():
        try:
            raw = _load_yaml(p)
        except yaml.YAMLError as exc:
            raise ValueError(f"Config file {p} is not valid YAML: {exc}") from exc
        if not isinstance(raw, dict):
            logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, raw)
            raise ValueError("Config file must contain a mapping at top level")  # noqa: TRY004
        logger.info("Loaded configuration from %s", p)
    else:
        logger.info("Config file %s not found; using defaults", p)

    merged = dict(raw)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value

    cfg = Config.from_dict(merged)
    logger.debug(
        "Configuration: bind=%s:%d db=%s tz=%s caldav=%s rest=%s",
        cfg.server_bind,
        cfg.server_port,
        cfg.database_path,
        cfg.business_timezone,
        bool(cfg.caldav),
        bool(cfg.rest),
    )
    return cfg
