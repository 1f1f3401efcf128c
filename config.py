"""Configuration management for the Courier push service.

This module provides centralized configuration for the reading-window push
core. All settings are loaded from environment variables with sensible
defaults.

Environment Variables:
    Storage:
        DB_PATH: SQLite database file path

    Operator API:
        API_HOST: Interface the operator API binds to
        API_PORT: Port the operator API listens on

    Triggers:
        MONITOR_ENABLED: Run the auto-push threshold monitor
        MONITOR_INTERVAL_SECONDS: Delay between threshold evaluations
        SCHEDULER_ENABLED: Run the cron task runner
        TIMEZONE: Zone cron expressions are evaluated in (IANA name)

    Delivery:
        DISPATCH_TIMEOUT_SECONDS: Upper bound for a single channel send
        BATCH_MAX_ITEMS: Cap on entries per batch (0 = whole window)

    Optional Features:
        ENABLE_LOGFIRE: Enable Logfire/OpenTelemetry tracing

    Logging:
        LOG_DIR: Directory for courier.log
        LOG_LEVEL: Console verbosity (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        LOG_BACKUP_COUNT: Number of rotated log files to keep
        LOG_MAX_BYTES: Max log file size in bytes (0 = time-based rotation)
        LOG_FORMAT: Log format ('text' or 'json' for structured logging)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

N = TypeVar("N", int, float)
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _env_number(key: str, default: N, parse: Callable[[str], N]) -> N:
    """Parse a numeric variable; unset or empty means ``default``.

    Raises:
        ValueError: Naming the variable, when the value does not parse
    """
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return parse(raw)
    except ValueError:
        raise ValueError(f"{key} must be a {parse.__name__}, got '{raw}'") from None


def _env_int(key: str, default: int) -> int:
    return _env_number(key, default, int)


def _env_float(key: str, default: float) -> float:
    return _env_number(key, default, float)


def _env_bool(key: str, default: bool = False) -> bool:
    """on/off style flag; anything unrecognized keeps the default."""
    raw = os.environ.get(key, "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return default


@dataclass
class Config:
    """Service settings, read from the environment by ``Config.load()``.

    Fields carry the name of the variable that sets them. ``validate()``
    returns the first problem found, or None.

    Example:
        >>> config = Config.load()
        >>> if error := config.validate():
        ...     sys.exit(f"Config error: {error}")
    """

    # Storage
    db_path: Path = field(default_factory=lambda: Path("data/courier.db"))  # DB_PATH

    # Operator API
    api_host: str = "127.0.0.1"  # API_HOST
    api_port: int = 5555  # API_PORT

    # Triggers
    monitor_enabled: bool = True  # MONITOR_ENABLED
    monitor_interval_seconds: int = 60  # MONITOR_INTERVAL_SECONDS
    scheduler_enabled: bool = True  # SCHEDULER_ENABLED
    timezone: str = "UTC"  # TIMEZONE, IANA name

    # Delivery
    dispatch_timeout_seconds: float = 30.0  # DISPATCH_TIMEOUT_SECONDS
    batch_max_items: int = 0  # BATCH_MAX_ITEMS, 0 sends the whole window

    # Logging
    log_dir: Path = field(default_factory=lambda: Path("log"))  # LOG_DIR
    log_level: str = "INFO"  # LOG_LEVEL
    log_format: str = "text"  # LOG_FORMAT, text | json
    log_max_bytes: int = 0  # LOG_MAX_BYTES, 0 rotates at midnight
    log_backup_count: int = 30  # LOG_BACKUP_COUNT

    # Tracing, needs the "tracing" extra
    enable_logfire: bool = False  # ENABLE_LOGFIRE
    logfire_token: str = ""  # LOGFIRE_TOKEN

    @classmethod
    def load(cls) -> "Config":
        return cls(
            db_path=Path(_env("DB_PATH", "data/courier.db")),
            api_host=_env("API_HOST", "127.0.0.1"),
            api_port=_env_int("API_PORT", 5555),
            monitor_enabled=_env_bool("MONITOR_ENABLED", True),
            monitor_interval_seconds=_env_int("MONITOR_INTERVAL_SECONDS", 60),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
            timezone=_env("TIMEZONE", "UTC"),
            dispatch_timeout_seconds=_env_float("DISPATCH_TIMEOUT_SECONDS", 30.0),
            batch_max_items=_env_int("BATCH_MAX_ITEMS", 0),
            log_dir=Path(_env("LOG_DIR", "log")),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            log_format=_env("LOG_FORMAT", "text").lower(),
            log_max_bytes=_env_int("LOG_MAX_BYTES", 0),
            log_backup_count=_env_int("LOG_BACKUP_COUNT", 30),
            enable_logfire=_env_bool("ENABLE_LOGFIRE", False),
            logfire_token=_env("LOGFIRE_TOKEN"),
        )

    @property
    def tzinfo(self) -> ZoneInfo:
        """Zone used for cron evaluation and batch dates."""
        return ZoneInfo(self.timezone)

    def validate(self) -> str | None:
        checks = (
            (0 < self.api_port < 65536, f"API_PORT {self.api_port} is not a valid port"),
            (self.monitor_interval_seconds > 0, "MONITOR_INTERVAL_SECONDS must be positive"),
            (self.dispatch_timeout_seconds > 0, "DISPATCH_TIMEOUT_SECONDS must be positive"),
            (self.batch_max_items >= 0, "BATCH_MAX_ITEMS must be 0 or more"),
            (self.log_level in LOG_LEVELS, f"LOG_LEVEL '{self.log_level}' is not one of {', '.join(LOG_LEVELS)}"),
            (self.log_format in ("text", "json"), f"LOG_FORMAT '{self.log_format}' must be text or json"),
            (self.log_max_bytes >= 0, "LOG_MAX_BYTES must be 0 or more"),
            (self.log_backup_count >= 0, "LOG_BACKUP_COUNT must be 0 or more"),
        )
        for ok, message in checks:
            if not ok:
                return message
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return f"TIMEZONE '{self.timezone}' is not a known IANA zone"
        return None
