"""Timezone-aware helpers shared by the sync services and their log files."""
from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rental_sync.config import ConfigError

DEFAULT_TIMEZONE = "Asia/Shanghai"

_pipeline_timezone = ZoneInfo(DEFAULT_TIMEZONE)


def configure_timezone(name: str) -> ZoneInfo:
    """Set the pipeline timezone from ``Config.pipeline_timezone``.

    Daily log files roll over at midnight in this timezone, so every writer
    and reader must agree on it. Called once when the services are built.
    """

    global _pipeline_timezone
    try:
        _pipeline_timezone = ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown PIPELINE_TIMEZONE: {name}") from exc
    return _pipeline_timezone


def get_timezone() -> ZoneInfo:
    return _pipeline_timezone


def aware_now(tz: ZoneInfo | None = None) -> datetime:
    """Return ``datetime.now`` in the configured timezone."""

    timezone = tz or get_timezone()
    return datetime.now(timezone)
