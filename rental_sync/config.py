"""
CONFIG.PY: SINGLE SOURCE OF TRUTH FOR PROCESS SETTINGS

This module is the ONLY place allowed to read environment variables.

ALL REQUIRED VARIABLES MUST EXIST, NO DEFAULTS.
If any env-only variable is missing or blank, the process fails early with ConfigError.

Per-site scraping settings (login URLs, selectors, credentials, schedules) are
dynamic and live in the app_config table; see rental_sync.online_orders.site_config.

To use a config value, call:

    from rental_sync.config import get_config
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parents[1]

# OS env overrides values from .env automatically
load_dotenv(PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

ENV_ONLY_KEYS = [
    "DATABASE_URL",
    "SECRET_KEY",
    "RUN_ENV",
    "PIPELINE_TIMEZONE",
    "LOGS_DIR",
    "PROFILES_DIR",
    "APP_BASE_URL",
]

OPTIONAL_ENV_KEYS = [
    "API_KEY",
    "CHROME_EXECUTABLE",
    "DISPLAY",
]

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _require_env(key: str) -> str:
    value = os.getenv(key)
    if value is None:
        message = f"Missing required environment variable: {key}"
        logger.error(message)
        raise ConfigError(message)
    stripped = value.strip()
    if not stripped:
        message = f"Environment variable {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _load_env_values() -> Dict[str, str]:
    return {key: _require_env(key) for key in ENV_ONLY_KEYS}


def parse_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    message = f"Config key {key} must be a boolean; got {value!r}"
    logger.error(message)
    raise ConfigError(message)


def parse_int(value: Any, *, key: str) -> int:
    if isinstance(value, bool):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)


def parse_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(token).strip() for token in value if token and str(token).strip()]
    tokens = re.split(r"[,\n]", str(value))
    return [token.strip() for token in tokens if token and token.strip()]


def _clean_url(value: str, *, key: str) -> str:
    stripped = value.strip().rstrip("/")
    # "https://https://host" pasted from a browser bar
    stripped = re.sub(r"^(https?://)+(https?://)", r"\2", stripped)
    if not stripped:
        message = f"Config key {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


@dataclass(slots=True, frozen=True)
class Config:
    database_url: str
    secret_key: str
    run_env: str
    pipeline_timezone: str
    logs_dir: Path
    profiles_dir: Path
    app_base_url: str
    api_key: str | None = None
    chrome_executable: str | None = None
    display: str | None = None

    @classmethod
    def load_from_env(cls) -> Config:
        env_values = _load_env_values()
        optional = {key: (os.getenv(key) or "").strip() or None for key in OPTIONAL_ENV_KEYS}
        return cls(
            database_url=env_values["DATABASE_URL"],
            secret_key=env_values["SECRET_KEY"],
            run_env=env_values["RUN_ENV"],
            pipeline_timezone=env_values["PIPELINE_TIMEZONE"],
            logs_dir=Path(env_values["LOGS_DIR"]).expanduser(),
            profiles_dir=Path(env_values["PROFILES_DIR"]).expanduser(),
            app_base_url=_clean_url(env_values["APP_BASE_URL"], key="APP_BASE_URL"),
            api_key=optional["API_KEY"],
            chrome_executable=optional["CHROME_EXECUTABLE"],
            display=optional["DISPLAY"],
        )

    @property
    def remote_auth_url(self) -> str:
        return f"{self.app_base_url}/online-orders/remote-auth"


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.load_from_env()
