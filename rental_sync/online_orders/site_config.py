"""Per-site scraping configuration stored in ``app_config``.

Shape of the ``online_orders_sync_config`` value::

    {
      "headless": true,
      "webhookUrls": ["https://..."],
      "allowedMerchants": ["..."],
      "stopThreshold": 20,
      "sites": [
        {"id": "...", "name": "...", "enabled": true, "loginUrl": "...",
         "username": "...", "password": "enc:...", "maxPages": 50,
         "platform": "ZANCHEN",
         "autoSync": {"enabled": true, "interval": 3600},
         "selectors": {"order_list_container": "...", ...}}
      ]
    }
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from rental_sync.config import ConfigError, parse_bool, parse_int, parse_list
from rental_sync.crypto import decrypt_secret

DEFAULT_STOP_THRESHOLD = 20
DEFAULT_SYNC_INTERVAL_SECONDS = 3600
MIN_SYNC_INTERVAL_SECONDS = 300


class SiteConfigError(ConfigError):
    """Raised when a site cannot be scraped with its stored configuration."""


def _coerce_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


@dataclass(frozen=True)
class SiteSelectors:
    raw: Mapping[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str:
        return _text(self.raw.get(key))

    @property
    def container(self) -> str:
        return self.get("order_list_container")

    @property
    def row_selectors(self) -> List[str]:
        return [token.strip() for token in re.split(r"[\n,;|]+", self.get("order_row_selectors")) if token.strip()]

    @property
    def row_template(self) -> str:
        return self.get("order_row_selector_template")

    def template_index(self, key: str, default: Optional[int]) -> Optional[int]:
        raw = self.get(key)
        if not raw:
            return default
        return parse_int(raw, key=key)

    @property
    def pagination_next(self) -> str:
        return self.get("pagination_next_selector")

    @property
    def pending_count(self) -> str:
        return self.get("pending_count_element")


@dataclass(frozen=True)
class SiteConfig:
    id: str
    name: str
    enabled: bool
    login_url: str
    username: str
    password: str
    max_pages: int
    selectors: SiteSelectors
    platform: str = "OTHER"
    auto_sync_enabled: bool = False
    auto_sync_interval: int = DEFAULT_SYNC_INTERVAL_SECONDS

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], *, secret_key: str) -> "SiteConfig":
        site_id = _text(raw.get("id"))
        if not site_id:
            raise SiteConfigError("Site entry is missing an id")
        auto_sync = _coerce_dict(raw.get("autoSync"))
        interval = parse_int(auto_sync.get("interval") or DEFAULT_SYNC_INTERVAL_SECONDS, key=f"{site_id}.autoSync.interval")
        password = _text(raw.get("password"))
        try:
            password = decrypt_secret(secret_key, password) if password else ""
        except ValueError as exc:
            raise SiteConfigError(f"Password for site {site_id} could not be decrypted") from exc
        return cls(
            id=site_id,
            name=_text(raw.get("name")) or site_id,
            enabled=parse_bool(raw.get("enabled", False), key=f"{site_id}.enabled"),
            login_url=_text(raw.get("loginUrl")),
            username=_text(raw.get("username")),
            password=password,
            max_pages=max(0, parse_int(raw.get("maxPages") or 0, key=f"{site_id}.maxPages")),
            selectors=SiteSelectors({str(k): _text(v) for k, v in _coerce_dict(raw.get("selectors")).items()}),
            platform=_text(raw.get("platform")).upper() or site_id.upper(),
            auto_sync_enabled=parse_bool(auto_sync.get("enabled", False), key=f"{site_id}.autoSync.enabled"),
            auto_sync_interval=max(MIN_SYNC_INTERVAL_SECONDS, interval),
        )

    def validate_for_run(self) -> None:
        if not self.enabled:
            raise SiteConfigError(f"站点 {self.name} 未启用")
        missing = [
            name
            for name, value in (
                ("loginUrl", self.login_url),
                ("selectors.order_list_container", self.selectors.container),
            )
            if not value
        ]
        if missing:
            raise SiteConfigError(f"站点 {self.name} 缺少配置: {', '.join(missing)}")


@dataclass(frozen=True)
class OnlineOrdersConfig:
    headless: bool = True
    webhook_urls: List[str] = field(default_factory=list)
    allowed_merchants: List[str] = field(default_factory=list)
    stop_threshold: int = DEFAULT_STOP_THRESHOLD
    sites: List[SiteConfig] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None, *, secret_key: str) -> "OnlineOrdersConfig":
        data = _coerce_dict(raw)
        return cls(
            headless=parse_bool(data.get("headless", True), key="headless"),
            webhook_urls=parse_list(data.get("webhookUrls")),
            allowed_merchants=parse_list(data.get("allowedMerchants")),
            stop_threshold=parse_int(data.get("stopThreshold", DEFAULT_STOP_THRESHOLD), key="stopThreshold"),
            sites=[
                SiteConfig.from_mapping(item, secret_key=secret_key)
                for item in data.get("sites") or []
                if isinstance(item, Mapping)
            ],
        )

    def site(self, site_id: str) -> SiteConfig:
        for site in self.sites:
            if site.id == site_id:
                return site
        raise SiteConfigError(f"未找到站点配置: {site_id}")
