"""Offline reconciliation: propagate scraped order state onto manual orders.

Back-office staff create local orders by hand and record the vendor order
number in ``mini_program_order_no``. Every run joins those orders to the
scraped rows of one site and copies the status and the logistics fields
wherever the scraped value is present and different.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from rental_sync.common.app_config_store import OFFLINE_SYNC_CONFIG_PREFIX, AppConfigStore
from rental_sync.common.date_utils import aware_now
from rental_sync.common.json_logger import (
    DailyFileSink,
    JsonLogger,
    RingBufferSink,
    get_logger,
    log_entry,
    log_event,
    read_daily_log,
)
from rental_sync.common.models import LOGISTICS_FIELDS, OnlineOrder, Order
from rental_sync.config import Config, parse_bool, parse_int
from rental_sync.online_orders.persistence import OrderRepository

OFFLINE_LOG_PREFIX = "offline-sync"
LOG_TAIL_SIZE = 2000
DEFAULT_INTERVAL_MINUTES = 60
MIN_INTERVAL_MINUTES = 5
SYNCED_FIELDS = ("status",) + tuple(LOGISTICS_FIELDS)


@dataclass
class OfflineSyncConfig:
    enabled: bool = False
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "OfflineSyncConfig":
        if not isinstance(raw, Mapping):
            return cls()
        return cls(
            enabled=parse_bool(raw.get("enabled", False), key="enabled"),
            interval_minutes=parse_int(raw.get("intervalMinutes") or DEFAULT_INTERVAL_MINUTES, key="intervalMinutes"),
        )

    @property
    def effective_interval_minutes(self) -> int:
        return max(MIN_INTERVAL_MINUTES, self.interval_minutes)

    def as_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "intervalMinutes": self.interval_minutes}


@dataclass
class OfflineSyncStatus:
    is_running: bool = False
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0
    last_error: Optional[str] = None
    last_synced_order_nos: List[str] = field(default_factory=list)
    tail: RingBufferSink = field(default_factory=lambda: RingBufferSink(LOG_TAIL_SIZE, formatter=log_entry))

    def as_dict(self, logs: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "nextRunAt": self.next_run_at.isoformat() if self.next_run_at else None,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "lastError": self.last_error,
            "lastSyncedOrderNos": list(self.last_synced_order_nos),
            "logs": logs if logs is not None else self.tail.lines(),
        }


def diff_local_order(scraped: OnlineOrder, local: Order) -> Dict[str, Any]:
    """Fields of ``local`` that differ from a non-empty value on ``scraped``."""

    updates: Dict[str, Any] = {}
    for name in SYNCED_FIELDS:
        value = getattr(scraped, name)
        if value and value != getattr(local, name):
            updates[name] = value
    return updates


class _SiteTailSink:
    """Route events to the in-memory tail of the site they belong to."""

    def __init__(self, service: "OfflineSyncService") -> None:
        self._service = service

    def write(self, event: Dict[str, Any]) -> None:
        site_id = event.get("site_id")
        if site_id:
            self._service.status(site_id).tail.write(event)


class OfflineSyncService:
    def __init__(
        self,
        *,
        config: Config,
        store: AppConfigStore,
        repository: OrderRepository,
        logger: Optional[JsonLogger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.repository = repository
        self._sleep = sleep
        self._statuses: Dict[str, OfflineSyncStatus] = {}
        self._timers: Dict[str, asyncio.Task[None]] = {}
        sinks = [_SiteTailSink(self), DailyFileSink(config.logs_dir, OFFLINE_LOG_PREFIX)]
        if logger is None:
            self.logger = get_logger(sinks=sinks)
        else:
            self.logger = JsonLogger(run_id=logger.run_id, stream=logger.stream, sinks=[*logger.sinks, *sinks])

    def _log(self, site_id: str, message: str, *, status: str = "ok", order_nos: Optional[List[str]] = None) -> None:
        log_event(
            logger=self.logger,
            phase="offline_sync",
            status=status,
            message=message,
            site_id=site_id,
            order_nos=order_nos,
        )

    def status(self, site_id: str) -> OfflineSyncStatus:
        if site_id not in self._statuses:
            self._statuses[site_id] = OfflineSyncStatus()
        return self._statuses[site_id]

    def get_logs_from_file(self, site_id: str, day: Optional[date] = None) -> List[Dict[str, Any]]:
        return read_daily_log(self.config.logs_dir, OFFLINE_LOG_PREFIX, site_id, day)

    def status_payload(self, site_id: str, day: Optional[date] = None) -> Dict[str, Any]:
        """Status for polling; a requested day, or an empty tail, reads the daily file."""

        status = self.status(site_id)
        logs = status.tail.lines()
        if day is not None or not logs:
            logs = self.get_logs_from_file(site_id, day)
        return status.as_dict(logs)

    # ── Configuration ──────────────────────────────────────────────────────

    async def get_config(self, site_id: str) -> OfflineSyncConfig:
        return OfflineSyncConfig.from_mapping(await self.store.get(f"{OFFLINE_SYNC_CONFIG_PREFIX}{site_id}"))

    async def save_config(self, site_id: str, raw: Mapping[str, Any]) -> OfflineSyncConfig:
        sync_config = OfflineSyncConfig.from_mapping(raw)
        await self.store.set(f"{OFFLINE_SYNC_CONFIG_PREFIX}{site_id}", sync_config.as_dict())
        await self.start_scheduler(site_id)
        return sync_config

    # ── Sync ───────────────────────────────────────────────────────────────

    async def run_sync(self, site_id: str) -> OfflineSyncStatus:
        status = self.status(site_id)
        if status.is_running:
            return status
        status.is_running = True
        self._log(site_id, "开始执行线下订单同步...")
        try:
            scraped = await self.repository.scraped_orders(site_id)
            if not scraped:
                self._log(site_id, "未发现线上订单，跳过同步")
                return status
            by_order_no = {order.order_no: order for order in scraped}
            local_orders = await self.repository.cross_referenced_orders(list(by_order_no))

            synced: List[str] = []
            for local in local_orders:
                source = by_order_no.get(local.mini_program_order_no or "")
                if source is None:
                    continue
                updates = diff_local_order(source, local)
                if not updates:
                    continue
                await self.repository.update_local_order(local.id, updates)
                synced.append(source.order_no)

            self._log(site_id, f"同步完成: 更新了 {len(synced)} 个线下订单", order_nos=synced or None)
            status.success_count += 1
            status.last_run_at = aware_now()
            status.last_synced_order_nos = synced
            status.last_error = None
        except Exception as exc:
            self._log(site_id, f"同步失败: {exc}", status="error")
            status.failure_count += 1
            status.last_error = str(exc)
        finally:
            status.is_running = False
        return status

    async def trigger_manual_sync(self, site_id: str) -> OfflineSyncStatus:
        status = await self.run_sync(site_id)
        await self.start_scheduler(site_id)
        return status

    # ── Timers ─────────────────────────────────────────────────────────────

    async def _timer_loop(self, site_id: str, interval_seconds: float) -> None:
        status = self.status(site_id)
        while True:
            await self._sleep(interval_seconds)
            status.next_run_at = aware_now() + timedelta(seconds=interval_seconds)
            await self.run_sync(site_id)

    async def _cancel_timer(self, site_id: str) -> None:
        task = self._timers.pop(site_id, None)
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def start_scheduler(self, site_id: str) -> None:
        await self._cancel_timer(site_id)
        sync_config = await self.get_config(site_id)
        status = self.status(site_id)
        if not sync_config.enabled:
            self._log(site_id, "自动同步已关闭")
            status.next_run_at = None
            return
        minutes = sync_config.effective_interval_minutes
        self._log(site_id, f"自动同步已开启，间隔 {minutes} 分钟")
        status.next_run_at = aware_now() + timedelta(minutes=minutes)
        self._timers[site_id] = asyncio.create_task(self._timer_loop(site_id, minutes * 60))

    async def init_schedulers(self, site_ids: List[str]) -> None:
        for site_id in site_ids:
            try:
                await self.start_scheduler(site_id)
            except Exception as exc:
                self._log(site_id, f"初始化线下同步调度失败: {exc}", status="error")

    def has_timer(self, site_id: str) -> bool:
        task = self._timers.get(site_id)
        return task is not None and not task.done()

    async def stop(self) -> None:
        for site_id in list(self._timers):
            await self._cancel_timer(site_id)
