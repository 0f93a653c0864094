"""Fixed-rate auto-sync scheduler for the online order scrape."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from rental_sync.common.date_utils import aware_now
from rental_sync.common.json_logger import JsonLogger, get_logger, log_event
from rental_sync.online_orders.engine import OnlineOrderSyncEngine
from rental_sync.online_orders.run_status import RunState

TICK_SECONDS = 60
SITE_GAP_SECONDS = 5
LOG_LIMIT = 100


class ScrapeScheduler:
    """Check every tick which auto-sync sites are due and run them one by one.

    Last-run is recorded when a run starts, so the cadence is fixed-rate. A
    manual run counts as a run and pushes the next automatic one out by a
    full interval.
    """

    def __init__(
        self,
        engine: OnlineOrderSyncEngine,
        *,
        logger: Optional[JsonLogger] = None,
        tick_seconds: float = TICK_SECONDS,
        site_gap_seconds: float = SITE_GAP_SECONDS,
        clock: Callable[[], datetime] = aware_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.logger = logger or get_logger()
        self.tick_seconds = tick_seconds
        self.site_gap_seconds = site_gap_seconds
        self._clock = clock
        self._sleep = sleep
        self.is_running = False
        self.last_run_at: Optional[datetime] = None
        self.site_last_run: Dict[str, datetime] = {}
        self.site_next_run: Dict[str, datetime] = {}
        self.logs: Deque[Dict[str, Any]] = deque(maxlen=LOG_LIMIT)
        self._task: Optional[asyncio.Task[None]] = None

    def _log(self, message: str, *, status: str = "ok", site_id: Optional[str] = None) -> None:
        self.logs.appendleft({"timestamp": self._clock().isoformat(), "message": message})
        log_event(logger=self.logger, phase="scheduler", status=status, message=message, site_id=site_id)

    def _is_due(self, site_id: str, interval: int, now: datetime) -> bool:
        previous = self.site_last_run.get(site_id)
        return previous is None or now - previous >= timedelta(seconds=interval)

    async def tick(self) -> int:
        """One scheduling pass; returns how many sites were run."""

        if self.is_running:
            return 0
        self.is_running = True
        ran = 0
        try:
            sync_config = await self.engine.load_sync_config()
            for site in sync_config.sites:
                if not site.auto_sync_enabled:
                    continue
                now = self._clock()
                previous = self.site_last_run.get(site.id)
                if not self._is_due(site.id, site.auto_sync_interval, now):
                    self.site_next_run[site.id] = previous + timedelta(seconds=site.auto_sync_interval)
                    continue

                if ran:
                    await self._sleep(self.site_gap_seconds)
                if self.engine.is_running:
                    # Stays due; the next tick picks it up.
                    self._log(f"已有同步任务在运行，跳过站点: {site.name}", status="warn", site_id=site.id)
                    continue
                started = self._clock()
                self.site_last_run[site.id] = started
                self.site_next_run[site.id] = started + timedelta(seconds=site.auto_sync_interval)
                self.last_run_at = started
                self._log(f"开始同步站点: {site.name}", site_id=site.id)

                status = await self.engine.run(site.id)
                ran += 1
                if status.get("status") == RunState.ERROR.value:
                    self._log(f"站点 {site.name} 同步失败: {status.get('message')}", status="warn", site_id=site.id)
                else:
                    count = len((status.get("lastResult") or {}).get("parsedOrders") or [])
                    self._log(f"站点 {site.name} 同步完成，获取订单: {count} 单", site_id=site.id)
        except Exception as exc:
            self._log(f"自动同步任务异常: {exc}", status="error")
        finally:
            self.is_running = False
        return ran

    def notify_manual_run(self, site_id: str, interval: Optional[int] = None) -> None:
        now = self._clock()
        self.site_last_run[site_id] = now
        if interval:
            self.site_next_run[site_id] = now + timedelta(seconds=interval)

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await self._sleep(self.tick_seconds)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._log("线上订单自动抓取调度器已启动")
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def status(self) -> Dict[str, Any]:
        next_runs = sorted(self.site_next_run.values())
        return {
            "isRunning": self.is_running,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "nextRunAt": next_runs[0].isoformat() if next_runs else None,
            "siteLastRun": {key: value.isoformat() for key, value in self.site_last_run.items()},
            "siteNextRun": {key: value.isoformat() for key, value in self.site_next_run.items()},
            "logs": list(self.logs),
        }
