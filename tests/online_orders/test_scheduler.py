from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from rental_sync.online_orders.scheduler import ScrapeScheduler
from rental_sync.online_orders.site_config import OnlineOrdersConfig

START = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


def _site(site_id: str, *, auto: bool = True, interval: int = 600) -> dict:
    return {
        "id": site_id,
        "name": site_id,
        "enabled": True,
        "loginUrl": "https://vendor.example.com/login",
        "autoSync": {"enabled": auto, "interval": interval},
        "selectors": {"order_list_container": "#list"},
    }


class FakeEngine:
    def __init__(self, sites, result=None) -> None:
        self.config = OnlineOrdersConfig.from_mapping({"sites": sites}, secret_key="unit-test-secret")
        self.is_running = False
        self.run = AsyncMock(
            return_value=result or {"status": "success", "lastResult": {"parsedOrders": [{"order_no": "A"}]}}
        )

    async def load_sync_config(self) -> OnlineOrdersConfig:
        return self.config


@pytest.mark.asyncio
async def test_due_sites_run_in_sequence_with_gap(logger) -> None:
    engine = FakeEngine([_site("a"), _site("b"), _site("c", auto=False)])
    sleep = AsyncMock()
    clock = Clock()
    scheduler = ScrapeScheduler(engine, logger=logger, clock=clock, sleep=sleep, site_gap_seconds=5)

    assert await scheduler.tick() == 2

    assert [call.args[0] for call in engine.run.await_args_list] == ["a", "b"]
    sleep.assert_awaited_once_with(5)
    status = scheduler.status()
    assert status["siteNextRun"]["a"] == (START + timedelta(seconds=600)).isoformat()
    assert status["lastRunAt"] == START.isoformat()
    assert status["isRunning"] is False
    assert status["logs"][0]["message"] == "站点 b 同步完成，获取订单: 1 单"


@pytest.mark.asyncio
async def test_sites_wait_for_their_interval(logger) -> None:
    engine = FakeEngine([_site("a", interval=600)])
    clock = Clock()
    scheduler = ScrapeScheduler(engine, logger=logger, clock=clock, sleep=AsyncMock())

    assert await scheduler.tick() == 1
    clock.advance(300)
    assert await scheduler.tick() == 0
    clock.advance(300)
    assert await scheduler.tick() == 1


@pytest.mark.asyncio
async def test_manual_run_pushes_next_automatic_run(logger) -> None:
    engine = FakeEngine([_site("a", interval=600)])
    clock = Clock()
    scheduler = ScrapeScheduler(engine, logger=logger, clock=clock, sleep=AsyncMock())

    scheduler.notify_manual_run("a", 600)
    clock.advance(599)

    assert await scheduler.tick() == 0
    assert scheduler.status()["nextRunAt"] == (START + timedelta(seconds=600)).isoformat()


@pytest.mark.asyncio
async def test_failed_run_is_logged_and_next_site_still_runs(logger) -> None:
    engine = FakeEngine([_site("a"), _site("b")], result={"status": "error", "message": "登录失败"})
    scheduler = ScrapeScheduler(engine, logger=logger, clock=Clock(), sleep=AsyncMock())

    assert await scheduler.tick() == 2
    assert scheduler.status()["logs"][0]["message"] == "站点 b 同步失败: 登录失败"


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(logger) -> None:
    engine = FakeEngine([_site("a")])
    scheduler = ScrapeScheduler(engine, logger=logger, clock=Clock(), sleep=AsyncMock())
    scheduler.is_running = True

    assert await scheduler.tick() == 0
    engine.run.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_and_stop(logger) -> None:
    engine = FakeEngine([])
    scheduler = ScrapeScheduler(engine, logger=logger, tick_seconds=3600)

    scheduler.start()
    scheduler.start()
    await scheduler.stop()
    await scheduler.stop()

    assert scheduler.status()["logs"][-1]["message"] == "线上订单自动抓取调度器已启动"


@pytest.mark.asyncio
async def test_busy_engine_leaves_site_due(logger) -> None:
    engine = FakeEngine([_site("a", interval=600)])
    engine.is_running = True
    clock = Clock()
    scheduler = ScrapeScheduler(engine, logger=logger, clock=clock, sleep=AsyncMock())

    assert await scheduler.tick() == 0
    engine.run.assert_not_awaited()
    assert "a" not in scheduler.status()["siteLastRun"]
    assert scheduler.status()["logs"][0]["message"] == "已有同步任务在运行，跳过站点: a"

    engine.is_running = False
    clock.advance(60)
    assert await scheduler.tick() == 1
    engine.run.assert_awaited_once_with("a")
