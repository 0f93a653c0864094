from typing import List
from unittest.mock import AsyncMock

import pytest

from rental_sync.online_orders.risk import (
    RiskLevel,
    classify_risk,
    detect_risk,
    ensure_no_risk,
    is_on_login_page,
)


class FakeLocator:
    def __init__(self, visible: bool) -> None:
        self._visible = visible

    @property
    def first(self) -> "FakeLocator":
        return self

    async def is_visible(self) -> bool:
        return self._visible


class FakePage:
    def __init__(self, texts: List[str], *, visible_selectors=(), url: str = "https://vendor.example.com/orders") -> None:
        self._texts = list(texts)
        self._visible = set(visible_selectors)
        self.url = url

    async def evaluate(self, script: str) -> str:
        if len(self._texts) > 1:
            return self._texts.pop(0)
        return self._texts[0]

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(selector in self._visible)


class FakeHandler:
    def __init__(self) -> None:
        self.request_attention = AsyncMock()
        self.cooling_down = AsyncMock()
        self.resume = AsyncMock()


def fake_clock(*values: float):
    stream = iter(values)
    last = [0.0]

    def _clock() -> float:
        try:
            last[0] = next(stream)
        except StopIteration:
            pass
        return last[0]

    return _clock


def test_classification_levels() -> None:
    assert classify_risk("请输入验证码").level is RiskLevel.STRONG
    assert classify_risk("操作过于频繁，请稍后").level is RiskLevel.WEAK
    assert classify_risk("操作过于频繁", widget_visible=True).level is RiskLevel.STRONG
    assert classify_risk("", widget_visible=True).level is RiskLevel.STRONG
    assert classify_risk("订单列表") is None


@pytest.mark.asyncio
async def test_detect_risk_checks_widget_visibility() -> None:
    page = FakePage(["普通页面"], visible_selectors={".geetest_panel"})

    hint = await detect_risk(page)

    assert hint is not None
    assert hint.reason == "检测到验证组件"


@pytest.mark.asyncio
async def test_login_page_detected_by_url_or_selector() -> None:
    assert await is_on_login_page(FakePage([""], url="https://vendor.example.com/login?x=1"), "https://vendor.example.com/login")
    page = FakePage([""], visible_selectors={"#password"})
    assert await is_on_login_page(page, "https://vendor.example.com/login", ["", "#password"])
    assert not await is_on_login_page(FakePage([""]), "https://vendor.example.com/login", ["#password"])


@pytest.mark.asyncio
async def test_strong_hint_escalates_once_then_resumes(logger) -> None:
    page = FakePage(["请完成验证", "请完成验证", "请完成验证", "订单列表"])
    handler = FakeHandler()
    sleep = AsyncMock()

    cleared = await ensure_no_risk(page, handler=handler, logger=logger, site_id="zanchen", sleep=sleep, clock=fake_clock(0.0))

    assert cleared is True
    handler.request_attention.assert_awaited_once_with("检测到验证提示: 请完成验证")
    handler.resume.assert_awaited_once()
    handler.cooling_down.assert_not_awaited()
    assert sleep.await_count == 3


@pytest.mark.asyncio
async def test_weak_hint_only_cools_down(logger) -> None:
    page = FakePage(["访问频繁", "订单列表"])
    handler = FakeHandler()
    sleep = AsyncMock()

    cleared = await ensure_no_risk(page, handler=handler, logger=logger, site_id="zanchen", sleep=sleep, clock=fake_clock(0.0))

    assert cleared is True
    handler.cooling_down.assert_awaited_once()
    handler.request_attention.assert_not_awaited()
    handler.resume.assert_not_awaited()
    (delay,), _ = sleep.await_args
    assert 15.0 <= delay <= 30.0


@pytest.mark.asyncio
async def test_unresolved_challenge_times_out(logger, log_stream) -> None:
    page = FakePage(["滑动验证"])
    handler = FakeHandler()
    sleep = AsyncMock()

    cleared = await ensure_no_risk(
        page,
        handler=handler,
        logger=logger,
        site_id="zanchen",
        timeout=10,
        sleep=sleep,
        clock=fake_clock(0.0, 1.0, 11.0),
    )

    assert cleared is False
    handler.request_attention.assert_awaited_once()
    handler.resume.assert_not_awaited()
    assert "风控等待超时" in log_stream.getvalue()


@pytest.mark.asyncio
async def test_clean_page_returns_immediately(logger) -> None:
    handler = FakeHandler()
    sleep = AsyncMock()

    assert await ensure_no_risk(FakePage(["订单列表"]), handler=handler, logger=logger, site_id="zanchen", sleep=sleep)
    sleep.assert_not_awaited()
    handler.resume.assert_not_awaited()


ORDER_LIST_TEXT = "订单编号: ZC20240101000001 收货地址: 上海市 风控信息 【风控建议】 通过 订单详情 待发货"


def test_order_list_risk_columns_are_not_a_challenge() -> None:
    assert classify_risk(ORDER_LIST_TEXT) is None
    assert classify_risk(ORDER_LIST_TEXT + " 操作过于频繁").level is RiskLevel.WEAK


@pytest.mark.asyncio
async def test_order_list_page_passes_without_cooldown(logger) -> None:
    handler = FakeHandler()
    sleep = AsyncMock()

    cleared = await ensure_no_risk(
        FakePage([ORDER_LIST_TEXT]), handler=handler, logger=logger, site_id="zanchen", sleep=sleep, clock=fake_clock(0.0)
    )

    assert cleared is True
    handler.cooling_down.assert_not_awaited()
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_persistent_weak_hint_continues_after_one_cooldown(logger, log_stream) -> None:
    handler = FakeHandler()
    sleep = AsyncMock()

    cleared = await ensure_no_risk(
        FakePage([ORDER_LIST_TEXT + " 访问频繁"]),
        handler=handler,
        logger=logger,
        site_id="zanchen",
        sleep=sleep,
        clock=fake_clock(0.0),
    )

    assert cleared is True
    handler.cooling_down.assert_awaited_once()
    handler.request_attention.assert_not_awaited()
    assert sleep.await_count == 1
    assert "冷却后仍有风控提示" in log_stream.getvalue()
