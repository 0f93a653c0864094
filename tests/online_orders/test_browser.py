from unittest.mock import AsyncMock, MagicMock

import pytest

from rental_sync.online_orders.browser import (
    BrowserSession,
    is_browser_closed_error,
    login_selectors,
    probe_session,
    resolve_headless,
)
from rental_sync.online_orders.site_config import SiteConfig, SiteSelectors


def _fake_page(url: str = "https://vendor.example.com/orders"):
    page = MagicMock()
    page.url = url
    page.is_closed.return_value = False
    page.mouse.click = AsyncMock()
    page.keyboard.type = AsyncMock()
    page.evaluate = AsyncMock(return_value="订单列表")
    page.locator.return_value.first.is_visible = AsyncMock(return_value=False)
    return page


def _site() -> SiteConfig:
    return SiteConfig(
        id="zanchen",
        name="赞晨",
        enabled=True,
        login_url="https://vendor.example.com/login",
        username="ops",
        password="secret",
        max_pages=0,
        selectors=SiteSelectors({"username_input": "#user", "login_button": "#submit"}),
    )


def _playwright_factory(context):
    playwright = MagicMock()
    playwright.chromium.launch_persistent_context = AsyncMock(return_value=context)
    playwright.stop = AsyncMock()
    starter = MagicMock()
    starter.start = AsyncMock(return_value=playwright)
    return (lambda: starter), playwright


@pytest.mark.asyncio
async def test_ensure_page_launches_once_and_reuses_page(tmp_path, logger) -> None:
    page = _fake_page()
    context = MagicMock()
    context.pages = []
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()
    factory, playwright = _playwright_factory(context)
    session = BrowserSession(profile_dir=tmp_path / "profile", logger=logger, playwright_factory=factory)

    first = await session.ensure_page(True)
    second = await session.ensure_page(True)

    assert first is page and second is page
    playwright.chromium.launch_persistent_context.assert_awaited_once()
    assert (tmp_path / "profile").is_dir()

    await session.close()
    context.close.assert_awaited_once()
    playwright.stop.assert_awaited_once()
    assert session.page is None


@pytest.mark.asyncio
async def test_interact_dispatches_mouse_and_keyboard(tmp_path, logger) -> None:
    session = BrowserSession(profile_dir=tmp_path, logger=logger)
    assert await session.interact("click", {"x": 1, "y": 2}) is False
    assert await session.screenshot() is None

    page = _fake_page()
    session._page = page

    assert await session.interact("click", {"x": 10, "y": "20"})
    page.mouse.click.assert_awaited_once_with(10.0, 20.0)
    assert await session.interact("type", {"text": "123456"})
    page.keyboard.type.assert_awaited_once_with("123456")
    with pytest.raises(ValueError):
        await session.interact("wiggle", {})


@pytest.mark.asyncio
async def test_heartbeat_start_and_stop(tmp_path, logger) -> None:
    session = BrowserSession(profile_dir=tmp_path, logger=logger)

    session.start_heartbeat(interval=3600)
    assert session.heartbeat_active
    await session.stop_heartbeat()
    assert not session.heartbeat_active


@pytest.mark.asyncio
async def test_probe_session(logger) -> None:
    site = _site()

    assert (await probe_session(_fake_page("about:blank"), site, logger=logger)).reason == "blank_page"
    assert (await probe_session(_fake_page(), site, logger=logger)).valid
    on_login = await probe_session(_fake_page("https://vendor.example.com/login"), site, logger=logger)
    assert not on_login.valid


def test_helpers() -> None:
    assert login_selectors(_site()) == ["#user", "#submit"]
    assert is_browser_closed_error(RuntimeError("Target page, context or browser has been closed"))
    assert not is_browser_closed_error(RuntimeError("boom"))


@pytest.mark.asyncio
async def test_order_list_with_risk_columns_is_a_valid_session(logger) -> None:
    page = _fake_page()
    page.evaluate = AsyncMock(return_value="订单列表 风控信息 【风控建议】 通过 待发货")

    assert (await probe_session(page, _site(), logger=logger)).valid


def test_headless_forced_without_display_on_linux(monkeypatch) -> None:
    monkeypatch.setattr("sys.platform", "linux")

    assert resolve_headless(False, None) is True
    assert resolve_headless(False, ":0") is False
    assert resolve_headless(True, ":0") is True
