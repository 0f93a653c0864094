"""Session manager: one persistent Chromium profile reused across runs."""

from __future__ import annotations

import asyncio
import contextlib
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from playwright.async_api import BrowserContext, Page, TimeoutError, async_playwright

from rental_sync.common.json_logger import JsonLogger, log_event
from rental_sync.online_orders.risk import RiskLevel, detect_risk, is_on_login_page
from rental_sync.online_orders.site_config import SiteConfig

HEARTBEAT_INTERVAL_SECONDS = 60
SESSION_PROBE_TIMEOUT_SECONDS = 3
LOGIN_CONFIRM_TIMEOUT_SECONDS = 8
LOGIN_POLL_SECONDS = 0.8
BLANK_URLS = {"", "about:blank", "chrome://newtab/", "chrome://newtab"}
BROWSER_CLOSED_MARKER = "Target page, context or browser has been closed"

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-gpu",
    "--disable-dev-shm-usage",
]

HEARTBEAT_SCRIPT = """
() => {
  try {
    fetch(location.href, { method: "GET", cache: "no-store" }).catch(() => undefined);
    document.dispatchEvent(new Event("mousemove"));
    document.dispatchEvent(new Event("keydown"));
  } catch (e) {}
}
"""


def is_browser_closed_error(exc: BaseException) -> bool:
    return BROWSER_CLOSED_MARKER in str(exc)


def resolve_headless(requested: bool, display: str | None) -> bool:
    if sys.platform.startswith("linux") and not display:
        return True
    return requested


@dataclass
class SessionProbeResult:
    valid: bool
    final_url: str | None
    reason: str | None = None


class BrowserSession:
    """Owns the Playwright driver, the persistent context and its single working page."""

    def __init__(
        self,
        *,
        profile_dir: Path,
        logger: JsonLogger,
        chrome_executable: str | None = None,
        display: str | None = None,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self.profile_dir = Path(profile_dir)
        self.logger = logger
        self.chrome_executable = chrome_executable
        self.display = display
        self._playwright_factory = playwright_factory
        self._playwright: Any = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._headless: Optional[bool] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    @property
    def page(self) -> Optional[Page]:
        if self._page is None:
            return None
        try:
            if self._page.is_closed():
                return None
        except Exception:
            return None
        return self._page

    @property
    def heartbeat_active(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    async def _launch_context(self, headless: bool) -> BrowserContext:
        if self._playwright is None:
            self._playwright = await self._playwright_factory().start()
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        launch_kwargs: Dict[str, Any] = {
            "headless": headless,
            "viewport": {"width": 1280, "height": 720},
            "args": LAUNCH_ARGS,
            "ignore_default_args": ["--enable-automation"],
        }
        if self.chrome_executable and Path(self.chrome_executable).is_file():
            launch_kwargs["executable_path"] = self.chrome_executable
        log_event(
            logger=self.logger,
            phase="browser",
            message=f"启动浏览器 (headless={headless})",
            profile_dir=str(self.profile_dir),
            executable_path=launch_kwargs.get("executable_path"),
        )
        try:
            return await self._playwright.chromium.launch_persistent_context(str(self.profile_dir), **launch_kwargs)
        except Exception as exc:
            if launch_kwargs.pop("executable_path", None) is None:
                raise
            log_event(
                logger=self.logger,
                phase="browser",
                status="warn",
                message="Local Chrome launch failed; retrying with bundled Chromium",
                error=str(exc),
            )
            return await self._playwright.chromium.launch_persistent_context(str(self.profile_dir), **launch_kwargs)

    async def ensure_page(self, headless: bool) -> Page:
        effective = resolve_headless(headless, self.display)
        if self._context is not None and self._headless is not None and self._headless != effective:
            await self.reset()
        if self._context is not None:
            try:
                self._context.pages
            except Exception:
                self._context = None
                self._page = None
        if self._context is None:
            self._context = await self._launch_context(effective)
            self._headless = effective
            self._page = None

        page = self.page
        if page is not None:
            return page
        pages = self._context.pages
        self._page = pages[0] if pages else await self._context.new_page()
        return self._page

    async def reset(self) -> None:
        """Drop the context so the next ``ensure_page`` relaunches it."""

        await self.stop_heartbeat()
        if self._context is not None:
            with contextlib.suppress(Exception):
                await self._context.close()
        self._context = None
        self._page = None
        self._headless = None

    async def close(self) -> None:
        await self.reset()
        if self._playwright is not None:
            with contextlib.suppress(Exception):
                await self._playwright.stop()
        self._playwright = None

    # ── Heartbeat ─────────────────────────────────────────────────────────

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            page = self.page
            if page is None:
                continue
            try:
                await page.evaluate(HEARTBEAT_SCRIPT)
            except Exception as exc:
                log_event(logger=self.logger, phase="heartbeat", status="warn", message=f"心跳失败: {exc}")

    def start_heartbeat(self, interval: float = HEARTBEAT_INTERVAL_SECONDS) -> None:
        if self.heartbeat_active:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(interval))

    async def stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ── Remote intervention ───────────────────────────────────────────────

    async def screenshot(self) -> Optional[bytes]:
        page = self.page
        if page is None:
            return None
        return await page.screenshot(type="jpeg", quality=60)

    async def interact(self, action: str, params: Dict[str, Any]) -> bool:
        page = self.page
        if page is None:
            return False
        x = float(params.get("x", 0))
        y = float(params.get("y", 0))
        if action == "click":
            await page.mouse.click(x, y)
        elif action == "move":
            await page.mouse.move(x, y)
        elif action == "down":
            await page.mouse.move(x, y)
            await page.mouse.down()
        elif action == "up":
            await page.mouse.move(x, y)
            await page.mouse.up()
        elif action == "type":
            await page.keyboard.type(str(params.get("text", "")))
        elif action == "press":
            await page.keyboard.press(str(params.get("key", "Enter")))
        elif action == "scroll":
            await page.mouse.wheel(float(params.get("deltaX", 0)), float(params.get("deltaY", 0)))
        elif action == "reload":
            await page.reload(wait_until="domcontentloaded")
        elif action == "goto":
            await page.goto(str(params["url"]), wait_until="domcontentloaded")
        else:
            raise ValueError(f"Unsupported action: {action}")
        return True


# ── Login helpers ──────────────────────────────────────────────────────────


def login_selectors(site: SiteConfig) -> list[str]:
    return [
        selector
        for selector in (
            site.selectors.get("username_input"),
            site.selectors.get("password_input"),
            site.selectors.get("login_button"),
        )
        if selector
    ]


async def wait_until_logged_in(
    page: Page,
    site: SiteConfig,
    *,
    timeout: float,
    poll: float = LOGIN_POLL_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        on_login = await is_on_login_page(page, site.login_url, login_selectors(site))
        if not on_login and (page.url or "") not in BLANK_URLS:
            hint = await detect_risk(page)
            if hint is None or hint.level is RiskLevel.WEAK:
                return True
        if time.monotonic() >= deadline:
            return False
        await sleep(poll)


async def probe_session(page: Page, site: SiteConfig, *, logger: JsonLogger) -> SessionProbeResult:
    final_url = page.url or ""
    if final_url in BLANK_URLS:
        return SessionProbeResult(valid=False, final_url=final_url, reason="blank_page")
    valid = await wait_until_logged_in(page, site, timeout=SESSION_PROBE_TIMEOUT_SECONDS)
    reason = None if valid else "login_or_risk_detected"
    log_event(
        logger=logger,
        phase="session",
        status="ok" if valid else "warn",
        message="检测到已登录会话，跳过登录" if valid else "现有会话无效，需要重新登录",
        site_id=site.id,
        final_url=page.url,
        invalid_reason=reason,
    )
    return SessionProbeResult(valid=valid, final_url=page.url, reason=reason)


async def perform_login(page: Page, site: SiteConfig, *, logger: JsonLogger) -> None:
    if not (page.url or "").startswith(site.login_url):
        await page.goto(site.login_url, wait_until="domcontentloaded")
    username_selector = site.selectors.get("username_input")
    password_selector = site.selectors.get("password_input")
    submit_selector = site.selectors.get("login_button")
    missing = [name for name, value in (("username_input", username_selector), ("login_button", submit_selector)) if not value]
    if missing:
        log_event(
            logger=logger,
            phase="login",
            status="warn",
            message="登录选择器缺失，等待人工登录",
            site_id=site.id,
            missing_selectors=missing,
        )
    try:
        if username_selector and site.username:
            await page.fill(username_selector, site.username)
        if password_selector and site.password:
            await page.fill(password_selector, site.password)
        if submit_selector:
            await page.click(submit_selector)
    except TimeoutError as exc:
        log_event(
            logger=logger,
            phase="login",
            status="warn",
            message=f"登录表单操作超时: {exc}",
            site_id=site.id,
        )
        return
    with contextlib.suppress(TimeoutError):
        await page.wait_for_load_state("domcontentloaded")
