"""Anti-automation challenge detection and the bounded wait around it.

Classification is a pure function over page text plus a "challenge widget is
visible" flag. A weak hint alone (rate-limit wording, generic security
notices) only triggers a randomized cooldown; anything strong parks the run
in ``awaiting_user`` until a human clears it or the wait times out.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from rental_sync.common.json_logger import JsonLogger, log_event

STRONG_KEYWORDS: Sequence[str] = (
    "安全验证",
    "验证码",
    "短信验证码",
    "短信校验",
    "短信验证",
    "手机验证",
    "手机号验证",
    "身份验证",
    "身份校验",
    "人机验证",
    "人机识别",
    "请完成验证",
    "滑动验证",
    "拖动滑块",
    "验证失败",
    "验证超时",
    "验证已过期",
    "校验失败",
    "请先验证",
    "请先完成验证",
    "请先安全验证",
)

WEAK_KEYWORDS: Sequence[str] = (
    "触发风控",
    "风控拦截",
    "安全检测",
    "安全中心",
    "安全提醒",
    "安全确认",
    "安全校验",
    "风险验证",
    "异常验证",
    "异常校验",
    "异常操作",
    "异常登录",
    "账号异常",
    "账户异常",
    "操作过于频繁",
    "访问频繁",
    "请求频繁",
    "访问受限",
    "暂时无法访问",
    "风险提示",
    "存在风险",
    "需要验证",
    "需要校验",
    "检测到异常",
)

WIDGET_SELECTORS: Sequence[str] = (
    ".geetest_panel",
    ".geetest_container",
    ".geetest_holder",
    ".nc-container",
    ".nc_scale",
    ".captcha",
    ".captcha_container",
    ".captcha-box",
    ".captcha-modal",
    ".slider",
    "iframe[src*='captcha']",
    "iframe[src*='verify']",
    "iframe[src*='geetest']",
    "iframe[src*='gjcaptcha']",
    "iframe[src*='tencent']",
    "iframe[src*='aliyun']",
    "iframe[src*='hcaptcha']",
    "iframe[src*='recaptcha']",
    "img[alt*='验证码']",
    "input[name*='captcha']",
    "input[name*='verify']",
)

# Column labels rendered inside order rows, not challenge notices.
LIST_CONTENT_MARKERS: Sequence[str] = ("【风控建议】", "风控建议", "风控信息", "风控结果", "风控等级")

RISK_WAIT_TIMEOUT_SECONDS = 5 * 60
RISK_POLL_SECONDS = 1.2
WEAK_COOLDOWN_RANGE = (15.0, 30.0)


class RiskLevel(str, Enum):
    WEAK = "weak"
    STRONG = "strong"


@dataclass(frozen=True)
class RiskHint:
    level: RiskLevel
    reason: str


def strip_list_content(text: str) -> str:
    for marker in LIST_CONTENT_MARKERS:
        text = text.replace(marker, " ")
    return text


def classify_risk(text: str, widget_visible: bool = False) -> Optional[RiskHint]:
    body = strip_list_content(text or "")
    strong = next((keyword for keyword in STRONG_KEYWORDS if keyword in body), None)
    if strong:
        return RiskHint(RiskLevel.STRONG, f"检测到验证提示: {strong}")
    weak = next((keyword for keyword in WEAK_KEYWORDS if keyword in body), None)
    if weak and widget_visible:
        return RiskHint(RiskLevel.STRONG, f"检测到风控提示且出现验证组件: {weak}")
    if widget_visible:
        return RiskHint(RiskLevel.STRONG, "检测到验证组件")
    if weak:
        return RiskHint(RiskLevel.WEAK, f"检测到风控提示: {weak}")
    return None


async def _page_text(page: Any) -> str:
    try:
        return await page.evaluate("() => document.body ? document.body.innerText : ''") or ""
    except Exception:
        return ""


async def is_widget_visible(page: Any, selectors: Sequence[str] = WIDGET_SELECTORS) -> bool:
    for selector in selectors:
        try:
            if await page.locator(selector).first.is_visible():
                return True
        except Exception:
            continue
    return False


async def detect_risk(page: Any) -> Optional[RiskHint]:
    text = await _page_text(page)
    return classify_risk(text, await is_widget_visible(page))


async def is_on_login_page(page: Any, login_url: str, login_selectors: Sequence[str] = ()) -> bool:
    current = getattr(page, "url", "") or ""
    if login_url and current.startswith(login_url):
        return True
    for selector in login_selectors:
        if not selector:
            continue
        try:
            if await page.locator(selector).first.is_visible():
                return True
        except Exception:
            continue
    return False


class AttentionHandler(Protocol):
    async def request_attention(self, reason: str) -> None: ...

    async def cooling_down(self, message: str) -> None: ...

    async def resume(self, message: str) -> None: ...


async def ensure_no_risk(
    page: Any,
    *,
    handler: AttentionHandler,
    logger: JsonLogger,
    site_id: str,
    login_url: str = "",
    login_selectors: Sequence[str] = (),
    timeout: float = RISK_WAIT_TIMEOUT_SECONDS,
    poll_interval: float = RISK_POLL_SECONDS,
    cooldown_range: tuple[float, float] = WEAK_COOLDOWN_RANGE,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Block until the page is free of challenges; False when the wait timed out.

    A weak hint gets a single cooldown per call. If it is still there afterwards
    the run carries on.
    """

    deadline = clock() + timeout
    escalated = False
    cooled_down = False
    while True:
        if await is_on_login_page(page, login_url, login_selectors):
            hint: Optional[RiskHint] = RiskHint(RiskLevel.STRONG, "会话已失效，需要重新登录")
        else:
            hint = await detect_risk(page)

        if hint is None:
            if escalated:
                await handler.resume("验证已完成，继续同步")
            return True

        if clock() >= deadline:
            log_event(
                logger=logger,
                phase="risk",
                status="error",
                message=f"风控等待超时: {hint.reason}",
                site_id=site_id,
            )
            return False

        if hint.level is RiskLevel.WEAK:
            if cooled_down:
                log_event(
                    logger=logger,
                    phase="risk",
                    status="warn",
                    message=f"冷却后仍有风控提示，继续同步: {hint.reason}",
                    site_id=site_id,
                )
                if escalated:
                    await handler.resume("验证已完成，继续同步")
                return True
            cooled_down = True
            cooldown = random.uniform(*cooldown_range)
            await handler.cooling_down(f"{hint.reason}，冷却 {cooldown:.0f} 秒后重试")
            escalated = False
            await sleep(cooldown)
            continue

        if not escalated:
            escalated = True
            await handler.request_attention(hint.reason)
        await sleep(poll_interval)
