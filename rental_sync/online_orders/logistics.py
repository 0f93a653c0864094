"""Logistics enrichment for list rows: the quick-view modal and the detail tab.

Text parsing is kept in pure functions so it can be exercised without a
browser; the async helpers only locate, open and close the right DOM.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urljoin

from rental_sync.common.json_logger import JsonLogger, log_event
from rental_sync.online_orders.order_list import wait_random

MODAL_TRIGGER_SELECTOR = "div.ops.list-inner > a.op.text-primary"
DETAIL_LINK_SELECTOR = "div.ops.list-inner > a.order_detail_key"
MODAL_SELECTOR = "#ajaxModal"
MODAL_BODY_SELECTOR = "#ajaxModal .modal-body"
MODAL_INFO_SELECTORS = (
    "#ajaxModal .list-main > div:nth-child(1) .info",
    "#ajaxModal .list-main .info",
    ".list-main .info",
)
MODAL_CLOSE_SELECTORS = (
    "#ajaxModal .modal-header .close",
    "#ajaxModal button.close",
    "#ajaxModal .modal-footer .btn",
)
DETAIL_SHIPPING_SELECTOR = "body > div.wb-container > div:nth-child(5) > div:nth-child(7) > div:nth-child(3)"
DETAIL_RETURN_SELECTOR = "body > div.wb-container > div:nth-child(5) > div:nth-child(10) > div:nth-child(2)"
DETAIL_STATUS_SELECTOR = "body > div.wb-container > div:nth-child(5) > div:nth-child(4) > div:nth-child(3) > div"

MODAL_WAIT_SECONDS = 5.0
MODAL_POLL_SECONDS = 0.2
MODAL_CONTENT_TIMEOUT_MS = 8000
MODAL_HIDE_TIMEOUT_MS = 2000
ATTEMPT_TIMEOUT_SECONDS = 15.0
DETAIL_OPEN_TIMEOUT_MS = 15000
MAX_DETAIL_LOOKUPS_PER_PAGE = 5

OFFLINE_PICKUP = "线下自提"
MODAL_STATUSES = ("待收货", "待归还", "已逾期")
DETAIL_STATUSES = ("设备归还中", "归还中", "已完成")
FINAL_VENDOR_STATUSES = ("已完成", "已关闭", "已买断", "已购买", "已取消")

_COMPANY_ALIASES = {"SFEXPRESS": "顺丰速运"}
_TRACKING_LABEL = r"(?:物流单号|单号|发货物流)"
_BRACKETED_TRACKING = re.compile(_TRACKING_LABEL + r"[:：]?\s*[（(]\s*([^）)]+)\s*[）)]")
_PLAIN_TRACKING = re.compile(_TRACKING_LABEL + r"[:：]?\s*([A-Za-z0-9\-\s]{6,})")
_MODAL_COMPANY = re.compile(r"(?:物流公司|快递公司|快递)[:：]?\s*([^\s\d:：]+)")
_ANY_BRACKETED = re.compile(r"[（(]\s*([A-Za-z0-9]+)\s*[）)]")
_CARRIER_NUMBER = re.compile(r"(SF\d{10,}|JD\d{10,}|\d{12,})")
_LEG_COMPANY = re.compile(r"(?:物流公司|快递公司)[:：]?\s*([^\s]+)")
_LEG_TRACKING = re.compile(r"(?:物流单号|运单号|发货物流)[:：]?\s*(?:[（(]\s*)?([A-Za-z0-9\s\-]+)")
_DETAIL_STATUS = re.compile(r"订单状态[:：]?\s*([^\s]+)")
_OFFLINE_HINT = re.compile(r"线下|自提|无需")


@dataclass
class LogisticsLeg:
    company: Optional[str] = None
    tracking_number: Optional[str] = None
    latest_info: Optional[str] = None
    found: bool = False

    @property
    def is_offline(self) -> bool:
        return self.company == OFFLINE_PICKUP

    def is_empty(self) -> bool:
        return not (self.company or self.tracking_number or self.latest_info)


@dataclass
class DetailLogistics:
    shipping: LogisticsLeg
    returning: LogisticsLeg
    status: Optional[str] = None


def _collapse(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _normalize_company(raw: str) -> str:
    value = raw.strip().rstrip(",，;；")
    return _COMPANY_ALIASES.get(value.upper(), value)


def parse_modal_text(text: str, latest_info: Optional[str] = None) -> LogisticsLeg:
    """Parse the quick-view modal body into an outbound leg."""

    body = _collapse(text)
    if not body:
        return LogisticsLeg()
    if "线下取货" in body or OFFLINE_PICKUP in body:
        return LogisticsLeg(company=OFFLINE_PICKUP, tracking_number="", latest_info=latest_info, found=True)

    tracking: Optional[str] = None
    bracketed = _BRACKETED_TRACKING.search(body)
    if bracketed:
        tracking = re.sub(r"\s+", "", bracketed.group(1))
    if not tracking:
        plain = _PLAIN_TRACKING.search(body)
        if plain:
            tracking = re.sub(r"\s+", "", plain.group(1))
    if not tracking:
        for candidate in _ANY_BRACKETED.findall(body):
            if len(candidate) > 8:
                tracking = candidate
                break
    if not tracking:
        carrier = _CARRIER_NUMBER.search(body)
        if carrier:
            tracking = carrier.group(1)

    company: Optional[str] = None
    for match in _MODAL_COMPANY.finditer(body):
        candidate = match.group(1)
        if any(label in candidate for label in ("物流单号", "单号", "运单号")):
            continue
        company = _normalize_company(candidate)
        break

    info = _collapse(latest_info) or None
    if tracking or company or info:
        return LogisticsLeg(company=company, tracking_number=tracking, latest_info=info, found=True)
    has_labels = any(label in body for label in ("物流公司", "快递", "物流单号", "单号"))
    return LogisticsLeg(company="", tracking_number="", found=has_labels)


def parse_detail_leg_text(text: Optional[str]) -> LogisticsLeg:
    body = (text or "").strip()
    if not body:
        return LogisticsLeg()
    if "线下取货" in body or OFFLINE_PICKUP in body:
        return LogisticsLeg(company=OFFLINE_PICKUP, tracking_number="", latest_info=_collapse(body), found=True)
    company_match = _LEG_COMPANY.search(body)
    company = _normalize_company(company_match.group(1)) if company_match else None
    tracking: Optional[str] = None
    tracking_match = _LEG_TRACKING.search(body)
    if tracking_match:
        candidate = re.sub(r"\s+", "", tracking_match.group(1))
        if len(candidate) >= 5:
            tracking = candidate
    return LogisticsLeg(
        company=company,
        tracking_number=tracking,
        latest_info=_collapse(body) or None,
        found=bool(company or tracking),
    )


def parse_detail_status(text: Optional[str]) -> Optional[str]:
    match = _DETAIL_STATUS.search(text or "")
    return match.group(1) if match else None


def merge_leg(current: LogisticsLeg, incoming: LogisticsLeg) -> LogisticsLeg:
    """Fill gaps in ``current``; a found value is never replaced by an empty one."""

    return LogisticsLeg(
        company=incoming.company or current.company,
        tracking_number=incoming.tracking_number or current.tracking_number,
        latest_info=incoming.latest_info or current.latest_info,
        found=current.found or incoming.found,
    )


# ── Routing ────────────────────────────────────────────────────────────────


def needs_logistics(vendor_status: Optional[str]) -> bool:
    if not vendor_status:
        return True
    return any(label in vendor_status for label in MODAL_STATUSES + DETAIL_STATUSES)


def prefers_modal(vendor_status: Optional[str]) -> bool:
    return bool(vendor_status) and any(label in vendor_status for label in MODAL_STATUSES)


def modal_needs_fallback(leg: LogisticsLeg) -> bool:
    """A modal result without a tracking number (and not an offline pickup) or company is incomplete."""

    if not leg.found:
        return True
    offline = leg.is_offline or bool(_OFFLINE_HINT.search(leg.company or ""))
    if not leg.tracking_number and not offline:
        return True
    return not leg.company


def skips_detail(vendor_status: Optional[str], has_logistics: bool) -> bool:
    final = bool(vendor_status) and any(label in vendor_status for label in FINAL_VENDOR_STATUSES)
    return final and has_logistics


# ── Modal path ─────────────────────────────────────────────────────────────


async def _find_modal(page: Any, scope: Any) -> Any:
    deadline = time.monotonic() + MODAL_WAIT_SECONDS
    while time.monotonic() < deadline:
        for target in (page, scope):
            with contextlib.suppress(Exception):
                modal = await target.query_selector(MODAL_SELECTOR)
                if modal is not None:
                    return target
        await asyncio.sleep(MODAL_POLL_SECONDS)
    return None


async def _close_modal(target: Any, page: Any) -> None:
    for selector in MODAL_CLOSE_SELECTORS:
        with contextlib.suppress(Exception):
            button = await target.query_selector(selector)
            if button is not None and await button.is_visible():
                await button.click(timeout=1500)
                break
    else:
        with contextlib.suppress(Exception):
            await page.keyboard.press("Escape")
    with contextlib.suppress(Exception):
        await target.wait_for_selector(MODAL_SELECTOR, state="hidden", timeout=MODAL_HIDE_TIMEOUT_MS)


async def _read_modal(target: Any) -> LogisticsLeg:
    await target.wait_for_selector(MODAL_SELECTOR, state="visible", timeout=MODAL_WAIT_SECONDS * 1000)
    with contextlib.suppress(Exception):
        await target.wait_for_function(
            "(sel) => { const el = document.querySelector(sel); return !!el && el.innerText.trim().length > 0; }",
            arg=MODAL_BODY_SELECTOR,
            timeout=MODAL_CONTENT_TIMEOUT_MS,
        )
    body = await target.inner_text(MODAL_BODY_SELECTOR)
    latest: Optional[str] = None
    for selector in MODAL_INFO_SELECTORS:
        with contextlib.suppress(Exception):
            node = await target.query_selector(selector)
            if node is not None:
                latest = _collapse(await node.inner_text()) or None
                if latest:
                    break
    return parse_modal_text(body, latest)


async def _modal_attempt(page: Any, scope: Any, row: Any) -> LogisticsLeg:
    trigger = await row.query_selector(MODAL_TRIGGER_SELECTOR)
    if trigger is None:
        return LogisticsLeg()
    await wait_random(scope, 200, 800)
    with contextlib.suppress(Exception):
        await trigger.scroll_into_view_if_needed()
    await trigger.click(timeout=1500, no_wait_after=True)
    target = await _find_modal(page, scope)
    if target is None:
        return LogisticsLeg()
    try:
        return await _read_modal(target)
    finally:
        await _close_modal(target, page)


async def extract_from_modal(
    page: Any, scope: Any, row: Any, *, order_no: str, logger: JsonLogger, site_id: str
) -> LogisticsLeg:
    """Two bounded attempts at the quick-view modal; never raises."""

    result = LogisticsLeg()
    for attempt in (1, 2):
        try:
            leg = await asyncio.wait_for(_modal_attempt(page, scope, row), timeout=ATTEMPT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            log_event(
                logger=logger,
                phase="logistics",
                status="warn",
                message=f"物流弹窗解析超时 (第 {attempt} 次)",
                site_id=site_id,
                order_nos=[order_no],
            )
            continue
        except Exception as exc:
            log_event(
                logger=logger,
                phase="logistics",
                status="warn",
                message=f"物流弹窗读取失败 (第 {attempt} 次): {exc}",
                site_id=site_id,
                order_nos=[order_no],
            )
            continue
        result = merge_leg(result, leg)
        if leg.found:
            break
    return result


# ── Detail-page path ───────────────────────────────────────────────────────


async def _close_quietly(tab: Any) -> None:
    with contextlib.suppress(Exception):
        await tab.close()


async def _open_detail_tab(page: Any, link: Any) -> Any:
    """Open the row's detail page in its own tab; the tab is closed if loading fails."""

    href = (await link.get_attribute("href") or "").strip()
    context = page.context
    if href and not href.startswith("javascript:") and href != "#":
        detail = await context.new_page()
        try:
            await detail.goto(urljoin(page.url, href), wait_until="domcontentloaded", timeout=DETAIL_OPEN_TIMEOUT_MS)
            await detail.wait_for_timeout(1000)
        except BaseException:
            await asyncio.shield(_close_quietly(detail))
            raise
        return detail
    async with context.expect_page(timeout=DETAIL_OPEN_TIMEOUT_MS) as popup:
        await link.click(modifiers=["Control"])
    detail = await popup.value
    try:
        with contextlib.suppress(Exception):
            await detail.wait_for_load_state("domcontentloaded", timeout=DETAIL_OPEN_TIMEOUT_MS)
    except BaseException:
        await asyncio.shield(_close_quietly(detail))
        raise
    return detail


async def _leg_text(detail: Any, selector: str) -> str:
    try:
        node = await detail.query_selector(selector)
        return (await node.inner_text()) if node is not None else ""
    except Exception:
        return ""


async def _detail_attempt(page: Any, row: Any) -> Optional[DetailLogistics]:
    link = await row.query_selector(DETAIL_LINK_SELECTOR)
    if link is None:
        return None
    detail = None
    try:
        detail = await _open_detail_tab(page, link)
        return DetailLogistics(
            shipping=parse_detail_leg_text(await _leg_text(detail, DETAIL_SHIPPING_SELECTOR)),
            returning=parse_detail_leg_text(await _leg_text(detail, DETAIL_RETURN_SELECTOR)),
            status=parse_detail_status(await _leg_text(detail, DETAIL_STATUS_SELECTOR)),
        )
    finally:
        if detail is not None:
            with contextlib.suppress(Exception):
                await detail.close()


async def extract_from_detail_page(
    page: Any, row: Any, *, order_no: str, logger: JsonLogger, site_id: str
) -> Optional[DetailLogistics]:
    try:
        return await asyncio.wait_for(_detail_attempt(page, row), timeout=ATTEMPT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        message = "订单详情页读取超时"
    except Exception as exc:
        message = f"订单详情页读取失败: {exc}"
    log_event(
        logger=logger,
        phase="logistics",
        status="warn",
        message=message,
        site_id=site_id,
        order_nos=[order_no],
    )
    return None
