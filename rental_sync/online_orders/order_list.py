"""Locate the order list, enumerate its rows and walk the pagination."""

from __future__ import annotations

import contextlib
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from playwright.async_api import Page

from rental_sync.common.json_logger import JsonLogger, log_event
from rental_sync.online_orders.site_config import SiteSelectors

FRAME_RESOLVE_ATTEMPTS = 10
FRAME_RESOLVE_DELAY_MS = 1000
CHILD_COUNT_ATTEMPTS = 10
CONTAINER_VISIBLE_TIMEOUT_MS = 15000
CONTAINER_ATTACH_TIMEOUT_MS = 5000
FIRST_ROW_TIMEOUT_MS = 10000
NEXT_CLICK_TIMEOUT_MS = 5000
AFTER_CLICK_CONTAINER_TIMEOUT_MS = 10000
PAGE_ONE_SELECTOR = "#foreach_page > li:nth-child(1) > a"
PAGINATION_CONTAINER = "#foreach_page"
OPS_SELECTOR = "div.ops.list-inner"

REMOVE_BACKDROPS_SCRIPT = """
() => {
  document.querySelectorAll('.modal-backdrop, .modal').forEach((el) => {
    if (el.classList.contains('modal-backdrop') || (el.classList.contains('modal') && el.style.display === 'none')) {
      el.remove();
    }
  });
}
"""

HEADER_TEXTS_SCRIPT = """
(row) => {
  const table = row.closest('table');
  if (!table) return null;
  let headers = Array.from(table.querySelectorAll('thead th')).map((th) => (th.textContent || '').trim()).filter(Boolean);
  if (headers.length === 0) {
    headers = Array.from(table.querySelectorAll('th')).map((th) => (th.textContent || '').trim()).filter(Boolean);
  }
  return headers.length > 0 ? headers : null;
}
"""

ROW_CELLS_SCRIPT = """
(row, headers) => {
  const cells = Array.from(row.querySelectorAll('td'));
  if (cells.length === 0) return null;
  const data = {};
  headers.forEach((header, index) => {
    const cell = cells[index];
    if (!cell) return;
    const value = (cell.innerText || cell.textContent || '').trim();
    if (value) data[header] = value;
  });
  return Object.keys(data).length > 0 ? data : null;
}
"""


@dataclass
class RawRow:
    handle: Any
    text: str
    cells: Dict[str, str] = field(default_factory=dict)
    ops_text: str = ""


@dataclass
class PageSummary:
    pending_count: Optional[int]
    row_count: int
    row_selector: str


def sanitize_selector(raw: Optional[str]) -> str:
    text = (raw or "").strip()
    if not text:
        return ""
    text = re.sub(r"([>+~]\s*)+$", "", text)
    text = re.sub(r",\s*$", "", text)
    return text.strip()


def normalize_row_selector(raw: str, container: str) -> str:
    row = sanitize_selector(raw)
    parent = sanitize_selector(container)
    if not row:
        return ""
    if not parent:
        return row
    if row.startswith(">"):
        return f"{parent} {row}"
    if row.startswith(":scope"):
        return f"{parent}{row[len(':scope'):]}"
    return row


async def wait_random(scope: Any, min_ms: int, max_ms: int) -> None:
    await scope.wait_for_timeout(random.randint(min_ms, max(min_ms, max_ms)))


async def open_order_list(page: Page, selectors: SiteSelectors) -> None:
    target = selectors.get("order_menu_link")
    if not target:
        return
    if target.startswith("http"):
        if page.url != target:
            await page.goto(target, wait_until="domcontentloaded")
        return
    await page.click(target)


async def resolve_order_frame(
    page: Page,
    selectors: SiteSelectors,
    *,
    logger: JsonLogger,
    site_id: str,
    attempts: int = FRAME_RESOLVE_ATTEMPTS,
) -> Any:
    """Return the page or child frame holding the list container."""

    container = sanitize_selector(selectors.container)
    if not container:
        return page
    for _ in range(attempts):
        with contextlib.suppress(Exception):
            if await page.query_selector(container):
                return page
        for frame in page.frames:
            if frame == page.main_frame:
                continue
            try:
                found = await frame.query_selector(container)
            except Exception:
                continue
            if found:
                log_event(
                    logger=logger,
                    phase="order_list",
                    message=f"订单列表位于子框架: {frame.url or frame.name or 'unknown'}",
                    site_id=site_id,
                )
                return frame
        await page.wait_for_timeout(FRAME_RESOLVE_DELAY_MS)
    log_event(
        logger=logger,
        phase="order_list",
        status="warn",
        message="未在任何框架中找到订单列表容器，使用主页面",
        site_id=site_id,
    )
    return page


async def build_template_selectors(scope: Any, selectors: SiteSelectors, *, logger: JsonLogger, site_id: str) -> List[str]:
    template = selectors.row_template
    if not template:
        return []
    container = sanitize_selector(selectors.container)
    start = selectors.template_index("order_row_index_start", 1) or 1
    step = max(selectors.template_index("order_row_index_step", 1) or 1, 1)
    end = selectors.template_index("order_row_index_end", 0) or 0
    if not end and container:
        for _ in range(CHILD_COUNT_ATTEMPTS):
            try:
                end = await scope.eval_on_selector_all(f"{container} > *", "els => els.length")
            except Exception as exc:
                log_event(
                    logger=logger,
                    phase="order_list",
                    status="warn",
                    message=f"统计容器子元素失败: {exc}",
                    site_id=site_id,
                )
                end = 0
                break
            if end:
                break
            await scope.wait_for_timeout(1000)
        log_event(logger=logger, phase="order_list", message=f"容器子元素数量: {end}", site_id=site_id)
    if not end:
        return []
    built = []
    for index in range(start, end + 1, step):
        normalized = normalize_row_selector(template.replace("{i}", str(index)), container)
        if normalized:
            built.append(normalized)
    return built


async def resolve_row_selector(scope: Any, selectors: SiteSelectors, *, logger: JsonLogger, site_id: str) -> str:
    """Explicit selectors, then the index template, then structural guesses."""

    container = sanitize_selector(selectors.container)
    explicit = [normalize_row_selector(raw, container) for raw in selectors.row_selectors]
    explicit = [selector for selector in explicit if selector]
    if explicit:
        return ", ".join(explicit)

    templated = await build_template_selectors(scope, selectors, logger=logger, site_id=site_id)
    if templated:
        return ", ".join(templated)

    if not container:
        return ""
    with contextlib.suppress(Exception):
        await scope.wait_for_selector(container, state="attached", timeout=CONTAINER_ATTACH_TIMEOUT_MS)
    try:
        div_count = await scope.eval_on_selector_all(f"{container} > div", "els => els.length")
        if div_count:
            log_event(logger=logger, phase="order_list", message=f"回退: 容器内找到 {div_count} 个 div 行", site_id=site_id)
            return f"{container} > div"
        tr_count = await scope.eval_on_selector_all(f"{container} tr", "els => els.length")
        if tr_count:
            log_event(logger=logger, phase="order_list", message=f"回退: 容器内找到 {tr_count} 个表格行", site_id=site_id)
            return f"{container} tr"
    except Exception as exc:
        log_event(logger=logger, phase="order_list", status="warn", message=f"行选择器探测失败: {exc}", site_id=site_id)
    return f"{container} > div, {container} tr"


async def wait_for_list(scope: Any, selectors: SiteSelectors, *, logger: JsonLogger, site_id: str) -> None:
    container = sanitize_selector(selectors.container)
    if not container:
        return
    try:
        await scope.wait_for_selector(container, state="visible", timeout=CONTAINER_VISIBLE_TIMEOUT_MS)
        if selectors.row_template:
            start = selectors.template_index("order_row_index_start", 1) or 1
            first_row = normalize_row_selector(selectors.row_template.replace("{i}", str(start)), container)
            if first_row:
                with contextlib.suppress(Exception):
                    await scope.wait_for_selector(first_row, state="attached", timeout=FIRST_ROW_TIMEOUT_MS)
    except Exception:
        log_event(
            logger=logger,
            phase="order_list",
            status="warn",
            message="等待订单列表容器超时，继续执行",
            site_id=site_id,
        )


async def read_pending_count(scope: Any, selectors: SiteSelectors) -> Optional[int]:
    selector = selectors.pending_count
    if not selector:
        return None
    try:
        text = await scope.text_content(selector, timeout=CONTAINER_ATTACH_TIMEOUT_MS)
    except Exception:
        return None
    match = re.search(r"\d+", text or "")
    return int(match.group(0)) if match else None


async def _row_cells(handle: Any, headers: Optional[List[str]]) -> Dict[str, str]:
    if not headers:
        return {}
    try:
        cells = await handle.evaluate(ROW_CELLS_SCRIPT, headers)
    except Exception:
        return {}
    return {str(key): str(value) for key, value in (cells or {}).items()}


async def _ops_text(handle: Any) -> str:
    try:
        ops = await handle.query_selector(OPS_SELECTOR)
        if ops is None:
            return ""
        return (await ops.inner_text()) or ""
    except Exception:
        return ""


async def collect_rows(
    scope: Any, selectors: SiteSelectors, *, logger: JsonLogger, site_id: str
) -> tuple[PageSummary, List[RawRow]]:
    pending = await read_pending_count(scope, selectors)
    row_selector = await resolve_row_selector(scope, selectors, logger=logger, site_id=site_id)
    if not row_selector:
        log_event(logger=logger, phase="order_list", status="warn", message="未能解析行选择器", site_id=site_id)
        return PageSummary(pending, 0, ""), []
    try:
        handles = await scope.query_selector_all(row_selector)
    except Exception as exc:
        log_event(logger=logger, phase="order_list", status="warn", message=f"提取行失败: {exc}", site_id=site_id)
        return PageSummary(pending, 0, row_selector), []

    headers: Optional[List[str]] = None
    if handles:
        with contextlib.suppress(Exception):
            headers = await handles[0].evaluate(HEADER_TEXTS_SCRIPT)

    rows: List[RawRow] = []
    for index, handle in enumerate(handles):
        if index and index % 5 == 0:
            await wait_random(scope, 200, 700)
        try:
            text = (await handle.inner_text()) or ""
        except Exception as exc:
            log_event(logger=logger, phase="order_list", status="warn", message=f"读取第 {index + 1} 行失败: {exc}", site_id=site_id)
            continue
        if not text.strip():
            continue
        rows.append(
            RawRow(handle=handle, text=text, cells=await _row_cells(handle, headers), ops_text=await _ops_text(handle))
        )
    log_event(
        logger=logger,
        phase="order_list",
        message=f"使用选择器提取到 {len(handles)} 行: {row_selector[:100]}",
        site_id=site_id,
    )
    return PageSummary(pending, len(handles), row_selector), rows


async def reset_to_first_page(scope: Any, *, logger: JsonLogger, site_id: str) -> None:
    try:
        if not await scope.is_visible(PAGE_ONE_SELECTOR):
            return
        active = await scope.eval_on_selector(
            "#foreach_page > li:nth-child(1)", "el => el.classList.contains('active')"
        )
        if active:
            return
        log_event(logger=logger, phase="pagination", message="重置到第 1 页", site_id=site_id)
        await scope.click(PAGE_ONE_SELECTOR)
        await wait_random(scope, 1500, 2500)
    except Exception as exc:
        log_event(logger=logger, phase="pagination", status="warn", message=f"跳过第 1 页重置: {exc}", site_id=site_id)


# ── Pagination ─────────────────────────────────────────────────────────────


def looks_like_next(text: str) -> bool:
    stripped = text.strip()
    return "下一页" in stripped or "Next" in stripped or "»" in stripped or stripped == ">"


async def _text_of(handle: Any) -> str:
    try:
        return ((await handle.inner_text()) or "").strip()
    except Exception:
        return ""


async def find_next_control(scope: Any, selectors: SiteSelectors, *, logger: JsonLogger, site_id: str) -> Any:
    configured = selectors.pagination_next
    if configured:
        with contextlib.suppress(Exception):
            candidate = await scope.query_selector(configured)
            if candidate is not None:
                text = await _text_of(candidate)
                if looks_like_next(text):
                    return candidate
                log_event(
                    logger=logger,
                    phase="pagination",
                    status="warn",
                    message=f"分页选择器匹配到的文本为 \"{text}\"，不像下一页按钮",
                    site_id=site_id,
                )

    container = None
    with contextlib.suppress(Exception):
        container = await scope.query_selector(PAGINATION_CONTAINER)
    if container is not None:
        for item in await container.query_selector_all("li, a"):
            text = await _text_of(item)
            if re.fullmatch(r"\d+", text):
                continue
            if looks_like_next(text):
                return item

    for candidate in await scope.query_selector_all("a, li, button"):
        text = await _text_of(candidate)
        if len(text) >= 20 or re.fullmatch(r"\d+", text):
            continue
        if "下一页" in text or text in ("Next", "Next Page", "»", ">"):
            return candidate
    return None


async def is_disabled(handle: Any) -> bool:
    aria = await handle.get_attribute("aria-disabled")
    disabled = await handle.get_attribute("disabled")
    class_name = await handle.get_attribute("class") or ""
    return aria == "true" or disabled is not None or "disabled" in class_name or "is-disabled" in class_name


async def click_next(scope: Any, handle: Any, *, logger: JsonLogger, site_id: str) -> bool:
    with contextlib.suppress(Exception):
        await scope.evaluate(REMOVE_BACKDROPS_SCRIPT)
    with contextlib.suppress(Exception):
        await handle.scroll_into_view_if_needed()
    try:
        await handle.click(timeout=NEXT_CLICK_TIMEOUT_MS, force=True)
        return True
    except Exception as exc:
        log_event(
            logger=logger,
            phase="pagination",
            status="warn",
            message=f"点击下一页失败，尝试脚本点击: {exc}",
            site_id=site_id,
        )
    try:
        await handle.evaluate("el => el.click()")
        return True
    except Exception as exc:
        log_event(logger=logger, phase="pagination", status="error", message=f"脚本点击也失败: {exc}", site_id=site_id)
        return False


PageCallback = Callable[[int], Awaitable[bool]]


async def traverse_pages(
    scope: Any,
    selectors: SiteSelectors,
    *,
    max_pages: int,
    on_page: PageCallback,
    logger: JsonLogger,
    site_id: str,
) -> int:
    """Call ``on_page`` for every list page; returns the number of pages visited.

    Stops at the page cap (0 means unlimited), when the callback returns
    False, or when no enabled and verified next-page control remains.
    """

    visited = 0
    container = sanitize_selector(selectors.container)
    while True:
        keep_going = await on_page(visited + 1)
        visited += 1
        if not keep_going:
            break
        if max_pages > 0 and visited >= max_pages:
            log_event(logger=logger, phase="pagination", message=f"已达到最大页数 {max_pages}", site_id=site_id)
            break
        if not selectors.pagination_next:
            break
        next_control = await find_next_control(scope, selectors, logger=logger, site_id=site_id)
        if next_control is None:
            log_event(logger=logger, phase="pagination", message="未找到可确认的下一页按钮，停止翻页", site_id=site_id)
            break
        if await is_disabled(next_control):
            log_event(logger=logger, phase="pagination", message="下一页按钮已禁用，已到最后一页", site_id=site_id)
            break
        await wait_random(scope, 600, 1400)
        if not await click_next(scope, next_control, logger=logger, site_id=site_id):
            break
        if container:
            with contextlib.suppress(Exception):
                await scope.wait_for_selector(container, timeout=AFTER_CLICK_CONTAINER_TIMEOUT_MS)
        await wait_random(scope, 800, 1600)
    return visited
