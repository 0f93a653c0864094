from typing import Dict, List, Optional

import pytest

from rental_sync.online_orders.order_list import (
    OPS_SELECTOR,
    collect_rows,
    looks_like_next,
    normalize_row_selector,
    resolve_row_selector,
    sanitize_selector,
    traverse_pages,
)
from rental_sync.online_orders.site_config import SiteSelectors


class FakeHandle:
    def __init__(self, text: str = "", *, attrs: Optional[Dict[str, str]] = None, ops: Optional["FakeHandle"] = None) -> None:
        self.text = text
        self.attrs = attrs or {}
        self.ops = ops
        self.clicks = 0
        self.on_click = None

    async def inner_text(self) -> str:
        return self.text

    async def get_attribute(self, name: str) -> Optional[str]:
        return self.attrs.get(name)

    async def query_selector(self, selector: str):
        return self.ops if selector == OPS_SELECTOR else None

    async def evaluate(self, script: str, *args):
        return None

    async def scroll_into_view_if_needed(self) -> None:
        return None

    async def click(self, **kwargs) -> None:
        self.clicks += 1
        if self.on_click:
            self.on_click()


class FakeScope:
    def __init__(self, *, single: Optional[Dict[str, FakeHandle]] = None, many: Optional[Dict[str, List[FakeHandle]]] = None) -> None:
        self.single = single or {}
        self.many = many or {}
        self.counts: Dict[str, int] = {}
        self.texts: Dict[str, str] = {}
        self.waits: List[int] = []

    async def query_selector(self, selector: str):
        return self.single.get(selector)

    async def query_selector_all(self, selector: str):
        return list(self.many.get(selector, []))

    async def eval_on_selector_all(self, selector: str, script: str):
        return self.counts.get(selector, 0)

    async def wait_for_selector(self, selector: str, **kwargs) -> None:
        return None

    async def wait_for_timeout(self, ms: int) -> None:
        self.waits.append(ms)

    async def evaluate(self, script: str, *args) -> None:
        return None

    async def text_content(self, selector: str, **kwargs) -> Optional[str]:
        return self.texts.get(selector)


def paged_scope(total_pages: int):
    state = {"page": 1}
    button = FakeHandle("下一页")

    def advance() -> None:
        state["page"] += 1
        if state["page"] >= total_pages:
            button.attrs["class"] = "next disabled"

    button.on_click = advance
    if total_pages <= 1:
        button.attrs["class"] = "disabled"
    return FakeScope(single={"#next": button}), button, state


SELECTORS = SiteSelectors({"order_list_container": "#list", "pagination_next_selector": "#next"})


def test_selector_cleanup() -> None:
    assert sanitize_selector("  #list > ") == "#list"
    assert sanitize_selector("div.row,") == "div.row"
    assert sanitize_selector(None) == ""
    assert normalize_row_selector("> div", "#list") == "#list > div"
    assert normalize_row_selector(":scope > tr", "#list") == "#list > tr"
    assert normalize_row_selector(".order-row", "#list") == ".order-row"
    assert normalize_row_selector("> div", "") == "> div"


def test_next_button_recognition() -> None:
    assert looks_like_next("下一页")
    assert looks_like_next(" > ")
    assert looks_like_next("Next »")
    assert not looks_like_next("3")


@pytest.mark.asyncio
async def test_traverse_stops_on_disabled_next(logger) -> None:
    scope, button, _ = paged_scope(3)
    seen: List[int] = []

    async def on_page(index: int) -> bool:
        seen.append(index)
        return True

    visited = await traverse_pages(scope, SELECTORS, max_pages=0, on_page=on_page, logger=logger, site_id="zanchen")

    assert visited == 3
    assert seen == [1, 2, 3]
    assert button.clicks == 2


@pytest.mark.asyncio
async def test_traverse_respects_page_cap(logger) -> None:
    scope, button, _ = paged_scope(10)

    async def on_page(index: int) -> bool:
        return True

    assert await traverse_pages(scope, SELECTORS, max_pages=2, on_page=on_page, logger=logger, site_id="zanchen") == 2
    assert button.clicks == 1


@pytest.mark.asyncio
async def test_traverse_stops_when_callback_declines(logger) -> None:
    scope, button, _ = paged_scope(10)

    async def on_page(index: int) -> bool:
        return False

    assert await traverse_pages(scope, SELECTORS, max_pages=0, on_page=on_page, logger=logger, site_id="zanchen") == 1
    assert button.clicks == 0


@pytest.mark.asyncio
async def test_traverse_needs_a_verified_next_control(logger, log_stream) -> None:
    scope = FakeScope(single={"#next": FakeHandle("2")})

    async def on_page(index: int) -> bool:
        return True

    assert await traverse_pages(scope, SELECTORS, max_pages=0, on_page=on_page, logger=logger, site_id="zanchen") == 1
    assert "不像下一页按钮" in log_stream.getvalue()

    no_pagination = SiteSelectors({"order_list_container": "#list"})
    assert await traverse_pages(scope, no_pagination, max_pages=0, on_page=on_page, logger=logger, site_id="zanchen") == 1


@pytest.mark.asyncio
async def test_next_control_found_in_pagination_container(logger) -> None:
    scope, _, _ = paged_scope(2)
    button = scope.single.pop("#next")
    pager = FakeHandle()
    scope.single["#foreach_page"] = pager

    async def items(selector: str):
        return [FakeHandle("1"), FakeHandle("2"), button]

    pager.query_selector_all = items

    async def on_page(index: int) -> bool:
        return True

    assert await traverse_pages(scope, SELECTORS, max_pages=0, on_page=on_page, logger=logger, site_id="zanchen") == 2
    assert button.clicks == 1


@pytest.mark.asyncio
async def test_collect_rows_with_explicit_selectors(logger) -> None:
    rows = [
        FakeHandle("订单编号: ZC20240101000001", ops=FakeHandle("待发货 查看物流")),
        FakeHandle("   "),
        FakeHandle("订单编号: ZC20240101000002"),
    ]
    selectors = SiteSelectors(
        {"order_list_container": "#list", "order_row_selectors": "> div.order", "pending_count_element": "#pending"}
    )
    scope = FakeScope(many={"#list > div.order": rows})
    scope.texts["#pending"] = "待发货(12)"

    summary, collected = await collect_rows(scope, selectors, logger=logger, site_id="zanchen")

    assert summary.pending_count == 12
    assert summary.row_count == 3
    assert summary.row_selector == "#list > div.order"
    assert [row.text for row in collected] == ["订单编号: ZC20240101000001", "订单编号: ZC20240101000002"]
    assert collected[0].ops_text == "待发货 查看物流"
    assert collected[1].ops_text == ""


@pytest.mark.asyncio
async def test_row_selector_falls_back_to_template_then_structure(logger) -> None:
    templated = SiteSelectors({"order_list_container": "#list", "order_row_selector_template": "> div:nth-child({i})"})
    scope = FakeScope()
    scope.counts["#list > *"] = 3

    assert await resolve_row_selector(scope, templated, logger=logger, site_id="zanchen") == (
        "#list > div:nth-child(1), #list > div:nth-child(2), #list > div:nth-child(3)"
    )

    bare = SiteSelectors({"order_list_container": "#list"})
    table_scope = FakeScope()
    table_scope.counts["#list tr"] = 4
    assert await resolve_row_selector(table_scope, bare, logger=logger, site_id="zanchen") == "#list tr"
    assert await resolve_row_selector(FakeScope(), bare, logger=logger, site_id="zanchen") == "#list > div, #list tr"
