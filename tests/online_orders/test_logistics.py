from typing import Dict, List, Optional

import pytest

from rental_sync.online_orders.logistics import (
    DETAIL_LINK_SELECTOR,
    DETAIL_SHIPPING_SELECTOR,
    DETAIL_STATUS_SELECTOR,
    MODAL_BODY_SELECTOR,
    MODAL_CLOSE_SELECTORS,
    MODAL_INFO_SELECTORS,
    MODAL_SELECTOR,
    MODAL_TRIGGER_SELECTOR,
    OFFLINE_PICKUP,
    LogisticsLeg,
    extract_from_detail_page,
    extract_from_modal,
    merge_leg,
    modal_needs_fallback,
    needs_logistics,
    parse_detail_leg_text,
    parse_detail_status,
    parse_modal_text,
    prefers_modal,
    skips_detail,
)


class Node:
    def __init__(self, text: str = "", attrs: Optional[Dict[str, str]] = None, children: Optional[Dict[str, "Node"]] = None) -> None:
        self.text = text
        self.attrs = attrs or {}
        self.children = children or {}
        self.clicked = False

    async def inner_text(self) -> str:
        return self.text

    async def get_attribute(self, name: str) -> Optional[str]:
        return self.attrs.get(name)

    async def query_selector(self, selector: str):
        return self.children.get(selector)

    async def is_visible(self) -> bool:
        return True

    async def scroll_into_view_if_needed(self) -> None:
        return None

    async def click(self, **kwargs) -> None:
        self.clicked = True


class DetailTab:
    def __init__(self, nodes: Dict[str, Node]) -> None:
        self.nodes = nodes
        self.visited: List[str] = []
        self.closed = False

    async def goto(self, url: str, **kwargs) -> None:
        self.visited.append(url)

    async def wait_for_timeout(self, ms: int) -> None:
        return None

    async def query_selector(self, selector: str):
        return self.nodes.get(selector)

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, tab: Optional[DetailTab]) -> None:
        self.tab = tab

    async def new_page(self) -> DetailTab:
        if self.tab is None:
            raise RuntimeError("browser closed")
        return self.tab


class FakePage:
    url = "https://vendor.example.com/orders/list"

    def __init__(self, tab: Optional[DetailTab] = None, *, modal_body: str = "", nodes: Optional[Dict[str, Node]] = None) -> None:
        self.context = FakeContext(tab)
        self.modal_body = modal_body
        self.nodes = nodes or {}

    async def query_selector(self, selector: str):
        return self.nodes.get(selector)

    async def wait_for_selector(self, selector: str, **kwargs) -> None:
        return None

    async def wait_for_function(self, script: str, **kwargs) -> None:
        return None

    async def wait_for_timeout(self, ms: int) -> None:
        return None

    async def inner_text(self, selector: str) -> str:
        assert selector == MODAL_BODY_SELECTOR
        return self.modal_body


def test_modal_bracketed_tracking_and_company() -> None:
    leg = parse_modal_text("物流公司：顺丰速运 物流单号：（SF1234567890）", latest_info="  已签收 ")

    assert leg == LogisticsLeg(company="顺丰速运", tracking_number="SF1234567890", latest_info="已签收", found=True)


def test_modal_plain_tracking_and_company_alias() -> None:
    leg = parse_modal_text("快递：SFEXPRESS 单号：SF1234567890")

    assert leg.company == "顺丰速运"
    assert leg.tracking_number == "SF1234567890"


def test_modal_carrier_number_fallback() -> None:
    leg = parse_modal_text("物流信息 JD0012345678901 已揽收")

    assert leg.tracking_number == "JD0012345678901"
    assert leg.company is None
    assert leg.found


def test_modal_offline_pickup() -> None:
    leg = parse_modal_text("配送方式: 线下取货")

    assert leg.is_offline
    assert leg.tracking_number == ""
    assert leg.found
    assert not modal_needs_fallback(leg)


def test_modal_labels_without_values_count_as_found_but_empty() -> None:
    leg = parse_modal_text("物流公司： 物流单号：")

    assert leg.found
    assert leg.company == ""
    assert leg.tracking_number == ""
    assert modal_needs_fallback(leg)
    assert parse_modal_text("") == LogisticsLeg()


def test_detail_leg_parsing() -> None:
    leg = parse_detail_leg_text("物流公司：中通快递\n物流单号：（ 7312 3456 7890 ）\n最新：已签收")

    assert leg.company == "中通快递"
    assert leg.tracking_number == "731234567890"
    assert leg.latest_info.startswith("物流公司：中通快递")
    assert leg.found

    short = parse_detail_leg_text("物流单号：123")
    assert short.tracking_number is None
    assert not short.found
    assert parse_detail_leg_text("线下自提").company == OFFLINE_PICKUP
    assert parse_detail_status("订单状态：已完成 下单时间") == "已完成"
    assert parse_detail_status("") is None


def test_merge_never_blanks_found_values() -> None:
    current = LogisticsLeg(company="顺丰速运", tracking_number="SF1", found=True)

    merged = merge_leg(current, LogisticsLeg(company="", tracking_number=None, latest_info="运输中", found=False))

    assert merged == LogisticsLeg(company="顺丰速运", tracking_number="SF1", latest_info="运输中", found=True)


def test_status_routing() -> None:
    assert needs_logistics(None)
    assert needs_logistics("待收货")
    assert needs_logistics("设备归还中")
    assert not needs_logistics("待发货")
    assert prefers_modal("待归还")
    assert not prefers_modal("已完成")
    assert skips_detail("已完成", True)
    assert not skips_detail("已完成", False)
    assert not skips_detail("待收货", True)
    assert modal_needs_fallback(LogisticsLeg())
    assert modal_needs_fallback(LogisticsLeg(company="顺丰速运", found=True))
    assert modal_needs_fallback(LogisticsLeg(tracking_number="SF1", found=True))
    assert not modal_needs_fallback(LogisticsLeg(company="顺丰速运", tracking_number="SF1", found=True))


@pytest.mark.asyncio
async def test_modal_extraction_reads_and_closes(logger) -> None:
    close_button = Node()
    page = FakePage(
        modal_body="物流公司：顺丰速运 物流单号：（SF1234567890）",
        nodes={
            MODAL_SELECTOR: Node(),
            MODAL_INFO_SELECTORS[0]: Node("已签收"),
            MODAL_CLOSE_SELECTORS[0]: close_button,
        },
    )
    trigger = Node()
    row = Node(children={MODAL_TRIGGER_SELECTOR: trigger})

    leg = await extract_from_modal(page, page, row, order_no="ZC1", logger=logger, site_id="zanchen")

    assert leg.tracking_number == "SF1234567890"
    assert leg.latest_info == "已签收"
    assert trigger.clicked
    assert close_button.clicked


@pytest.mark.asyncio
async def test_modal_extraction_without_trigger_is_empty(logger) -> None:
    leg = await extract_from_modal(FakePage(), FakePage(), Node(), order_no="ZC1", logger=logger, site_id="zanchen")

    assert leg == LogisticsLeg()


@pytest.mark.asyncio
async def test_detail_page_opened_from_href_and_closed(logger) -> None:
    tab = DetailTab(
        {
            DETAIL_SHIPPING_SELECTOR: Node("物流公司：顺丰速运 物流单号：SF1234567890"),
            DETAIL_STATUS_SELECTOR: Node("订单状态：设备归还中"),
        }
    )
    row = Node(children={DETAIL_LINK_SELECTOR: Node(attrs={"href": "../order/detail?id=7"})})

    detail = await extract_from_detail_page(FakePage(tab), row, order_no="ZC1", logger=logger, site_id="zanchen")

    assert detail is not None
    assert detail.shipping.tracking_number == "SF1234567890"
    assert detail.returning == LogisticsLeg()
    assert detail.status == "设备归还中"
    assert tab.visited == ["https://vendor.example.com/order/detail?id=7"]
    assert tab.closed


@pytest.mark.asyncio
async def test_detail_page_failure_is_logged_not_raised(logger, log_stream) -> None:
    row = Node(children={DETAIL_LINK_SELECTOR: Node(attrs={"href": "/order/detail?id=7"})})

    assert await extract_from_detail_page(FakePage(None), row, order_no="ZC1", logger=logger, site_id="zanchen") is None
    assert "订单详情页读取失败: browser closed" in log_stream.getvalue()


class StalledDetailTab(DetailTab):
    async def goto(self, url: str, **kwargs) -> None:
        self.visited.append(url)
        raise RuntimeError("Timeout 15000ms exceeded")


@pytest.mark.asyncio
async def test_detail_tab_is_closed_when_navigation_fails(logger, log_stream) -> None:
    tab = StalledDetailTab({})
    row = Node(children={DETAIL_LINK_SELECTOR: Node(attrs={"href": "/order/detail?id=7"})})

    assert await extract_from_detail_page(FakePage(tab), row, order_no="ZC1", logger=logger, site_id="zanchen") is None
    assert tab.visited == ["https://vendor.example.com/order/detail?id=7"]
    assert tab.closed
    assert "Timeout 15000ms exceeded" in log_stream.getvalue()
