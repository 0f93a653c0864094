from datetime import date

import pytest
import sqlalchemy as sa

from rental_sync.common.db import session_scope
from rental_sync.common.models import OnlineOrder, Order, Product
from rental_sync.online_orders.parsing import ParsedOrder
from rental_sync.online_orders.persistence import (
    OrderRepository,
    derive_source,
    merchant_allowed,
    save_orders,
)
from rental_sync.online_orders.status_mapper import OrderStatus


def _order(order_no: str = "ZC20240101000001", **overrides) -> ParsedOrder:
    values = dict(
        order_no=order_no,
        status=OrderStatus.PENDING_SHIPMENT,
        vendor_status="待发货",
        merchant_name="优租数码",
        item_title="iPhone 15 Pro",
        item_sku="256G",
        duration=10,
        rent_start_date=date(2024, 1, 1),
        return_deadline=date(2024, 1, 10),
        rent_price=100,
        insurance_price=20,
        deposit=200,
        total_amount=120,
    )
    values.update(overrides)
    return ParsedOrder(**values)


async def _seed(database_url: str, *rows) -> None:
    async with session_scope(database_url) as session:
        session.add_all(rows)
        await session.commit()


async def _online_orders(database_url: str):
    async with session_scope(database_url) as session:
        result = await session.execute(sa.select(OnlineOrder).order_by(OnlineOrder.order_no))
        return list(result.scalars())


def test_allow_list_and_source_rules() -> None:
    assert merchant_allowed(None, [])
    assert merchant_allowed("优租数码旗舰店", ["优租"])
    assert not merchant_allowed(None, ["优租"])
    assert not merchant_allowed("别家", ["优租"])
    assert derive_source("同行转单") == "PEER"
    assert derive_source("兼职推广") == "PART_TIME_AGENT"
    assert derive_source(None) == "RETAIL"


@pytest.mark.asyncio
async def test_saving_twice_keeps_one_row_per_order_no(database_url, logger) -> None:
    await _seed(database_url, Product(id="p-2", name="iPhone 15 Pro", variants=["256G"]))
    repository = OrderRepository(database_url)

    first = await save_orders(
        repository=repository, orders=[_order()], site_id="zanchen", allowed_merchants=[], logger=logger, platform="ZANCHEN"
    )
    second = await save_orders(
        repository=repository,
        orders=[_order(status=OrderStatus.PENDING_RECEIPT, tracking_number="SF1234567890")],
        site_id="zanchen",
        allowed_merchants=[],
        logger=logger,
        platform="ZANCHEN",
    )

    rows = await _online_orders(database_url)
    assert first.saved == second.saved == 1
    assert len(rows) == 1
    row = rows[0]
    assert row.status == "PENDING_RECEIPT"
    assert row.tracking_number == "SF1234567890"
    assert row.platform == "ZANCHEN"
    assert row.product_id == "p-2"
    assert row.variant_name == "256G"
    assert row.total_amount == 120
    assert row.creator_id == "system"


@pytest.mark.asyncio
async def test_inferred_marketplace_overrides_site_platform(database_url, logger) -> None:
    repository = OrderRepository(database_url)

    await save_orders(
        repository=repository,
        orders=[_order(platform="XIANYU")],
        site_id="zanchen",
        allowed_merchants=[],
        logger=logger,
        catalog=[],
        platform="ZANCHEN",
    )

    assert (await _online_orders(database_url))[0].platform == "XIANYU"


@pytest.mark.asyncio
async def test_completed_orders_are_never_rewritten(database_url, logger) -> None:
    await _seed(
        database_url,
        OnlineOrder(order_no="ZC20240101000001", site_id="zanchen", status="COMPLETED", tracking_number="OLD"),
    )
    repository = OrderRepository(database_url)

    result = await save_orders(
        repository=repository,
        orders=[_order(status=OrderStatus.RENTING, tracking_number="NEW")],
        site_id="zanchen",
        allowed_merchants=[],
        logger=logger,
        catalog=[],
    )

    row = (await _online_orders(database_url))[0]
    assert result.skipped_completed == 1
    assert result.saved == 0
    assert row.status == "COMPLETED"
    assert row.tracking_number == "OLD"


@pytest.mark.asyncio
async def test_allow_list_filters_and_purges_scraped_rows(database_url, logger) -> None:
    await _seed(
        database_url,
        OnlineOrder(order_no="ZC00000000000001", site_id="zanchen", status="RENTING", merchant_name="别家商户"),
        OnlineOrder(order_no="ZC00000000000002", site_id="zanchen", status="RENTING", merchant_name="别家商户", creator_id="staff-7"),
        OnlineOrder(order_no="ZC00000000000003", site_id="zanchen", status="RENTING", merchant_name="优租数码"),
    )
    repository = OrderRepository(database_url)

    result = await save_orders(
        repository=repository,
        orders=[_order("ZC00000000000003"), _order("ZC00000000000004", merchant_name="别家商户")],
        site_id="zanchen",
        allowed_merchants=["优租"],
        logger=logger,
        catalog=[],
    )

    remaining = [row.order_no for row in await _online_orders(database_url)]
    assert result.saved == 1
    assert result.filtered == 1
    assert result.purged == 1
    assert remaining == ["ZC00000000000002", "ZC00000000000003"]


@pytest.mark.asyncio
async def test_local_order_receives_logistics_and_only_forward_status(database_url, logger) -> None:
    await _seed(
        database_url,
        Order(order_no="ZC20240101000001", status="PENDING_REVIEW", creator_id="staff-1"),
        Order(order_no="ZC20240101000002", status="RETURNING", creator_id="staff-1"),
    )
    repository = OrderRepository(database_url)

    await save_orders(
        repository=repository,
        orders=[
            _order("ZC20240101000001", status=OrderStatus.RENTING, logistics_company="顺丰速运", tracking_number="SF1"),
            _order("ZC20240101000002", status=OrderStatus.RENTING, return_tracking_number="SF2"),
        ],
        site_id="zanchen",
        allowed_merchants=[],
        logger=logger,
        catalog=[],
    )

    async with session_scope(database_url) as session:
        rows = {row.order_no: row for row in (await session.execute(sa.select(Order))).scalars()}
    assert rows["ZC20240101000001"].status == "RENTING"
    assert rows["ZC20240101000001"].logistics_company == "顺丰速运"
    assert rows["ZC20240101000002"].status == "RETURNING"
    assert rows["ZC20240101000002"].return_tracking_number == "SF2"


@pytest.mark.asyncio
async def test_final_order_nos_spans_both_tables(database_url) -> None:
    await _seed(
        database_url,
        OnlineOrder(order_no="A1", site_id="zanchen", status="CLOSED"),
        OnlineOrder(order_no="A2", site_id="zanchen", status="RENTING"),
        Order(order_no="A3", status="CANCELED"),
    )
    repository = OrderRepository(database_url)

    assert await repository.final_order_nos(["A1", "A2", "A3", "A4"]) == {"A1", "A3"}
    assert await repository.completed_order_nos([]) == set()
