"""Idempotent persistence of scraped orders.

The vendor order number is the only upsert key. Rows already COMPLETED in
the local store are never touched again, and the merchant allow-list both
filters incoming rows and purges scrape-owned rows that no longer qualify.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from rental_sync.common.app_config_store import SNAPSHOT_KEY, AppConfigStore
from rental_sync.common.db import session_scope, use_sqlite
from rental_sync.common.json_logger import JsonLogger, log_event
from rental_sync.common.models import LOGISTICS_FIELDS, SYSTEM_CREATOR, OnlineOrder, Order, Product
from rental_sync.online_orders.parsing import ParsedOrder
from rental_sync.online_orders.product_matching import (
    CatalogProduct,
    ProductMatch,
    match_product,
    parse_keywords,
    parse_variant_names,
)
from rental_sync.online_orders.status_mapper import FINAL_STATUSES, OrderStatus, status_priority

# Columns refreshed on every upsert even when the new value is empty.
_ALWAYS_UPDATED = {
    "status",
    "platform",
    "source",
    "site_id",
    "duration",
    "rent_price",
    "insurance_price",
    "deposit",
    "total_amount",
}


@dataclass
class SaveResult:
    saved: int = 0
    skipped_completed: int = 0
    filtered: int = 0
    failed: int = 0
    purged: int = 0
    saved_order_nos: List[str] = field(default_factory=list)

    def merge(self, other: "SaveResult") -> None:
        self.saved += other.saved
        self.skipped_completed += other.skipped_completed
        self.filtered += other.filtered
        self.failed += other.failed
        self.purged += other.purged
        self.saved_order_nos.extend(other.saved_order_nos)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "saved": self.saved,
            "skipped_completed": self.skipped_completed,
            "filtered": self.filtered,
            "failed": self.failed,
            "purged": self.purged,
        }


def merchant_allowed(merchant_name: Optional[str], allowed: Sequence[str]) -> bool:
    """An empty allow-list admits everything; otherwise substring match on any keyword."""

    if not allowed:
        return True
    if not merchant_name:
        return False
    return any(keyword and keyword in merchant_name for keyword in allowed)


def derive_source(promotion_channel: Optional[str]) -> str:
    text = promotion_channel or ""
    if "同行" in text:
        return "PEER"
    if "兼职" in text or "代理" in text:
        return "PART_TIME_AGENT"
    return "RETAIL"


def build_online_order_values(
    order: ParsedOrder, *, site_id: str, match: ProductMatch, platform: Optional[str] = None
) -> Dict[str, Any]:
    # an inferred marketplace (e.g. XIANYU) beats the site's default platform
    inferred = order.platform if order.platform and order.platform != "OTHER" else None
    values: Dict[str, Any] = {
        "order_no": order.order_no,
        "site_id": site_id,
        "platform": inferred or platform or "OTHER",
        "status": order.status.value,
        "source": derive_source(order.promotion_channel),
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "address": order.address,
        "product_id": match.product_id,
        "product_name": match.product_name or order.item_title,
        "variant_name": match.variant_name or order.item_sku,
        "item_title": order.item_title,
        "item_sku": order.item_sku,
        "merchant_name": order.merchant_name,
        "promotion_channel": order.promotion_channel,
        "rent_start_date": order.rent_start_date,
        "return_deadline": order.return_deadline,
        "duration": order.duration or 0,
        "rent_price": order.rent_price or 0,
        "insurance_price": order.insurance_price or 0,
        "deposit": order.deposit or 0,
        "total_amount": order.total_amount or 0,
        "creator_id": SYSTEM_CREATOR,
    }
    for name in LOGISTICS_FIELDS:
        values[name] = getattr(order, name)
    return {
        key: value
        for key, value in values.items()
        if key in _ALWAYS_UPDATED or key == "order_no" or value not in (None, "")
    }


class OrderRepository:
    """Async data access for scraped and local orders."""

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url

    async def completed_order_nos(self, order_nos: Iterable[str]) -> set[str]:
        keys = list({no for no in order_nos if no})
        if not keys:
            return set()
        completed = OrderStatus.COMPLETED.value
        async with session_scope(self.database_url) as session:
            scraped = await session.execute(
                sa.select(OnlineOrder.order_no).where(
                    OnlineOrder.order_no.in_(keys), OnlineOrder.status == completed
                )
            )
            local = await session.execute(
                sa.select(Order.order_no).where(Order.order_no.in_(keys), Order.status == completed)
            )
            return set(scraped.scalars()) | set(local.scalars())

    async def final_order_nos(self, order_nos: Iterable[str]) -> set[str]:
        keys = list({no for no in order_nos if no})
        if not keys:
            return set()
        finals = [status.value for status in FINAL_STATUSES] + ["CANCELED"]
        async with session_scope(self.database_url) as session:
            scraped = await session.execute(
                sa.select(OnlineOrder.order_no).where(
                    OnlineOrder.order_no.in_(keys), OnlineOrder.status.in_(finals)
                )
            )
            local = await session.execute(
                sa.select(Order.order_no).where(Order.order_no.in_(keys), Order.status.in_(finals))
            )
            return set(scraped.scalars()) | set(local.scalars())

    async def load_catalog(self) -> List[CatalogProduct]:
        async with session_scope(self.database_url) as session:
            result = await session.execute(sa.select(Product))
            return [
                CatalogProduct(
                    id=product.id,
                    name=product.name,
                    variants=parse_variant_names(product.variants),
                    match_keywords=parse_keywords(product.match_keywords),
                )
                for product in result.scalars()
            ]

    async def upsert_online_order(self, values: Mapping[str, Any]) -> None:
        insert_fn = sqlite_insert if use_sqlite(self.database_url) else pg_insert
        stmt = insert_fn(OnlineOrder).values(**values)
        update_cols = {key: stmt.excluded[key] for key in values if key not in {"order_no", "creator_id"}}
        update_cols["updated_at"] = sa.func.now()
        stmt = stmt.on_conflict_do_update(index_elements=[OnlineOrder.order_no], set_=update_cols)
        async with session_scope(self.database_url) as session:
            await session.execute(stmt)
            await session.commit()

    async def delete_scraped(self, order_nos: Sequence[str]) -> int:
        if not order_nos:
            return 0
        async with session_scope(self.database_url) as session:
            result = await session.execute(
                sa.delete(OnlineOrder).where(
                    OnlineOrder.order_no.in_(list(order_nos)), OnlineOrder.creator_id == SYSTEM_CREATOR
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def purge_disallowed_merchants(self, site_id: str, allowed: Sequence[str]) -> List[str]:
        if not allowed:
            return []
        async with session_scope(self.database_url) as session:
            result = await session.execute(
                sa.select(OnlineOrder.order_no, OnlineOrder.merchant_name).where(
                    OnlineOrder.site_id == site_id, OnlineOrder.creator_id == SYSTEM_CREATOR
                )
            )
            doomed = [row.order_no for row in result if not merchant_allowed(row.merchant_name, allowed)]
        await self.delete_scraped(doomed)
        return doomed

    async def push_to_local_order(self, order: ParsedOrder) -> bool:
        """Copy logistics onto a same-numbered local order; status only moves forward."""

        async with session_scope(self.database_url) as session:
            result = await session.execute(sa.select(Order).where(Order.order_no == order.order_no))
            local = result.scalar_one_or_none()
            if local is None:
                return False
            changed = False
            for name in LOGISTICS_FIELDS:
                value = getattr(order, name)
                if value and getattr(local, name) != value:
                    setattr(local, name, value)
                    changed = True
            new_status = order.status.value
            if new_status != local.status and status_priority(new_status) >= status_priority(local.status):
                local.status = new_status
                changed = True
            if changed:
                await session.commit()
            return changed

    async def scraped_orders(self, site_id: str) -> List[OnlineOrder]:
        async with session_scope(self.database_url) as session:
            result = await session.execute(sa.select(OnlineOrder).where(OnlineOrder.site_id == site_id))
            return list(result.scalars())

    async def cross_referenced_orders(self, order_nos: Sequence[str]) -> List[Order]:
        if not order_nos:
            return []
        async with session_scope(self.database_url) as session:
            result = await session.execute(
                sa.select(Order).where(
                    Order.mini_program_order_no.in_(list(order_nos)),
                    sa.or_(Order.creator_id.is_(None), Order.creator_id != SYSTEM_CREATOR),
                )
            )
            return list(result.scalars())

    async def update_local_order(self, order_id: int, values: Mapping[str, Any]) -> None:
        async with session_scope(self.database_url) as session:
            await session.execute(sa.update(Order).where(Order.id == order_id).values(**values))
            await session.commit()


async def save_orders(
    *,
    repository: OrderRepository,
    orders: Sequence[ParsedOrder],
    site_id: str,
    allowed_merchants: Sequence[str],
    logger: JsonLogger,
    catalog: Optional[Sequence[CatalogProduct]] = None,
    platform: Optional[str] = None,
) -> SaveResult:
    result = SaveResult()
    if catalog is None:
        catalog = await repository.load_catalog()

    result.purged = len(await repository.purge_disallowed_merchants(site_id, allowed_merchants))
    completed = await repository.completed_order_nos(order.order_no for order in orders)

    rejected: List[str] = []
    for order in orders:
        if order.order_no in completed:
            result.skipped_completed += 1
            continue
        if not merchant_allowed(order.merchant_name, allowed_merchants):
            result.filtered += 1
            rejected.append(order.order_no)
            continue
        try:
            match = match_product(order.item_title, order.item_sku, catalog)
            values = build_online_order_values(order, site_id=site_id, match=match, platform=platform)
            await repository.upsert_online_order(values)
            await repository.push_to_local_order(order)
        except Exception as exc:
            result.failed += 1
            log_event(
                logger=logger,
                phase="persist",
                status="warn",
                message=f"保存订单失败 {order.order_no}: {exc}",
                site_id=site_id,
                order_nos=[order.order_no],
            )
            continue
        result.saved += 1
        result.saved_order_nos.append(order.order_no)

    if rejected:
        result.purged += await repository.delete_scraped(rejected)

    log_event(
        logger=logger,
        phase="persist",
        message=(
            f"保存完成: 成功 {result.saved}, 跳过已完成 {result.skipped_completed}, "
            f"商户过滤 {result.filtered}, 失败 {result.failed}, 清理 {result.purged}"
        ),
        site_id=site_id,
        **result.as_dict(),
    )
    return result


async def save_snapshot(store: AppConfigStore, last_result: Mapping[str, Any]) -> None:
    await store.set(
        SNAPSHOT_KEY,
        {"capturedAt": datetime.now(timezone.utc).isoformat(), "lastResult": dict(last_result)},
    )
