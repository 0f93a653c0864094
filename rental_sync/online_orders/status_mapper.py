"""Map vendor status labels onto the canonical rental lifecycle."""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence, Tuple


class OrderStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    PENDING_SHIPMENT = "PENDING_SHIPMENT"
    PENDING_RECEIPT = "PENDING_RECEIPT"
    RENTING = "RENTING"
    OVERDUE = "OVERDUE"
    RETURNING = "RETURNING"
    COMPLETED = "COMPLETED"
    BOUGHT_OUT = "BOUGHT_OUT"
    CLOSED = "CLOSED"


# Order matters: "审核拒绝" must fall through to CLOSED and "设备归还中" to RETURNING.
_STATUS_RULES: Sequence[Tuple[Tuple[str, ...], OrderStatus]] = (
    (("待审核", "审核中", "待付款"), OrderStatus.PENDING_REVIEW),
    (("待发货", "待分配"), OrderStatus.PENDING_SHIPMENT),
    (("待收货",), OrderStatus.PENDING_RECEIPT),
    (("待归还",), OrderStatus.RENTING),
    (("已逾期",), OrderStatus.OVERDUE),
    (("归还中", "退租中"), OrderStatus.RETURNING),
    (("已完成",), OrderStatus.COMPLETED),
    (("已买断", "已购买"), OrderStatus.BOUGHT_OUT),
    (("已关闭", "已取消", "拒绝"), OrderStatus.CLOSED),
)

DEFAULT_STATUS = OrderStatus.PENDING_REVIEW

# Every label the vendor portal is known to render, longest first so that a
# regex alternation prefers "设备归还中" over "归还中".
VENDOR_STATUS_LABELS: Tuple[str, ...] = tuple(
    sorted(
        (
            "待付款",
            "待审核",
            "订单待分配",
            "待分配员工",
            "待发货",
            "待收货",
            "待归还",
            "已逾期",
            "设备归还中",
            "归还中",
            "已完成",
            "已关闭",
            "已取消",
            "审核拒绝",
            "已买断",
            "已购买",
            "退租中",
            "审核中",
        ),
        key=len,
        reverse=True,
    )
)

FINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CLOSED, OrderStatus.BOUGHT_OUT})

# Local back-office lifecycle ordering used when pushing scraped status onto
# manually created orders; a lower priority never replaces a higher one.
STATUS_PRIORITY = {
    "PENDING_PAYMENT": 0,
    "PENDING_REVIEW": 1,
    "PENDING_SHIPMENT": 2,
    "PENDING_RECEIPT": 2,
    "RENTING": 3,
    "OVERDUE": 3,
    "RETURNING": 4,
    "COMPLETED": 5,
    "BOUGHT_OUT": 5,
    "CLOSED": 6,
    "CANCELED": 6,
}


def map_status(vendor_text: Optional[str]) -> OrderStatus:
    text = (vendor_text or "").strip()
    if not text:
        return DEFAULT_STATUS
    for needles, status in _STATUS_RULES:
        if any(needle in text for needle in needles):
            return status
    return DEFAULT_STATUS


def find_vendor_status(text: Optional[str]) -> Optional[str]:
    """Return the first known vendor status label appearing in ``text``."""

    if not text:
        return None
    best: Optional[Tuple[int, str]] = None
    for label in VENDOR_STATUS_LABELS:
        idx = text.find(label)
        if idx < 0:
            continue
        if best is None or idx < best[0]:
            best = (idx, label)
    return best[1] if best else None


def status_priority(status: Optional[str]) -> int:
    return STATUS_PRIORITY.get(status or "", -1)
