"""Heuristic extraction of order fields from rendered order-list rows.

A row is captured once as an immutable ``RowInput`` and then fed through an
ordered chain of pure functions. Each step returns a partial mapping (or
``None`` when it does not apply); earlier non-empty values win, so the
structured header/cell pass takes precedence and free text fills the gaps.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from rental_sync.online_orders.status_mapper import OrderStatus, find_vendor_status, map_status

Partial = Dict[str, Any]


@dataclass(frozen=True)
class RowInput:
    text: str
    cells: Tuple[Tuple[str, str], ...] = ()
    ops_text: str = ""

    @classmethod
    def build(cls, text: str, cells: Mapping[str, str] | None = None, ops_text: str = "") -> "RowInput":
        normalized = normalize_row_text(text)
        cell_pairs = tuple((str(k), normalize_row_text(str(v))) for k, v in (cells or {}).items())
        return cls(text=normalized, cells=cell_pairs, ops_text=(ops_text or "").strip())


@dataclass
class ParsedOrder:
    order_no: str
    status: OrderStatus = OrderStatus.PENDING_REVIEW
    vendor_status: Optional[str] = None
    platform: str = "OTHER"
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    address: Optional[str] = None
    item_title: Optional[str] = None
    item_sku: Optional[str] = None
    merchant_name: Optional[str] = None
    promotion_channel: Optional[str] = None
    duration: Optional[int] = None
    rent_start_date: Optional[date] = None
    return_deadline: Optional[date] = None
    rent_price: Optional[float] = None
    insurance_price: Optional[float] = None
    deposit: Optional[float] = None
    total_amount: Optional[float] = None
    logistics_company: Optional[str] = None
    tracking_number: Optional[str] = None
    latest_logistics_info: Optional[str] = None
    return_logistics_company: Optional[str] = None
    return_tracking_number: Optional[str] = None
    return_latest_logistics_info: Optional[str] = None

    def to_summary(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, OrderStatus):
                value = value.value
            elif isinstance(value, date):
                value = value.isoformat()
            payload[item.name] = value
        return payload


# ── Text helpers ──────────────────────────────────────────────────────────

_CURRENCY = "[¥￥]"
_AMOUNT = r"(\d+(?:\.\d+)?)"
_DATE_TOKEN = re.compile(r"\d{4}-\d{2}-\d{2}")
_PHONE = re.compile(r"1\d{2}\*{4}\d{4}|1\d{10}")

ADDRESS_END_MARKERS = (
    "已付/总租金",
    "订单详情",
    "物流信息",
    "历史订单",
    "转单记录",
    "【商户备注】",
    "【风控建议】",
    "认证信息",
    "风控信息",
    "审核资料",
    "取消订单",
    "确认发货",
    "顺丰发货",
    "线下取货",
    "加黑名单",
    "交易快照",
    "发起补充合同",
    "纸质回执单",
    "租赁行业交易单",
)

HEADER_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "order": ("订单号", "订单编号"),
    "logistics": ("物流", "物流信息", "收货信息", "收件信息"),
    "device": ("设备", "商品", "商品信息", "设备信息"),
    "rent": ("租期", "租赁", "租赁时间", "租期/时间", "租期时间", "租赁期限", "租用时间", "使用时间"),
    "amount": ("金额", "费用", "价格"),
    "status": ("状态", "订单状态", "当前状态", "状态/操作"),
    "merchant": ("商户", "商户名称"),
    "promotion": ("推广方式",),
}

_DEVICE_NOISE = [
    re.compile(pattern)
    for pattern in (
        r"订单编号",
        r"订单号",
        r"商户名称",
        r"支付类型",
        r"支付方式",
        r"^备注$",
        r"^关闭订单",
        r"^合同[:：]",
        r"^公证[:：]",
        r"^代扣类型[:：]",
        r"^下单渠道[:：]",
        r"^公域来源[:：]",
        r"^昵称[:：]",
        r"^到期购买价[:：]",
        r"^购买总价[:：]",
        r"^已付/总租金",
        r"^信用冻结[:：]",
        r"^资金冻结[:：]",
        r"^商品押金[:：]",
        r"^增值服务[:：]",
        r"^订单详情$",
        r"^物流信息$",
        r"^历史订单[:：]",
        r"^转单记录[:：]",
        r"^(起租|归还|租期)[:：]",
        r"\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}",
        r"^\d{4}-\d{2}-\d{2}",
        r"^[¥￥]?\s*\d+(?:\.\d+)?$",
        r"^\d+\s*天$",
        r"1\d{2}\*{4}\d{4}|1\d{10}",
    )
]


def normalize_row_text(text: str | None) -> str:
    if not text:
        return ""
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n").replace(" ", " ").replace("　", " ")
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in cleaned.split("\n")]
    return "\n".join(line for line in lines if line)


def normalize_key(text: str) -> str:
    return re.sub(r"\s+", "", text or "").lower()


def parse_number(text: str | None) -> Optional[float]:
    match = re.search(r"-?\d+(?:\.\d+)?", text or "")
    return float(match.group(0)) if match else None


def _first_group(pattern: str, text: str, group: int = 1) -> Optional[str]:
    match = re.search(pattern, text)
    if not match:
        return None
    value = match.group(group)
    return value.strip() if value else None


def parse_order_no(text: str) -> Optional[str]:
    labelled = _first_group(r"订单编号[:：]\s*([A-Z0-9]+)", text)
    if labelled:
        return labelled
    match = re.search(r"[A-Z]{2}\d{14,}", text) or re.search(r"[A-Z0-9]{12,}", text)
    return match.group(0) if match else None


def parse_money_by_labels(text: str, labels: Sequence[str]) -> Optional[float]:
    for label in labels:
        match = re.search(rf"{label}\s*[:：]?\s*{_CURRENCY}?\s*{_AMOUNT}", text)
        if match:
            return float(match.group(1))
    return None


def parse_total(text: str) -> Optional[float]:
    match = re.search(rf"(?:合计|总计|总金额|实付|金额|支付)[:：]?\s*{_CURRENCY}?\s*{_AMOUNT}", text)
    return float(match.group(1)) if match else None


def parse_amounts(text: str) -> Partial:
    rent = _first_group(rf"已付/总租金[:：][^\n]*/\s*{_CURRENCY}?\s*{_AMOUNT}", text)
    deposit = _first_group(rf"商品押金[:：]\s*{_CURRENCY}?\s*{_AMOUNT}", text)
    insurance = _first_group(rf"增值服务[:：]\s*{_CURRENCY}?\s*{_AMOUNT}", text)
    return {
        "rent_price": float(rent) if rent else parse_money_by_labels(text, ("租金", r"(?<!起)租(?!期)")),
        "deposit": float(deposit) if deposit else parse_money_by_labels(text, ("押金", "押")),
        "insurance_price": (
            float(insurance) if insurance else parse_money_by_labels(text, ("保险", "保障", "保"))
        ),
        "total_amount": parse_total(text),
    }


def _to_date(token: str | None) -> Optional[date]:
    if not token:
        return None
    try:
        return date.fromisoformat(token)
    except ValueError:
        return None


def parse_rent_period(text: str) -> Partial:
    """Return duration (inclusive days) and the start/return dates."""

    tokens = [_to_date(token) for token in _DATE_TOKEN.findall(text)]
    tokens = [token for token in tokens if token is not None]
    start: Optional[date] = None
    end: Optional[date] = None
    duration: Optional[int] = None
    if len(tokens) >= 2:
        start, end = tokens[0], tokens[1]
        days = (end - start).days + 1
        if days > 0:
            duration = days
    if duration is None:
        days_text = _first_group(r"(\d+)\s*天", text)
        duration = int(days_text) if days_text else None
    if start is None:
        start = _to_date(_first_group(r"起租[日期时间]*[:：]?\s*(\d{4}-\d{2}-\d{2})", text))
    if end is None:
        end = _to_date(_first_group(r"(?:归还|到期)[日期时间]*[:：]?\s*(\d{4}-\d{2}-\d{2})", text))
    return {"duration": duration, "rent_start_date": start, "return_deadline": end}


def parse_merchant_name(text: str) -> Optional[str]:
    return _first_group(r"商户名称[:：]?\s*([^\s|]+)", text)


def trim_after_markers(text: str, markers: Iterable[str] = ADDRESS_END_MARKERS) -> str:
    cut = len(text)
    for marker in markers:
        idx = text.find(marker)
        if 0 <= idx < cut:
            cut = idx
    return text[:cut].strip()


def infer_platform(text: str) -> str:
    return "XIANYU" if "闲鱼" in text else "OTHER"


def parse_promotion_channel(text: str) -> Optional[str]:
    channel = _first_group(r"下单渠道[:：]?[ \t]*(.*?)(?=[ \t]+(?:公域来源|商品|套餐|订单)|\n|$)", text) or ""
    public_source = _first_group(r"公域来源[:：]?[ \t]*(.*?)(?=[ \t]+(?:商品|套餐|订单)|\n|$)", text) or ""
    if channel and public_source:
        return f"{channel} - {public_source}"
    return channel or public_source or None


# ── Device info ───────────────────────────────────────────────────────────


def clean_device_line(line: str) -> str:
    line = re.sub(r"^(设备|商品)[:：]?\s*", "", line)
    line = re.sub(r"数量[:：]?\s*\d+.*$", "", line)
    return line.strip()


def _is_device_noise(line: str) -> bool:
    if find_vendor_status(line) == line:
        return True
    return any(pattern.search(line) for pattern in _DEVICE_NOISE)


def parse_device_info(text: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(title, sku)``.

    Explicit labels win; otherwise the two shortest distinct lines left after
    dropping known noise are taken, in document order, as title and SKU.
    """

    title = _first_group(r"(?:商品标题|商品|标题)[:：]\s*([^\n]+)", text)
    sku = _first_group(r"(?:套餐|SKU|型号|规格)[:：]\s*([^\n]+)", text)
    if sku:
        sku = clean_device_line(sku) or None
    if title and sku:
        return title, sku

    candidates: List[Tuple[int, str]] = []
    seen: set[str] = set()
    for index, raw_line in enumerate(text.split("\n")):
        value = clean_device_line(raw_line.strip())
        if len(value) < 2 or _is_device_noise(value):
            continue
        key = normalize_key(value)
        if key in seen or (title and key == normalize_key(title)) or (sku and key == normalize_key(sku)):
            continue
        seen.add(key)
        candidates.append((index, value))

    shortest = sorted(candidates, key=lambda item: (len(item[1]), item[0]))[:2]
    ordered = [value for _, value in sorted(shortest)]
    if not title and ordered:
        title = ordered.pop(0)
    if not sku and ordered:
        sku = ordered.pop(0)
    return title, sku


# ── Customer / logistics cell ─────────────────────────────────────────────


def parse_recipient_block(text: str) -> Partial:
    block = trim_after_markers(re.sub(r"\s+", " ", text).strip())
    phone_match = _PHONE.search(block)
    phone = phone_match.group(0) if phone_match else None
    name = _first_group(r"收货人[:：]?\s*([^\s|]+)", block) or _first_group(r"收件人[:：]?\s*([^\s|]+)", block)
    if not name and phone:
        before = block.split(phone)[0].strip().split()
        name = before[-1] if before else None
    address = _first_group(r"地址[:：]?\s*([^\n]+)", block)
    if not address and phone:
        address = block.split(phone, 1)[1].strip() or None
    return {"customer_name": name, "customer_phone": phone, "address": address}


def parse_nickname_contact(text: str) -> Partial:
    match = re.search(r"昵称[:：][^\n]*?\s([^\s]+)\s+(1\d{2}\*{4}\d{4}|1\d{10}|[0-9*]{7,})", text)
    if not match:
        return {}
    name, phone = match.group(1), match.group(2)
    after = text[match.end():].strip()
    address = trim_after_markers(after.split("\n")[0] if after else "") or None
    return {"customer_name": name, "customer_phone": phone, "address": address}


# ── Parser chain ──────────────────────────────────────────────────────────


def _find_cell(cells: Sequence[Tuple[str, str]], synonyms: Sequence[str]) -> str:
    for header, value in cells:
        key = normalize_key(header)
        if any(normalize_key(synonym) in key for synonym in synonyms):
            return value
    return ""


def parse_structured_cells(row: RowInput) -> Optional[Partial]:
    if not row.cells:
        return None
    cell = {name: _find_cell(row.cells, synonyms) for name, synonyms in HEADER_SYNONYMS.items()}
    order_no = parse_order_no(cell["order"])
    if not order_no:
        return None

    title, sku = parse_device_info(cell["device"])
    rent_source = "\n".join(part for part in (cell["rent"], cell["device"]) if part)
    amounts = parse_amounts(cell["amount"])
    if amounts["total_amount"] is None:
        bare = _first_group(rf"{_CURRENCY}\s*{_AMOUNT}", cell["amount"])
        amounts["total_amount"] = float(bare) if bare else None
    status_text = cell["status"].split()[0] if cell["status"].split() else None

    partial: Partial = {
        "order_no": order_no,
        "item_title": title,
        "item_sku": sku,
        "merchant_name": (
            parse_merchant_name(cell["merchant"])
            or parse_merchant_name(cell["order"])
            or parse_merchant_name(cell["logistics"])
            or (cell["merchant"].strip() or None)
        ),
        "promotion_channel": cell["promotion"] or None,
        "vendor_status": find_vendor_status(status_text) or status_text,
        "platform_hint": " ".join((cell["promotion"], cell["order"], cell["logistics"])),
    }
    partial.update(parse_recipient_block(cell["logistics"]) if cell["logistics"] else {})
    partial.update(parse_rent_period(rent_source))
    partial.update(amounts)
    return partial


def parse_free_text(row: RowInput) -> Optional[Partial]:
    text = row.text
    if not text:
        return None
    title, sku = parse_device_info(text)
    partial: Partial = {
        "order_no": parse_order_no(text),
        "item_title": title,
        "item_sku": sku,
        "merchant_name": parse_merchant_name(text),
        "promotion_channel": parse_promotion_channel(text),
        "vendor_status": find_vendor_status(text),
        "platform_hint": text,
    }
    contact = parse_nickname_contact(text)
    if not contact:
        contact = {key: value for key, value in parse_recipient_block(text).items() if key != "address"}
    partial.update(contact)
    partial.update(parse_rent_period(text))
    partial.update(parse_amounts(text))
    return partial


ParserStep = Callable[[RowInput], Optional[Partial]]

PARSER_CHAIN: Tuple[ParserStep, ...] = (parse_structured_cells, parse_free_text)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def merge_partials(partials: Iterable[Optional[Partial]]) -> Partial:
    merged: Partial = {}
    for partial in partials:
        if not partial:
            continue
        for key, value in partial.items():
            if _is_empty(merged.get(key)) and not _is_empty(value):
                merged[key] = value
    return merged


def resolve_vendor_status(row: RowInput, parsed_status: Optional[str]) -> Optional[str]:
    """The ops column is authoritative; the row body is only a fallback."""

    return find_vendor_status(row.ops_text) or parsed_status


def is_footer_row(text: str) -> bool:
    return ("共" in text and "条记录" in text) or ("下一页" in text and "尾页" in text)


def parse_row(row: RowInput, chain: Sequence[ParserStep] = PARSER_CHAIN) -> Optional[ParsedOrder]:
    """Run ``chain`` over ``row``; ``None`` when no order number was found."""

    if is_footer_row(row.text):
        return None
    merged = merge_partials(step(row) for step in chain)
    order_no = merged.get("order_no")
    if not order_no:
        return None

    rent = merged.get("rent_price")
    insurance = merged.get("insurance_price")
    total = merged.get("total_amount")
    if total is None:
        total = (rent or 0) + (insurance or 0)

    vendor_status = resolve_vendor_status(row, merged.get("vendor_status"))
    platform_source = " ".join(
        part for part in (merged.get("platform_hint") or "", merged.get("promotion_channel") or "") if part
    )
    return ParsedOrder(
        order_no=order_no,
        status=map_status(vendor_status),
        vendor_status=vendor_status,
        platform=infer_platform(platform_source),
        customer_name=merged.get("customer_name"),
        customer_phone=merged.get("customer_phone"),
        address=merged.get("address"),
        item_title=merged.get("item_title"),
        item_sku=merged.get("item_sku"),
        merchant_name=merged.get("merchant_name"),
        promotion_channel=merged.get("promotion_channel"),
        duration=merged.get("duration"),
        rent_start_date=merged.get("rent_start_date"),
        return_deadline=merged.get("return_deadline"),
        rent_price=rent,
        insurance_price=insurance,
        deposit=merged.get("deposit"),
        total_amount=total,
    )
