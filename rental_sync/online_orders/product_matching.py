"""Link scraped item titles/SKUs to catalog products and variants."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence


@dataclass(frozen=True)
class CatalogProduct:
    id: str
    name: str
    variants: tuple[str, ...] = ()
    match_keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProductMatch:
    product_id: Optional[str]
    product_name: Optional[str]
    variant_name: Optional[str] = None
    matched_by: str = field(default="none")


def normalize_text(text: Optional[str]) -> str:
    return re.sub(r"\s+", "", text or "").strip().lower()


def _coerce_list(raw: Any) -> List[Any]:
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    return list(raw) if isinstance(raw, (list, tuple)) else []


def parse_variant_names(raw: Any) -> tuple[str, ...]:
    names: List[str] = []
    for item in _coerce_list(raw):
        name = item if isinstance(item, str) else (item.get("name") if isinstance(item, dict) else None)
        if name:
            names.append(str(name))
    return tuple(names)


def parse_keywords(raw: Any) -> tuple[str, ...]:
    return tuple(str(item) for item in _coerce_list(raw) if item and str(item).strip())


def _match_keyword(title_key: str, sku_key: str, products: Sequence[CatalogProduct]) -> Optional[CatalogProduct]:
    best: Optional[tuple[int, CatalogProduct]] = None
    for product in products:
        for keyword in product.match_keywords:
            key = normalize_text(keyword)
            if not key:
                continue
            if not ((title_key and key in title_key) or (sku_key and key in sku_key)):
                continue
            if best is None or len(key) > best[0]:
                best = (len(key), product)
    return best[1] if best else None


def _match_by_name(haystack: str, products: Sequence[CatalogProduct]) -> Optional[CatalogProduct]:
    if not haystack:
        return None
    best: Optional[tuple[int, CatalogProduct]] = None
    for product in products:
        key = normalize_text(product.name)
        if key and key in haystack and (best is None or len(key) > best[0]):
            best = (len(key), product)
    return best[1] if best else None


def _match_variant(product: CatalogProduct, title_key: str, sku_key: str) -> Optional[str]:
    best: Optional[str] = None
    for variant in product.variants:
        key = normalize_text(variant)
        if not key:
            continue
        if (sku_key and key in sku_key) or key in title_key:
            if best is None or len(key) > len(normalize_text(best)):
                best = variant
    return best


def match_product(
    item_title: Optional[str],
    item_sku: Optional[str],
    products: Sequence[CatalogProduct],
) -> ProductMatch:
    """Keyword aliases first, then the longest catalog name contained in the title, then the SKU."""

    title_key = normalize_text(item_title)
    sku_key = normalize_text(item_sku)
    if not products or (not title_key and not sku_key):
        return ProductMatch(None, None)

    matched_by = "keyword"
    product = _match_keyword(title_key, sku_key, products)
    if product is None:
        matched_by = "title"
        product = _match_by_name(title_key, products)
    if product is None:
        matched_by = "sku"
        product = _match_by_name(sku_key, products)
    if product is None:
        return ProductMatch(None, None)
    return ProductMatch(
        product_id=product.id,
        product_name=product.name,
        variant_name=_match_variant(product, title_key, sku_key),
        matched_by=matched_by,
    )
