from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Date, DateTime, Float, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


SYSTEM_CREATOR = "system"


class AppConfig(Base):
    __tablename__ = "app_config"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class OnlineOrder(Base):
    __tablename__ = "online_orders"
    __table_args__ = (UniqueConstraint("order_no", name="uq_online_orders_order_no"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_no: Mapped[str] = mapped_column(String(64), nullable=False)
    site_id: Mapped[str | None] = mapped_column(String(64), index=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False, default="OTHER")
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="RETAIL")
    customer_name: Mapped[str | None] = mapped_column(String)
    customer_phone: Mapped[str | None] = mapped_column(String(32))
    address: Mapped[str | None] = mapped_column(Text)
    product_id: Mapped[str | None] = mapped_column(String(64))
    product_name: Mapped[str | None] = mapped_column(String)
    variant_name: Mapped[str | None] = mapped_column(String)
    item_title: Mapped[str | None] = mapped_column(String)
    item_sku: Mapped[str | None] = mapped_column(String)
    merchant_name: Mapped[str | None] = mapped_column(String)
    promotion_channel: Mapped[str | None] = mapped_column(String)
    rent_start_date: Mapped[date | None] = mapped_column(Date)
    return_deadline: Mapped[date | None] = mapped_column(Date)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rent_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    insurance_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    deposit: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    logistics_company: Mapped[str | None] = mapped_column(String)
    tracking_number: Mapped[str | None] = mapped_column(String)
    latest_logistics_info: Mapped[str | None] = mapped_column(Text)
    return_logistics_company: Mapped[str | None] = mapped_column(String)
    return_tracking_number: Mapped[str | None] = mapped_column(String)
    return_latest_logistics_info: Mapped[str | None] = mapped_column(Text)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False, default=SYSTEM_CREATOR)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Order(Base):
    """Locally created order; owned by the back-office, only touched by sync."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_no: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    creator_id: Mapped[str | None] = mapped_column(String(64))
    mini_program_order_no: Mapped[str | None] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    logistics_company: Mapped[str | None] = mapped_column(String)
    tracking_number: Mapped[str | None] = mapped_column(String)
    latest_logistics_info: Mapped[str | None] = mapped_column(Text)
    return_logistics_company: Mapped[str | None] = mapped_column(String)
    return_tracking_number: Mapped[str | None] = mapped_column(String)
    return_latest_logistics_info: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    variants: Mapped[Any | None] = mapped_column(JSON)
    match_keywords: Mapped[Any | None] = mapped_column(JSON)


LOGISTICS_FIELDS = (
    "logistics_company",
    "tracking_number",
    "latest_logistics_info",
    "return_logistics_company",
    "return_tracking_number",
    "return_latest_logistics_info",
)
