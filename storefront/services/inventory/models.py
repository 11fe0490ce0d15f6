"""Inventory database models: per-product counts and the movement log."""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from storefront.common.db import Base


class MovementReason:
    PURCHASE = "PURCHASE"
    SOLD = "SOLD"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"


class InventoryRecord(Base):
    """Authoritative stock counts for one product."""

    __tablename__ = "inventory_records"
    __table_args__ = (
        CheckConstraint("available_count >= 0", name="ck_inventory_available_non_negative"),
        CheckConstraint("reserved_count >= 0", name="ck_inventory_reserved_non_negative"),
    )

    product_id: Mapped[str] = mapped_column(String, primary_key=True)
    available_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StockMovement(Base):
    """Append-only record of one stock-affecting event."""

    __tablename__ = "stock_movements"

    movement_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("inventory_records.product_id"), index=True)
    quantity_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String, index=True)
    reference_order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    note: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
