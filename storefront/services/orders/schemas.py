"""API request/response schemas for order endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


OrderStatusName = Literal["PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED"]


class LineItemIn(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price_cents: int = Field(ge=0)


class OrderCreateRequest(BaseModel):
    """Checkout payload: line items and the totals the storefront quoted."""

    user_id: str = Field(min_length=1)
    currency: str = Field(default="BDT", min_length=3, max_length=3)
    line_items: list[LineItemIn] = Field(min_length=1)
    tax_cents: int = Field(default=0, ge=0)
    shipping_cents: int = Field(default=0, ge=0)

    @property
    def subtotal_cents(self) -> int:
        return sum(item.quantity * item.unit_price_cents for item in self.line_items)

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents + self.shipping_cents

    @model_validator(mode="after")
    def _one_line_per_product(self):
        product_ids = [item.product_id for item in self.line_items]
        if len(product_ids) != len(set(product_ids)):
            raise ValueError("each product may appear in only one line item")
        return self


class TransitionMetadata(BaseModel):
    """Who moved the order and what the customer should see about it."""

    actor: str = Field(default="system", min_length=1)
    location: str | None = None
    description: str | None = None
    event_id: str | None = None


class StatusUpdateRequest(TransitionMetadata):
    status: OrderStatusName


class LineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    quantity: int
    unit_price_cents: int


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    user_id: str
    status: str
    payment_status: str
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    total_cents: int
    currency: str
    external_payment_reference: str | None
    line_items: list[LineItemOut]
    reservation_expires_at: datetime | None
    shipped_at: datetime | None
    delivered_at: datetime | None


class HistoryEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: str | None
    to_status: str
    actor: str
    location: str | None
    description: str | None
    event_id: str | None
    created_at: datetime | None
