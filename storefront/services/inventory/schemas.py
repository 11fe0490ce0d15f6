"""API request/response schemas for inventory endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ProductRegisterRequest(BaseModel):
    product_id: str = Field(min_length=1)
    initial_stock: int = Field(default=0, ge=0)
    low_stock_threshold: int | None = Field(default=None, ge=0)


class StockAdjustRequest(BaseModel):
    """Administrative correction; `delta` may be negative but never zero."""

    delta: int
    reason: Literal["ADJUSTMENT", "PURCHASE", "RETURN"] = "ADJUSTMENT"
    note: str | None = Field(default=None, max_length=500)


class InventoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    available_count: int
    reserved_count: int
    low_stock_threshold: int
    version: int


class AvailabilityResponse(BaseModel):
    product_id: str
    quantity: int
    available: bool


class StockMovementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    movement_id: int
    quantity_delta: int
    reason: str
    reference_order_id: str | None
    note: str | None
    created_at: datetime | None


class ReconciliationResponse(BaseModel):
    product_id: str
    available_count: int
    reserved_count: int
    replayed_on_hand: int
    movement_count: int
    balanced: bool
