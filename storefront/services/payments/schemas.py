"""Typed shapes for gateway callbacks and their verification.

The gateway posts loosely typed form fields; they are parsed here once, and
anything that does not fit is rejected before it reaches the coordinator.
"""

from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from storefront.common.errors import MalformedCallback


CallbackStatus = Literal["VALID", "FAILED", "CANCELLED"]

# Gateway status spellings folded onto the three outcomes the core handles.
STATUS_ALIASES = {
    "VALID": "VALID",
    "VALIDATED": "VALID",
    "SUCCESS": "VALID",
    "FAILED": "FAILED",
    "FAIL": "FAILED",
    "CANCELLED": "CANCELLED",
    "CANCELED": "CANCELLED",
    "UNATTEMPTED": "CANCELLED",
    "EXPIRED": "CANCELLED",
}


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CallbackPayload(BaseModel):
    """Form fields of a gateway IPN/redirect callback."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    tran_id: str = Field(min_length=1)
    val_id: str | None = None
    amount: Decimal = Field(ge=0)
    status: CallbackStatus
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    bank_tran_id: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        if isinstance(value, str):
            return STATUS_ALIASES.get(value.strip().upper(), value)
        return value

    @field_validator("val_id", "bank_tran_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


def parse_callback(raw: Mapping[str, Any]) -> CallbackPayload:
    """Parse raw form fields, raising `MalformedCallback` on any schema error."""

    try:
        payload = CallbackPayload.model_validate(dict(raw))
    except (ValidationError, InvalidOperation) as exc:
        raise MalformedCallback(f"malformed payment callback: {exc}") from exc
    if payload.status == "VALID" and not payload.val_id:
        raise MalformedCallback("successful payment callback without val_id")
    return payload


class VerificationResult(BaseModel):
    """What the gateway confirmed about one callback."""

    valid: bool
    amount_cents: int
    provider_event_id: str
    order_reference: str
    status: CallbackStatus
    transaction_reference: str | None = None
    currency: str | None = None
    reason: str | None = None


class CallbackResult(BaseModel):
    status: Literal["processed", "duplicate", "rejected", "ignored"]
    order_id: str | None = None
    reason: str | None = None


class StripePaymentIntent(BaseModel):
    """The fields of a Stripe PaymentIntent the coordinator needs."""

    model_config = ConfigDict(extra="ignore")

    id: str
    amount: int = Field(default=0, ge=0)
    amount_received: int = Field(default=0, ge=0)
    currency: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any]


class StripeEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str
    data: StripeEventData
