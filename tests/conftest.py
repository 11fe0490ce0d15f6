"""Shared fixtures: a file-backed SQLite database per test and fake collaborators."""

import asyncio
import hashlib
import hmac
import json
import os
import time

os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("BACKGROUND_WORKERS_ENABLED", "false")

import pytest

from storefront.common.config import Settings
from storefront.common.db import Base
from storefront.services.fulfillment.bootstrap import build_container
from storefront.services.inventory import models as inventory_models  # noqa: F401
from storefront.services.notification import models as notification_models  # noqa: F401
from storefront.services.orders import models as order_models  # noqa: F401
from storefront.services.orders.schemas import LineItemIn, OrderCreateRequest
from storefront.services.payments import models as payment_models  # noqa: F401
from storefront.services.payments.schemas import VerificationResult


STRIPE_SECRET = "whsec_test_secret"


class FakeVerifier:
    """Confirms whatever the callback claims, unless told otherwise."""

    def __init__(self) -> None:
        self.valid = True
        self.delay_seconds = 0.0
        self.calls = 0

    async def verify(self, payload):
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        event_id = payload.val_id if payload.status == "VALID" else f"{payload.tran_id}:{payload.status}"
        return VerificationResult(
            valid=self.valid,
            amount_cents=payload.amount_cents,
            provider_event_id=event_id,
            order_reference=payload.tran_id,
            status=payload.status,
            transaction_reference=payload.bank_tran_id,
            currency=payload.currency,
            reason=None if self.valid else "gateway refused",
        )


class RecordingCart:
    def __init__(self) -> None:
        self.cleared: list[str] = []
        self.failures_left = 0

    async def clear(self, user_id: str) -> None:
        if self.failures_left:
            self.failures_left -= 1
            raise RuntimeError("cart service unavailable")
        self.cleared.append(user_id)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.always_fail = False

    async def notify(self, aggregate_id: str, kind: str, payload: dict) -> None:
        if self.always_fail:
            raise RuntimeError("broker unavailable")
        self.sent.append((aggregate_id, kind, payload))


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        api_key="test-key",
        database_url=f"sqlite:///{tmp_path / 'storefront.db'}",
        lock_timeout_ms=5000,
        verification_timeout_seconds=1.0,
        reservation_ttl_seconds=900,
        low_stock_threshold=2,
        outbox_max_attempts=3,
        stripe_webhook_secret=STRIPE_SECRET,
        otel_enabled=False,
        background_workers_enabled=False,
    )


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def cart():
    return RecordingCart()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def container(test_settings, verifier, cart, notifier):
    container = build_container(test_settings, verifier=verifier, cart=cart, notifier=notifier)
    Base.metadata.create_all(container.engine)
    yield container
    container.engine.dispose()


@pytest.fixture
def session_factory(container):
    return container.session_factory


@pytest.fixture
def ledger(container):
    return container.ledger


@pytest.fixture
def orders(container):
    return container.orders


@pytest.fixture
def coordinator(container):
    return container.coordinator


@pytest.fixture
def stock(coordinator):
    """Register products: `stock({"P1": 10, "P2": 5})`."""

    def _stock(levels: dict[str, int]) -> None:
        for product_id, count in levels.items():
            coordinator.register_product(product_id, count)

    return _stock


@pytest.fixture
def place_order(coordinator):
    """Place a PENDING order for `{product_id: quantity}` at 100 cents a unit."""

    def _place(lines: dict[str, int], user_id: str = "user-1"):
        req = OrderCreateRequest(
            user_id=user_id,
            line_items=[
                LineItemIn(product_id=product_id, quantity=quantity, unit_price_cents=100)
                for product_id, quantity in lines.items()
            ],
        )
        return coordinator.place_order(req)

    return _place


def callback_form(order, val_id: str = "evt1", status: str = "VALID", amount: str | None = None) -> dict:
    return {
        "tran_id": order.order_id,
        "val_id": val_id,
        "amount": amount if amount is not None else f"{order.total_cents / 100:.2f}",
        "status": status,
        "bank_tran_id": f"bank-{val_id}",
        "currency": order.currency,
    }


@pytest.fixture
def make_callback():
    return callback_form


def stripe_payment_event(order, event_id: str = "evt_stripe_1", event_type: str = "payment_intent.succeeded", **intent) -> bytes:
    """A Stripe PaymentIntent event body for `order`, as Stripe would post it."""

    obj = {
        "id": f"pi_{order.order_id[:8]}",
        "object": "payment_intent",
        "amount": order.total_cents,
        "amount_received": order.total_cents if event_type == "payment_intent.succeeded" else 0,
        "currency": order.currency.lower(),
        "metadata": {"order_id": order.order_id},
    }
    obj.update(intent)
    event = {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    return json.dumps(event).encode("utf-8")


def stripe_signature(payload: bytes, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def stripe_event():
    return stripe_payment_event


@pytest.fixture
def sign_stripe():
    return stripe_signature
