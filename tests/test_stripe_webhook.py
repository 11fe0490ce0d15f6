"""Signed Stripe webhooks through the same dedup ledger and fulfillment boundary."""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from storefront.common.errors import MalformedCallback, VerificationFailed
from storefront.services.fulfillment.main import create_app
from storefront.services.payments.models import EventOutcome, PaymentEventRecord
from storefront.services.payments.stripe_webhook import StripeWebhookVerifier


def _deliver(coordinator, payload, signature):
    return asyncio.run(coordinator.handle_stripe_webhook(payload, signature))


def _counts(ledger, session_factory, product_id):
    with session_factory() as db:
        record = ledger.get_record(db, product_id)
        return record.available_count, record.reserved_count


def test_succeeded_intent_confirms_order_once(
    coordinator, ledger, orders, session_factory, stock, place_order, stripe_event, sign_stripe
):
    stock({"P1": 10})
    order = place_order({"P1": 2})
    payload = stripe_event(order, "evt_1")

    first = _deliver(coordinator, payload, sign_stripe(payload))
    second = _deliver(coordinator, payload, sign_stripe(payload))

    assert (first.status, second.status) == ("processed", "duplicate")
    with session_factory() as db:
        current = orders.get_order(db, order.order_id)
        event = db.get(PaymentEventRecord, "evt_1")
    assert (current.status, current.payment_status) == ("CONFIRMED", "PAID")
    assert current.external_payment_reference == f"pi_{order.order_id[:8]}"
    assert event.outcome == EventOutcome.VALID
    assert _counts(ledger, session_factory, "P1") == (8, 0)


def test_failed_intent_cancels_order_and_releases_stock(
    coordinator, ledger, orders, session_factory, stock, place_order, stripe_event, sign_stripe
):
    stock({"P1": 10})
    order = place_order({"P1": 3})
    payload = stripe_event(order, "evt_2", "payment_intent.payment_failed")

    result = _deliver(coordinator, payload, sign_stripe(payload))

    assert result.status == "processed"
    with session_factory() as db:
        current = orders.get_order(db, order.order_id)
    assert (current.status, current.payment_status) == ("CANCELLED", "FAILED")
    assert _counts(ledger, session_factory, "P1") == (10, 0)


def test_bad_signatures_are_rejected_without_side_effects(
    coordinator, orders, session_factory, stock, place_order, stripe_event, sign_stripe
):
    stock({"P1": 10})
    order = place_order({"P1": 1})
    payload = stripe_event(order, "evt_3")

    forged = _deliver(coordinator, payload, sign_stripe(payload, secret="whsec_someone_else"))
    stale = _deliver(coordinator, payload, sign_stripe(payload, timestamp=int(time.time()) - 3600))
    unsigned = _deliver(coordinator, payload, None)
    tampered = _deliver(coordinator, payload.replace(b"evt_3", b"evt_4"), sign_stripe(payload))

    assert [r.status for r in (forged, stale, unsigned, tampered)] == ["rejected"] * 4
    with session_factory() as db:
        assert db.execute(select(PaymentEventRecord)).scalars().all() == []
        assert orders.get_order(db, order.order_id).status == "PENDING"


def test_intent_must_match_order_and_name_it(
    coordinator, session_factory, stock, place_order, stripe_event, sign_stripe
):
    stock({"P1": 10})
    order = place_order({"P1": 1})

    underpaid = stripe_event(order, "evt_5", amount_received=1)
    other_currency = stripe_event(order, "evt_6", currency="usd")
    anonymous = stripe_event(order, "evt_7", metadata={})

    results = [_deliver(coordinator, body, sign_stripe(body)) for body in (underpaid, other_currency, anonymous)]

    assert [r.reason for r in results] == [
        "amount does not match order total",
        "currency does not match order",
        "payment intent carries no order_id metadata",
    ]
    with session_factory() as db:
        assert db.execute(select(PaymentEventRecord)).scalars().all() == []


def test_unrelated_event_types_are_ignored(coordinator, stock, place_order, stripe_event, sign_stripe):
    stock({"P1": 10})
    order = place_order({"P1": 1})
    payload = stripe_event(order, "evt_8", "invoice.payment_succeeded")

    assert _deliver(coordinator, payload, sign_stripe(payload)).status == "ignored"


def test_verifier_requires_a_configured_secret_and_json_body(sign_stripe):
    with pytest.raises(VerificationFailed):
        StripeWebhookVerifier("").verify(b"{}", "t=1,v1=abc")

    verifier = StripeWebhookVerifier("whsec_test_secret")
    body = b"not json"
    with pytest.raises(MalformedCallback):
        verifier.verify(body, sign_stripe(body))


def test_stripe_route_answers_400_on_rejection(container, stock, place_order, stripe_event, sign_stripe):
    stock({"P1": 10})
    order = place_order({"P1": 1})
    payload = stripe_event(order, "evt_9")

    with TestClient(create_app(container)) as client:
        unsigned = client.post("/payments/stripe/webhook", content=payload)
        signed = client.post(
            "/payments/stripe/webhook", content=payload, headers={"stripe-signature": sign_stripe(payload)}
        )

    assert unsigned.status_code == 400
    assert unsigned.json()["status"] == "rejected"
    assert signed.status_code == 200
    assert signed.json()["status"] == "processed"
