"""Checkout, administrative status changes and reservation expiry."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from storefront.common.errors import InsufficientStock, InvalidTransition, ProductNotFound
from storefront.services.inventory.models import MovementReason, StockMovement
from storefront.services.notification.models import OutboxEvent
from storefront.services.orders.models import Order
from storefront.services.orders.schemas import TransitionMetadata


def _counts(ledger, session_factory, product_id):
    with session_factory() as db:
        record = ledger.get_record(db, product_id)
        return record.available_count, record.reserved_count


def test_place_order_reserves_every_line(coordinator, ledger, session_factory, stock, place_order):
    stock({"P1": 10, "P2": 5})
    order = place_order({"P1": 2, "P2": 1})

    assert order.status == "PENDING"
    assert order.reservation_expires_at is not None
    assert _counts(ledger, session_factory, "P1") == (8, 2)
    assert _counts(ledger, session_factory, "P2") == (4, 1)


def test_place_order_is_all_or_nothing(ledger, session_factory, stock, place_order):
    stock({"P1": 10, "P2": 1})

    with pytest.raises(InsufficientStock):
        place_order({"P1": 2, "P2": 3})

    assert _counts(ledger, session_factory, "P1") == (10, 0)
    with session_factory() as db:
        assert db.execute(select(Order)).scalars().all() == []


def test_place_order_for_unknown_product(stock, place_order):
    stock({"P1": 10})
    with pytest.raises(ProductNotFound):
        place_order({"P1": 1, "ghost": 1})


def test_manual_confirmation_sells_reserved_stock(coordinator, ledger, session_factory, stock, place_order):
    """Cash-on-delivery orders are confirmed by staff rather than a gateway callback."""

    stock({"P1": 10})
    order = place_order({"P1": 2})

    updated = coordinator.update_order_status(order.order_id, "CONFIRMED", TransitionMetadata(actor="staff-7"))

    assert updated.status == "CONFIRMED"
    assert _counts(ledger, session_factory, "P1") == (8, 0)


def test_cancelling_pending_order_releases_reservation(coordinator, ledger, session_factory, stock, place_order):
    stock({"P1": 10})
    order = place_order({"P1": 4})

    updated = coordinator.update_order_status(order.order_id, "CANCELLED")

    assert (updated.status, updated.payment_status) == ("CANCELLED", "CANCELLED")
    assert _counts(ledger, session_factory, "P1") == (10, 0)
    with session_factory() as db:
        movements = db.execute(select(StockMovement).where(StockMovement.reference_order_id == order.order_id)).all()
    assert movements == []


def test_cancelling_confirmed_order_restocks(coordinator, ledger, session_factory, stock, place_order):
    stock({"P1": 10})
    order = place_order({"P1": 3})
    coordinator.update_order_status(order.order_id, "CONFIRMED")
    coordinator.update_order_status(order.order_id, "PROCESSING")

    coordinator.update_order_status(order.order_id, "CANCELLED", TransitionMetadata(description="customer request"))

    assert _counts(ledger, session_factory, "P1") == (10, 0)
    with session_factory() as db:
        returns = (
            db.execute(
                select(StockMovement.quantity_delta).where(
                    StockMovement.reference_order_id == order.order_id,
                    StockMovement.reason == MovementReason.RETURN,
                )
            )
            .scalars()
            .all()
        )
        assert ledger.reconcile(db, "P1")["balanced"] is True
    assert returns == [3]


def test_shipping_and_delivery_notify_customer(coordinator, session_factory, stock, place_order):
    stock({"P1": 10})
    order = place_order({"P1": 1})
    for status in ("CONFIRMED", "PROCESSING"):
        coordinator.update_order_status(order.order_id, status)
    shipped = coordinator.update_order_status(
        order.order_id, "SHIPPED", TransitionMetadata(actor="warehouse", location="Chattogram")
    )
    delivered = coordinator.update_order_status(order.order_id, "DELIVERED")

    assert shipped.shipped_at is not None
    assert delivered.delivered_at is not None
    with session_factory() as db:
        kinds = [
            row.payload["kind"]
            for row in db.execute(select(OutboxEvent).where(OutboxEvent.topic == "notification.order_status"))
            .scalars()
            .all()
        ]
    assert sorted(kinds) == ["order_delivered", "order_shipped"]


def test_invalid_status_change_has_no_side_effects(coordinator, ledger, session_factory, stock, place_order):
    stock({"P1": 10})
    order = place_order({"P1": 2})

    with pytest.raises(InvalidTransition):
        coordinator.update_order_status(order.order_id, "SHIPPED")

    assert _counts(ledger, session_factory, "P1") == (8, 2)


def test_expiry_cancels_only_lapsed_pending_orders(coordinator, ledger, orders, session_factory, stock, place_order):
    stock({"P1": 10})
    lapsed = place_order({"P1": 2})
    paid = place_order({"P1": 1})
    fresh = place_order({"P1": 3})
    coordinator.update_order_status(paid.order_id, "CONFIRMED")

    expired = coordinator.expire_pending_orders(now=datetime.now(timezone.utc) + timedelta(seconds=901))

    assert expired == [lapsed.order_id, fresh.order_id] or expired == [fresh.order_id, lapsed.order_id]
    assert _counts(ledger, session_factory, "P1") == (9, 0)
    with session_factory() as db:
        assert orders.get_order(db, paid.order_id).status == "CONFIRMED"
        history = orders.history(db, lapsed.order_id)
    assert history[-1].actor == "reservation-expiry"


def test_expiry_ignores_orders_still_within_ttl(coordinator, ledger, session_factory, stock, place_order):
    stock({"P1": 10})
    place_order({"P1": 2})

    assert coordinator.expire_pending_orders() == []
    assert _counts(ledger, session_factory, "P1") == (8, 2)


def test_expiry_loop_sweeps_off_the_event_loop_thread(coordinator, monkeypatch):
    threads = []
    monkeypatch.setattr(coordinator, "expire_pending_orders", lambda: threads.append(threading.get_ident()) or [])

    async def run_briefly():
        task = asyncio.create_task(coordinator.run_expiry_forever(0.01))
        await asyncio.sleep(0.1)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return threading.get_ident()

    loop_thread = asyncio.run(run_briefly())

    assert threads
    assert loop_thread not in threads
