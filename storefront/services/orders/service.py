"""Order state machine with an immutable status timeline.

Transition writes are guarded by `(order_id, status, state_version)` so a stale
concurrent writer fails instead of overwriting a newer status. Methods join the
caller's session; the caller commits.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from storefront.common.errors import ConcurrencyConflict, InvalidOrder, OrderNotFound
from storefront.common.locking import lock_rows
from storefront.common.logging import logger
from storefront.common.metrics import order_transitions_total
from storefront.common.state_machine import OrderStatus, PaymentStatus, validate_transition
from storefront.services.orders.models import Order, OrderLineItem, OrderStatusHistory
from storefront.services.orders.schemas import OrderCreateRequest, TransitionMetadata


class OrderStateMachine:
    """Owns order status progression and its audit trail."""

    def __init__(self, service_name: str = "fulfillment") -> None:
        self.service_name = service_name

    def create_order(
        self,
        db: Session,
        req: OrderCreateRequest,
        reservation_expires_at: datetime | None = None,
        actor: str = "checkout",
    ) -> Order:
        """Insert a PENDING order with its line items and first timeline row."""

        order = Order(
            user_id=req.user_id,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            subtotal_cents=req.subtotal_cents,
            tax_cents=req.tax_cents,
            shipping_cents=req.shipping_cents,
            total_cents=req.total_cents,
            currency=req.currency.upper(),
            state_version=0,
            external_payment_reference=None,
            reservation_expires_at=reservation_expires_at,
            shipped_at=None,
            delivered_at=None,
            line_items=[
                OrderLineItem(
                    position=position,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price_cents=item.unit_price_cents,
                )
                for position, item in enumerate(req.line_items)
            ],
        )
        db.add(order)
        db.flush()
        db.add(
            OrderStatusHistory(
                order_id=order.order_id,
                from_status=None,
                to_status=OrderStatus.PENDING,
                actor=actor,
                description="order placed",
            )
        )
        return order

    def get_order(self, db: Session, order_id: str, lock: bool = False) -> Order:
        stmt = select(Order).where(Order.order_id == order_id).execution_options(populate_existing=True)
        if lock:
            rows = lock_rows(db, stmt)
            order = rows[0] if rows else None
        else:
            order = db.execute(stmt).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(f"order {order_id} not found")
        return order

    def apply_transition(
        self,
        db: Session,
        order_id: str,
        target: str,
        metadata: TransitionMetadata | None = None,
        payment_status: str | None = None,
        external_payment_reference: str | None = None,
    ) -> Order:
        """Validate and apply one status transition under a row lock.

        The status write, any payment fields that change with it, and the
        timeline row land in the caller's transaction together.
        """

        metadata = metadata or TransitionMetadata()
        order = self.get_order(db, order_id, lock=True)
        validate_transition(order.status, target)

        new_payment_status = payment_status or order.payment_status
        if new_payment_status == PaymentStatus.PAID and target in (OrderStatus.PENDING, OrderStatus.CANCELLED):
            raise InvalidOrder(f"order {order_id} cannot be {target} while payment is PAID")

        from_status = order.status
        current_version = order.state_version
        now = datetime.now(timezone.utc)
        values = {
            "status": target,
            "payment_status": new_payment_status,
            "state_version": current_version + 1,
            "updated_at": now,
        }
        if external_payment_reference is not None:
            values["external_payment_reference"] = external_payment_reference
        if target == OrderStatus.SHIPPED and order.shipped_at is None:
            values["shipped_at"] = now
        if target == OrderStatus.DELIVERED and order.delivered_at is None:
            values["delivered_at"] = now

        result = db.execute(
            update(Order)
            .where(
                Order.order_id == order_id,
                Order.status == from_status,
                Order.state_version == current_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"optimistic concurrency conflict for order {order_id} (expected version {current_version})"
            )

        # Already written by the guarded UPDATE; keep the flush from repeating it.
        for key, value in values.items():
            set_committed_value(order, key, value)
        db.add(
            OrderStatusHistory(
                order_id=order_id,
                from_status=from_status,
                to_status=target,
                actor=metadata.actor,
                location=metadata.location,
                description=metadata.description,
                event_id=metadata.event_id,
            )
        )
        order_transitions_total.labels(
            service=self.service_name, from_status=from_status, to_status=target
        ).inc()
        logger.info(
            "order_transition order_id=%s from=%s to=%s actor=%s", order_id, from_status, target, metadata.actor
        )
        return order

    def history(self, db: Session, order_id: str) -> list[OrderStatusHistory]:
        self.get_order(db, order_id)
        return (
            db.execute(
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == order_id)
                .order_by(OrderStatusHistory.history_id)
            )
            .scalars()
            .all()
        )

    def expired_pending_order_ids(self, db: Session, now: datetime, limit: int = 100) -> list[str]:
        """Ids of PENDING orders whose stock reservation has lapsed."""

        return (
            db.execute(
                select(Order.order_id)
                .where(
                    Order.status == OrderStatus.PENDING,
                    Order.reservation_expires_at.is_not(None),
                    Order.reservation_expires_at < now,
                )
                .order_by(Order.reservation_expires_at)
                .limit(limit)
            )
            .scalars()
            .all()
        )
