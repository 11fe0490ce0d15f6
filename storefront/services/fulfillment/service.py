"""Fulfillment coordinator.

Turns a verified payment callback into one atomic unit of work: order
transition, stock confirmation for every line, cart-clear and customer
notification intents, and the dedup outcome all commit together or not at all.
Also owns the other flows that touch the same rows (checkout reservation,
administrative status changes, stock adjustment, reservation expiry) so every
stock mutation goes through the inventory ledger.
"""

import asyncio
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from storefront.common.errors import (
    ConcurrencyConflict,
    FulfillmentFailed,
    InvalidOrder,
    InvalidTransition,
    LockTimeout,
    MalformedCallback,
    VerificationFailed,
    VerificationTimeout,
)
from storefront.common.locking import locked_session
from storefront.common.logging import event_id_ctx, logger, order_id_ctx
from storefront.common.metrics import (
    duplicate_events_skipped_total,
    fulfillment_failures_total,
    lock_timeouts_total,
    payment_callbacks_total,
    payment_verification_seconds,
    reservations_expired_total,
)
from storefront.common.outbox import enqueue_outbox
from storefront.common.state_machine import OrderStatus, PaymentStatus
from storefront.common.tracing import get_tracer
from storefront.services.inventory.models import InventoryRecord, MovementReason
from storefront.services.inventory.service import InventoryLedger
from storefront.services.notification.models import OutboxEvent
from storefront.services.notification.service import CART_CLEAR_TOPIC
from storefront.services.orders.models import Order
from storefront.services.orders.schemas import OrderCreateRequest, TransitionMetadata
from storefront.services.orders.service import OrderStateMachine
from storefront.services.payments.dedup import AdmissionDecision, PaymentEventDeduplicator
from storefront.services.payments.models import EventOutcome
from storefront.services.payments.schemas import CallbackResult, VerificationResult, parse_callback
from storefront.services.payments.stripe_webhook import StripeWebhookVerifier
from storefront.services.payments.verifier import PaymentVerifier


tracer = get_tracer(__name__)

# Customer-facing status changes that trigger an email/SMS intent.
NOTIFY_ON_STATUS = {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}


class FulfillmentCoordinator:
    """Orchestrates ledger, state machine and deduplicator per unit of work."""

    def __init__(
        self,
        session_factory,
        ledger: InventoryLedger,
        orders: OrderStateMachine,
        dedup: PaymentEventDeduplicator,
        verifier: PaymentVerifier,
        service_name: str = "fulfillment",
        verification_timeout_seconds: float = 10.0,
        reservation_ttl_seconds: int = 900,
        stripe_verifier: StripeWebhookVerifier | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.orders = orders
        self.dedup = dedup
        self.verifier = verifier
        self.service_name = service_name
        self.verification_timeout_seconds = verification_timeout_seconds
        self.reservation_ttl_seconds = reservation_ttl_seconds
        self.stripe_verifier = stripe_verifier

    # -- checkout -----------------------------------------------------------

    def place_order(self, req: OrderCreateRequest) -> Order:
        """Reserve stock for every line and create the PENDING order, all or nothing."""

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.reservation_ttl_seconds)
        with locked_session(self.session_factory) as db:
            for item in sorted(req.line_items, key=lambda line: line.product_id):
                self.ledger.reserve(db, item.product_id, item.quantity)
            order = self.orders.create_order(db, req, reservation_expires_at=expires_at)
            db.commit()
        logger.info("order_placed order_id=%s lines=%s total_cents=%s", order.order_id, len(req.line_items), order.total_cents)
        return order

    # -- payment callbacks --------------------------------------------------

    async def handle_payment_callback(self, raw_payload: Mapping[str, Any]) -> CallbackResult:
        """Process one gateway callback exactly once per provider event id.

        Returns `processed`, `duplicate` or `rejected`. Raises
        `VerificationTimeout` when the gateway could not be asked in time, and
        `FulfillmentFailed` when the atomic boundary rolled back.
        """

        with tracer.start_as_current_span("fulfillment.payment_callback") as span:
            try:
                payload = parse_callback(raw_payload)
            except MalformedCallback as exc:
                logger.warning("payment callback rejected reason=%s", exc)
                return self._result("rejected", reason=str(exc))

            order_token = order_id_ctx.set(payload.tran_id)
            span.set_attribute("storefront.order_id", payload.tran_id)
            try:
                try:
                    verification = await self._verify(payload)
                except VerificationFailed as exc:
                    logger.warning("payment verification failed tran_id=%s error=%s", payload.tran_id, exc)
                    return self._result("rejected", payload.tran_id, str(exc))
                return await self._process_verified(verification, span)
            finally:
                order_id_ctx.reset(order_token)

    async def handle_stripe_webhook(self, payload: bytes, signature: str | None) -> CallbackResult:
        """Process one signed Stripe webhook delivery.

        Returns `ignored` for event types that settle no payment; otherwise the
        same results and errors as `handle_payment_callback`.
        """

        with tracer.start_as_current_span("fulfillment.stripe_webhook") as span:
            if self.stripe_verifier is None:
                return self._result("rejected", reason="stripe webhooks are not configured")
            try:
                verification = self.stripe_verifier.verify(payload, signature)
            except (MalformedCallback, VerificationFailed) as exc:
                logger.warning("stripe webhook rejected reason=%s", exc)
                return self._result("rejected", reason=str(exc))
            if verification is None:
                return self._result("ignored")

            order_token = order_id_ctx.set(verification.order_reference)
            span.set_attribute("storefront.order_id", verification.order_reference)
            try:
                return await self._process_verified(verification, span)
            finally:
                order_id_ctx.reset(order_token)

    async def _process_verified(self, verification: VerificationResult, span) -> CallbackResult:
        if not verification.valid:
            logger.warning(
                "payment verification refused order_id=%s reason=%s", verification.order_reference, verification.reason
            )
            return self._result("rejected", verification.order_reference or None, verification.reason)

        event_token = event_id_ctx.set(verification.provider_event_id)
        span.set_attribute("storefront.provider_event_id", verification.provider_event_id)
        try:
            # Lock waits block; keep them off the event loop.
            return await asyncio.to_thread(self._admit_and_fulfill, verification)
        finally:
            event_id_ctx.reset(event_token)

    async def _verify(self, payload) -> VerificationResult:
        with payment_verification_seconds.labels(service=self.service_name).time():
            try:
                return await asyncio.wait_for(
                    self.verifier.verify(payload), timeout=self.verification_timeout_seconds
                )
            except asyncio.TimeoutError as exc:
                payment_callbacks_total.labels(service=self.service_name, result="verification_timeout").inc()
                raise VerificationTimeout(
                    f"payment verification exceeded {self.verification_timeout_seconds}s"
                ) from exc
            except VerificationTimeout:
                payment_callbacks_total.labels(service=self.service_name, result="verification_timeout").inc()
                raise

    def _admit_and_fulfill(self, verification: VerificationResult) -> CallbackResult:
        order_id = verification.order_reference
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                logger.warning("payment callback for unknown order order_id=%s", order_id)
                return self._result("rejected", order_id, "order not found")
            if verification.status == "VALID" and verification.amount_cents != order.total_cents:
                logger.error(
                    "payment amount mismatch order_id=%s paid_cents=%s total_cents=%s",
                    order_id,
                    verification.amount_cents,
                    order.total_cents,
                )
                return self._result("rejected", order_id, "amount does not match order total")
            if (
                verification.status == "VALID"
                and verification.currency
                and verification.currency.upper() != order.currency.upper()
            ):
                logger.error(
                    "payment currency mismatch order_id=%s paid_currency=%s order_currency=%s",
                    order_id,
                    verification.currency,
                    order.currency,
                )
                return self._result("rejected", order_id, "currency does not match order")

        decision = self.dedup.admit(verification.provider_event_id, order_id)
        if decision == AdmissionDecision.SKIP_DUPLICATE:
            return self._result("duplicate", order_id)
        return self._fulfill(verification, order_id)

    def _fulfill(self, verification: VerificationResult, order_id: str) -> CallbackResult:
        """The atomic boundary for one admitted provider event."""

        event_id = verification.provider_event_id
        try:
            with locked_session(self.session_factory) as db:
                order = self.orders.get_order(db, order_id, lock=True)
                settled_reason = self._already_settled(order, verification)
                if settled_reason:
                    self.dedup.mark_outcome(db, event_id, EventOutcome.DUPLICATE, settled_reason)
                    db.commit()
                    duplicate_events_skipped_total.labels(service=self.service_name, stage="order").inc()
                    logger.info("payment event for settled order order_id=%s reason=%s", order_id, settled_reason)
                    return self._result("duplicate", order_id, settled_reason)

                if verification.status == "VALID":
                    self._confirm_payment(db, order, verification)
                else:
                    self._record_payment_failure(db, order, verification)
                self.dedup.mark_outcome(db, event_id, EventOutcome.VALID)
                db.commit()
        except Exception as exc:
            self._fail_boundary(order_id, event_id, exc)
            raise FulfillmentFailed(order_id, event_id, exc) from exc

        logger.info("payment processed order_id=%s status=%s", order_id, verification.status)
        return self._result("processed", order_id)

    @staticmethod
    def _already_settled(order: Order, verification: VerificationResult) -> str | None:
        if order.payment_status == PaymentStatus.PAID:
            return "order already paid"
        if verification.status != "VALID" and order.status == OrderStatus.CANCELLED:
            return "order already cancelled"
        return None

    def _confirm_payment(self, db: Session, order: Order, verification: VerificationResult) -> None:
        self.orders.apply_transition(
            db,
            order.order_id,
            OrderStatus.CONFIRMED,
            TransitionMetadata(
                actor="payment-gateway",
                description="payment confirmed",
                event_id=verification.provider_event_id,
            ),
            payment_status=PaymentStatus.PAID,
            external_payment_reference=verification.transaction_reference or verification.provider_event_id,
        )
        self._confirm_sales(db, order)
        enqueue_outbox(
            db,
            OutboxEvent,
            topic=CART_CLEAR_TOPIC,
            aggregate_type="order",
            aggregate_id=order.order_id,
            payload={"kind": "cart_clear", "user_id": order.user_id, "order_id": order.order_id},
        )
        enqueue_outbox(
            db,
            OutboxEvent,
            topic="notification.payment_confirmed",
            aggregate_type="order",
            aggregate_id=order.order_id,
            payload={
                "kind": "payment_confirmed",
                "order_id": order.order_id,
                "user_id": order.user_id,
                "total_cents": order.total_cents,
                "currency": order.currency,
            },
        )

    def _record_payment_failure(self, db: Session, order: Order, verification: VerificationResult) -> None:
        payment_status = PaymentStatus.FAILED if verification.status == "FAILED" else PaymentStatus.CANCELLED
        self._transition_with_effects(
            db,
            order,
            OrderStatus.CANCELLED,
            TransitionMetadata(
                actor="payment-gateway",
                description=f"payment {verification.status.lower()}",
                event_id=verification.provider_event_id,
            ),
            payment_status=payment_status,
        )

    def _fail_boundary(self, order_id: str, event_id: str, exc: Exception) -> None:
        """Release the dedup claim and raise an operator alert after a rollback."""

        error_type = type(exc).__name__
        if isinstance(exc, LockTimeout):
            lock_timeouts_total.labels(service=self.service_name).inc()
        fulfillment_failures_total.labels(service=self.service_name, error_type=error_type).inc()
        payment_callbacks_total.labels(service=self.service_name, result="failed").inc()
        logger.error(
            "fulfillment_failed order_id=%s provider_event_id=%s error_type=%s error=%s",
            order_id,
            event_id,
            error_type,
            exc,
        )
        try:
            self.dedup.mark_invalid(event_id, f"{error_type}: {exc}")
        except Exception:
            # An unreleased claim is picked up again once its lease runs out.
            logger.exception("could not release payment event claim provider_event_id=%s", event_id)
        try:
            with locked_session(self.session_factory) as db:
                enqueue_outbox(
                    db,
                    OutboxEvent,
                    topic="alerts.fulfillment_failed",
                    aggregate_type="order",
                    aggregate_id=order_id,
                    payload={
                        "kind": "fulfillment_failed",
                        "order_id": order_id,
                        "provider_event_id": event_id,
                        "error_type": error_type,
                        "error": str(exc)[:500],
                    },
                )
                db.commit()
        except Exception:
            # The error log above is the alert of last resort.
            logger.exception("could not record fulfillment alert order_id=%s", order_id)

    def _result(self, status: str, order_id: str | None = None, reason: str | None = None) -> CallbackResult:
        payment_callbacks_total.labels(service=self.service_name, result=status).inc()
        return CallbackResult(status=status, order_id=order_id, reason=reason)

    # -- administrative operations -------------------------------------------

    def update_order_status(
        self, order_id: str, target: str, metadata: TransitionMetadata | None = None
    ) -> Order:
        """Apply a status change together with its inventory side effects."""

        metadata = metadata or TransitionMetadata()
        with locked_session(self.session_factory) as db:
            order = self.orders.get_order(db, order_id, lock=True)
            payment_status = None
            if target == OrderStatus.CANCELLED and order.payment_status != PaymentStatus.FAILED:
                payment_status = PaymentStatus.CANCELLED
            order = self._transition_with_effects(db, order, target, metadata, payment_status=payment_status)
            db.commit()
        return order

    def register_product(self, product_id: str, initial_stock: int = 0, low_stock_threshold: int | None = None) -> InventoryRecord:
        with locked_session(self.session_factory) as db:
            record = self.ledger.register_product(db, product_id, initial_stock, low_stock_threshold)
            db.commit()
        logger.info("product_registered product_id=%s initial_stock=%s", product_id, initial_stock)
        return record

    def adjust_stock(
        self, product_id: str, delta: int, reason: str = MovementReason.ADJUSTMENT, note: str | None = None
    ) -> InventoryRecord:
        with locked_session(self.session_factory) as db:
            record = self.ledger.adjust(db, product_id, delta, reason, note)
            db.commit()
        logger.info("stock_adjusted product_id=%s delta=%s reason=%s", product_id, delta, reason)
        return record

    def expire_pending_orders(self, now: datetime | None = None, limit: int = 100) -> list[str]:
        """Cancel PENDING orders whose reservation lapsed and return their stock."""

        now = now or datetime.now(timezone.utc)
        with self.session_factory() as db:
            candidates = self.orders.expired_pending_order_ids(db, now, limit)
        expired = []
        for order_id in candidates:
            try:
                if self._expire_one(order_id):
                    expired.append(order_id)
            except (InvalidTransition, ConcurrencyConflict, LockTimeout) as exc:
                logger.info("reservation expiry skipped order_id=%s reason=%s", order_id, exc)
        if expired:
            reservations_expired_total.labels(service=self.service_name).inc(len(expired))
            logger.info("reservations expired count=%s", len(expired))
        return expired

    def _expire_one(self, order_id: str) -> bool:
        with locked_session(self.session_factory) as db:
            order = self.orders.get_order(db, order_id, lock=True)
            # Re-checked under the lock: a payment may have confirmed it meanwhile.
            if order.status != OrderStatus.PENDING:
                return False
            self._transition_with_effects(
                db,
                order,
                OrderStatus.CANCELLED,
                TransitionMetadata(actor="reservation-expiry", description="stock reservation expired"),
                payment_status=PaymentStatus.CANCELLED,
            )
            db.commit()
        return True

    async def run_expiry_forever(self, interval_seconds: float) -> None:
        while True:
            try:
                await asyncio.to_thread(self.expire_pending_orders)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("reservation expiry loop error: %s", exc)
            await asyncio.sleep(interval_seconds)

    # -- shared helpers ------------------------------------------------------

    def _transition_with_effects(
        self,
        db: Session,
        order: Order,
        target: str,
        metadata: TransitionMetadata,
        payment_status: str | None = None,
    ) -> Order:
        from_status = order.status
        order = self.orders.apply_transition(db, order.order_id, target, metadata, payment_status=payment_status)
        if target == OrderStatus.CONFIRMED:
            self._confirm_sales(db, order)
        elif target == OrderStatus.CANCELLED:
            self._return_stock(db, order, from_status)
        if target in NOTIFY_ON_STATUS:
            enqueue_outbox(
                db,
                OutboxEvent,
                topic="notification.order_status",
                aggregate_type="order",
                aggregate_id=order.order_id,
                payload={
                    "kind": f"order_{target.lower()}",
                    "order_id": order.order_id,
                    "user_id": order.user_id,
                    "status": target,
                    "location": metadata.location,
                    "description": metadata.description,
                },
            )
        return order

    def _confirm_sales(self, db: Session, order: Order) -> None:
        lines = sorted(order.line_items, key=lambda line: line.product_id)
        if not lines:
            raise InvalidOrder(f"order {order.order_id} has no line items")
        self.ledger.lock_records(db, [line.product_id for line in lines])
        for line in lines:
            self.ledger.confirm_sale(db, line.product_id, line.quantity, order.order_id)

    def _return_stock(self, db: Session, order: Order, from_status: str) -> None:
        lines = sorted(order.line_items, key=lambda line: line.product_id)
        self.ledger.lock_records(db, [line.product_id for line in lines])
        for line in lines:
            if from_status == OrderStatus.PENDING:
                self.ledger.release(db, line.product_id, line.quantity)
            else:
                self.ledger.restock(db, line.product_id, line.quantity, order.order_id)

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            return self.orders.get_order(db, order_id)
