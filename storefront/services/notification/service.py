"""Outbox relay: delivers staged intents to the cart and notification collaborators.

Delivery happens after the writing transaction committed, so a slow or failing
collaborator never rolls back fulfillment. Failed rows are retried until
`max_attempts`, then parked as DEAD for an operator.
"""

import asyncio

from storefront.common.logging import logger
from storefront.common.metrics import outbox_dead_total, retries_total
from storefront.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from storefront.services.notification.collaborators import CartClient, Notifier
from storefront.services.notification.models import OutboxEvent


CART_CLEAR_TOPIC = "cart.clear"


class OutboxRelay:
    """Claims outbox rows in batches and hands each to its collaborator."""

    def __init__(
        self,
        session_factory,
        cart: CartClient,
        notifier: Notifier,
        service_name: str = "fulfillment",
        batch_size: int = 100,
        max_attempts: int = 5,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.session_factory = session_factory
        self.cart = cart
        self.notifier = notifier
        self.service_name = service_name
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.poll_interval_seconds = poll_interval_seconds

    async def dispatch(self, row: dict) -> None:
        payload = row["payload"]
        if row["topic"] == CART_CLEAR_TOPIC:
            await self.cart.clear(payload["user_id"])
            return
        await self.notifier.notify(row["aggregate_id"], payload["kind"], payload)

    async def publish_once(self) -> int:
        """Deliver one claimed batch; returns the number of rows marked SENT."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=self.batch_size)
            db.commit()
        delivered = 0
        for row in rows:
            try:
                await self.dispatch(row)
            except Exception as exc:
                logger.warning(
                    "outbox delivery failed id=%s topic=%s attempt=%s error=%s",
                    row["id"],
                    row["topic"],
                    row["attempts"] + 1,
                    exc,
                )
                retries_total.labels(service=self.service_name, dependency=row["topic"]).inc()
                with self.session_factory() as db:
                    status = requeue_outbox_event(db, OutboxEvent, row["id"], str(exc), self.max_attempts)
                    db.commit()
                if status == "DEAD":
                    logger.error("outbox event abandoned id=%s topic=%s", row["id"], row["topic"])
                    outbox_dead_total.labels(service=self.service_name, topic=row["topic"]).inc()
                continue
            with self.session_factory() as db:
                mark_outbox_sent(db, OutboxEvent, row["id"])
                db.commit()
            delivered += 1
        with self.session_factory() as db:
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
        return delivered

    async def run_forever(self) -> None:
        """Continuously relay outbox rows until cancelled."""

        while True:
            try:
                await self.publish_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("outbox relay loop error: %s", exc)
            await asyncio.sleep(self.poll_interval_seconds)
