"""Process bootstrap: builds the engine and wires every component once.

Tests and scripts call `build_container` with their own settings or
collaborators instead of relying on import-time globals.
"""

from dataclasses import dataclass

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from storefront.common.config import Settings
from storefront.common.db import create_db_engine, make_session_factory
from storefront.common.events import KafkaBus
from storefront.services.fulfillment.service import FulfillmentCoordinator
from storefront.services.inventory.service import InventoryLedger
from storefront.services.notification.collaborators import CartClient, HttpCartClient, KafkaNotifier, Notifier
from storefront.services.notification.service import OutboxRelay
from storefront.services.orders.service import OrderStateMachine
from storefront.services.payments.dedup import PaymentEventDeduplicator
from storefront.services.payments.stripe_webhook import StripeWebhookVerifier
from storefront.services.payments.verifier import PaymentVerifier, SSLCommerzVerifier


@dataclass
class Container:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    ledger: InventoryLedger
    orders: OrderStateMachine
    dedup: PaymentEventDeduplicator
    coordinator: FulfillmentCoordinator
    relay: OutboxRelay
    notifier: Notifier

    async def close(self) -> None:
        close = getattr(self.notifier, "close", None)
        if close is not None:
            await close()
        self.engine.dispose()


def build_container(
    settings: Settings,
    verifier: PaymentVerifier | None = None,
    cart: CartClient | None = None,
    notifier: Notifier | None = None,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
) -> Container:
    """Wire ledger, state machine, deduplicator, verifier and relay."""

    engine = create_db_engine(settings)
    session_factory = make_session_factory(engine)
    ledger = InventoryLedger(settings.service_name, settings.low_stock_threshold)
    orders = OrderStateMachine(settings.service_name)
    dedup = PaymentEventDeduplicator(session_factory, settings.service_name, settings.payment_claim_lease_seconds)
    verifier = verifier or SSLCommerzVerifier.from_settings(settings, transport=gateway_transport)
    cart = cart or HttpCartClient(settings.cart_service_url)
    notifier = notifier or KafkaNotifier(KafkaBus(settings.kafka_bootstrap_servers), settings.notification_topic)
    coordinator = FulfillmentCoordinator(
        session_factory,
        ledger,
        orders,
        dedup,
        verifier,
        service_name=settings.service_name,
        verification_timeout_seconds=settings.verification_timeout_seconds,
        reservation_ttl_seconds=settings.reservation_ttl_seconds,
        stripe_verifier=StripeWebhookVerifier.from_settings(settings),
    )
    relay = OutboxRelay(
        session_factory,
        cart,
        notifier,
        service_name=settings.service_name,
        batch_size=settings.outbox_batch_size,
        max_attempts=settings.outbox_max_attempts,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )
    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        ledger=ledger,
        orders=orders,
        dedup=dedup,
        coordinator=coordinator,
        relay=relay,
        notifier=notifier,
    )
