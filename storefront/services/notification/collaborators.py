"""Outbound collaborators the outbox relay delivers to."""

from typing import Any, Protocol

import httpx

from storefront.common.events import EventEnvelope, KafkaBus
from storefront.common.logging import trace_id_ctx


class CartClient(Protocol):
    async def clear(self, user_id: str) -> None: ...


class Notifier(Protocol):
    async def notify(self, aggregate_id: str, kind: str, payload: dict[str, Any]) -> None: ...


class HttpCartClient:
    """Asks the cart service to empty a customer's cart."""

    def __init__(self, base_url: str, timeout_seconds: float = 5.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def clear(self, user_id: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            resp = await client.post(f"{self.base_url}/carts/{user_id}/clear")
        resp.raise_for_status()


class KafkaNotifier:
    """Publishes notification intents for the email/SMS senders to consume."""

    def __init__(self, bus: KafkaBus, topic: str) -> None:
        self.bus = bus
        self.topic = topic

    async def notify(self, aggregate_id: str, kind: str, payload: dict[str, Any]) -> None:
        await self.bus.publish(
            self.topic,
            EventEnvelope(
                event_type=f"notification.{kind}",
                aggregate_id=aggregate_id,
                trace_id=trace_id_ctx.get(),
                payload=payload,
            ),
        )

    async def close(self) -> None:
        await self.bus.close()
