"""Payment verification against the SSLCommerz validation APIs.

A callback is never trusted on its own: successful payments are confirmed by
`val_id`, failure and cancel notices by querying the transaction id. Transport
problems and 5xx answers are reported as `VerificationTimeout` so the gateway's
own redelivery takes over; a definite "no" from the gateway is a result with
`valid=False`.
"""

from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx

from storefront.common.config import Settings
from storefront.common.errors import VerificationFailed, VerificationTimeout
from storefront.common.logging import logger
from storefront.common.metrics import retries_total
from storefront.services.payments.schemas import STATUS_ALIASES, CallbackPayload, VerificationResult, to_cents


class PaymentVerifier(Protocol):
    async def verify(self, payload: CallbackPayload) -> VerificationResult: ...


class SSLCommerzVerifier:
    """Confirms callbacks with the gateway before any state is touched."""

    def __init__(
        self,
        validation_url: str,
        transaction_query_url: str,
        store_id: str,
        store_password: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "fulfillment",
    ) -> None:
        self.validation_url = validation_url
        self.transaction_query_url = transaction_query_url
        self.store_id = store_id
        self.store_password = store_password
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.service_name = service_name

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "SSLCommerzVerifier":
        return cls(
            validation_url=settings.sslcommerz_validation_url,
            transaction_query_url=settings.sslcommerz_transaction_query_url,
            store_id=settings.sslcommerz_store_id,
            store_password=settings.sslcommerz_store_password,
            timeout_seconds=settings.verification_timeout_seconds,
            transport=transport,
            service_name=settings.service_name,
        )

    async def verify(self, payload: CallbackPayload) -> VerificationResult:
        if payload.status == "VALID":
            return await self._validate_payment(payload)
        return await self._confirm_failure(payload)

    async def _get_json(self, url: str, params: dict) -> dict:
        params = {**params, "store_id": self.store_id, "store_passwd": self.store_password, "format": "json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                resp = await client.get(url, params=params)
        except httpx.TimeoutException as exc:
            retries_total.labels(service=self.service_name, dependency="payment-gateway").inc()
            raise VerificationTimeout(f"payment gateway timed out: {exc}") from exc
        except httpx.TransportError as exc:
            retries_total.labels(service=self.service_name, dependency="payment-gateway").inc()
            raise VerificationTimeout(f"payment gateway unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise VerificationTimeout(f"payment gateway unavailable (status={resp.status_code})")
        if resp.status_code >= 400:
            raise VerificationFailed(f"payment gateway rejected validation request (status={resp.status_code})")
        try:
            data = resp.json()
        except ValueError as exc:
            raise VerificationFailed("payment gateway returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise VerificationFailed("payment gateway response malformed")
        return data

    async def _validate_payment(self, payload: CallbackPayload) -> VerificationResult:
        data = await self._get_json(self.validation_url, {"val_id": payload.val_id})
        gateway_status = str(data.get("status", "")).upper()
        order_reference = str(data.get("tran_id") or payload.tran_id)
        amount_cents = _gateway_amount_cents(data.get("amount"))

        reason = None
        if gateway_status not in ("VALID", "VALIDATED"):
            reason = f"gateway status {gateway_status or 'missing'}"
        elif order_reference != payload.tran_id:
            reason = "tran_id does not match validated transaction"
        elif amount_cents is None:
            reason = "gateway did not confirm a usable amount"
        if reason:
            logger.warning("payment validation refused tran_id=%s val_id=%s reason=%s", payload.tran_id, payload.val_id, reason)
        return VerificationResult(
            valid=reason is None,
            amount_cents=amount_cents if amount_cents is not None else 0,
            provider_event_id=payload.val_id,
            order_reference=order_reference,
            status="VALID",
            transaction_reference=data.get("bank_tran_id") or payload.bank_tran_id,
            currency=data.get("currency") or payload.currency,
            reason=reason,
        )

    async def _confirm_failure(self, payload: CallbackPayload) -> VerificationResult:
        data = await self._get_json(self.transaction_query_url, {"tran_id": payload.tran_id})
        elements = data.get("element") or []
        statuses = {STATUS_ALIASES.get(str(item.get("status", "")).upper()) for item in elements if isinstance(item, dict)}
        reason = None
        if "VALID" in statuses:
            reason = "gateway reports a successful payment for this transaction"
        elif payload.status not in statuses:
            reason = f"gateway does not report status {payload.status}"
        return VerificationResult(
            valid=reason is None,
            amount_cents=payload.amount_cents,
            provider_event_id=f"{payload.tran_id}:{payload.status}",
            order_reference=payload.tran_id,
            status=payload.status,
            currency=payload.currency,
            reason=reason,
        )


def _gateway_amount_cents(value) -> int | None:
    """The validated amount in cents, or None when the gateway gave none usable."""

    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return to_cents(amount)
