"""HTTP surface for payment callbacks, checkout, order status and stock.

Gateway callbacks and checkout are public; administrative routes require the
configured API key. Background workers (outbox relay and reservation expiry)
run with the app lifecycle.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from storefront.common.config import settings
from storefront.common.errors import (
    ConcurrencyConflict,
    FulfillmentFailed,
    InsufficientStock,
    InvalidConfirmation,
    InvalidOrder,
    InvalidQuantity,
    InvalidRelease,
    InvalidTransition,
    LockTimeout,
    MalformedCallback,
    NegativeStock,
    OrderNotFound,
    ProductAlreadyExists,
    ProductNotFound,
    StorefrontError,
    VerificationFailed,
    VerificationTimeout,
)
from storefront.common.logging import configure_logging, logger, trace_id_ctx
from storefront.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from storefront.common.startup import log_startup_config
from storefront.common.tracing import instrument_app, setup_tracing
from storefront.services.fulfillment.bootstrap import Container, build_container
from storefront.services.inventory.schemas import (
    AvailabilityResponse,
    InventoryResponse,
    ProductRegisterRequest,
    ReconciliationResponse,
    StockAdjustRequest,
    StockMovementOut,
)
from storefront.services.orders.schemas import (
    HistoryEntryOut,
    OrderCreateRequest,
    OrderResponse,
    StatusUpdateRequest,
    TransitionMetadata,
)
from storefront.services.payments.schemas import CallbackResult


ERROR_STATUS_CODES = {
    OrderNotFound: 404,
    ProductNotFound: 404,
    InvalidQuantity: 400,
    InvalidOrder: 400,
    MalformedCallback: 400,
    VerificationFailed: 400,
    InsufficientStock: 409,
    InvalidRelease: 409,
    InvalidConfirmation: 409,
    NegativeStock: 409,
    ProductAlreadyExists: 409,
    InvalidTransition: 409,
    ConcurrencyConflict: 409,
    FulfillmentFailed: 409,
    LockTimeout: 503,
    VerificationTimeout: 504,
}


def status_code_for(exc: StorefrontError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def create_app(container: Container | None = None) -> FastAPI:
    """Build the FastAPI app around an explicitly wired container."""

    container = container or build_container(settings)
    coordinator = container.coordinator
    session_factory = container.session_factory
    service_name = container.settings.service_name

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run outbox relay + reservation expiry with app lifecycle."""

        tasks = []
        if container.settings.background_workers_enabled:
            tasks.append(asyncio.create_task(container.relay.run_forever()))
            tasks.append(
                asyncio.create_task(
                    coordinator.run_expiry_forever(container.settings.expiry_poll_interval_seconds)
                )
            )
        yield
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await container.close()

    app = FastAPI(title="Storefront Fulfillment", lifespan=lifespan)
    app.state.container = container
    instrument_app(app, container.settings)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
        """Map domain errors to HTTP responses."""

        status_code = status_code_for(exc)
        content = {"detail": str(exc), "error_type": type(exc).__name__}
        if isinstance(exc, FulfillmentFailed):
            content.update(
                order_id=exc.order_id,
                provider_event_id=exc.provider_event_id,
                cause=type(exc.cause).__name__,
            )
        if status_code >= 500:
            logger.error("request failed path=%s error_type=%s error=%s", request.url.path, type(exc).__name__, exc)
        return JSONResponse(status_code=status_code, content=content)

    @app.post("/payments/callback", response_model=CallbackResult)
    async def payment_callback(request: Request):
        """Gateway IPN/redirect callback (form-encoded).

        `duplicate` answers 200 so the gateway stops redelivering; a
        verification timeout answers 504 so it tries again.
        """

        form = await request.form()
        result = await coordinator.handle_payment_callback(dict(form))
        if result.status == "rejected":
            return JSONResponse(status_code=400, content=result.model_dump())
        return result

    @app.post("/payments/stripe/webhook", response_model=CallbackResult)
    async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
        """Stripe webhook; the raw body is needed for signature verification."""

        payload = await request.body()
        result = await coordinator.handle_stripe_webhook(payload, stripe_signature)
        if result.status == "rejected":
            return JSONResponse(status_code=400, content=result.model_dump())
        return result

    @app.post("/orders", response_model=OrderResponse)
    def place_order(req: OrderCreateRequest):
        """Reserve stock and open a PENDING order awaiting payment."""

        return coordinator.place_order(req)

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    def get_order(order_id: str):
        return coordinator.get_order(order_id)

    @app.get("/orders/{order_id}/history", response_model=list[HistoryEntryOut])
    def order_history(order_id: str):
        """Status timeline, oldest first."""

        with session_factory() as db:
            return container.orders.history(db, order_id)

    @app.post("/orders/{order_id}/status", response_model=OrderResponse)
    def update_order_status(order_id: str, req: StatusUpdateRequest, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        metadata = TransitionMetadata(
            actor=req.actor, location=req.location, description=req.description, event_id=req.event_id
        )
        return coordinator.update_order_status(order_id, req.status, metadata)

    @app.post("/inventory", response_model=InventoryResponse)
    def register_product(req: ProductRegisterRequest, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        return coordinator.register_product(req.product_id, req.initial_stock, req.low_stock_threshold)

    @app.post("/inventory/{product_id}/adjust", response_model=InventoryResponse)
    def adjust_stock(product_id: str, req: StockAdjustRequest, x_api_key: str | None = Header(default=None)):
        """Administrative stock correction; rejected rather than clamped below zero."""

        enforce_api_key(x_api_key)
        return coordinator.adjust_stock(product_id, req.delta, req.reason, req.note)

    @app.get("/inventory/{product_id}", response_model=InventoryResponse)
    def get_inventory(product_id: str):
        with session_factory() as db:
            return container.ledger.get_record(db, product_id)

    @app.get("/inventory/{product_id}/availability", response_model=AvailabilityResponse)
    def check_availability(product_id: str, quantity: int = Query(default=1, gt=0)):
        with session_factory() as db:
            available = container.ledger.check_availability(db, product_id, quantity)
        return AvailabilityResponse(product_id=product_id, quantity=quantity, available=available)

    @app.get("/inventory/{product_id}/movements", response_model=list[StockMovementOut])
    def stock_movements(product_id: str, limit: int = Query(default=100, gt=0, le=1000)):
        """Newest movements first."""

        with session_factory() as db:
            container.ledger.get_record(db, product_id)
            return container.ledger.movements(db, product_id, limit)

    @app.get("/inventory/{product_id}/reconciliation", response_model=ReconciliationResponse)
    def reconcile(product_id: str):
        with session_factory() as db:
            return container.ledger.reconcile(db, product_id)

    @app.post("/ops/orders/expire")
    def expire_pending_orders(x_api_key: str | None = Header(default=None)):
        """Run one reservation-expiry sweep now."""

        enforce_api_key(x_api_key)
        return {"expired": coordinator.expire_pending_orders()}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


configure_logging()
setup_tracing(settings)
log_startup_config(
    settings,
    [
        "database_url",
        "api_key",
        "stripe_webhook_secret",
        "kafka_bootstrap_servers",
        "cart_service_url",
        "lock_timeout_ms",
        "payment_claim_lease_seconds",
    ],
)
app = create_app()
