"""Exception taxonomy for inventory, order, payment and locking failures.

Everything raised by the fulfillment core derives from `StorefrontError` so the
HTTP layer can map one hierarchy to status codes. A duplicate payment event is
not an error: it is reported as a result value by the coordinator.
"""


class StorefrontError(Exception):
    """Base class for domain errors raised by the fulfillment core."""


class InventoryError(StorefrontError):
    pass


class InsufficientStock(InventoryError):
    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(f"insufficient stock for {product_id}: requested={requested} available={available}")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidRelease(InventoryError):
    pass


class InvalidConfirmation(InventoryError):
    pass


class NegativeStock(InventoryError):
    pass


class ProductNotFound(InventoryError):
    pass


class ProductAlreadyExists(InventoryError):
    pass


class InvalidQuantity(InventoryError, ValueError):
    pass


class OrderError(StorefrontError):
    pass


class OrderNotFound(OrderError):
    pass


class InvalidTransition(OrderError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid transition: {current} -> {target}")
        self.current = current
        self.target = target


class InvalidOrder(OrderError, ValueError):
    pass


class VerificationError(StorefrontError):
    pass


class VerificationFailed(VerificationError):
    pass


class VerificationTimeout(VerificationError):
    pass


class MalformedCallback(VerificationError, ValueError):
    pass


class LockTimeout(StorefrontError):
    """A row or database lock could not be acquired within `lock_timeout_ms`."""


class ConcurrencyConflict(StorefrontError):
    """An optimistic version guard matched no row."""


class FulfillmentFailed(StorefrontError):
    """The atomic fulfillment boundary rolled back; needs operator attention."""

    def __init__(self, order_id: str, provider_event_id: str, cause: Exception) -> None:
        super().__init__(f"fulfillment failed for order {order_id}: {cause}")
        self.order_id = order_id
        self.provider_event_id = provider_event_id
        self.cause = cause
