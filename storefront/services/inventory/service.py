"""Inventory ledger: stock counts, reservations, and the movement log.

Every mutation is a single conditional `UPDATE` guarded by the count it would
otherwise drive negative, so concurrent writers on one product serialize in the
database and never lose an update. Methods take the caller's session and never
commit; the caller owns the transaction boundary.
"""

from sqlalchemy import func, select, true, update
from sqlalchemy.orm import Session

from storefront.common.errors import (
    InsufficientStock,
    InvalidConfirmation,
    InvalidQuantity,
    InvalidRelease,
    NegativeStock,
    ProductAlreadyExists,
    ProductNotFound,
)
from storefront.common.locking import lock_rows
from storefront.common.logging import logger
from storefront.common.metrics import stock_movements_total
from storefront.common.outbox import enqueue_outbox
from storefront.services.inventory.models import InventoryRecord, MovementReason, StockMovement
from storefront.services.notification.models import OutboxEvent


ADJUSTMENT_REASONS = {MovementReason.ADJUSTMENT, MovementReason.PURCHASE, MovementReason.RETURN}


def _require_positive(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise InvalidQuantity(f"quantity must be a positive integer, got {quantity!r}")


class InventoryLedger:
    """Owns per-product stock and its auditable movement history."""

    def __init__(self, service_name: str = "fulfillment", default_low_stock_threshold: int = 5) -> None:
        self.service_name = service_name
        self.default_low_stock_threshold = default_low_stock_threshold

    def register_product(
        self,
        db: Session,
        product_id: str,
        initial_stock: int = 0,
        low_stock_threshold: int | None = None,
    ) -> InventoryRecord:
        """Create the stock record for a new product.

        Initial stock is booked as a PURCHASE movement so the movement log
        replays to the current count from the first entry.
        """

        if initial_stock < 0:
            raise NegativeStock(f"initial stock for {product_id} cannot be negative")
        if db.get(InventoryRecord, product_id) is not None:
            raise ProductAlreadyExists(f"product {product_id} already has an inventory record")
        record = InventoryRecord(
            product_id=product_id,
            available_count=initial_stock,
            reserved_count=0,
            low_stock_threshold=(
                self.default_low_stock_threshold if low_stock_threshold is None else low_stock_threshold
            ),
            version=0,
        )
        db.add(record)
        db.flush()
        if initial_stock:
            self._record_movement(db, product_id, initial_stock, MovementReason.PURCHASE, note="initial stock")
        return record

    def get_record(self, db: Session, product_id: str) -> InventoryRecord:
        record = db.get(InventoryRecord, product_id, populate_existing=True)
        if record is None:
            raise ProductNotFound(f"no inventory record for product {product_id}")
        return record

    def lock_records(self, db: Session, product_ids) -> list[InventoryRecord]:
        """Take row locks on the given products in primary-key order."""

        ids = sorted(set(product_ids))
        rows = lock_rows(
            db,
            select(InventoryRecord)
            .where(InventoryRecord.product_id.in_(ids))
            .order_by(InventoryRecord.product_id)
            .execution_options(populate_existing=True),
        )
        missing = set(ids) - {row.product_id for row in rows}
        if missing:
            raise ProductNotFound(f"no inventory record for products {sorted(missing)}")
        return rows

    def check_availability(self, db: Session, product_id: str, quantity: int) -> bool:
        """Read-only check that `quantity` units can be reserved right now."""

        return self.get_record(db, product_id).available_count >= quantity

    def reserve(self, db: Session, product_id: str, quantity: int) -> None:
        """Hold stock for a pending order; provisional, so no movement is written."""

        _require_positive(quantity)
        applied = self._guarded_update(
            db,
            product_id,
            InventoryRecord.available_count >= quantity,
            available_count=InventoryRecord.available_count - quantity,
            reserved_count=InventoryRecord.reserved_count + quantity,
        )
        record = self.get_record(db, product_id)
        if not applied:
            raise InsufficientStock(product_id, quantity, record.available_count)
        self._check_low_stock(db, record, before=record.available_count + quantity)

    def release(self, db: Session, product_id: str, quantity: int) -> None:
        """Return a previous reservation to available stock."""

        _require_positive(quantity)
        applied = self._guarded_update(
            db,
            product_id,
            InventoryRecord.reserved_count >= quantity,
            available_count=InventoryRecord.available_count + quantity,
            reserved_count=InventoryRecord.reserved_count - quantity,
        )
        if not applied:
            record = self.get_record(db, product_id)
            raise InvalidRelease(
                f"cannot release {quantity} of {product_id}: reserved={record.reserved_count}"
            )

    def confirm_sale(self, db: Session, product_id: str, quantity: int, order_id: str) -> None:
        """Turn a reservation into a permanent decrement and log it as SOLD."""

        _require_positive(quantity)
        applied = self._guarded_update(
            db,
            product_id,
            InventoryRecord.reserved_count >= quantity,
            reserved_count=InventoryRecord.reserved_count - quantity,
        )
        if not applied:
            record = self.get_record(db, product_id)
            raise InvalidConfirmation(
                f"cannot confirm sale of {quantity} x {product_id} for order {order_id}: "
                f"reserved={record.reserved_count}"
            )
        self._record_movement(db, product_id, -quantity, MovementReason.SOLD, order_id=order_id)

    def restock(self, db: Session, product_id: str, quantity: int, order_id: str) -> None:
        """Put sold units back on the shelf after a confirmed order is cancelled."""

        _require_positive(quantity)
        applied = self._guarded_update(
            db,
            product_id,
            true(),
            available_count=InventoryRecord.available_count + quantity,
        )
        if not applied:
            raise ProductNotFound(f"no inventory record for product {product_id}")
        self._record_movement(db, product_id, quantity, MovementReason.RETURN, order_id=order_id)

    def adjust(
        self,
        db: Session,
        product_id: str,
        delta: int,
        reason: str = MovementReason.ADJUSTMENT,
        note: str | None = None,
    ) -> InventoryRecord:
        """Apply an administrative correction; rejected (not clamped) below zero."""

        if reason not in ADJUSTMENT_REASONS:
            raise InvalidQuantity(f"reason {reason!r} is not allowed for manual adjustment")
        if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
            raise InvalidQuantity(f"delta must be a non-zero integer, got {delta!r}")
        applied = self._guarded_update(
            db,
            product_id,
            InventoryRecord.available_count + delta >= 0,
            available_count=InventoryRecord.available_count + delta,
        )
        record = self.get_record(db, product_id)
        if not applied:
            raise NegativeStock(
                f"adjustment {delta} would make {product_id} negative: available={record.available_count}"
            )
        self._record_movement(db, product_id, delta, reason, note=note)
        if delta < 0:
            self._check_low_stock(db, record, before=record.available_count - delta)
        return record

    def movements(self, db: Session, product_id: str, limit: int = 100) -> list[StockMovement]:
        return (
            db.execute(
                select(StockMovement)
                .where(StockMovement.product_id == product_id)
                .order_by(StockMovement.movement_id.desc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def reconcile(self, db: Session, product_id: str) -> dict:
        """Replay the movement log and compare it with the stored counts."""

        record = self.get_record(db, product_id)
        replayed, count = db.execute(
            select(func.coalesce(func.sum(StockMovement.quantity_delta), 0), func.count(StockMovement.movement_id))
            .where(StockMovement.product_id == product_id)
        ).one()
        on_hand = record.available_count + record.reserved_count
        return {
            "product_id": product_id,
            "available_count": record.available_count,
            "reserved_count": record.reserved_count,
            "replayed_on_hand": int(replayed),
            "movement_count": int(count),
            "balanced": int(replayed) == on_hand,
        }

    def _guarded_update(self, db: Session, product_id: str, guard, **values) -> bool:
        result = db.execute(
            update(InventoryRecord)
            .where(InventoryRecord.product_id == product_id, guard)
            .values(version=InventoryRecord.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        if db.get(InventoryRecord, product_id) is None:
            raise ProductNotFound(f"no inventory record for product {product_id}")
        return False

    def _record_movement(
        self,
        db: Session,
        product_id: str,
        delta: int,
        reason: str,
        order_id: str | None = None,
        note: str | None = None,
    ) -> None:
        db.add(
            StockMovement(
                product_id=product_id,
                quantity_delta=delta,
                reason=reason,
                reference_order_id=order_id,
                note=note,
            )
        )
        stock_movements_total.labels(service=self.service_name, reason=reason).inc()

    def _check_low_stock(self, db: Session, record: InventoryRecord, before: int) -> None:
        """Stage a low-stock alert when available stock crosses the threshold."""

        threshold = record.low_stock_threshold
        after = record.available_count
        if not (before > threshold >= after):
            return
        logger.warning(
            "low_stock product_id=%s available=%s threshold=%s", record.product_id, after, threshold
        )
        enqueue_outbox(
            db,
            OutboxEvent,
            topic="inventory.low_stock",
            aggregate_type="product",
            aggregate_id=record.product_id,
            payload={
                "kind": "out_of_stock" if after == 0 else "low_stock",
                "product_id": record.product_id,
                "available_count": after,
                "threshold": threshold,
            },
        )
