"""Reusable helpers for transactional outbox publishing.

Writers call `enqueue_outbox` inside the transaction that changes state; the
relay claims, delivers, and marks rows afterwards. Helpers take the outbox
model as an argument so they stay independent of any one service's tables.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, func, or_, select, update

from storefront.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_outbox(
    db,
    outbox_model,
    topic: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
) -> None:
    """Stage one outbox row in the caller's transaction."""

    db.add(
        outbox_model(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=topic,
            topic=topic,
            payload=payload,
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for delivery."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at, table.c.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(claim_ids))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.aggregate_id, table.c.payload, table.c.attempts)
    ).all()
    return [
        {
            "id": row.id,
            "topic": row.topic,
            "aggregate_id": row.aggregate_id,
            "payload": row.payload,
            "attempts": row.attempts,
        }
        for row in rows
    ]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str, error: str, max_attempts: int) -> str | None:
    """Return a claimed row to `PENDING`, or `DEAD` once attempts are exhausted.

    Returns the row's new status, or None when the row was no longer claimed.
    """

    table = outbox_model.__table__
    next_attempts = table.c.attempts + 1
    return db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(
            status=case((next_attempts >= max_attempts, "DEAD"), else_="PENDING"),
            attempts=next_attempts,
            last_error=error[:500],
            sent_at=None,
        )
        .returning(table.c.status)
    ).scalar_one_or_none()


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
