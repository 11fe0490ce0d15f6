"""At-most-once admission of payment gateway events.

Admission is one INSERT against the primary key of `payment_events`: the
database decides which of two racing deliveries wins, so there is no window
between a read and a write.

A claim is leased, not owned forever. A PROCESSING row whose worker never
reported an outcome (process killed, outcome write failed) becomes claimable
again once `claim_lease_seconds` have passed, so a redelivery is processed
instead of being skipped as a duplicate.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.common.locking import locked_session
from storefront.common.logging import logger
from storefront.common.metrics import duplicate_events_skipped_total
from storefront.services.payments.models import EventOutcome, PaymentEventRecord


class AdmissionDecision:
    PROCESS = "PROCESS"
    SKIP_DUPLICATE = "SKIP_DUPLICATE"


class PaymentEventDeduplicator:
    """Owns the dedup ledger for provider event ids."""

    def __init__(self, session_factory, service_name: str = "fulfillment", claim_lease_seconds: int = 300) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.claim_lease_seconds = claim_lease_seconds

    def admit(self, provider_event_id: str, order_id: str) -> str:
        """Claim an event id for processing.

        A record left INVALID by a rolled-back boundary, or left PROCESSING
        past its lease, is claimed again with a conditional UPDATE.
        """

        now = datetime.now(timezone.utc)
        with locked_session(self.session_factory) as db:
            db.add(
                PaymentEventRecord(
                    provider_event_id=provider_event_id,
                    order_id=order_id,
                    outcome=EventOutcome.PROCESSING,
                    attempts=1,
                    claimed_at=now,
                )
            )
            try:
                db.commit()
                return AdmissionDecision.PROCESS
            except IntegrityError:
                db.rollback()

            stale_before = now - timedelta(seconds=self.claim_lease_seconds)
            reclaimed = db.execute(
                update(PaymentEventRecord)
                .where(
                    PaymentEventRecord.provider_event_id == provider_event_id,
                    or_(
                        PaymentEventRecord.outcome == EventOutcome.INVALID,
                        (PaymentEventRecord.outcome == EventOutcome.PROCESSING)
                        & or_(PaymentEventRecord.claimed_at.is_(None), PaymentEventRecord.claimed_at < stale_before),
                    ),
                )
                .values(
                    outcome=EventOutcome.PROCESSING,
                    attempts=PaymentEventRecord.attempts + 1,
                    claimed_at=now,
                    error=None,
                    processed_at=None,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()

        if reclaimed == 1:
            logger.warning("payment event re-admitted after invalid or abandoned claim provider_event_id=%s", provider_event_id)
            return AdmissionDecision.PROCESS
        logger.info("duplicate payment event skipped provider_event_id=%s order_id=%s", provider_event_id, order_id)
        duplicate_events_skipped_total.labels(service=self.service_name, stage="admission").inc()
        return AdmissionDecision.SKIP_DUPLICATE

    def mark_outcome(self, db: Session, provider_event_id: str, outcome: str, error: str | None = None) -> None:
        """Record the outcome inside the caller's transaction."""

        db.execute(
            update(PaymentEventRecord)
            .where(PaymentEventRecord.provider_event_id == provider_event_id)
            .values(outcome=outcome, error=error, processed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    def mark_invalid(self, provider_event_id: str, error: str) -> None:
        """Release an in-flight claim after its boundary rolled back."""

        with locked_session(self.session_factory) as db:
            db.execute(
                update(PaymentEventRecord)
                .where(
                    PaymentEventRecord.provider_event_id == provider_event_id,
                    PaymentEventRecord.outcome == EventOutcome.PROCESSING,
                )
                .values(outcome=EventOutcome.INVALID, error=error[:500], processed_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def get(self, db: Session, provider_event_id: str) -> PaymentEventRecord | None:
        return db.get(PaymentEventRecord, provider_event_id, populate_existing=True)
