"""Payment event deduplicator: one admission per provider event id."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from storefront.services.payments.dedup import AdmissionDecision
from storefront.services.payments.models import EventOutcome, PaymentEventRecord


def test_first_admission_processes_and_repeats_skip(container, session_factory):
    dedup = container.dedup

    assert dedup.admit("evt1", "order-1") == AdmissionDecision.PROCESS
    assert dedup.admit("evt1", "order-1") == AdmissionDecision.SKIP_DUPLICATE

    with session_factory() as db:
        record = dedup.get(db, "evt1")
    assert record.outcome == EventOutcome.PROCESSING
    assert record.attempts == 1


def test_concurrent_admissions_have_exactly_one_winner(container):
    dedup = container.dedup
    barrier = threading.Barrier(6)

    def attempt(_):
        barrier.wait()
        return dedup.admit("evt-race", "order-1")

    with ThreadPoolExecutor(max_workers=6) as pool:
        decisions = list(pool.map(attempt, range(6)))

    assert decisions.count(AdmissionDecision.PROCESS) == 1
    assert decisions.count(AdmissionDecision.SKIP_DUPLICATE) == 5


def test_valid_and_duplicate_outcomes_block_readmission(container, session_factory):
    dedup = container.dedup
    for event_id, outcome in (("evt-valid", EventOutcome.VALID), ("evt-dup", EventOutcome.DUPLICATE)):
        dedup.admit(event_id, "order-1")
        with session_factory() as db:
            dedup.mark_outcome(db, event_id, outcome)
            db.commit()
        assert dedup.admit(event_id, "order-1") == AdmissionDecision.SKIP_DUPLICATE


def test_invalid_event_can_be_readmitted(container, session_factory):
    dedup = container.dedup
    dedup.admit("evt1", "order-1")
    dedup.mark_invalid("evt1", "InvalidConfirmation: reserved=0")

    with session_factory() as db:
        record = dedup.get(db, "evt1")
        assert record.outcome == EventOutcome.INVALID
        assert record.error.startswith("InvalidConfirmation")

    assert dedup.admit("evt1", "order-1") == AdmissionDecision.PROCESS
    with session_factory() as db:
        record = dedup.get(db, "evt1")
    assert record.outcome == EventOutcome.PROCESSING
    assert record.attempts == 2
    assert record.error is None


def test_mark_invalid_does_not_override_a_settled_outcome(container, session_factory):
    dedup = container.dedup
    dedup.admit("evt1", "order-1")
    with session_factory() as db:
        dedup.mark_outcome(db, "evt1", EventOutcome.VALID)
        db.commit()

    dedup.mark_invalid("evt1", "late failure")

    with session_factory() as db:
        assert dedup.get(db, "evt1").outcome == EventOutcome.VALID


def _age_claim(session_factory, provider_event_id, seconds):
    with session_factory() as db:
        db.execute(
            update(PaymentEventRecord)
            .where(PaymentEventRecord.provider_event_id == provider_event_id)
            .values(claimed_at=datetime.now(timezone.utc) - timedelta(seconds=seconds))
        )
        db.commit()


def test_abandoned_claim_is_readmitted_after_its_lease(container, session_factory):
    dedup = container.dedup
    dedup.admit("evt1", "order-1")

    _age_claim(session_factory, "evt1", dedup.claim_lease_seconds - 60)
    assert dedup.admit("evt1", "order-1") == AdmissionDecision.SKIP_DUPLICATE

    _age_claim(session_factory, "evt1", dedup.claim_lease_seconds + 60)
    assert dedup.admit("evt1", "order-1") == AdmissionDecision.PROCESS
    assert dedup.admit("evt1", "order-1") == AdmissionDecision.SKIP_DUPLICATE
    with session_factory() as db:
        record = dedup.get(db, "evt1")
    assert record.outcome == EventOutcome.PROCESSING
    assert record.attempts == 2


def test_settled_outcomes_never_expire(container, session_factory):
    dedup = container.dedup
    dedup.admit("evt1", "order-1")
    with session_factory() as db:
        dedup.mark_outcome(db, "evt1", EventOutcome.VALID)
        db.commit()

    _age_claim(session_factory, "evt1", dedup.claim_lease_seconds * 10)

    assert dedup.admit("evt1", "order-1") == AdmissionDecision.SKIP_DUPLICATE
