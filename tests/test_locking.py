"""Bounded lock waits surface as LockTimeout."""

import pytest
from sqlalchemy.exc import OperationalError

from storefront.common.config import Settings
from storefront.common.db import Base
from storefront.common.errors import LockTimeout
from storefront.common.locking import is_lock_timeout
from storefront.services.fulfillment.bootstrap import build_container


@pytest.fixture
def impatient(tmp_path, verifier, cart, notifier):
    settings = Settings(
        api_key="test-key",
        database_url=f"sqlite:///{tmp_path / 'locks.db'}",
        lock_timeout_ms=100,
        otel_enabled=False,
        background_workers_enabled=False,
    )
    container = build_container(settings, verifier=verifier, cart=cart, notifier=notifier)
    Base.metadata.create_all(container.engine)
    yield container
    container.engine.dispose()


def test_writer_blocked_past_lock_timeout_gets_lock_timeout(impatient):
    impatient.coordinator.register_product("P1", 10)

    with impatient.engine.connect() as holder:
        holder.begin()  # takes the write lock and keeps it
        with pytest.raises(LockTimeout):
            impatient.coordinator.adjust_stock("P1", -1)
        holder.rollback()

    record = impatient.coordinator.adjust_stock("P1", -1)
    assert record.available_count == 9


def test_lock_timeout_detection():
    class PgLockError(Exception):
        sqlstate = "55P03"

    assert is_lock_timeout(OperationalError("SELECT 1", {}, PgLockError("lock timeout")))
    assert is_lock_timeout(OperationalError("SELECT 1", {}, Exception("database is locked")))
    assert not is_lock_timeout(OperationalError("SELECT 1", {}, Exception("disk I/O error")))
