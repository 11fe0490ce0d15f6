"""Row locking helpers and lock-wait error translation."""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from storefront.common.errors import LockTimeout


# PostgreSQL lock_not_available, raised when `lock_timeout` elapses.
_PG_LOCK_NOT_AVAILABLE = "55P03"


def is_lock_timeout(exc: OperationalError) -> bool:
    """Return True when a driver error means a lock wait gave up."""

    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == _PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(orig)


@contextmanager
def locked_session(session_factory) -> Iterator[Session]:
    """Open a session whose lock-wait failures surface as `LockTimeout`.

    The session rolls back on exit unless the caller committed.
    """

    try:
        with session_factory() as db:
            yield db
    except OperationalError as exc:
        if is_lock_timeout(exc):
            raise LockTimeout(str(exc.orig)) from exc
        raise


def lock_rows(db: Session, stmt):
    """Execute a select with `FOR UPDATE` and return the scalar rows.

    Callers must pass statements ordered by primary key so concurrent
    transactions acquire locks in the same order.
    """

    return db.execute(stmt.with_for_update()).scalars().all()
