# Overview: Service-layer helpers for row locking, conflict detection and bounded retry.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)

# SQLSTATEs that mean "someone else holds the row", not "the database is gone":
# serialization_failure, deadlock_detected, lock_not_available
_LOCK_SQLSTATES = {"40001", "40P01", "55P03"}


class ConcurrencyConflict(Exception):
    """
    Raised when a write lost a race: row-lock contention or a stale
    optimistic check on a CurrentStock row.
    """

    def __init__(self, message: str, *, observed_sequence: int | None = None, current_sequence: int | None = None):
        super().__init__(message)
        self.observed_sequence = observed_sequence
        self.current_sequence = current_sequence


class LedgerUnavailableError(Exception):
    """Infrastructure failure: the ledger database cannot be reached or written."""


class DuplicateSubmission(Exception):
    """An idempotency key was claimed by a concurrent submission first."""

    def __init__(self, idempotency_key: str):
        super().__init__(f"idempotency key {idempotency_key!r} already processed")
        self.idempotency_key = idempotency_key


def is_lock_contention(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _LOCK_SQLSTATES:
        return True
    # SQLite reports writer contention as "database is locked"
    return "database is locked" in str(orig or exc).lower()


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Writers therefore also use a compare-and-set UPDATE on last_sequence.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on ConcurrencyConflict, OperationalError (deadlocks, locks) and
    StaleDataError. Once attempts are exhausted, lock-type failures surface as
    ConcurrencyConflict and anything else as LedgerUnavailableError.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return func()
        except (ConcurrencyConflict, OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt < attempts - 1:
                logger.debug("Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts)
                time.sleep(backoff_base * (2 ** attempt))
                continue
            if isinstance(exc, ConcurrencyConflict):
                raise
            if isinstance(exc, OperationalError) and not is_lock_contention(exc):
                raise LedgerUnavailableError(str(getattr(exc, "orig", exc))) from exc
            raise ConcurrencyConflict(str(exc)) from exc

