# backend/stockledger/services/reconciliation_service.py
"""
Point-in-time physical count reconciliation.

WHY: Stores keep selling while they count. A count started at 10:00 and
submitted at 10:20 must not read the sales made in between as shrinkage.
Instead of locking inventory during the count, the engine replays the
movement ledger to recover what stock was at the moment counting of each
product began, and corrects only the real discrepancy.

PER ENTRY:
1. Q_now, S_now     = CurrentStock.qty / last_sequence (0 / 0 without a row)
2. S_count          = highest sequence with occurred_at <= counted_at
   M                = SUM(qty_delta) for S_count < sequence <= S_now
3. expected         = Q_now - M
4. delta            = counted_qty - expected
5. delta == 0       -> no_op, no ledger write
6. otherwise        -> adjustment applier (row lock + optimistic check on S_now)

BATCH CONTRACT:
- Items commit or fail independently; the response lists every item.
- Idempotency keys (scoped per store): an applied / no_op key is never
  processed twice; a replay returns the original outcome as 'skipped'.
  Failed attempts keep the key free.
- Concurrency conflicts retry the whole read-compute-apply cycle (bounded,
  exponential backoff) before the item is reported failed.
- Only infrastructure failures (LedgerUnavailableError) abort the call.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flask import current_app, has_app_context

from ..extensions import db
from ..models import ReconciliationRecord
from ..models.counts import (
    RESULT_APPLIED,
    RESULT_FAILED,
    RESULT_NO_OP,
    RESULT_SKIPPED,
    TERMINAL_STATUSES,
)
from ..time_utils import to_utc_z
from ..validation import ValidationError, coerce_reference_id, validate_count_item
from .adjustment_service import apply_correction, persist_record
from .batch import run_batch
from .concurrency import ConcurrencyConflict, DuplicateSubmission, run_with_retry
from .ledger_service import (
    resolve_product,
    resolve_store,
    resolve_warehouse,
    sequence_at,
    sum_deltas_since,
)
from .stock_service import get_current_stock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountEntry:
    """One product's physical count and the instant counting of it began."""
    product_id: int
    counted_qty: int
    counted_at: datetime
    idempotency_key: str
    warehouse_id: int | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "CountEntry":
        return cls(**validate_count_item(raw))

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "counted_qty": self.counted_qty,
            "counted_at": to_utc_z(self.counted_at),
            "idempotency_key": self.idempotency_key,
        }


@dataclass(frozen=True)
class ReconciliationResult:
    product_id: int | None
    warehouse_id: int | None
    expected_qty_at_count_time: int | None
    counted_qty: int | None
    delta_applied: int | None
    status: str
    correction_movement_id: str | None = None
    negative_stock: bool = False
    idempotency_key: str | None = None
    error_type: str | None = None
    error: str | None = None
    record_id: int | None = None
    replay_of: int | None = None
    attempts: int = 0

    @classmethod
    def from_record(cls, record: ReconciliationRecord, **overrides) -> "ReconciliationResult":
        values = dict(
            product_id=record.product_id,
            warehouse_id=record.warehouse_id,
            expected_qty_at_count_time=record.expected_qty_at_count_time,
            counted_qty=record.counted_qty,
            delta_applied=record.delta_applied,
            status=record.status,
            correction_movement_id=record.correction_movement_id,
            negative_stock=bool(record.negative_stock),
            idempotency_key=record.submitted_key,
            error_type=record.error_type,
            error=record.error,
            record_id=record.id,
            attempts=record.attempts or 0,
        )
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "expected_qty_at_count_time": self.expected_qty_at_count_time,
            "counted_qty": self.counted_qty,
            "delta_applied": self.delta_applied,
            "status": self.status,
            "correction_movement_id": self.correction_movement_id,
            "negative_stock": self.negative_stock,
            "idempotency_key": self.idempotency_key,
            "error_type": self.error_type,
            "error": self.error,
            "record_id": self.record_id,
            "replay_of": self.replay_of,
            "attempts": self.attempts,
        }


@dataclass
class BatchSummary:
    results: list[ReconciliationResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def applied_count(self) -> int:
        return self._count(RESULT_APPLIED)

    @property
    def skipped_count(self) -> int:
        return self._count(RESULT_SKIPPED)

    @property
    def failed_count(self) -> int:
        return self._count(RESULT_FAILED)

    @property
    def no_op_count(self) -> int:
        return self._count(RESULT_NO_OP)

    @property
    def negative_stock_count(self) -> int:
        return sum(1 for r in self.results if r.negative_stock)

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "applied_count": self.applied_count,
            "skipped_count": self.skipped_count,
            "failed_count": self.failed_count,
            "no_op_count": self.no_op_count,
            "negative_stock_count": self.negative_stock_count,
        }


# =============================================================================
# Helpers
# =============================================================================

def _setting(name: str, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def payload_hash(store_id: int, entry: CountEntry) -> str:
    """Fingerprint of what a key was submitted for; warehouse is as submitted."""
    raw = "|".join([
        str(store_id),
        str(entry.product_id),
        "" if entry.warehouse_id is None else str(entry.warehouse_id),
        str(entry.counted_qty),
        entry.counted_at.isoformat(),
    ])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def find_completed(store_id: int, idempotency_key: str) -> ReconciliationRecord | None:
    """Applied or no-op record that claimed a key in this store, if any."""
    return (
        db.session.query(ReconciliationRecord)
        .filter(
            ReconciliationRecord.store_id == store_id,
            ReconciliationRecord.idempotency_key == idempotency_key,
            ReconciliationRecord.status.in_(TERMINAL_STATUSES),
        )
        .first()
    )


def _replay(record: ReconciliationRecord, fingerprint: str) -> ReconciliationResult:
    if record.payload_hash != fingerprint:
        raise ValidationError(
            f"idempotency key {record.submitted_key!r} was already used with a different payload"
        )
    return ReconciliationResult.from_record(
        record,
        status=RESULT_SKIPPED,
        replay_of=record.id,
        record_id=None,
        attempts=0,
    )


def _record_failure(
    *,
    store_id: int,
    entry: CountEntry | None,
    reference_id: str | None,
    exc: BaseException,
    attempts: int,
    raw: Any = None,
) -> ReconciliationResult:
    """Persist and return a failed outcome. The idempotency key stays unclaimed."""
    product_id = entry.product_id if entry else _raw_int(raw, "product_id")
    warehouse_id = entry.warehouse_id if entry else _raw_int(raw, "warehouse_id")
    key = entry.idempotency_key if entry else _raw_key(raw)

    db.session.rollback()
    record = ReconciliationRecord(
        store_id=store_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        reference_id=reference_id,
        submitted_key=key,
        counted_qty=entry.counted_qty if entry else None,
        counted_at=entry.counted_at if entry else None,
        status=RESULT_FAILED,
        error_type=type(exc).__name__,
        error=str(exc)[:255],
        attempts=attempts,
    )
    db.session.add(record)
    db.session.commit()
    return ReconciliationResult.from_record(record)


def _raw_int(raw: Any, name: str) -> int | None:
    if isinstance(raw, dict):
        value = raw.get(name)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _raw_key(raw: Any) -> str | None:
    if isinstance(raw, dict) and raw.get("idempotency_key") is not None:
        return str(raw["idempotency_key"])[:128]
    return None


# =============================================================================
# Single entry
# =============================================================================

def reconcile_entry(
    store_id: int,
    entry: CountEntry,
    *,
    reference_id: str | None = None,
    attempts: int | None = None,
    backoff_base: float | None = None,
) -> ReconciliationResult:
    """
    Reconcile one count entry. Returns a result for every item-level outcome,
    including failures; raises only for infrastructure failures.
    """
    attempts = attempts or _setting("RECONCILE_MAX_ATTEMPTS", 3)
    backoff_base = _setting("RECONCILE_BACKOFF_BASE", 0.05) if backoff_base is None else backoff_base
    tries = 0

    try:
        resolve_product(store_id, entry.product_id)
        warehouse = resolve_warehouse(store_id, entry.warehouse_id)
        if entry.counted_qty < 0:
            raise ValidationError("counted_qty must be >= 0")

        fingerprint = payload_hash(store_id, entry)
        existing = find_completed(store_id, entry.idempotency_key)
        if existing is not None:
            return _replay(existing, fingerprint)

        def _cycle() -> ReconciliationRecord:
            nonlocal tries
            tries += 1
            return _read_compute_apply(
                store_id=store_id,
                warehouse_id=warehouse.id,
                entry=entry,
                reference_id=reference_id,
                fingerprint=fingerprint,
                attempt=tries,
            )

        try:
            record = run_with_retry(_cycle, attempts=attempts, backoff_base=backoff_base)
        except DuplicateSubmission:
            winner = find_completed(store_id, entry.idempotency_key)
            if winner is None:
                raise
            return _replay(winner, fingerprint)

    except ValidationError as exc:
        return _record_failure(store_id=store_id, entry=entry, reference_id=reference_id, exc=exc, attempts=tries)
    except ConcurrencyConflict as exc:
        logger.warning(
            "Reconciliation of product %s gave up after %d attempts: %s",
            entry.product_id, tries, exc,
        )
        return _record_failure(store_id=store_id, entry=entry, reference_id=reference_id, exc=exc, attempts=tries)

    return ReconciliationResult.from_record(record)


def _read_compute_apply(
    *,
    store_id: int,
    warehouse_id: int,
    entry: CountEntry,
    reference_id: str | None,
    fingerprint: str,
    attempt: int,
) -> ReconciliationRecord:
    # Read phase: no locks. Everything is bounded by S_now so Q_now and M
    # describe the same ledger prefix even if appends land meanwhile.
    stock = get_current_stock(entry.product_id, warehouse_id)
    q_now = stock.qty if stock else 0
    s_now = stock.last_sequence if stock else 0

    s_count = min(sequence_at(entry.product_id, warehouse_id, entry.counted_at), s_now)
    moved_since_count = sum_deltas_since(entry.product_id, warehouse_id, s_count, up_to_sequence=s_now)

    expected = q_now - moved_since_count
    delta = entry.counted_qty - expected

    record = ReconciliationRecord(
        store_id=store_id,
        product_id=entry.product_id,
        warehouse_id=warehouse_id,
        reference_id=reference_id,
        idempotency_key=entry.idempotency_key,
        submitted_key=entry.idempotency_key,
        payload_hash=fingerprint,
        counted_qty=entry.counted_qty,
        counted_at=entry.counted_at,
        count_sequence=s_count,
        observed_sequence=s_now,
        expected_qty_at_count_time=expected,
        delta_applied=delta,
        attempts=attempt,
    )

    if delta == 0:
        record.status = RESULT_NO_OP
        record.resulting_qty = q_now
        record.negative_stock = q_now < 0
        persist_record(record)
        db.session.commit()
        return record

    record.status = RESULT_APPLIED
    apply_correction(
        store_id=store_id,
        product_id=entry.product_id,
        warehouse_id=warehouse_id,
        delta=delta,
        reference_id=reference_id,
        observed_sequence=s_now,
        record=record,
        note=f"Physical count: counted {entry.counted_qty}, expected {expected}",
    )
    logger.info(
        "Count correction %+d for product %s warehouse %s (expected %s, counted %s)",
        delta, entry.product_id, warehouse_id, expected, entry.counted_qty,
    )
    return record


# =============================================================================
# Batch entry point
# =============================================================================

def _effective_workers(requested: int | None) -> int:
    workers = requested if requested is not None else _setting("RECONCILE_MAX_WORKERS", 1)
    # In-memory SQLite is one shared connection; threads would interleave on it
    if db.engine.url.get_backend_name() == "sqlite" and db.engine.url.database in (None, "", ":memory:"):
        return 1
    return max(1, int(workers))


def reconcile(
    store_id: int,
    items: list,
    *,
    reference_id: str | None = None,
    max_workers: int | None = None,
) -> BatchSummary:
    """
    Reconcile a batch of counts for a store.

    items may be CountEntry instances or raw dicts
    {product_id, warehouse_id?, counted_qty, counted_at, idempotency_key}.
    Never all-or-nothing: every item gets its own result. Raises
    ValidationError only when the store is unknown or reference_id is
    malformed, and LedgerUnavailableError when the database cannot be used.
    """
    resolve_store(store_id)
    if not isinstance(items, (list, tuple)):
        raise ValidationError("items must be a list")
    reference_id = coerce_reference_id(reference_id)

    workers = _effective_workers(max_workers)
    app = current_app._get_current_object() if workers > 1 else None

    def _handle(raw) -> ReconciliationResult:
        entry = raw if isinstance(raw, CountEntry) else CountEntry.from_dict(raw)
        return reconcile_entry(store_id, entry, reference_id=reference_id)

    outcomes = run_batch(
        items,
        _handle,
        max_workers=workers,
        app=app,
        item_errors=(ValidationError,),
    )

    summary = BatchSummary()
    for outcome in outcomes:
        if outcome.success:
            summary.results.append(outcome.value)
        else:
            summary.results.append(_record_failure(
                store_id=store_id,
                entry=None,
                reference_id=reference_id,
                exc=outcome.error,
                attempts=0,
                raw=outcome.item,
            ))

    logger.info(
        "Reconciled %d items for store %s: %d applied, %d no-op, %d skipped, %d failed",
        len(summary.results), store_id, summary.applied_count, summary.no_op_count,
        summary.skipped_count, summary.failed_count,
    )
    return summary


def list_records(
    store_id: int,
    *,
    reference_id: str | None = None,
    product_id: int | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[ReconciliationRecord], int]:
    q = db.session.query(ReconciliationRecord).filter(ReconciliationRecord.store_id == store_id)
    if reference_id is not None:
        q = q.filter(ReconciliationRecord.reference_id == reference_id)
    if product_id is not None:
        q = q.filter(ReconciliationRecord.product_id == product_id)
    if status is not None:
        q = q.filter(ReconciliationRecord.status == status)
    total = q.count()
    rows = q.order_by(ReconciliationRecord.id.desc()).limit(limit).offset(offset).all()
    return rows, total
