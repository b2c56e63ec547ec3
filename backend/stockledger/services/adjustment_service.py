# Overview: Applies count corrections and stock resets to the ledger and aggregate, one short transaction each.

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CurrentStock, ReconciliationRecord, StockMovement
from ..models.inventory import MOVEMENT_COUNT_CORRECTION, MOVEMENT_MANUAL_ADJUSTMENT
from ..validation import ValidationError
from .concurrency import ConcurrencyConflict, DuplicateSubmission, run_with_retry
from .ledger_service import append_movement_inner, resolve_product, resolve_store, resolve_warehouse
from .stock_service import ensure_current_stock, get_current_stock

logger = logging.getLogger(__name__)

# reference_id of the manual_adjustment movements written by stock resets
STOCK_RESET_REFERENCE = "stock-reset"


def persist_record(record: ReconciliationRecord) -> ReconciliationRecord:
    """
    Flush an audit record in the current transaction.

    A unique-key collision on idempotency_key means a concurrent submission
    with the same key committed first: roll back and raise DuplicateSubmission.
    """
    db.session.add(record)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        if record.idempotency_key:
            raise DuplicateSubmission(record.idempotency_key) from exc
        raise
    return record


def apply_correction(
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    delta: int,
    reference_id: str | None,
    observed_sequence: int,
    record: ReconciliationRecord | None = None,
    note: str | None = None,
) -> StockMovement:
    """
    Append a count_correction movement and fold it into CurrentStock.

    One transaction:
    1. lock the CurrentStock row (SELECT ... FOR UPDATE)
    2. optimistic check: nothing folded since observed_sequence
    3. append the correction at observed_sequence + 1
    4. compare-and-set qty += delta, last_sequence
    5. write the audit record (claims the idempotency key), commit

    Raises ConcurrencyConflict when the pair moved since the engine read it;
    the caller retries the whole read-compute-apply cycle.
    """
    if delta == 0:
        raise ValidationError("a correction needs a non-zero delta")

    stock = ensure_current_stock(store_id, product_id, warehouse_id, lock=True)
    if stock.last_sequence != observed_sequence:
        raise ConcurrencyConflict(
            f"product {product_id} warehouse {warehouse_id} moved from sequence "
            f"{observed_sequence} to {stock.last_sequence} during reconciliation",
            observed_sequence=observed_sequence,
            current_sequence=stock.last_sequence,
        )

    movement = append_movement_inner(
        store_id=store_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        qty_delta=delta,
        movement_type=MOVEMENT_COUNT_CORRECTION,
        reference_id=reference_id,
        note=note or "Physical count reconciliation",
        expected_sequence=observed_sequence,
    )

    resulting_qty = stock.qty
    if record is not None:
        record.correction_movement_id = movement.id
        record.resulting_qty = resulting_qty
        record.negative_stock = resulting_qty < 0
        persist_record(record)

    db.session.commit()

    if resulting_qty < 0:
        logger.warning(
            "Count correction %+d left product %s warehouse %s at negative stock %s",
            delta, product_id, warehouse_id, resulting_qty,
        )
    return movement


# =============================================================================
# Stock resets
# =============================================================================

def reset_product_stock(
    store_id: int,
    product_id: int,
    *,
    warehouse_id: int | None = None,
    note: str | None = None,
    attempts: int = 3,
) -> StockMovement | None:
    """
    Bring one product's on-hand quantity in a warehouse to zero.

    Appends a manual_adjustment of -qty through the ledger, guarded by the
    sequence the quantity was read at; a movement landing in between makes
    the read and append retry. Returns None when the quantity is already 0.
    """
    resolve_product(store_id, product_id)
    warehouse = resolve_warehouse(store_id, warehouse_id)

    def _op() -> StockMovement | None:
        stock = get_current_stock(product_id, warehouse.id)
        if stock is None or stock.qty == 0:
            db.session.rollback()
            return None

        previous_qty = stock.qty
        movement = append_movement_inner(
            store_id=store_id,
            product_id=product_id,
            warehouse_id=warehouse.id,
            qty_delta=-previous_qty,
            movement_type=MOVEMENT_MANUAL_ADJUSTMENT,
            reference_id=STOCK_RESET_REFERENCE,
            note=note or f"Stock reset to zero (was {previous_qty})",
            expected_sequence=stock.last_sequence,
        )
        db.session.commit()
        return movement

    movement = run_with_retry(_op, attempts=attempts)
    if movement is not None:
        logger.info(
            "Reset product %s warehouse %s to zero (%+d)",
            product_id, warehouse.id, movement.qty_delta,
        )
    return movement


def reset_all_stock(
    store_id: int,
    *,
    warehouse_id: int | None = None,
    note: str | None = None,
) -> list[StockMovement]:
    """
    Bring every non-zero (product, warehouse) of a store to zero, one pair per
    transaction. Limited to one warehouse when warehouse_id is given.
    """
    resolve_store(store_id)
    if warehouse_id is not None:
        resolve_warehouse(store_id, warehouse_id)

    q = db.session.query(CurrentStock.product_id, CurrentStock.warehouse_id).filter(
        CurrentStock.store_id == store_id,
        CurrentStock.qty != 0,
    )
    if warehouse_id is not None:
        q = q.filter(CurrentStock.warehouse_id == warehouse_id)
    pairs = q.order_by(CurrentStock.product_id, CurrentStock.warehouse_id).all()

    movements = []
    for product_id, pair_warehouse_id in pairs:
        movement = reset_product_stock(store_id, product_id, warehouse_id=pair_warehouse_id, note=note)
        if movement is not None:
            movements.append(movement)

    logger.warning("Reset %d stock rows to zero for store %s", len(movements), store_id)
    return movements
