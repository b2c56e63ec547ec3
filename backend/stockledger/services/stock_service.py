# Overview: Current stock aggregate; incrementally folded from the movement ledger.

from __future__ import annotations

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CurrentStock, Product, StockMovement
from .concurrency import ConcurrencyConflict, lock_for_update, run_with_retry
"""
Current Stock Invariants (authoritative)

- CurrentStock.qty == SUM(StockMovement.qty_delta) for its (product, warehouse)
  after every completed write.
- CurrentStock.last_sequence == sequence of the last movement folded into qty.
- Rows are created lazily with qty=0, last_sequence=0.
- Every fold is a compare-and-set on last_sequence, so two writers that
  observed the same state cannot both succeed.
"""


def _pair_query(product_id: int, warehouse_id: int):
    return db.session.query(CurrentStock).filter_by(product_id=product_id, warehouse_id=warehouse_id)


def get_current_stock(product_id: int, warehouse_id: int, *, lock: bool = False) -> CurrentStock | None:
    query = _pair_query(product_id, warehouse_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def get_quantity(product_id: int, warehouse_id: int) -> int:
    """On-hand quantity from the aggregate (0 when the pair has never moved)."""
    qty = (
        db.session.query(CurrentStock.qty)
        .filter_by(product_id=product_id, warehouse_id=warehouse_id)
        .scalar()
    )
    return int(qty or 0)


def ensure_current_stock(
    store_id: int,
    product_id: int,
    warehouse_id: int,
    *,
    lock: bool = False,
) -> CurrentStock:
    """
    Return the aggregate row for a pair, creating it with qty=0 if missing.

    A concurrent creator wins the unique constraint; the loser rolls back and
    raises ConcurrencyConflict so the caller's retry re-reads the row.
    """
    row = get_current_stock(product_id, warehouse_id, lock=lock)
    if row is not None:
        return row

    row = CurrentStock(
        store_id=store_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        qty=0,
        last_sequence=0,
    )
    db.session.add(row)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConcurrencyConflict(
            f"current stock row for product {product_id} warehouse {warehouse_id} created concurrently"
        ) from exc
    return row


def fold_movement(row: CurrentStock, movement: StockMovement, observed_sequence: int) -> CurrentStock:
    """
    Fold one movement into the aggregate with a compare-and-set on last_sequence.

    Raises ConcurrencyConflict if another movement was folded since
    observed_sequence was read.
    """
    stmt = (
        update(CurrentStock)
        .where(
            CurrentStock.id == row.id,
            CurrentStock.last_sequence == observed_sequence,
        )
        .values(
            qty=CurrentStock.qty + movement.qty_delta,
            last_sequence=movement.sequence,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise ConcurrencyConflict(
            f"stale stock for product {row.product_id} warehouse {row.warehouse_id}",
            observed_sequence=observed_sequence,
        )
    db.session.refresh(row)
    return row


def _ledger_totals(store_id: int) -> dict[tuple[int, int], tuple[int, int]]:
    rows = (
        db.session.query(
            StockMovement.product_id,
            StockMovement.warehouse_id,
            func.coalesce(func.sum(StockMovement.qty_delta), 0),
            func.coalesce(func.max(StockMovement.sequence), 0),
        )
        .filter(StockMovement.store_id == store_id)
        .group_by(StockMovement.product_id, StockMovement.warehouse_id)
        .all()
    )
    return {(p, w): (int(qty), int(seq)) for p, w, qty, seq in rows}


def verify_consistency(store_id: int) -> list[dict]:
    """
    Compare every aggregate row of a store with the ledger it was folded from.

    Read-only. Returns one entry per (product, warehouse) whose qty or
    last_sequence disagrees with the movements; an empty list means healthy.
    """
    ledger = _ledger_totals(store_id)
    aggregate = {
        (row.product_id, row.warehouse_id): row
        for row in db.session.query(CurrentStock).filter_by(store_id=store_id).all()
    }

    discrepancies = []
    for pair in sorted(set(ledger) | set(aggregate)):
        ledger_qty, ledger_seq = ledger.get(pair, (0, 0))
        row = aggregate.get(pair)
        stock_qty = row.qty if row else 0
        stock_seq = row.last_sequence if row else 0
        if ledger_qty == stock_qty and ledger_seq == stock_seq:
            continue
        discrepancies.append({
            "product_id": pair[0],
            "warehouse_id": pair[1],
            "ledger_qty": ledger_qty,
            "aggregate_qty": stock_qty,
            "diff": ledger_qty - stock_qty,
            "ledger_last_sequence": ledger_seq,
            "aggregate_last_sequence": stock_seq,
        })
    return discrepancies


def rebuild_from_ledger(store_id: int) -> int:
    """
    Recompute every aggregate row of a store from the ledger.

    Repair path for data loaded outside the ledger service. The aggregate rows
    are read (and locked) before the ledger totals, and each changed row is
    written as a compare-and-set on the last_sequence seen, so a movement
    folded in between makes the whole pass retry instead of being overwritten.
    Negative totals are kept as-is. Returns the number of rows created or
    changed.
    """
    def _op() -> int:
        existing = {
            (row.product_id, row.warehouse_id): (row.id, row.qty, row.last_sequence)
            for row in lock_for_update(
                db.session.query(CurrentStock).filter_by(store_id=store_id)
            ).populate_existing().all()
        }
        ledger = _ledger_totals(store_id)

        changed = 0
        for pair in sorted(set(ledger) | set(existing)):
            qty, seq = ledger.get(pair, (0, 0))
            if pair not in existing:
                db.session.add(CurrentStock(
                    store_id=store_id,
                    product_id=pair[0],
                    warehouse_id=pair[1],
                    qty=qty,
                    last_sequence=seq,
                ))
                try:
                    db.session.flush()
                except IntegrityError as exc:
                    db.session.rollback()
                    raise ConcurrencyConflict(
                        f"current stock row for product {pair[0]} warehouse {pair[1]} created during rebuild"
                    ) from exc
                changed += 1
                continue

            row_id, row_qty, row_seq = existing[pair]
            if row_qty == qty and row_seq == seq:
                continue
            result = db.session.execute(
                update(CurrentStock)
                .where(CurrentStock.id == row_id, CurrentStock.last_sequence == row_seq)
                .values(qty=qty, last_sequence=seq)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(
                    f"product {pair[0]} warehouse {pair[1]} moved during rebuild",
                    observed_sequence=row_seq,
                )
            changed += 1

        db.session.commit()
        return changed

    return run_with_retry(_op)


def stock_summary(store_id: int, product_id: int | None = None, warehouse_id: int | None = None) -> list[dict]:
    q = db.session.query(CurrentStock).filter_by(store_id=store_id)
    if product_id is not None:
        q = q.filter(CurrentStock.product_id == product_id)
    if warehouse_id is not None:
        q = q.filter(CurrentStock.warehouse_id == warehouse_id)
    rows = q.order_by(CurrentStock.product_id, CurrentStock.warehouse_id).all()
    return [row.to_dict() for row in rows]


def stock_status(
    store_id: int,
    *,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    low_stock_only: bool = False,
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[dict], int]:
    """
    On-hand quantity per active product with its low-stock flag.

    Quantities are summed over the store's warehouses, or taken from one
    warehouse when warehouse_id is given. Products that never moved report 0.
    A product is low on stock when its quantity is <= low_stock_threshold.
    """
    per_product = (
        db.session.query(
            CurrentStock.product_id.label("product_id"),
            func.sum(CurrentStock.qty).label("qty"),
        )
        .filter(CurrentStock.store_id == store_id)
    )
    if warehouse_id is not None:
        per_product = per_product.filter(CurrentStock.warehouse_id == warehouse_id)
    per_product = per_product.group_by(CurrentStock.product_id).subquery()

    on_hand = func.coalesce(per_product.c.qty, 0)
    q = (
        db.session.query(Product, on_hand.label("current_stock"))
        .outerjoin(per_product, per_product.c.product_id == Product.id)
        .filter(Product.store_id == store_id, Product.is_active.is_(True))
    )
    if product_id is not None:
        q = q.filter(Product.id == product_id)
    if low_stock_only:
        q = q.filter(on_hand <= Product.low_stock_threshold)

    total = q.count()
    q = q.order_by(Product.name, Product.id)
    if offset:
        q = q.offset(offset)
    if limit is not None:
        q = q.limit(limit)

    items = []
    for product, current in q.all():
        current = int(current or 0)
        items.append({
            "product_id": product.id,
            "sku": product.sku,
            "product_name": product.name,
            "current_stock": current,
            "low_stock_threshold": product.low_stock_threshold,
            "is_low_stock": current <= product.low_stock_threshold,
        })
    return items, total


def low_stock_products(store_id: int, warehouse_id: int | None = None) -> list[dict]:
    items, _ = stock_status(store_id, warehouse_id=warehouse_id, low_stock_only=True)
    return items
