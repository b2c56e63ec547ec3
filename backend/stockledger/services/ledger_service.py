# Overview: Service-layer operations for the stock movement ledger; encapsulates business logic and database work.

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, StockMovement, Store, Warehouse
from ..models.inventory import MOVEMENT_TYPES, PRODUCER_MOVEMENT_TYPES
from ..time_utils import coerce_datetime
from ..validation import ValidationError
from .concurrency import ConcurrencyConflict, run_with_retry
from .stock_service import ensure_current_stock, fold_movement
"""
Movement Ledger Invariants (authoritative)

- Append-only: movements are never updated or deleted; corrections are new rows.
- sequence is allocated at append time as last_sequence + 1 of the pair's
  CurrentStock row, inside the same transaction that folds the movement into
  the aggregate. A unique (product, warehouse, sequence) constraint and the
  compare-and-set fold mean two appenders can never share a sequence.
- Ordering for correctness is by sequence only. occurred_at is business
  time supplied by producers and may be skewed.
- A public append commits before returning: success is a commit point.
"""

logger = logging.getLogger(__name__)


# =============================================================================
# Reference resolution (store / warehouse / product)
# =============================================================================

def resolve_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if store is None:
        raise ValidationError(f"store {store_id} not found")
    return store


def get_default_warehouse(store_id: int) -> Warehouse | None:
    """Active warehouse flagged is_default, else the active one with the lowest id."""
    base = db.session.query(Warehouse).filter_by(store_id=store_id, is_active=True)
    warehouse = base.filter_by(is_default=True).order_by(Warehouse.id).first()
    if warehouse is None:
        warehouse = base.order_by(Warehouse.id).first()
    return warehouse


def resolve_warehouse(store_id: int, warehouse_id: int | None = None) -> Warehouse:
    if warehouse_id is None:
        warehouse = get_default_warehouse(store_id)
        if warehouse is None:
            raise ValidationError(f"store {store_id} has no active warehouse")
        return warehouse

    warehouse = db.session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise ValidationError(f"warehouse {warehouse_id} not found")
    if warehouse.store_id != store_id:
        raise ValidationError(f"warehouse {warehouse_id} does not belong to store {store_id}")
    if not warehouse.is_active:
        raise ValidationError(f"warehouse {warehouse_id} is inactive")
    return warehouse


def resolve_product(store_id: int, product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ValidationError(f"product {product_id} not found")
    if product.store_id != store_id:
        raise ValidationError(f"product {product_id} does not belong to store {store_id}")
    if require_active and not product.is_active:
        raise ValidationError(f"product {product_id} is inactive")
    return product


# =============================================================================
# Appends
# =============================================================================

def append_movement_inner(
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    qty_delta: int,
    movement_type: str,
    occurred_at: datetime | None = None,
    reference_id: str | None = None,
    note: str | None = None,
    expected_sequence: int | None = None,
    lock: bool = False,
) -> StockMovement:
    """Core append without validation of references, retry, or commit.

    Allocates the pair's next sequence, inserts the movement and folds it into
    CurrentStock. When expected_sequence is given the append only proceeds if
    no movement has been folded since that sequence was observed.

    Called by the public append_movement() and the adjustment applier.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"unknown movement type: {movement_type}")
    if qty_delta == 0:
        raise ValidationError("qty_delta must be non-zero")

    stock = ensure_current_stock(store_id, product_id, warehouse_id, lock=lock)
    observed = stock.last_sequence

    if expected_sequence is not None and observed != expected_sequence:
        raise ConcurrencyConflict(
            f"product {product_id} warehouse {warehouse_id} moved since sequence {expected_sequence}",
            observed_sequence=expected_sequence,
            current_sequence=observed,
        )

    movement = StockMovement(
        sequence=observed + 1,
        store_id=store_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        qty_delta=qty_delta,
        type=movement_type,
        occurred_at=coerce_datetime(occurred_at, field="occurred_at"),
        reference_id=reference_id,
        note=note,
    )
    db.session.add(movement)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConcurrencyConflict(
            f"sequence {observed + 1} already taken for product {product_id} warehouse {warehouse_id}",
            observed_sequence=observed,
        ) from exc

    fold_movement(stock, movement, observed)
    return movement


def append_movement(
    *,
    store_id: int,
    product_id: int,
    qty_delta: int,
    movement_type: str,
    warehouse_id: int | None = None,
    occurred_at=None,
    reference_id: str | None = None,
    note: str | None = None,
    attempts: int = 3,
) -> StockMovement:
    """
    Append a producer movement (sale, purchase_receipt, return, manual_adjustment).

    Durable on return. Retries bounded on write conflicts with concurrent
    appenders for the same product/warehouse. Negative resulting stock is
    allowed; the ledger records what happened.
    """
    if movement_type not in PRODUCER_MOVEMENT_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(PRODUCER_MOVEMENT_TYPES)}")

    try:
        occurred_dt = coerce_datetime(occurred_at, field="occurred_at")
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    def _op() -> StockMovement:
        resolve_store(store_id)
        resolve_product(store_id, product_id)
        warehouse = resolve_warehouse(store_id, warehouse_id)

        movement = append_movement_inner(
            store_id=store_id,
            product_id=product_id,
            warehouse_id=warehouse.id,
            qty_delta=qty_delta,
            movement_type=movement_type,
            occurred_at=occurred_dt,
            reference_id=reference_id,
            note=note,
        )
        db.session.commit()
        return movement

    movement = run_with_retry(_op, attempts=attempts)
    logger.debug(
        "Appended %s %+d for product %s warehouse %s at sequence %s",
        movement.type, movement.qty_delta, movement.product_id, movement.warehouse_id, movement.sequence,
    )
    return movement


# =============================================================================
# Reads
# =============================================================================

def sum_deltas_since(
    product_id: int,
    warehouse_id: int,
    after_sequence: int,
    up_to_sequence: int | None = None,
) -> int:
    """
    Net qty_delta of movements with sequence > after_sequence
    (and <= up_to_sequence when given). Committed rows only.
    """
    q = db.session.query(
        func.coalesce(func.sum(StockMovement.qty_delta), 0)
    ).filter(
        StockMovement.product_id == product_id,
        StockMovement.warehouse_id == warehouse_id,
        StockMovement.sequence > after_sequence,
    )
    if up_to_sequence is not None:
        q = q.filter(StockMovement.sequence <= up_to_sequence)
    return int(q.scalar() or 0)


def sequence_at(product_id: int, warehouse_id: int, at: datetime) -> int:
    """
    Resolve a wall-clock instant to a ledger position: the highest sequence
    whose occurred_at <= at (inclusive), or 0 when none.
    """
    seq = (
        db.session.query(func.max(StockMovement.sequence))
        .filter(
            StockMovement.product_id == product_id,
            StockMovement.warehouse_id == warehouse_id,
            StockMovement.occurred_at <= at,
        )
        .scalar()
    )
    return int(seq or 0)


def ledger_quantity(product_id: int, warehouse_id: int) -> int:
    """SUM(qty_delta) over the whole ledger for a pair."""
    return sum_deltas_since(product_id, warehouse_id, after_sequence=0)


def list_movements(
    store_id: int,
    *,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    movement_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockMovement], int]:
    """Movements of a store, newest first. Date filters are inclusive on occurred_at."""
    q = db.session.query(StockMovement).filter(StockMovement.store_id == store_id)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if warehouse_id is not None:
        q = q.filter(StockMovement.warehouse_id == warehouse_id)
    if movement_type is not None:
        q = q.filter(StockMovement.type == movement_type)
    if start is not None:
        q = q.filter(StockMovement.occurred_at >= start)
    if end is not None:
        q = q.filter(StockMovement.occurred_at <= end)

    total = q.count()
    rows = (
        q.order_by(StockMovement.occurred_at.desc(), StockMovement.sequence.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return rows, total
