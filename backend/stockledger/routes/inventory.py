# backend/stockledger/routes/inventory.py
"""
Movement ledger and current stock routes.

Producers (sales, purchasing, returns, back office) append movements here;
count_correction movements are only written by reconciliation.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start_date / end_date filtering is inclusive on occurred_at.
"""
from flask import Blueprint, current_app, request

from ..extensions import db
from ..models import StockMovement
from ..time_utils import parse_iso_datetime
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    ValidationError,
    coerce_integer,
    enforce_rules_movement,
)
from ..services import adjustment_service, ledger_service, stock_service
from ..services.concurrency import ConcurrencyConflict, LedgerUnavailableError


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

# Matches StockMovement.note
MAX_NOTE_LENGTH = 255

MOVEMENT_APPEND_POLICY = ModelValidationPolicy(
    writable_fields={
        "store_id",
        "product_id",
        "warehouse_id",
        "qty_delta",
        "type",
        "occurred_at",
        "reference_id",
        "note",
    },
    required_on_create={"store_id", "product_id", "qty_delta", "type"},
)


@inventory_bp.post("/movements")
def append_movement_route():
    """
    Append a stock movement (sale, purchase_receipt, return, manual_adjustment).

    Request body:
    {
        "store_id": int,
        "product_id": int,
        "warehouse_id": int (optional, defaults to the store's default warehouse),
        "qty_delta": int (signed; sale < 0, purchase_receipt / return > 0),
        "type": str,
        "occurred_at": ISO-8601 (optional),
        "reference_id": str (optional),
        "note": str (optional)
    }

    Returns:
        201: Movement appended, with the pair's current stock
        400: Invalid request
        409: Write conflict persisted after retries
        503: Ledger unavailable
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=StockMovement,
            payload=payload,
            policy=MOVEMENT_APPEND_POLICY,
            partial=False,
        )
        enforce_rules_movement(patch)
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        movement = ledger_service.append_movement(
            store_id=patch["store_id"],
            product_id=patch["product_id"],
            warehouse_id=patch.get("warehouse_id"),
            qty_delta=patch["qty_delta"],
            movement_type=patch["type"],
            occurred_at=patch.get("occurred_at"),
            reference_id=patch.get("reference_id"),
            note=patch.get("note"),
        )
    except ValidationError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    except ConcurrencyConflict as e:
        db.session.rollback()
        return {"error": str(e)}, 409
    except LedgerUnavailableError:
        db.session.rollback()
        current_app.logger.exception("Ledger append failed")
        return {"error": "Ledger unavailable"}, 503

    stock = stock_service.get_current_stock(movement.product_id, movement.warehouse_id)
    return {"movement": movement.to_dict(), "stock": stock.to_dict() if stock else None}, 201


@inventory_bp.get("/movements")
def list_movements_route():
    """
    List movements for a store, newest first.

    Query: store_id (required), product_id, warehouse_id, type,
    start_date, end_date, limit (1-500, default 50), offset.
    """
    store_id = request.args.get("store_id", type=int)
    if store_id is None:
        return {"error": "store_id is required"}, 400

    try:
        start_dt = parse_iso_datetime(request.args.get("start_date"))
        end_dt = parse_iso_datetime(request.args.get("end_date"))
    except ValueError:
        return {"error": "start_date and end_date must be ISO-8601 datetimes"}, 400

    limit = max(1, min(request.args.get("limit", default=50, type=int), 500))
    offset = max(0, request.args.get("offset", default=0, type=int))

    rows, total = ledger_service.list_movements(
        store_id,
        product_id=request.args.get("product_id", type=int),
        warehouse_id=request.args.get("warehouse_id", type=int),
        movement_type=request.args.get("type"),
        start=start_dt,
        end=end_dt,
        limit=limit,
        offset=offset,
    )
    return {"items": [m.to_dict() for m in rows], "total": total, "limit": limit, "offset": offset}, 200


@inventory_bp.get("/stock")
def stock_summary_route():
    """Current stock rows for a store (optionally one product / warehouse)."""
    store_id = request.args.get("store_id", type=int)
    if store_id is None:
        return {"error": "store_id is required"}, 400

    items = stock_service.stock_summary(
        store_id,
        product_id=request.args.get("product_id", type=int),
        warehouse_id=request.args.get("warehouse_id", type=int),
    )
    return {"items": items}, 200


@inventory_bp.get("/stock/health")
def stock_health_route():
    """
    Compare the current stock aggregate with the ledger (read-only).

    Returns 200 with "healthy": true and no discrepancies when every
    aggregate row equals the sum of its movements.
    """
    store_id = request.args.get("store_id", type=int)
    if store_id is None:
        return {"error": "store_id is required"}, 400

    discrepancies = stock_service.verify_consistency(store_id)
    return {"healthy": not discrepancies, "discrepancies": discrepancies}, 200


@inventory_bp.post("/stock/rebuild")
def stock_rebuild_route():
    """Recompute a store's current stock rows from the ledger."""
    payload = request.get_json(silent=True) or {}
    store_id = payload.get("store_id")
    if not isinstance(store_id, int) or isinstance(store_id, bool):
        return {"error": "store_id is required"}, 400

    try:
        ledger_service.resolve_store(store_id)
        changed = stock_service.rebuild_from_ledger(store_id)
    except ValidationError as e:
        return {"error": str(e)}, 404
    except (ConcurrencyConflict, LedgerUnavailableError):
        db.session.rollback()
        current_app.logger.exception("Stock rebuild failed for store %s", store_id)
        return {"error": "Stock rebuild failed"}, 503

    current_app.logger.info("Rebuilt current stock for store %s (%s rows changed)", store_id, changed)
    return {"store_id": store_id, "rows_changed": changed}, 200


@inventory_bp.get("/stock/status")
def stock_status_route():
    """
    On-hand quantity per active product with low-stock flags.

    Query: store_id (required), warehouse_id, product_id,
    low_stock_only (true/false), limit (1-500), offset.
    """
    store_id = request.args.get("store_id", type=int)
    if store_id is None:
        return {"error": "store_id is required"}, 400

    limit = request.args.get("limit", type=int)
    if limit is not None:
        limit = max(1, min(limit, 500))
    offset = max(0, request.args.get("offset", default=0, type=int))

    items, total = stock_service.stock_status(
        store_id,
        product_id=request.args.get("product_id", type=int),
        warehouse_id=request.args.get("warehouse_id", type=int),
        low_stock_only=_flag(request.args.get("low_stock_only")),
        limit=limit,
        offset=offset,
    )
    return {"items": items, "total": total}, 200


@inventory_bp.get("/stock/low")
def low_stock_route():
    """Active products at or below their low_stock_threshold."""
    store_id = request.args.get("store_id", type=int)
    if store_id is None:
        return {"error": "store_id is required"}, 400

    items = stock_service.low_stock_products(store_id, warehouse_id=request.args.get("warehouse_id", type=int))
    return {"items": items}, 200


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def _reset_params(payload: dict) -> tuple[int, int | None, str | None]:
    store_id = coerce_integer(payload.get("store_id"), "store_id")

    warehouse_id = payload.get("warehouse_id")
    if warehouse_id is not None:
        warehouse_id = coerce_integer(warehouse_id, "warehouse_id")

    note = payload.get("note")
    if note is not None:
        if not isinstance(note, str):
            raise ValidationError("note must be a string")
        note = note.strip() or None
        if note and len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(f"note exceeds max length {MAX_NOTE_LENGTH}")
    return store_id, warehouse_id, note


@inventory_bp.post("/stock/reset/<int:product_id>")
def reset_product_stock_route(product_id: int):
    """
    Bring one product to zero with a manual_adjustment movement.

    Request body:
    {
        "store_id": int,
        "warehouse_id": int (optional, defaults to the store's default warehouse),
        "note": str (optional)
    }

    Returns:
        200: Reset done, or nothing to do when the quantity was already 0
        400: Invalid request
        409: Write conflict persisted after retries
        503: Ledger unavailable
    """
    payload = request.get_json(silent=True) or {}

    try:
        store_id, warehouse_id, note = _reset_params(payload)
        movement = adjustment_service.reset_product_stock(
            store_id, product_id, warehouse_id=warehouse_id, note=note
        )
    except ValidationError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    except ConcurrencyConflict as e:
        db.session.rollback()
        return {"error": str(e)}, 409
    except LedgerUnavailableError:
        db.session.rollback()
        current_app.logger.exception("Stock reset failed for product %s", product_id)
        return {"error": "Ledger unavailable"}, 503

    if movement is None:
        return {"message": "Product stock is already 0", "movement": None}, 200

    current_app.logger.info("Stock of product %s reset to zero (store %s)", product_id, store_id)
    return {"message": "Product stock reset to 0", "movement": movement.to_dict()}, 200


@inventory_bp.post("/stock/reset-all")
def reset_all_stock_route():
    """
    Bring every product of a store (or one warehouse) to zero.

    Irreversible in effect, so the body must carry "confirm": true.

    Request body:
    {
        "store_id": int,
        "confirm": true,
        "warehouse_id": int (optional),
        "note": str (optional)
    }
    """
    payload = request.get_json(silent=True) or {}
    if payload.get("confirm") is not True:
        return {"error": "confirm must be true to reset all stock"}, 400

    try:
        store_id, warehouse_id, note = _reset_params(payload)
        movements = adjustment_service.reset_all_stock(store_id, warehouse_id=warehouse_id, note=note)
    except ValidationError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    except ConcurrencyConflict as e:
        db.session.rollback()
        return {"error": str(e)}, 409
    except LedgerUnavailableError:
        db.session.rollback()
        current_app.logger.exception("Stock reset-all failed for store %s", payload.get("store_id"))
        return {"error": "Ledger unavailable"}, 503

    return {"reset_count": len(movements), "movements": [m.to_dict() for m in movements]}, 200
