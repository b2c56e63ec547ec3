from __future__ import annotations
from datetime import datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .time_utils import normalize_datetime, parse_iso_datetime
from .models.inventory import (
    MOVEMENT_SALE,
    MOVEMENT_PURCHASE_RECEIPT,
    MOVEMENT_RETURN,
    MOVEMENT_COUNT_CORRECTION,
    PRODUCER_MOVEMENT_TYPES,
)

# Largest quantity accepted for a single movement or count line
MAX_QTY = 1_000_000_000

MAX_IDEMPOTENCY_KEY_LENGTH = 128

# Matches the String(64) reference_id columns on movements and reconciliation records
MAX_REFERENCE_ID_LENGTH = 64


class ValidationError(ValueError):
    """400-level input problem (also reported per item inside a batch)."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_integer(value: Any, field: str) -> int:
    """Strict integer coercion: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_datetime_field(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        return normalize_datetime(value)
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            dt = None
        if dt is None:
            raise ValidationError(f"{field} must be an ISO-8601 datetime")
        return dt
    raise ValidationError(f"{field} must be an ISO-8601 datetime")


def coerce_reference_id(value: Any, field: str = "reference_id") -> str | None:
    """Optional audit reference (count session, batch, sale). Blank means none."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if not value:
        return None
    if len(value) > MAX_REFERENCE_ID_LENGTH:
        raise ValidationError(f"{field} exceeds max length {MAX_REFERENCE_ID_LENGTH}")
    return value


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_integer(value, col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    if isinstance(coltype, DateTime):
        return coerce_datetime_field(value, col.key)

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_movement(patch: dict) -> None:
    """
    Sign rules per producer movement type.

    sale removes stock, purchase_receipt and return add stock,
    manual_adjustment may go either way. count_correction is never accepted
    from producers.
    """
    movement_type = patch.get("type")
    if movement_type == MOVEMENT_COUNT_CORRECTION:
        raise ValidationError("count_correction movements are written by reconciliation only")
    if movement_type not in PRODUCER_MOVEMENT_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(PRODUCER_MOVEMENT_TYPES)}")

    qty_delta = patch.get("qty_delta")
    if qty_delta is None or qty_delta == 0:
        raise ValidationError("qty_delta must be non-zero")
    if abs(qty_delta) > MAX_QTY:
        raise ValidationError(f"qty_delta cannot exceed {MAX_QTY} in magnitude")

    if movement_type == MOVEMENT_SALE and qty_delta > 0:
        raise ValidationError("qty_delta must be < 0 for sale")
    if movement_type in (MOVEMENT_PURCHASE_RECEIPT, MOVEMENT_RETURN) and qty_delta < 0:
        raise ValidationError(f"qty_delta must be > 0 for {movement_type}")

def validate_count_item(raw: Any) -> dict:
    """
    Normalize one reconcile item:
    {product_id, warehouse_id?, counted_qty, counted_at, idempotency_key}
    """
    if not isinstance(raw, dict):
        raise ValidationError("item must be an object")

    missing = [f for f in ("product_id", "counted_qty", "counted_at", "idempotency_key") if raw.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    product_id = coerce_integer(raw["product_id"], "product_id")
    warehouse_id = raw.get("warehouse_id")
    if warehouse_id is not None:
        warehouse_id = coerce_integer(warehouse_id, "warehouse_id")

    counted_qty = coerce_integer(raw["counted_qty"], "counted_qty")
    if counted_qty < 0:
        raise ValidationError("counted_qty must be >= 0")
    if counted_qty > MAX_QTY:
        raise ValidationError(f"counted_qty cannot exceed {MAX_QTY}")

    counted_at = coerce_datetime_field(raw["counted_at"], "counted_at")

    key = str(raw["idempotency_key"]).strip()
    if not key:
        raise ValidationError("idempotency_key cannot be blank")
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(f"idempotency_key exceeds max length {MAX_IDEMPOTENCY_KEY_LENGTH}")

    return {
        "product_id": product_id,
        "warehouse_id": warehouse_id,
        "counted_qty": counted_qty,
        "counted_at": counted_at,
        "idempotency_key": key,
    }
