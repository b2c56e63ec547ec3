# backend/stockledger/routes/counts.py
"""
Physical count API routes.

Two ways in:
- POST /reconcile takes finished counts (scanner apps, spreadsheets, imports).
- /sessions accumulates scans server-side and submits them as one batch.

A batch always answers 200 with one result per item, even when some items
failed; only an infrastructure failure turns the whole call into a 503.
"""
from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..models.counts import RESULT_STATUSES
from ..validation import ValidationError, coerce_integer, coerce_reference_id
from ..services import count_session_service, reconciliation_service
from ..services.concurrency import ConcurrencyConflict, LedgerUnavailableError


counts_bp = Blueprint("counts", __name__, url_prefix="/api/counts")


def _ledger_unavailable(exc: Exception):
    db.session.rollback()
    current_app.logger.error("Reconciliation aborted, ledger unavailable: %s", exc)
    return jsonify({"error": "Ledger unavailable"}), 503


def _session_error(exc: count_session_service.CountSessionError):
    if isinstance(exc, count_session_service.CountSessionNotFound):
        return jsonify({"error": str(exc)}), 404
    return jsonify({"error": str(exc)}), 400


def _session_conflict(exc: ConcurrencyConflict):
    db.session.rollback()
    current_app.logger.warning("Count session write conflict persisted after retries: %s", exc)
    return jsonify({"error": str(exc)}), 409


@counts_bp.route("/reconcile", methods=["POST"])
def reconcile_counts():
    """
    Reconcile a batch of physical counts.

    Request body:
    {
        "store_id": int,
        "reference_id": str (optional),
        "items": [
            {
                "product_id": int,
                "warehouse_id": int (optional),
                "counted_qty": int,
                "counted_at": ISO-8601,
                "idempotency_key": str
            }
        ]
    }

    Returns:
        200: One result per item, in input order
        400: Malformed request
        404: Store not found
        503: Ledger unavailable
    """
    data = request.get_json(silent=True) or {}

    try:
        store_id = coerce_integer(data.get("store_id"), "store_id")
        reference_id = coerce_reference_id(data.get("reference_id"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    items = data.get("items")
    if not isinstance(items, list):
        return jsonify({"error": "items must be a list"}), 400

    try:
        summary = reconciliation_service.reconcile(store_id, items, reference_id=reference_id)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 404
    except LedgerUnavailableError as e:
        return _ledger_unavailable(e)

    return jsonify(summary.to_dict()), 200


@counts_bp.route("/reconciliations", methods=["GET"])
def list_reconciliations():
    """Audit trail of reconciliation attempts for a store, newest first."""
    store_id = request.args.get("store_id", type=int)
    if store_id is None:
        return jsonify({"error": "store_id is required"}), 400

    status = request.args.get("status")
    if status is not None and status not in RESULT_STATUSES:
        return jsonify({"error": f"status must be one of {', '.join(RESULT_STATUSES)}"}), 400

    limit = max(1, min(request.args.get("limit", default=100, type=int), 500))
    offset = max(0, request.args.get("offset", default=0, type=int))

    rows, total = reconciliation_service.list_records(
        store_id,
        reference_id=request.args.get("reference_id"),
        product_id=request.args.get("product_id", type=int),
        status=status,
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "items": [r.to_dict() for r in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }), 200


# =============================================================================
# Count sessions
# =============================================================================

@counts_bp.route("/sessions", methods=["POST"])
def open_session():
    """
    Open a count session.

    Request body:
    {
        "store_id": int,
        "reference_id": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        store_id = coerce_integer(data.get("store_id"), "store_id")
        reference_id = coerce_reference_id(data.get("reference_id"))
        session = count_session_service.open_session(store_id, reference_id=reference_id)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify(session.to_dict()), 201


@counts_bp.route("/sessions/<session_id>", methods=["GET"])
def get_session(session_id: str):
    try:
        session = count_session_service.get_session(session_id)
    except count_session_service.CountSessionError as e:
        return _session_error(e)
    return jsonify(session.to_dict()), 200


@counts_bp.route("/sessions/<session_id>/scans", methods=["POST"])
def record_scan(session_id: str):
    """
    Record one scan.

    Request body:
    {
        "product_id": int,
        "warehouse_id": int (optional),
        "qty": int (optional, default 1),
        "scanned_at": ISO-8601 (optional, default now)
    }

    The line keeps the earliest scanned_at it has seen as its count time.
    """
    data = request.get_json(silent=True) or {}

    try:
        product_id = coerce_integer(data.get("product_id"), "product_id")
        warehouse_id = data.get("warehouse_id")
        if warehouse_id is not None:
            warehouse_id = coerce_integer(warehouse_id, "warehouse_id")
        qty = coerce_integer(data.get("qty", 1), "qty")

        session = count_session_service.record_scan(
            session_id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            qty=qty,
            scanned_at=data.get("scanned_at"),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except count_session_service.CountSessionError as e:
        return _session_error(e)
    except ConcurrencyConflict as e:
        return _session_conflict(e)

    return jsonify(session.to_dict()), 201


@counts_bp.route("/sessions/<session_id>/lines", methods=["PUT"])
def set_line_quantity(session_id: str):
    """
    Overwrite a line's counted quantity (recount, manual entry).

    Request body:
    {
        "product_id": int,
        "warehouse_id": int (optional),
        "counted_qty": int,
        "observed_at": ISO-8601 (optional)
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        product_id = coerce_integer(data.get("product_id"), "product_id")
        warehouse_id = data.get("warehouse_id")
        if warehouse_id is not None:
            warehouse_id = coerce_integer(warehouse_id, "warehouse_id")
        counted_qty = coerce_integer(data.get("counted_qty"), "counted_qty")

        session = count_session_service.set_quantity(
            session_id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            counted_qty=counted_qty,
            observed_at=data.get("observed_at"),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except count_session_service.CountSessionError as e:
        return _session_error(e)
    except ConcurrencyConflict as e:
        return _session_conflict(e)

    return jsonify(session.to_dict()), 200


@counts_bp.route("/sessions/<session_id>/submit", methods=["POST"])
def submit_session(session_id: str):
    """
    Finalize a session and reconcile its lines.

    Safe to call again: already reconciled lines come back as skipped.
    """
    try:
        summary = count_session_service.submit_session(session_id)
    except count_session_service.CountSessionError as e:
        return _session_error(e)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConcurrencyConflict as e:
        return _session_conflict(e)
    except LedgerUnavailableError as e:
        return _ledger_unavailable(e)

    return jsonify(summary.to_dict()), 200


@counts_bp.route("/sessions/<session_id>", methods=["DELETE"])
def discard_session(session_id: str):
    if not count_session_service.discard_session(session_id):
        return jsonify({"error": f"count session {session_id} not found"}), 404
    return "", 204
