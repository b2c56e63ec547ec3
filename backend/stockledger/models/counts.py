from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

RESULT_APPLIED = "applied"
RESULT_NO_OP = "no_op"
RESULT_SKIPPED = "skipped"
RESULT_FAILED = "failed"

RESULT_STATUSES = (RESULT_APPLIED, RESULT_NO_OP, RESULT_SKIPPED, RESULT_FAILED)

# Outcomes that claim an idempotency key. A failed attempt leaves the key
# free so the client can retry the same submission.
TERMINAL_STATUSES = (RESULT_APPLIED, RESULT_NO_OP)


class ReconciliationRecord(db.Model):
    """
    Audit row for one reconciled count entry.

    IDEMPOTENCY:
    - idempotency_key is set only on applied / no_op rows, unique per store,
      and is written in the same transaction as the correction movement.
    - submitted_key always carries the client key, for audit of failed
      attempts and replays.
    - payload_hash detects a key reused with a different payload.

    product_id / warehouse_id are plain integers: failed rows may reference
    ids that do not exist.
    """
    __tablename__ = "reconciliation_records"
    __table_args__ = (
        db.Index("ix_recon_records_store_created", "store_id", "created_at"),
        db.Index("ix_recon_records_pair", "product_id", "warehouse_id"),
        db.UniqueConstraint("store_id", "idempotency_key", name="uq_recon_records_store_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)
    product_id = db.Column(db.Integer, nullable=True)
    warehouse_id = db.Column(db.Integer, nullable=True)

    # Count session / batch reference
    reference_id = db.Column(db.String(64), nullable=True, index=True)

    idempotency_key = db.Column(db.String(128), nullable=True)
    submitted_key = db.Column(db.String(128), nullable=True, index=True)
    payload_hash = db.Column(db.String(64), nullable=True)

    counted_qty = db.Column(db.Integer, nullable=True)
    counted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    count_sequence = db.Column(db.Integer, nullable=True)
    observed_sequence = db.Column(db.Integer, nullable=True)

    expected_qty_at_count_time = db.Column(db.Integer, nullable=True)
    delta_applied = db.Column(db.Integer, nullable=True)
    resulting_qty = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, index=True)
    correction_movement_id = db.Column(db.String(32), db.ForeignKey("stock_movements.id"), nullable=True)
    negative_stock = db.Column(db.Boolean, nullable=False, default=False)

    error_type = db.Column(db.String(64), nullable=True)
    error = db.Column(db.String(255), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    correction_movement = db.relationship("StockMovement")

    def __repr__(self) -> str:
        return (
            f"<ReconciliationRecord id={self.id} product={self.product_id} "
            f"status={self.status} delta={self.delta_applied}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "reference_id": self.reference_id,
            "idempotency_key": self.submitted_key,
            "counted_qty": self.counted_qty,
            "counted_at": to_utc_z(self.counted_at),
            "count_sequence": self.count_sequence,
            "observed_sequence": self.observed_sequence,
            "expected_qty_at_count_time": self.expected_qty_at_count_time,
            "delta_applied": self.delta_applied,
            "resulting_qty": self.resulting_qty,
            "status": self.status,
            "correction_movement_id": self.correction_movement_id,
            "negative_stock": self.negative_stock,
            "error_type": self.error_type,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": to_utc_z(self.created_at),
        }


class CountSessionRecord(db.Model):
    """
    Key/value row backing the SQL count session store.

    payload is the JSON form of a CountSession; the row carries no other
    domain meaning. version is bumped on every write and checked by
    compare-and-set updates, so concurrent read-modify-write cycles on one
    session cannot overwrite each other.
    """
    __tablename__ = "count_session_records"

    key = db.Column(db.String(64), primary_key=True)
    payload = db.Column(db.Text, nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1, server_default="1")
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
