from __future__ import annotations

import uuid

from ..extensions import db
from ..time_utils import to_utc_z

# Movement types
MOVEMENT_SALE = "sale"
MOVEMENT_PURCHASE_RECEIPT = "purchase_receipt"
MOVEMENT_RETURN = "return"
MOVEMENT_MANUAL_ADJUSTMENT = "manual_adjustment"
MOVEMENT_COUNT_CORRECTION = "count_correction"

MOVEMENT_TYPES = (
    MOVEMENT_SALE,
    MOVEMENT_PURCHASE_RECEIPT,
    MOVEMENT_RETURN,
    MOVEMENT_MANUAL_ADJUSTMENT,
    MOVEMENT_COUNT_CORRECTION,
)

# Producers (sales, purchasing, returns, back office) may append these.
# count_correction is only written by the adjustment applier.
PRODUCER_MOVEMENT_TYPES = (
    MOVEMENT_SALE,
    MOVEMENT_PURCHASE_RECEIPT,
    MOVEMENT_RETURN,
    MOVEMENT_MANUAL_ADJUSTMENT,
)


def _new_movement_id() -> str:
    return uuid.uuid4().hex


class Product(db.Model):
    """
    Product reference data (catalog CRUD is owned by the catalog service).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # On-hand quantity at or below this is reported as low stock
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "name": self.name,
            "is_active": self.is_active,
            "low_stock_threshold": self.low_stock_threshold,
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(db.Model):
    """
    Append-only movement ledger (source of truth for on-hand stock).

    INVARIANTS:
    - Rows are never updated or deleted; corrections are new rows.
    - sequence is assigned at append time, strictly increasing per
      (product_id, warehouse_id) and is the only ordering used for correctness.
    - occurred_at is descriptive business time; clients may skew it.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint("product_id", "warehouse_id", "sequence", name="uq_stock_movements_pair_sequence"),
        db.Index("ix_stock_movements_pair_occurred", "product_id", "warehouse_id", "occurred_at"),
        db.Index("ix_stock_movements_store_occurred", "store_id", "occurred_at"),
        db.CheckConstraint("qty_delta <> 0", name="ck_stock_movements_nonzero_delta"),
    )

    # Opaque identifier; ordering comes from sequence only
    id = db.Column(db.String(32), primary_key=True, default=_new_movement_id)

    sequence = db.Column(db.Integer, nullable=False)

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)

    qty_delta = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(32), nullable=False, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    # Originating sale / order / receipt / count session, for audit
    reference_id = db.Column(db.String(64), nullable=True, index=True)
    note = db.Column(db.String(255), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.id} seq={self.sequence} {self.type} "
            f"{self.qty_delta:+d} product={self.product_id} warehouse={self.warehouse_id}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "qty_delta": self.qty_delta,
            "type": self.type,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "reference_id": self.reference_id,
            "note": self.note,
        }


class CurrentStock(db.Model):
    """
    Materialized on-hand quantity per (product, warehouse).

    qty must equal SUM(stock_movements.qty_delta) for the pair after every
    completed write, and last_sequence is the sequence of the last movement
    folded into qty (0 before any movement). Rows are created lazily.
    """
    __tablename__ = "current_stock"
    __table_args__ = (
        db.UniqueConstraint("product_id", "warehouse_id", name="uq_current_stock_pair"),
        db.Index("ix_current_stock_store", "store_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)

    qty = db.Column(db.Integer, nullable=False, default=0)
    last_sequence = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<CurrentStock product={self.product_id} warehouse={self.warehouse_id} "
            f"qty={self.qty} last_sequence={self.last_sequence}>"
        )

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "qty": self.qty,
            "last_sequence": self.last_sequence,
            "updated_at": to_utc_z(self.updated_at),
        }
