"""Store-scoped idempotency keys, low stock thresholds, versioned count sessions

Revision ID: 20261026_store_scoped_keys
Revises: 20261019_stock_ledger
Create Date: 2026-10-26
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261026_store_scoped_keys"
down_revision = "20261019_stock_ledger"
branch_labels = None
depends_on = None

# PostgreSQL's name for the unnamed UNIQUE (idempotency_key) of the first revision
_GLOBAL_KEY_CONSTRAINT = "reconciliation_records_idempotency_key_key"


def _drop_sqlite_unique(batch_op, columns):
    """Remove an unnamed unique constraint from batch_op metadata during batch recreation."""
    target = tuple(columns)
    for constraint in list(getattr(batch_op.impl, "unnamed_constraints", [])):
        if isinstance(constraint, sa.UniqueConstraint):
            if tuple(col.name for col in constraint.columns) == target:
                batch_op.impl.unnamed_constraints.remove(constraint)
                return True
    return False


def upgrade():
    with op.batch_alter_table("products") as batch_op:
        batch_op.add_column(
            sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default="0")
        )

    with op.batch_alter_table("count_session_records") as batch_op:
        batch_op.add_column(
            sa.Column("version", sa.Integer(), nullable=False, server_default="1")
        )

    bind = op.get_bind()
    if bind.dialect.name == "sqlite":
        with op.batch_alter_table("reconciliation_records", recreate="always") as batch_op:
            _drop_sqlite_unique(batch_op, ["idempotency_key"])
            batch_op.create_unique_constraint("uq_recon_records_store_key", ["store_id", "idempotency_key"])
    else:
        op.drop_constraint(_GLOBAL_KEY_CONSTRAINT, "reconciliation_records", type_="unique")
        op.create_unique_constraint(
            "uq_recon_records_store_key", "reconciliation_records", ["store_id", "idempotency_key"]
        )


def downgrade():
    # Fails if two stores already completed the same key; resolve those rows first
    bind = op.get_bind()
    if bind.dialect.name == "sqlite":
        with op.batch_alter_table("reconciliation_records", recreate="always") as batch_op:
            batch_op.drop_constraint("uq_recon_records_store_key", type_="unique")
            batch_op.create_unique_constraint(_GLOBAL_KEY_CONSTRAINT, ["idempotency_key"])
    else:
        op.drop_constraint("uq_recon_records_store_key", "reconciliation_records", type_="unique")
        op.create_unique_constraint(_GLOBAL_KEY_CONSTRAINT, "reconciliation_records", ["idempotency_key"])

    with op.batch_alter_table("count_session_records") as batch_op:
        batch_op.drop_column("version")

    with op.batch_alter_table("products") as batch_op:
        batch_op.drop_column("low_stock_threshold")
