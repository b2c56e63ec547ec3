# Overview: Flask CLI command group for stock ledger inspection and maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Stock ledger:
# - python -m flask stock verify --store-id 1
#   Compare current stock with the movement ledger; exits 1 on discrepancies.
# - python -m flask stock rebuild --store-id 1
#   Recompute current stock rows from the ledger.
# - python -m flask stock seed-demo
#   Idempotent: create a demo store, warehouse, products and opening receipts.
# - python -m flask stock purge-sessions
#   Delete expired count sessions from the configured session store.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product, Store, Warehouse
from .models.inventory import MOVEMENT_PURCHASE_RECEIPT
from .services import count_session_service, ledger_service, stock_service
from .validation import ValidationError


DEMO_STORE_CODE = "DEMO"
# sku, name, opening stock, low stock threshold
DEMO_PRODUCTS = (
    ("SKU-001", "Espresso beans 1kg", 50, 10),
    ("SKU-002", "Oat milk 1L", 24, 12),
    ("SKU-003", "Paper cups (100)", 12, 20),
)


@click.group('stock')
def stock_group():
    """Stock ledger inspection and maintenance commands."""


@stock_group.command('verify')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def verify_stock(store_id):
    """Report (product, warehouse) pairs whose current stock disagrees with the ledger."""
    try:
        ledger_service.resolve_store(store_id)
    except ValidationError as e:
        raise click.ClickException(str(e))

    discrepancies = stock_service.verify_consistency(store_id)
    if not discrepancies:
        click.echo(f"PASS Store {store_id}: current stock matches the ledger")
        return

    click.echo(f"FAIL Store {store_id}: {len(discrepancies)} discrepancies")
    for d in discrepancies:
        click.echo(
            f"  product={d['product_id']} warehouse={d['warehouse_id']} "
            f"ledger={d['ledger_qty']} aggregate={d['aggregate_qty']} diff={d['diff']:+d}"
        )
    raise SystemExit(1)


@stock_group.command('rebuild')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def rebuild_stock(store_id):
    """Recompute current stock for a store from its movements."""
    try:
        ledger_service.resolve_store(store_id)
    except ValidationError as e:
        raise click.ClickException(str(e))

    changed = stock_service.rebuild_from_ledger(store_id)
    click.echo(f"PASS Store {store_id}: {changed} current stock rows rebuilt")


@stock_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create a demo store with one warehouse, three products and opening stock."""
    store = db.session.query(Store).filter_by(code=DEMO_STORE_CODE).first()
    if store is not None:
        click.echo(f"PASS Demo store already exists (ID: {store.id})")
        return

    store = Store(name="Demo Store", code=DEMO_STORE_CODE)
    db.session.add(store)
    db.session.flush()

    warehouse = Warehouse(store_id=store.id, name="Back room", is_default=True)
    db.session.add(warehouse)

    products = []
    for sku, name, _, threshold in DEMO_PRODUCTS:
        product = Product(store_id=store.id, sku=sku, name=name, low_stock_threshold=threshold)
        db.session.add(product)
        products.append(product)
    db.session.commit()

    for product, (_, _, opening_qty, _) in zip(products, DEMO_PRODUCTS):
        ledger_service.append_movement(
            store_id=store.id,
            product_id=product.id,
            warehouse_id=warehouse.id,
            qty_delta=opening_qty,
            movement_type=MOVEMENT_PURCHASE_RECEIPT,
            reference_id="seed-demo",
            note="Opening stock",
        )

    click.echo(f"PASS Created demo store {store.id} with warehouse {warehouse.id} and {len(products)} products")


@stock_group.command('purge-sessions')
@with_appcontext
def purge_sessions():
    """Delete expired count sessions."""
    purged = count_session_service.purge_expired_sessions()
    click.echo(f"PASS Purged {purged} expired count sessions")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(stock_group)
