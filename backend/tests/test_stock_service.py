"""
Stock status, low stock and reset tests.

Resets must reach zero through the ledger: the aggregate is never written
directly, so verify_consistency stays clean after every reset.
"""

from types import SimpleNamespace

import pytest

from conftest import add_movement
from stockledger.models import Product, StockMovement
from stockledger.services import adjustment_service, stock_service
from stockledger.validation import ValidationError


class TestStockStatus:
    def test_never_moved_product_reports_zero(self, db_session, store, warehouse, product):
        items, total = stock_service.stock_status(store.id)

        assert total == 1
        assert items[0]["current_stock"] == 0
        # threshold 0 means an empty shelf is low
        assert items[0]["is_low_stock"] is True

    def test_sums_warehouses_unless_one_is_given(self, db_session, store, warehouse, back_room, product):
        add_movement(store, product, warehouse, 6, "purchase_receipt")
        add_movement(store, product, back_room, 9, "purchase_receipt")

        [everywhere], _ = stock_service.stock_status(store.id)
        [floor], _ = stock_service.stock_status(store.id, warehouse_id=warehouse.id)

        assert everywhere["current_stock"] == 15
        assert floor["current_stock"] == 6

    def test_low_stock_uses_each_products_threshold(self, db_session, store, warehouse, product, second_product):
        product.low_stock_threshold = 10
        second_product.low_stock_threshold = 2
        db_session.commit()
        add_movement(store, product, warehouse, 10, "purchase_receipt")
        add_movement(store, second_product, warehouse, 3, "purchase_receipt")

        low = stock_service.low_stock_products(store.id)

        assert [item["product_id"] for item in low] == [product.id]

    def test_inactive_products_are_left_out(self, db_session, store, warehouse, product):
        retired = Product(store_id=store.id, sku="OLD-1", name="Discontinued", is_active=False)
        db_session.add(retired)
        db_session.commit()

        items, total = stock_service.stock_status(store.id)

        assert total == 1
        assert [item["product_id"] for item in items] == [product.id]

    def test_pagination(self, db_session, store, warehouse, product, second_product):
        items, total = stock_service.stock_status(store.id, limit=1, offset=1)

        assert total == 2
        # ordered by name: "Coffee beans 1kg", then "Milk 1L"
        assert [item["product_id"] for item in items] == [second_product.id]


class TestStockReset:
    def test_reset_appends_manual_adjustment(self, db_session, store, warehouse, product):
        add_movement(store, product, warehouse, 12, "purchase_receipt")
        add_movement(store, product, warehouse, -5, "sale")

        movement = adjustment_service.reset_product_stock(store.id, product.id)

        assert (movement.type, movement.qty_delta, movement.sequence) == ("manual_adjustment", -7, 3)
        assert movement.reference_id == adjustment_service.STOCK_RESET_REFERENCE
        assert stock_service.get_quantity(product.id, warehouse.id) == 0
        assert stock_service.verify_consistency(store.id) == []

    def test_reset_of_negative_stock_adds_back(self, db_session, store, warehouse, product):
        add_movement(store, product, warehouse, -4, "sale")

        movement = adjustment_service.reset_product_stock(store.id, product.id)

        assert movement.qty_delta == 4
        assert stock_service.get_quantity(product.id, warehouse.id) == 0

    def test_reset_of_empty_stock_writes_nothing(self, db_session, store, warehouse, product):
        assert adjustment_service.reset_product_stock(store.id, product.id) is None
        assert db_session.query(StockMovement).count() == 0

    def test_reset_rejects_foreign_product(self, db_session, store, other_store, warehouse):
        foreign = Product(store_id=other_store.id, sku="X-1", name="Elsewhere")
        db_session.add(foreign)
        db_session.commit()

        with pytest.raises(ValidationError, match="does not belong"):
            adjustment_service.reset_product_stock(store.id, foreign.id)

    def test_reset_retries_when_a_sale_lands_first(self, db_session, store, warehouse, product, monkeypatch):
        add_movement(store, product, warehouse, 10, "purchase_receipt")
        real_read = adjustment_service.get_current_stock
        sold = []

        def read_then_sell(product_id, warehouse_id, **kwargs):
            row = real_read(product_id, warehouse_id, **kwargs)
            if sold:
                return row
            snapshot = SimpleNamespace(qty=row.qty, last_sequence=row.last_sequence)
            sold.append(add_movement(store, product, warehouse, -4, "sale"))
            return snapshot

        monkeypatch.setattr(adjustment_service, "get_current_stock", read_then_sell)

        movement = adjustment_service.reset_product_stock(store.id, product.id)

        assert movement.qty_delta == -6
        assert stock_service.get_quantity(product.id, warehouse.id) == 0
        assert stock_service.verify_consistency(store.id) == []

    def test_reset_all_per_warehouse(self, db_session, store, warehouse, back_room, product, second_product):
        add_movement(store, product, warehouse, 3, "purchase_receipt")
        add_movement(store, product, back_room, 8, "purchase_receipt")
        add_movement(store, second_product, warehouse, 2, "purchase_receipt")

        movements = adjustment_service.reset_all_stock(store.id, warehouse_id=warehouse.id)

        assert sorted(m.qty_delta for m in movements) == [-3, -2]
        assert stock_service.get_quantity(product.id, back_room.id) == 8
        assert stock_service.get_quantity(product.id, warehouse.id) == 0
        assert stock_service.verify_consistency(store.id) == []
