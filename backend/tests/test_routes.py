"""
HTTP tests for the inventory, counts and system blueprints.
"""

from datetime import timedelta

from conftest import add_movement
from stockledger.services import reconciliation_service
from stockledger.services.concurrency import LedgerUnavailableError


def _z(dt):
    return dt.isoformat() + "Z"


class TestMovementRoutes:
    def test_append_movement(self, client, db_session, store, warehouse, product):
        response = client.post('/api/inventory/movements', json={
            'store_id': store.id,
            'product_id': product.id,
            'qty_delta': 24,
            'type': 'purchase_receipt',
            'reference_id': 'PO-1001',
        })

        assert response.status_code == 201
        body = response.get_json()
        assert body['movement']['sequence'] == 1
        assert body['movement']['warehouse_id'] == warehouse.id
        assert body['stock']['qty'] == 24

    def test_sale_with_positive_delta_rejected(self, client, db_session, store, warehouse, product):
        response = client.post('/api/inventory/movements', json={
            'store_id': store.id,
            'product_id': product.id,
            'qty_delta': 2,
            'type': 'sale',
        })

        assert response.status_code == 400
        assert 'sale' in response.get_json()['error']

    def test_count_correction_rejected(self, client, db_session, store, warehouse, product):
        response = client.post('/api/inventory/movements', json={
            'store_id': store.id,
            'product_id': product.id,
            'qty_delta': 2,
            'type': 'count_correction',
        })

        assert response.status_code == 400

    def test_missing_fields_rejected(self, client, db_session, store):
        response = client.post('/api/inventory/movements', json={'store_id': store.id})
        assert response.status_code == 400

    def test_unknown_product_rejected(self, client, db_session, store, warehouse):
        response = client.post('/api/inventory/movements', json={
            'store_id': store.id,
            'product_id': 9999,
            'qty_delta': 1,
            'type': 'purchase_receipt',
        })
        assert response.status_code == 400

    def test_list_movements(self, client, db_session, store, warehouse, product, base_time):
        add_movement(store, product, warehouse, 10, "purchase_receipt", occurred_at=base_time)
        add_movement(store, product, warehouse, -1, "sale", occurred_at=base_time + timedelta(hours=1))

        response = client.get(f'/api/inventory/movements?store_id={store.id}&type=sale')

        assert response.status_code == 200
        body = response.get_json()
        assert body['total'] == 1
        assert body['items'][0]['qty_delta'] == -1

    def test_list_movements_requires_store(self, client, db_session):
        assert client.get('/api/inventory/movements').status_code == 400

    def test_list_movements_rejects_bad_dates(self, client, db_session, store):
        response = client.get(f'/api/inventory/movements?store_id={store.id}&start_date=soon')
        assert response.status_code == 400


class TestStockRoutes:
    def test_stock_summary(self, client, db_session, store, warehouse, product):
        add_movement(store, product, warehouse, 10, "purchase_receipt")

        response = client.get(f'/api/inventory/stock?store_id={store.id}&product_id={product.id}')

        assert response.status_code == 200
        [row] = response.get_json()['items']
        assert (row['qty'], row['last_sequence']) == (10, 1)

    def test_health_and_rebuild(self, client, db_session, store, warehouse, product):
        from stockledger.services import stock_service

        add_movement(store, product, warehouse, 10, "purchase_receipt")
        row = stock_service.get_current_stock(product.id, warehouse.id)
        row.qty = 3
        db_session.commit()

        health = client.get(f'/api/inventory/stock/health?store_id={store.id}').get_json()
        assert health['healthy'] is False
        assert health['discrepancies'][0]['diff'] == 7

        response = client.post('/api/inventory/stock/rebuild', json={'store_id': store.id})
        assert response.status_code == 200
        assert response.get_json()['rows_changed'] == 1

        health = client.get(f'/api/inventory/stock/health?store_id={store.id}').get_json()
        assert health == {'healthy': True, 'discrepancies': []}

    def test_rebuild_unknown_store(self, client, db_session):
        response = client.post('/api/inventory/stock/rebuild', json={'store_id': 4242})
        assert response.status_code == 404

    def test_stock_status_and_low_stock(self, client, db_session, store, warehouse, back_room, product, second_product):
        product.low_stock_threshold = 5
        second_product.low_stock_threshold = 5
        db_session.commit()
        add_movement(store, product, warehouse, 3, "purchase_receipt")
        add_movement(store, product, back_room, 4, "purchase_receipt")
        add_movement(store, second_product, warehouse, 2, "purchase_receipt")

        status = client.get(f'/api/inventory/stock/status?store_id={store.id}').get_json()
        by_id = {item['product_id']: item for item in status['items']}
        assert status['total'] == 2
        assert (by_id[product.id]['current_stock'], by_id[product.id]['is_low_stock']) == (7, False)
        assert (by_id[second_product.id]['current_stock'], by_id[second_product.id]['is_low_stock']) == (2, True)

        floor_only = client.get(
            f'/api/inventory/stock/status?store_id={store.id}&warehouse_id={warehouse.id}&low_stock_only=true'
        ).get_json()
        assert sorted(item['product_id'] for item in floor_only['items']) == sorted([product.id, second_product.id])

        low = client.get(f'/api/inventory/stock/low?store_id={store.id}').get_json()
        assert [item['product_id'] for item in low['items']] == [second_product.id]

    def test_reset_product_goes_through_the_ledger(self, client, db_session, store, warehouse, product):
        from stockledger.services import stock_service

        add_movement(store, product, warehouse, 9, "purchase_receipt")

        response = client.post(f'/api/inventory/stock/reset/{product.id}', json={'store_id': store.id, 'note': 'Recall'})
        assert response.status_code == 200
        movement = response.get_json()['movement']
        assert (movement['type'], movement['qty_delta'], movement['sequence']) == ('manual_adjustment', -9, 2)
        assert movement['note'] == 'Recall'
        assert stock_service.get_quantity(product.id, warehouse.id) == 0
        assert stock_service.verify_consistency(store.id) == []

        again = client.post(f'/api/inventory/stock/reset/{product.id}', json={'store_id': store.id})
        assert again.status_code == 200
        assert again.get_json()['movement'] is None

    def test_reset_rejects_bad_input(self, client, db_session, store, warehouse, product):
        long_note = client.post(f'/api/inventory/stock/reset/{product.id}', json={'store_id': store.id, 'note': 'x' * 256})
        assert long_note.status_code == 400

        unknown = client.post('/api/inventory/stock/reset/9999', json={'store_id': store.id})
        assert unknown.status_code == 400

    def test_reset_all_requires_confirmation(self, client, db_session, store, warehouse, product, second_product):
        from stockledger.services import stock_service

        add_movement(store, product, warehouse, 4, "purchase_receipt")
        add_movement(store, second_product, warehouse, -2, "manual_adjustment")

        refused = client.post('/api/inventory/stock/reset-all', json={'store_id': store.id})
        assert refused.status_code == 400
        assert stock_service.get_quantity(product.id, warehouse.id) == 4

        response = client.post('/api/inventory/stock/reset-all', json={'store_id': store.id, 'confirm': True})
        assert response.status_code == 200
        body = response.get_json()
        assert body['reset_count'] == 2
        assert sorted(m['qty_delta'] for m in body['movements']) == [-4, 2]
        assert stock_service.stock_status(store.id)[0][0]['current_stock'] == 0
        assert stock_service.verify_consistency(store.id) == []


class TestReconcileRoute:
    def test_partial_batch_is_200(self, client, db_session, store, warehouse, product, base_time):
        add_movement(store, product, warehouse, 50, "purchase_receipt", occurred_at=base_time)
        add_movement(store, product, warehouse, -3, "sale", occurred_at=base_time + timedelta(hours=1, minutes=5))

        response = client.post('/api/counts/reconcile', json={
            'store_id': store.id,
            'reference_id': 'aisle-3',
            'items': [
                {
                    'product_id': product.id,
                    'counted_qty': 45,
                    'counted_at': _z(base_time + timedelta(hours=1)),
                    'idempotency_key': 'aisle-3:1',
                },
                {
                    'product_id': 9999,
                    'counted_qty': 1,
                    'counted_at': _z(base_time),
                    'idempotency_key': 'aisle-3:2',
                },
            ],
        })

        assert response.status_code == 200
        body = response.get_json()
        assert [r['status'] for r in body['results']] == ['applied', 'failed']
        assert body['results'][0]['delta_applied'] == -5
        assert (body['applied_count'], body['failed_count'], body['skipped_count']) == (1, 1, 0)

        listing = client.get(f'/api/counts/reconciliations?store_id={store.id}&reference_id=aisle-3').get_json()
        assert listing['total'] == 2

    def test_missing_store_id(self, client, db_session):
        response = client.post('/api/counts/reconcile', json={'items': []})
        assert response.status_code == 400

    def test_items_must_be_list(self, client, db_session, store):
        response = client.post('/api/counts/reconcile', json={'store_id': store.id, 'items': {}})
        assert response.status_code == 400

    def test_unknown_store(self, client, db_session):
        response = client.post('/api/counts/reconcile', json={'store_id': 4242, 'items': []})
        assert response.status_code == 404

    def test_ledger_unavailable_is_503(self, client, db_session, store, monkeypatch):
        def unavailable(*args, **kwargs):
            raise LedgerUnavailableError("database is gone")

        monkeypatch.setattr(reconciliation_service, "reconcile", unavailable)

        response = client.post('/api/counts/reconcile', json={'store_id': store.id, 'items': []})
        assert response.status_code == 503

    def test_reconciliations_rejects_unknown_status(self, client, db_session, store):
        response = client.get(f'/api/counts/reconciliations?store_id={store.id}&status=maybe')
        assert response.status_code == 400

    def test_reference_id_must_fit(self, client, db_session, store, warehouse, product, base_time):
        item = {
            'product_id': product.id,
            'counted_qty': 1,
            'counted_at': _z(base_time),
            'idempotency_key': 'ref-check',
        }

        too_long = client.post('/api/counts/reconcile', json={
            'store_id': store.id, 'reference_id': 'r' * 65, 'items': [item],
        })
        assert too_long.status_code == 400
        assert 'max length' in too_long.get_json()['error']

        not_text = client.post('/api/counts/reconcile', json={
            'store_id': store.id, 'reference_id': 7, 'items': [item],
        })
        assert not_text.status_code == 400

        listing = client.get(f'/api/counts/reconciliations?store_id={store.id}').get_json()
        assert listing['total'] == 0


class TestSessionRoutes:
    def test_session_flow(self, client, db_session, store, warehouse, product, base_time):
        add_movement(store, product, warehouse, 20, "purchase_receipt", occurred_at=base_time)

        opened = client.post('/api/counts/sessions', json={'store_id': store.id})
        assert opened.status_code == 201
        session_id = opened.get_json()['session_id']

        scan = client.post(f'/api/counts/sessions/{session_id}/scans', json={
            'product_id': product.id,
            'qty': 17,
            'scanned_at': _z(base_time + timedelta(hours=1)),
        })
        assert scan.status_code == 201

        line = client.put(f'/api/counts/sessions/{session_id}/lines', json={
            'product_id': product.id,
            'counted_qty': 18,
        })
        assert line.status_code == 200
        [body_line] = line.get_json()['lines']
        assert body_line['counted_qty'] == 18
        assert body_line['first_scanned_at'] == _z(base_time + timedelta(hours=1))

        submitted = client.post(f'/api/counts/sessions/{session_id}/submit')
        assert submitted.status_code == 200
        [result] = submitted.get_json()['results']
        assert (result['status'], result['delta_applied']) == ('applied', -2)

        fetched = client.get(f'/api/counts/sessions/{session_id}').get_json()
        assert fetched['status'] == 'submitted'

        closed = client.post(f'/api/counts/sessions/{session_id}/scans', json={'product_id': product.id})
        assert closed.status_code == 400

    def test_missing_session_is_404(self, client, db_session):
        assert client.get('/api/counts/sessions/nope').status_code == 404
        assert client.post('/api/counts/sessions/nope/submit').status_code == 404
        assert client.delete('/api/counts/sessions/nope').status_code == 404

    def test_scan_rejects_non_integer_qty(self, client, db_session, store, warehouse, product):
        session_id = client.post('/api/counts/sessions', json={'store_id': store.id}).get_json()['session_id']

        response = client.post(f'/api/counts/sessions/{session_id}/scans', json={'product_id': product.id, 'qty': 1.5})
        assert response.status_code == 400

    def test_delete_session(self, client, db_session, store):
        session_id = client.post('/api/counts/sessions', json={'store_id': store.id}).get_json()['session_id']

        assert client.delete(f'/api/counts/sessions/{session_id}').status_code == 204
        assert client.get(f'/api/counts/sessions/{session_id}').status_code == 404

    def test_open_session_rejects_long_reference_id(self, client, db_session, store):
        response = client.post('/api/counts/sessions', json={'store_id': store.id, 'reference_id': 's' * 65})
        assert response.status_code == 400


def test_system_health(client, db_session, store):
    response = client.get('/api/system/health')

    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'healthy'
    assert body['checks']['database']['details']['stores'] == 1
    assert body['checks']['count_session_store']['details']['backend'] == 'memory'


def test_system_health_writes_nothing(client, db_session, monkeypatch):
    from stockledger.routes.system import HEALTH_CHECK_KEY
    from stockledger.services.count_session_service import get_session_store

    store = get_session_store()

    def refuse(*args, **kwargs):
        raise AssertionError("health check must not write to the session store")

    monkeypatch.setattr(store, "put", refuse)
    monkeypatch.setattr(store, "modify", refuse)
    monkeypatch.setattr(store, "delete", refuse)

    body = client.get('/api/system/health').get_json()

    assert body['checks']['count_session_store']['status'] == 'healthy'
    assert HEALTH_CHECK_KEY not in store._data
