"""
Count capture session tests: scan accumulation, first-scan timing,
submission into reconciliation, and both key/value store backends.
"""

import threading
from datetime import timedelta

import pytest

from conftest import add_movement
from stockledger.models import CountSessionRecord, StockMovement
from stockledger.services import count_session_service, stock_service
from stockledger.services.count_session_service import (
    CountSession,
    CountSessionError,
    CountSessionNotFound,
    InMemoryCountSessionStore,
    SqlCountSessionStore,
)
from stockledger.services.reconciliation_service import BatchSummary
from stockledger.validation import ValidationError


class TestCountSessionObject:
    def test_first_scan_time_is_the_earliest_seen(self, base_time):
        session = CountSession(session_id="s1", store_id=1)

        session.record_scan(5, 1, qty=2, scanned_at=base_time + timedelta(minutes=10))
        session.record_scan(5, 1, qty=1, scanned_at=base_time)
        session.record_scan(5, 1, qty=3, scanned_at=base_time + timedelta(minutes=20))

        [line] = session.lines.values()
        assert line.counted_qty == 6
        assert line.first_scanned_at == base_time

    def test_set_quantity_keeps_first_observation(self, base_time):
        session = CountSession(session_id="s1", store_id=1)
        session.record_scan(5, 1, scanned_at=base_time)

        session.set_quantity(5, 1, 12, observed_at=base_time + timedelta(hours=1))

        [line] = session.lines.values()
        assert (line.counted_qty, line.first_scanned_at) == (12, base_time)

    def test_zero_quantity_scan_rejected(self):
        session = CountSession(session_id="s1", store_id=1)
        with pytest.raises(ValidationError):
            session.record_scan(5, 1, qty=0)

    def test_entries_carry_per_line_keys(self, base_time):
        session = CountSession(session_id="abc", store_id=1)
        session.record_scan(7, 2, scanned_at=base_time)
        session.record_scan(3, 2, scanned_at=base_time)

        entries = session.to_entries()

        assert [e.product_id for e in entries] == [3, 7]
        assert entries[0].idempotency_key == "abc:3:2"
        assert entries[0].counted_at == base_time

    def test_dict_round_trip_preserves_lines(self, base_time):
        session = CountSession(session_id="abc", store_id=1, reference_id="aisle-4")
        session.record_scan(7, 2, qty=4, scanned_at=base_time)

        restored = CountSession.from_dict(session.to_dict())

        assert restored.reference_id == "aisle-4"
        assert restored.lines[(7, 2)].counted_qty == 4
        assert restored.lines[(7, 2)].first_scanned_at == base_time


class TestCountSessionService:
    def test_scan_and_submit(self, db_session, store, warehouse, product, base_time):
        add_movement(store, product, warehouse, 50, "purchase_receipt", occurred_at=base_time)
        session = count_session_service.open_session(store.id, reference_id="cycle-count")

        count_session_service.record_scan(session.session_id, product_id=product.id, qty=40, scanned_at=base_time + timedelta(hours=1))
        add_movement(store, product, warehouse, -3, "sale", occurred_at=base_time + timedelta(hours=1, minutes=5))
        count_session_service.record_scan(session.session_id, product_id=product.id, qty=5, scanned_at=base_time + timedelta(hours=1, minutes=15))

        summary = count_session_service.submit_session(session.session_id)

        [result] = summary.results
        assert result.status == "applied"
        assert result.expected_qty_at_count_time == 50
        assert result.delta_applied == -5
        assert result.idempotency_key == f"{session.session_id}:{product.id}:{warehouse.id}"
        assert stock_service.get_quantity(product.id, warehouse.id) == 42

        stored = count_session_service.get_session(session.session_id)
        assert stored.status == "submitted"

        correction = db_session.query(StockMovement).filter_by(type="count_correction").one()
        assert correction.reference_id == "cycle-count"

    def test_resubmit_replays(self, db_session, store, warehouse, product, base_time):
        session = count_session_service.open_session(store.id)
        count_session_service.record_scan(session.session_id, product_id=product.id, qty=3, scanned_at=base_time)

        count_session_service.submit_session(session.session_id)
        again = count_session_service.submit_session(session.session_id)

        assert [r.status for r in again.results] == ["skipped"]
        assert db_session.query(StockMovement).filter_by(type="count_correction").count() == 1

    def test_submitted_session_rejects_scans(self, db_session, store, warehouse, product):
        session = count_session_service.open_session(store.id)
        count_session_service.record_scan(session.session_id, product_id=product.id)
        count_session_service.submit_session(session.session_id)

        with pytest.raises(CountSessionError, match="submitted"):
            count_session_service.record_scan(session.session_id, product_id=product.id)

    def test_empty_session_cannot_submit(self, db_session, store):
        session = count_session_service.open_session(store.id)
        with pytest.raises(CountSessionError, match="no lines"):
            count_session_service.submit_session(session.session_id)

    def test_missing_session(self, db_session):
        with pytest.raises(CountSessionNotFound):
            count_session_service.get_session("nope")

    def test_scan_validates_product_store(self, db_session, store, other_store, warehouse):
        session = count_session_service.open_session(store.id)
        with pytest.raises(ValidationError):
            count_session_service.record_scan(session.session_id, product_id=9999)

    def test_open_for_unknown_store(self, db_session):
        with pytest.raises(ValidationError):
            count_session_service.open_session(4242)

    def test_discard(self, db_session, store):
        session = count_session_service.open_session(store.id)

        assert count_session_service.discard_session(session.session_id) is True
        assert count_session_service.discard_session(session.session_id) is False
        with pytest.raises(CountSessionNotFound):
            count_session_service.get_session(session.session_id)


class TestSessionStores:
    def test_in_memory_expiry(self, monkeypatch):
        store = InMemoryCountSessionStore()
        store.put("k", {"a": 1}, ttl_seconds=60)
        assert store.get("k") == {"a": 1}

        later = count_session_service.utcnow() + timedelta(minutes=2)
        monkeypatch.setattr(count_session_service, "utcnow", lambda: later)
        assert store.get("k") is None

    def test_sql_store(self, db_session):
        store = SqlCountSessionStore()

        store.put("k", {"a": 1}, ttl_seconds=60)
        store.put("k", {"a": 2}, ttl_seconds=60)
        assert store.get("k") == {"a": 2}

        assert store.delete("k") is True
        assert store.get("k") is None
        assert store.delete("k") is False

    def test_sql_store_expiry(self, db_session, monkeypatch):
        store = SqlCountSessionStore()
        store.put("k", {"a": 1}, ttl_seconds=1)

        later = count_session_service.utcnow() + timedelta(seconds=5)
        monkeypatch.setattr(count_session_service, "utcnow", lambda: later)
        assert store.get("k") is None

    def test_in_memory_modify_is_atomic(self):
        store = InMemoryCountSessionStore()
        store.put("k", {"n": 0})

        def bump_many():
            for _ in range(200):
                store.modify("k", lambda value: {"n": value["n"] + 1})

        threads = [threading.Thread(target=bump_many) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("k") == {"n": 1600}

    def test_modify_of_missing_key(self, db_session):
        assert InMemoryCountSessionStore().modify("nope", lambda value: value) is None
        assert SqlCountSessionStore().modify("nope", lambda value: value) is None

    def test_sql_modify_retries_after_concurrent_write(self, db_session):
        store = SqlCountSessionStore(backoff_base=0)
        store.put("k", {"n": 1})
        seen = []

        def bump(value):
            seen.append(value["n"])
            if len(seen) == 1:
                # Another writer commits between this read and the write-back
                store.put("k", {"n": 10})
            return {"n": value["n"] + 1}

        assert store.modify("k", bump) == {"n": 11}
        assert seen == [1, 10]
        assert store.get("k") == {"n": 11}

    def test_sql_modify_error_leaves_value(self, db_session):
        store = SqlCountSessionStore()
        store.put("k", {"n": 1})

        def refuse(value):
            raise CountSessionError("closed")

        with pytest.raises(CountSessionError):
            store.modify("k", refuse)
        assert store.get("k") == {"n": 1}

    def test_in_memory_purge(self, monkeypatch):
        store = InMemoryCountSessionStore()
        store.put("short", {"a": 1}, ttl_seconds=60)
        store.put("long", {"a": 2}, ttl_seconds=3600)
        store.put("forever", {"a": 3})

        later = count_session_service.utcnow() + timedelta(minutes=5)
        monkeypatch.setattr(count_session_service, "utcnow", lambda: later)

        assert store.purge_expired() == 1
        assert store.purge_expired() == 0
        assert store.get("long") == {"a": 2}
        assert store.get("forever") == {"a": 3}

    def test_sql_purge_deletes_expired_rows(self, db_session, monkeypatch):
        store = SqlCountSessionStore()
        store.put("short", {"a": 1}, ttl_seconds=60)
        store.put("long", {"a": 2}, ttl_seconds=3600)

        later = count_session_service.utcnow() + timedelta(minutes=5)
        monkeypatch.setattr(count_session_service, "utcnow", lambda: later)

        assert store.purge_expired() == 1
        assert db_session.query(CountSessionRecord).count() == 1
        assert db_session.get(CountSessionRecord, "long") is not None


class TestSessionLifecycle:
    def test_opening_a_session_purges_expired_ones(self, db_session, store, monkeypatch):
        stale = count_session_service.open_session(store.id)
        key = f"count-session:{stale.session_id}"

        later = count_session_service.utcnow() + timedelta(days=2)
        monkeypatch.setattr(count_session_service, "utcnow", lambda: later)
        count_session_service.open_session(store.id)

        assert key not in count_session_service.get_session_store()._data

    def test_reference_id_is_bounded(self, db_session, store):
        with pytest.raises(ValidationError, match="max length"):
            count_session_service.open_session(store.id, reference_id="x" * 65)

        session = count_session_service.open_session(store.id, reference_id="  aisle-7  ")
        assert session.reference_id == "aisle-7"

    def test_submit_freezes_the_session_first(self, db_session, store, warehouse, product, monkeypatch):
        session = count_session_service.open_session(store.id)
        count_session_service.record_scan(session.session_id, product_id=product.id, qty=2)
        statuses = []

        def reconcile_and_look(store_id, entries, **kwargs):
            statuses.append(count_session_service.get_session(session.session_id).status)
            return BatchSummary()

        monkeypatch.setattr(count_session_service, "reconcile", reconcile_and_look)
        count_session_service.submit_session(session.session_id)

        assert statuses == ["submitted"]
