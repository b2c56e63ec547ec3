# Overview: Count capture sessions behind a key/value store; finalized into count entries.

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from flask import current_app
from sqlalchemy import delete, update

from ..extensions import db
from ..models import CountSessionRecord
from ..time_utils import coerce_datetime, parse_iso_datetime, to_utc_z, utcnow
from ..validation import ValidationError, coerce_reference_id
from .concurrency import ConcurrencyConflict, lock_for_update, run_with_retry
from .ledger_service import resolve_product, resolve_store, resolve_warehouse
from .reconciliation_service import BatchSummary, CountEntry, reconcile

logger = logging.getLogger(__name__)

SESSION_STATUS_OPEN = "open"
SESSION_STATUS_SUBMITTED = "submitted"


class CountSessionError(Exception):
    """Raised when a count session is missing or cannot accept the operation."""


class CountSessionNotFound(CountSessionError):
    pass


# =============================================================================
# Value objects
# =============================================================================

@dataclass
class CountLine:
    product_id: int
    warehouse_id: int
    counted_qty: int
    first_scanned_at: datetime

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "counted_qty": self.counted_qty,
            "first_scanned_at": to_utc_z(self.first_scanned_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CountLine":
        return cls(
            product_id=int(data["product_id"]),
            warehouse_id=int(data["warehouse_id"]),
            counted_qty=int(data["counted_qty"]),
            first_scanned_at=parse_iso_datetime(data["first_scanned_at"]),
        )


@dataclass
class CountSession:
    """
    Scans accumulated during one counting session.

    One line per (product, warehouse). A line's first_scanned_at is the
    earliest scan seen for it: counting of that product is defined to start
    the instant it was first observed, and every movement after that instant
    is accounted for by reconciliation, not by the counter.
    """
    session_id: str
    store_id: int
    reference_id: str | None = None
    status: str = SESSION_STATUS_OPEN
    created_at: datetime = field(default_factory=utcnow)
    lines: dict[tuple[int, int], CountLine] = field(default_factory=dict)

    def _require_open(self) -> None:
        if self.status != SESSION_STATUS_OPEN:
            raise CountSessionError(f"count session {self.session_id} is {self.status}")

    def record_scan(
        self,
        product_id: int,
        warehouse_id: int,
        qty: int = 1,
        scanned_at: datetime | None = None,
    ) -> CountLine:
        self._require_open()
        if qty <= 0:
            raise ValidationError("scan quantity must be > 0")
        scanned_at = scanned_at or utcnow()

        line = self.lines.get((product_id, warehouse_id))
        if line is None:
            line = CountLine(product_id, warehouse_id, 0, scanned_at)
            self.lines[(product_id, warehouse_id)] = line
        line.counted_qty += qty
        if scanned_at < line.first_scanned_at:
            line.first_scanned_at = scanned_at
        return line

    def set_quantity(
        self,
        product_id: int,
        warehouse_id: int,
        counted_qty: int,
        observed_at: datetime | None = None,
    ) -> CountLine:
        """Manual override of a line's total; the first observation time is kept."""
        self._require_open()
        if counted_qty < 0:
            raise ValidationError("counted_qty must be >= 0")
        observed_at = observed_at or utcnow()

        line = self.lines.get((product_id, warehouse_id))
        if line is None:
            line = CountLine(product_id, warehouse_id, counted_qty, observed_at)
            self.lines[(product_id, warehouse_id)] = line
        else:
            line.counted_qty = counted_qty
            line.first_scanned_at = min(line.first_scanned_at, observed_at)
        return line

    def idempotency_key(self, line: CountLine) -> str:
        return f"{self.session_id}:{line.product_id}:{line.warehouse_id}"

    def to_entries(self) -> list[CountEntry]:
        return [
            CountEntry(
                product_id=line.product_id,
                warehouse_id=line.warehouse_id,
                counted_qty=line.counted_qty,
                counted_at=line.first_scanned_at,
                idempotency_key=self.idempotency_key(line),
            )
            for line in sorted(self.lines.values(), key=lambda l: (l.product_id, l.warehouse_id))
        ]

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "store_id": self.store_id,
            "reference_id": self.reference_id,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CountSession":
        session = cls(
            session_id=data["session_id"],
            store_id=int(data["store_id"]),
            reference_id=data.get("reference_id"),
            status=data.get("status", SESSION_STATUS_OPEN),
            created_at=parse_iso_datetime(data["created_at"]),
        )
        for raw in data.get("lines", []):
            line = CountLine.from_dict(raw)
            session.lines[(line.product_id, line.warehouse_id)] = line
        return session


# =============================================================================
# Key/value stores
# =============================================================================

def _expiry(ttl_seconds: int | None) -> datetime | None:
    return utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds else None


def _expired(expires_at: datetime | None) -> bool:
    return expires_at is not None and expires_at <= utcnow()


class CountSessionStore(ABC):
    """
    Minimal key/value persistence for serialized count sessions.

    modify() is the only read-modify-write path: mutate receives the stored
    value and returns the new one, and no other write to the key can land in
    between. It returns None when the key is missing or expired.
    """

    @abstractmethod
    def get(self, key: str) -> dict | None: ...

    @abstractmethod
    def put(self, key: str, value: dict, ttl_seconds: int | None = None) -> None: ...

    @abstractmethod
    def modify(
        self,
        key: str,
        mutate: Callable[[dict], dict],
        ttl_seconds: int | None = None,
    ) -> dict | None: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def purge_expired(self) -> int: ...


class InMemoryCountSessionStore(CountSessionStore):
    """Process-local store; used by tests and single-worker deployments."""

    def __init__(self):
        self._data: dict[str, tuple[str, datetime | None]] = {}
        self._lock = threading.Lock()

    def _live_payload(self, key: str) -> str | None:
        # Caller holds self._lock
        entry = self._data.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if _expired(expires_at):
            del self._data[key]
            return None
        return payload

    def get(self, key):
        with self._lock:
            payload = self._live_payload(key)
            return json.loads(payload) if payload is not None else None

    def put(self, key, value, ttl_seconds=None):
        with self._lock:
            self._data[key] = (json.dumps(value), _expiry(ttl_seconds))

    def modify(self, key, mutate, ttl_seconds=None):
        with self._lock:
            payload = self._live_payload(key)
            if payload is None:
                return None
            value = mutate(json.loads(payload))
            self._data[key] = (json.dumps(value), _expiry(ttl_seconds))
            return value

    def delete(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None

    def purge_expired(self):
        with self._lock:
            expired = [key for key, (_, expires_at) in self._data.items() if _expired(expires_at)]
            for key in expired:
                del self._data[key]
        return len(expired)


class SqlCountSessionStore(CountSessionStore):
    """
    Durable store on the count_session_records table.

    modify() locks the row where the database supports it and writes with a
    compare-and-set on version; a lost race rolls back and is retried with a
    fresh read.
    """

    def __init__(self, *, attempts: int = 10, backoff_base: float = 0.01):
        self.attempts = attempts
        self.backoff_base = backoff_base

    def get(self, key):
        row = db.session.get(CountSessionRecord, key, populate_existing=True)
        if row is None or _expired(row.expires_at):
            return None
        return json.loads(row.payload)

    def put(self, key, value, ttl_seconds=None):
        row = db.session.get(CountSessionRecord, key)
        if row is None:
            row = CountSessionRecord(key=key)
            db.session.add(row)
        row.payload = json.dumps(value)
        row.version = (row.version or 0) + 1
        row.expires_at = _expiry(ttl_seconds)
        db.session.commit()

    def modify(self, key, mutate, ttl_seconds=None):
        def _op() -> dict | None:
            row = (
                lock_for_update(db.session.query(CountSessionRecord).filter_by(key=key))
                .populate_existing()
                .first()
            )
            if row is None or _expired(row.expires_at):
                db.session.rollback()
                return None

            seen = row.version
            try:
                value = mutate(json.loads(row.payload))
            except (CountSessionError, ValidationError):
                db.session.rollback()
                raise

            result = db.session.execute(
                update(CountSessionRecord)
                .where(CountSessionRecord.key == key, CountSessionRecord.version == seen)
                .values(payload=json.dumps(value), version=seen + 1, expires_at=_expiry(ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(f"count session record {key} changed concurrently")
            db.session.commit()
            return value

        return run_with_retry(_op, attempts=self.attempts, backoff_base=self.backoff_base)

    def delete(self, key):
        row = db.session.get(CountSessionRecord, key)
        if row is None:
            return False
        db.session.delete(row)
        db.session.commit()
        return True

    def purge_expired(self):
        result = db.session.execute(
            delete(CountSessionRecord)
            .where(CountSessionRecord.expires_at <= utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount


def get_session_store() -> CountSessionStore:
    """Store configured by COUNT_SESSION_BACKEND, one instance per app."""
    store = current_app.extensions.get("count_session_store")
    if store is None:
        backend = current_app.config.get("COUNT_SESSION_BACKEND", "sql")
        if backend == "memory":
            store = InMemoryCountSessionStore()
        elif backend == "sql":
            store = SqlCountSessionStore(
                attempts=current_app.config.get("COUNT_SESSION_MAX_ATTEMPTS", 10),
                backoff_base=current_app.config.get("COUNT_SESSION_BACKOFF_BASE", 0.01),
            )
        else:
            raise RuntimeError(f"unknown COUNT_SESSION_BACKEND: {backend}")
        current_app.extensions["count_session_store"] = store
    return store


# =============================================================================
# Service operations
# =============================================================================

def _key(session_id: str) -> str:
    return f"count-session:{session_id}"


def _ttl() -> int:
    return current_app.config.get("COUNT_SESSION_TTL_SECONDS", 12 * 3600)


def _save(session: CountSession) -> CountSession:
    get_session_store().put(_key(session.session_id), session.to_dict(), ttl_seconds=_ttl())
    return session


def _modify(session_id: str, change: Callable[[CountSession], object]) -> CountSession:
    """Apply change to the stored session atomically and return the new state."""
    def _mutate(data: dict) -> dict:
        session = CountSession.from_dict(data)
        change(session)
        return session.to_dict()

    data = get_session_store().modify(_key(session_id), _mutate, ttl_seconds=_ttl())
    if data is None:
        raise CountSessionNotFound(f"count session {session_id} not found")
    return CountSession.from_dict(data)


def get_session(session_id: str) -> CountSession:
    data = get_session_store().get(_key(session_id))
    if data is None:
        raise CountSessionNotFound(f"count session {session_id} not found")
    return CountSession.from_dict(data)


def purge_expired_sessions() -> int:
    """Delete expired sessions from the configured store; returns how many."""
    purged = get_session_store().purge_expired()
    if purged:
        logger.info("Purged %d expired count sessions", purged)
    return purged


def open_session(store_id: int, reference_id: str | None = None) -> CountSession:
    resolve_store(store_id)
    reference_id = coerce_reference_id(reference_id)
    purge_expired_sessions()

    session = CountSession(session_id=uuid.uuid4().hex, store_id=store_id, reference_id=reference_id)
    return _save(session)


def record_scan(
    session_id: str,
    *,
    product_id: int,
    warehouse_id: int | None = None,
    qty: int = 1,
    scanned_at=None,
) -> CountSession:
    """Add one scan to a session; concurrent scans from several devices all count."""
    session = get_session(session_id)
    resolve_product(session.store_id, product_id)
    warehouse = resolve_warehouse(session.store_id, warehouse_id)
    try:
        scanned_dt = coerce_datetime(scanned_at, field="scanned_at")
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    return _modify(
        session_id,
        lambda s: s.record_scan(product_id, warehouse.id, qty=qty, scanned_at=scanned_dt),
    )


def set_quantity(
    session_id: str,
    *,
    product_id: int,
    counted_qty: int,
    warehouse_id: int | None = None,
    observed_at=None,
) -> CountSession:
    session = get_session(session_id)
    resolve_product(session.store_id, product_id)
    warehouse = resolve_warehouse(session.store_id, warehouse_id)
    try:
        observed_dt = coerce_datetime(observed_at, field="observed_at")
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    return _modify(
        session_id,
        lambda s: s.set_quantity(product_id, warehouse.id, counted_qty, observed_at=observed_dt),
    )


def _close(session: CountSession) -> None:
    if not session.lines:
        raise CountSessionError(f"count session {session.session_id} has no lines")
    session.status = SESSION_STATUS_SUBMITTED


def submit_session(session_id: str, *, max_workers: int | None = None) -> BatchSummary:
    """
    Finalize a session into count entries and reconcile them.

    The session is marked submitted before reconciling, so the lines that are
    reconciled are exactly the lines it holds; later scans are rejected.
    Submitting again replays through the per-line idempotency keys, so a
    client that lost the first response (or hit an outage) can safely resubmit.
    """
    session = _modify(session_id, _close)

    return reconcile(
        session.store_id,
        session.to_entries(),
        reference_id=session.reference_id or session.session_id,
        max_workers=max_workers,
    )


def discard_session(session_id: str) -> bool:
    return get_session_store().delete(_key(session_id))
