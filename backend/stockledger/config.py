# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3 unless overridden
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Reconciliation: attempts per item for the read-compute-apply cycle,
    # exponential backoff base (seconds) and worker threads per batch.
    RECONCILE_MAX_ATTEMPTS = int(os.environ.get("RECONCILE_MAX_ATTEMPTS", "3"))
    RECONCILE_BACKOFF_BASE = float(os.environ.get("RECONCILE_BACKOFF_BASE", "0.05"))
    RECONCILE_MAX_WORKERS = int(os.environ.get("RECONCILE_MAX_WORKERS", "4"))

    # Count capture sessions: "sql" (durable) or "memory" (process-local)
    COUNT_SESSION_BACKEND = os.environ.get("COUNT_SESSION_BACKEND", "sql")
    COUNT_SESSION_TTL_SECONDS = int(os.environ.get("COUNT_SESSION_TTL_SECONDS", str(12 * 3600)))
    # Compare-and-set retries for concurrent writes to one session (sql backend)
    COUNT_SESSION_MAX_ATTEMPTS = int(os.environ.get("COUNT_SESSION_MAX_ATTEMPTS", "10"))
    COUNT_SESSION_BACKOFF_BASE = float(os.environ.get("COUNT_SESSION_BACKOFF_BASE", "0.01"))
