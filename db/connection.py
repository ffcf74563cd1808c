"""
Database connection, schema and transaction helper.
Uses SQLite; DB file defaults to collection.db in the project root (COLLECTION_DB_PATH).

Money columns are TEXT holding Decimal strings so sums stay exact.
"""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional

from config.settings import get_settings

DB_PATH = get_settings().db_path

sqlite3.register_adapter(Decimal, str)

SCHEMA = """
-- Ledger owners; lifetime_earnings is the running cash balance
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    lifetime_earnings TEXT NOT NULL DEFAULT '0',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Catalog rows (owned by the catalog service, read-only here)
CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    product_type TEXT NOT NULL DEFAULT 'card',
    set_name TEXT,
    card_number TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_products_name ON products(name);

-- Lots: one row per (user, product, grading identity). Absent attributes are ''.
CREATE TABLE IF NOT EXISTS lots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    product_id INTEGER NOT NULL,
    grading_status TEXT NOT NULL DEFAULT 'raw',
    grading_company TEXT NOT NULL DEFAULT '',
    grade TEXT NOT NULL DEFAULT '',
    condition TEXT NOT NULL DEFAULT '',
    quantity INTEGER NOT NULL CHECK (quantity >= 0),
    cost_basis TEXT NOT NULL DEFAULT '0',
    raw_cost TEXT,
    grading_cost TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (product_id) REFERENCES products(id),
    UNIQUE(user_id, product_id, grading_company, grade, condition, grading_status)
);

CREATE INDEX IF NOT EXISTS idx_lots_user ON lots(user_id);

-- Smoothed market quotes; append-only, newest row per key is current
CREATE TABLE IF NOT EXISTS price_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id INTEGER NOT NULL,
    grading_company TEXT NOT NULL DEFAULT '',
    grade TEXT NOT NULL DEFAULT '',
    condition TEXT NOT NULL DEFAULT '',
    price TEXT NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    source TEXT NOT NULL,
    sample_count INTEGER,
    recorded_at TEXT NOT NULL,
    FOREIGN KEY (product_id) REFERENCES products(id)
);

CREATE INDEX IF NOT EXISTS idx_price_history_key
    ON price_history(product_id, grading_company, grade, condition, recorded_at DESC);

-- Settled trades; never updated
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    traded_away TEXT NOT NULL,
    received TEXT NOT NULL,
    cash_delta TEXT NOT NULL,
    ledger_delta TEXT NOT NULL,
    allocatable_basis TEXT NOT NULL,
    away_basis TEXT NOT NULL,
    away_market TEXT NOT NULL,
    received_market TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_user ON trades(user_id, created_at DESC);

-- Derived metrics time series
CREATE TABLE IF NOT EXISTS user_stat_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    metric TEXT NOT NULL,
    value TEXT NOT NULL,
    recorded_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_stat_history_user ON user_stat_history(user_id, metric, recorded_at);
"""


class StorageError(Exception):
    """Base class for failures raised by the transaction helper."""


class ConcurrencyConflict(StorageError):
    """Another writer held the database lock; nothing was applied, retry."""


class PersistenceError(StorageError):
    """Storage failed mid-transaction; everything was rolled back."""


def get_connection(autocommit: bool = False) -> sqlite3.Connection:
    """Return a connection to the SQLite DB; creates the file if needed."""
    conn = sqlite3.connect(
        DB_PATH,
        timeout=get_settings().db_busy_timeout_seconds,
        isolation_level=None if autocommit else "",
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db() -> None:
    """Create DB file and tables if they do not exist."""
    conn = get_connection()
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _is_locked(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """
    Run a block inside one write transaction.

    BEGIN IMMEDIATE takes the write lock up front, so two writers touching the
    same lots are serialized instead of both reading a stale quantity.
    Commits on success; rolls back on any exception. SQLite errors are mapped
    to ConcurrencyConflict (lock timeout) or PersistenceError.
    """
    conn = get_connection(autocommit=True)
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as e:
        conn.close()
        if _is_locked(e):
            raise ConcurrencyConflict("collection is being modified by another request") from e
        raise PersistenceError(str(e)) from e

    try:
        yield conn
        conn.execute("COMMIT")
    except sqlite3.OperationalError as e:
        _rollback(conn)
        if _is_locked(e):
            raise ConcurrencyConflict("collection is being modified by another request") from e
        raise PersistenceError(str(e)) from e
    except sqlite3.Error as e:
        _rollback(conn)
        raise PersistenceError(str(e)) from e
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


@contextmanager
def borrow(conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    """Yield the caller's connection, or open (and later close) a fresh one."""
    if conn is not None:
        yield conn
        return
    own = get_connection()
    try:
        yield own
    finally:
        own.close()
