"""Database: SQLite schema, transactions and lookups for lots, quotes and ledgers."""

from db.connection import (
    borrow,
    ConcurrencyConflict,
    PersistenceError,
    StorageError,
    get_connection,
    init_db,
    transaction,
)
from db.queries import (
    find_lot_row,
    get_lifetime_earnings,
    get_lot_row,
    get_lot_rows,
    get_product,
    get_products,
    set_lifetime_earnings,
    to_decimal,
    as_utc,
    to_iso,
    from_iso,
    utcnow,
)

__all__ = [
    "get_connection",
    "init_db",
    "borrow",
    "transaction",
    "StorageError",
    "ConcurrencyConflict",
    "PersistenceError",
    "get_product",
    "get_products",
    "get_lot_row",
    "get_lot_rows",
    "find_lot_row",
    "get_lifetime_earnings",
    "set_lifetime_earnings",
    "to_decimal",
    "as_utc",
    "to_iso",
    "from_iso",
    "utcnow",
]
