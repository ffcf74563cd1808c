"""
Query helpers for products, lots and ledger balances.
All helpers take an open connection so they can run inside a caller's transaction.
"""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

LOT_COLUMNS = """id, user_id, product_id, grading_status, grading_company, grade, condition,
                 quantity, cost_basis, raw_cost, grading_cost, created_at, updated_at"""

JOINED_LOT_SELECT = """SELECT l.id, l.user_id, l.product_id, l.grading_status, l.grading_company, l.grade,
                              l.condition, l.quantity, l.cost_basis, l.raw_cost, l.grading_cost,
                              l.created_at, l.updated_at,
                              p.name AS product_name, p.product_type, p.set_name, p.card_number
                       FROM lots l
                       JOIN products p ON l.product_id = p.id"""


def to_decimal(value) -> Optional[Decimal]:
    """Money columns are stored as TEXT; None stays None."""
    if value is None or value == "":
        return None
    return Decimal(str(value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp so TEXT ordering matches time ordering."""
    return as_utc(dt).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def get_product(conn: sqlite3.Connection, product_id: int) -> Optional[dict]:
    row = conn.execute(
        "SELECT id, name, product_type, set_name, card_number FROM products WHERE id = ?",
        (product_id,),
    ).fetchone()
    return dict(row) if row else None


def get_products(conn: sqlite3.Connection, product_ids) -> dict[int, dict]:
    """Return {product_id: product} for the given ids (missing ids are omitted)."""
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    placeholders = ",".join("?" for _ in ids)
    cur = conn.execute(
        f"SELECT id, name, product_type, set_name, card_number FROM products WHERE id IN ({placeholders})",
        ids,
    )
    return {row["id"]: dict(row) for row in cur.fetchall()}


def ensure_user(conn: sqlite3.Connection, user_id: str) -> None:
    conn.execute("INSERT OR IGNORE INTO users (id) VALUES (?)", (user_id,))


def get_lifetime_earnings(conn: sqlite3.Connection, user_id: str) -> Decimal:
    row = conn.execute("SELECT lifetime_earnings FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return Decimal("0")
    return to_decimal(row[0]) or Decimal("0")


def set_lifetime_earnings(conn: sqlite3.Connection, user_id: str, value: Decimal) -> None:
    ensure_user(conn, user_id)
    conn.execute(
        "UPDATE users SET lifetime_earnings = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (value, user_id),
    )


def get_lot_row(conn: sqlite3.Connection, user_id: str, lot_id: int) -> Optional[dict]:
    """One lot joined with its product, or None."""
    row = conn.execute(
        f"{JOINED_LOT_SELECT} WHERE l.id = ? AND l.user_id = ?",
        (lot_id, user_id),
    ).fetchone()
    return dict(row) if row else None


def find_lot_row(
    conn: sqlite3.Connection,
    user_id: str,
    product_id: int,
    grading_status: str,
    grading_company: str,
    grade: str,
    condition: str,
) -> Optional[dict]:
    """Look up a lot by its full identity key."""
    row = conn.execute(
        f"""SELECT {LOT_COLUMNS} FROM lots
            WHERE user_id = ? AND product_id = ? AND grading_status = ?
              AND grading_company = ? AND grade = ? AND condition = ?""",
        (user_id, product_id, grading_status, grading_company, grade, condition),
    ).fetchone()
    return dict(row) if row else None


def get_lot_rows(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    """Return the user's lots joined with product name/type, oldest first."""
    cur = conn.execute(
        f"{JOINED_LOT_SELECT} WHERE l.user_id = ? ORDER BY l.id",
        (user_id,),
    )
    return [dict(row) for row in cur.fetchall()]
