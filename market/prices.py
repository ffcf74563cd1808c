"""
Persisted market quotes, backed by the price_history table.

Quotes are append-only; the current quote for a key is the newest row.
A fresh quote is only written when the last one for the same key is older
than the configured persistence interval, which bounds table growth and
external call volume when refreshes are triggered repeatedly.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Union

import structlog

from config.settings import get_settings
from db.connection import borrow, get_connection
from db.queries import as_utc, from_iso, to_decimal, to_iso, utcnow
from market.aggregator import MarketQuote

log = structlog.get_logger(__name__)


def _norm(value: Optional[str]) -> str:
    return (value or "").strip()


@dataclass(frozen=True)
class QuoteKey:
    """(product, grading company, grade, condition); absent attributes are ''."""
    product_id: int
    grading_company: str = ""
    grade: str = ""
    condition: str = ""

    @classmethod
    def of(
        cls,
        product_id: int,
        grading_company: Optional[str] = None,
        grade: Optional[str] = None,
        condition: Optional[str] = None,
    ) -> QuoteKey:
        return cls(int(product_id), _norm(grading_company), _norm(grade), _norm(condition))

    @classmethod
    def from_row(cls, row: dict) -> QuoteKey:
        return cls.of(row["product_id"], row.get("grading_company"), row.get("grade"), row.get("condition"))


def should_persist(
    last_persisted_at: Optional[datetime],
    now: datetime,
    min_interval: timedelta,
) -> bool:
    """True if nothing was persisted yet or the last quote is at least min_interval old."""
    if last_persisted_at is None:
        return True
    return now - last_persisted_at >= min_interval


def last_persisted_at(key: QuoteKey, conn: Optional[sqlite3.Connection] = None) -> Optional[datetime]:
    with borrow(conn) as c:
        row = c.execute(
            """SELECT recorded_at FROM price_history
               WHERE product_id = ? AND grading_company = ? AND grade = ? AND condition = ?
               ORDER BY recorded_at DESC, id DESC LIMIT 1""",
            (key.product_id, key.grading_company, key.grade, key.condition),
        ).fetchone()
    return from_iso(row[0]) if row else None


def persist_quote(
    key: QuoteKey,
    quote: Union[MarketQuote, Decimal],
    now: Optional[datetime] = None,
    source: str = "ebay_api",
    force: bool = False,
    min_interval: Optional[timedelta] = None,
) -> bool:
    """
    Append a quote for key unless a fresher one already exists.

    Returns True if a row was written, False if persistence was skipped.
    """
    settings = get_settings()
    now = as_utc(now or utcnow())
    if min_interval is None:
        min_interval = timedelta(seconds=settings.quote_min_persist_interval_seconds)

    if isinstance(quote, MarketQuote):
        price, sample_count = quote.price, quote.sample_count
    else:
        price, sample_count = Decimal(str(quote)), None

    conn = get_connection()
    try:
        if not force and not should_persist(last_persisted_at(key, conn), now, min_interval):
            log.debug("quote_persist_skipped", product_id=key.product_id, price=str(price))
            return False
        conn.execute(
            """INSERT INTO price_history
               (product_id, grading_company, grade, condition, price, currency, source, sample_count, recorded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (key.product_id, key.grading_company, key.grade, key.condition,
             price, settings.quote_currency, source, sample_count, to_iso(now)),
        )
        conn.commit()
        log.info("quote_persisted", product_id=key.product_id, grading_company=key.grading_company,
                 grade=key.grade, condition=key.condition, price=str(price), source=source)
        return True
    finally:
        conn.close()


def get_current_quote(key: QuoteKey, conn: Optional[sqlite3.Connection] = None) -> Optional[Decimal]:
    """Newest persisted price for key, or None if the key was never quoted."""
    with borrow(conn) as c:
        row = c.execute(
            """SELECT price FROM price_history
               WHERE product_id = ? AND grading_company = ? AND grade = ? AND condition = ?
               ORDER BY recorded_at DESC, id DESC LIMIT 1""",
            (key.product_id, key.grading_company, key.grade, key.condition),
        ).fetchone()
    return to_decimal(row[0]) if row else None


def get_current_quotes(
    keys: Iterable[QuoteKey],
    conn: Optional[sqlite3.Connection] = None,
) -> dict[QuoteKey, Decimal]:
    """Current quote per key; keys without any quote are left out (unknown, not zero)."""
    out = {}
    with borrow(conn) as c:
        for key in set(keys):
            price = get_current_quote(key, c)
            if price is not None:
                out[key] = price
    return out


def get_quote_history(
    key: QuoteKey,
    days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Persisted quotes for key, oldest first. days limits to the trailing window."""
    sql = """SELECT price, currency, source, sample_count, recorded_at FROM price_history
             WHERE product_id = ? AND grading_company = ? AND grade = ? AND condition = ?"""
    params: list = [key.product_id, key.grading_company, key.grade, key.condition]
    if days is not None:
        since = (now or utcnow()) - timedelta(days=days)
        sql += " AND recorded_at >= ?"
        params.append(to_iso(since))
    sql += " ORDER BY recorded_at ASC, id ASC"

    conn = get_connection()
    try:
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()
    return [
        {
            "price": to_decimal(r["price"]),
            "currency": r["currency"],
            "source": r["source"],
            "sample_count": r["sample_count"],
            "recorded_at": from_iso(r["recorded_at"]),
        }
        for r in rows
    ]
