"""
Stat history: append-only time series of derived per-user metrics
(ledger balance, profit/loss) for charting.

Appends never fail the operation that triggered them; errors are logged.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

import structlog

from collection.models import Lot
from db.connection import borrow, get_connection
from db.queries import as_utc, from_iso, get_lot_rows, to_decimal, to_iso, utcnow
from market.prices import QuoteKey, get_current_quotes

log = structlog.get_logger(__name__)

LIFETIME_EARNINGS = "lifetime_earnings"
PROFIT_LOSS_PCT = "profit_loss_pct"
PROFIT_LOSS_VALUE = "profit_loss_value"

PCT_PLACES = Decimal("0.000001")


@dataclass(frozen=True)
class StatPoint:
    metric: str
    value: Decimal
    recorded_at: datetime

    def to_dict(self) -> dict:
        return {"metric": self.metric, "value": self.value, "timestamp": self.recorded_at.isoformat()}


def _next_timestamp(conn: sqlite3.Connection, user_id: str, metric: str, requested: datetime) -> datetime:
    """Keep timestamps strictly increasing per (user, metric)."""
    row = conn.execute(
        "SELECT MAX(recorded_at) FROM user_stat_history WHERE user_id = ? AND metric = ?",
        (user_id, metric),
    ).fetchone()
    if row and row[0]:
        last = from_iso(row[0])
        if requested <= last:
            return last + timedelta(microseconds=1)
    return requested


def _insert(conn: sqlite3.Connection, user_id: str, metric: str, value: Decimal, recorded_at: datetime) -> None:
    ts = _next_timestamp(conn, user_id, metric, recorded_at)
    conn.execute(
        "INSERT INTO user_stat_history (user_id, metric, value, recorded_at) VALUES (?, ?, ?, ?)",
        (user_id, metric, Decimal(str(value)), to_iso(ts)),
    )


def append(
    user_id: str,
    metric: str,
    value: Decimal,
    recorded_at: Optional[datetime] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> bool:
    """
    Record one metric value. Returns False (and logs) instead of raising on failure.

    With conn, the insert runs in a savepoint of the caller's transaction so a
    failed append is undone on its own and the caller's work carries on.
    """
    recorded_at = as_utc(recorded_at or utcnow())
    if conn is not None:
        try:
            conn.execute("SAVEPOINT stat_history")
        except sqlite3.Error as e:
            log.error("stat_history_append_failed", user_id=user_id, metric=metric, error=str(e))
            return False
        try:
            _insert(conn, user_id, metric, value, recorded_at)
        except sqlite3.Error as e:
            conn.execute("ROLLBACK TO stat_history")
            conn.execute("RELEASE stat_history")
            log.error("stat_history_append_failed", user_id=user_id, metric=metric, error=str(e))
            return False
        conn.execute("RELEASE stat_history")
        return True

    try:
        own = get_connection()
    except sqlite3.Error as e:
        log.error("stat_history_append_failed", user_id=user_id, metric=metric, error=str(e))
        return False
    try:
        _insert(own, user_id, metric, value, recorded_at)
        own.commit()
        return True
    except sqlite3.Error as e:
        own.rollback()
        log.error("stat_history_append_failed", user_id=user_id, metric=metric, error=str(e))
        return False
    finally:
        own.close()


def query(
    user_id: str,
    metric: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[StatPoint]:
    """Points for user (optionally one metric, within [start, end]) in time order."""
    sql = "SELECT metric, value, recorded_at FROM user_stat_history WHERE user_id = ?"
    params: list = [user_id]
    if metric:
        sql += " AND metric = ?"
        params.append(metric)
    if start is not None:
        sql += " AND recorded_at >= ?"
        params.append(to_iso(start))
    if end is not None:
        sql += " AND recorded_at <= ?"
        params.append(to_iso(end))
    sql += " ORDER BY recorded_at ASC, id ASC"

    conn = get_connection()
    try:
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()
    return [StatPoint(r["metric"], to_decimal(r["value"]), from_iso(r["recorded_at"])) for r in rows]


def compute_profit_loss(
    user_id: str,
    conn: Optional[sqlite3.Connection] = None,
    fallback_quotes: Optional[Mapping[QuoteKey, Decimal]] = None,
) -> Optional[dict]:
    """
    Portfolio profit/loss: current market value against cost basis of all lots.

    A lot is valued at its newest persisted quote, else at fallback_quotes
    (quotes agreed in a trade that were never persisted), else at zero. Its
    cost always counts. Returns None when the collection carries no cost.
    """
    fallback_quotes = fallback_quotes or {}
    with borrow(conn) as c:
        lots = [Lot.from_row(r) for r in get_lot_rows(c, user_id)]
        quotes = get_current_quotes((lot.quote_key for lot in lots), c)

    cost = Decimal("0")
    value = Decimal("0")
    for lot in lots:
        cost += lot.total_cost
        price = quotes.get(lot.quote_key, fallback_quotes.get(lot.quote_key))
        if price is not None:
            value += price * lot.quantity
    if cost <= 0:
        return None
    pnl = value - cost
    return {
        "total_cost": cost,
        "market_value": value,
        "profit_loss_value": pnl,
        "profit_loss_pct": (pnl / cost * 100).quantize(PCT_PLACES, rounding=ROUND_HALF_UP),
    }


def record_profit_loss(
    user_id: str,
    conn: Optional[sqlite3.Connection] = None,
    recorded_at: Optional[datetime] = None,
    fallback_quotes: Optional[Mapping[QuoteKey, Decimal]] = None,
) -> Optional[dict]:
    """Append profit_loss_pct and profit_loss_value points; non-fatal like every append."""
    try:
        pnl = compute_profit_loss(user_id, conn, fallback_quotes)
    except sqlite3.Error as e:
        log.error("profit_loss_compute_failed", user_id=user_id, error=str(e))
        return None
    if pnl is None:
        return None
    append(user_id, PROFIT_LOSS_PCT, pnl["profit_loss_pct"], recorded_at, conn)
    append(user_id, PROFIT_LOSS_VALUE, pnl["profit_loss_value"], recorded_at, conn)
    return pnl
