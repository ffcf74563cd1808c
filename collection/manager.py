"""
Collection management: lots, the lifetime-earnings ledger and portfolio summaries.

Every write goes through db.connection.transaction so the lot rows and the
ledger balance change together or not at all.
"""
from __future__ import annotations

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Optional

import structlog

from collection import history
from collection.errors import NotFoundError, ValidationError
from collection.models import Grading, GradingVariant, Lot, identity_columns, parse_money
from config.settings import get_settings
from db.connection import borrow, transaction
from db.queries import (
    ensure_user,
    find_lot_row,
    get_lifetime_earnings,
    get_lot_row,
    get_lot_rows,
    get_product,
    set_lifetime_earnings,
    to_decimal,
)
from market.prices import QuoteKey, get_current_quotes

log = structlog.get_logger(__name__)


def parse_quantity(value: Any, field: str = "quantity") -> int:
    """Positive integer quantity from user input."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer")
    try:
        qty = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be a positive integer") from e
    if qty != value and str(qty) != str(value).strip():
        raise ValidationError(f"{field} must be a positive integer")
    if qty <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return qty


# ===== Ledger =====

def get_ledger_balance(user_id: str) -> Decimal:
    """Current lifetime earnings (net cash flow) for user."""
    with borrow() as conn:
        return get_lifetime_earnings(conn, user_id)


def adjust_ledger(conn: sqlite3.Connection, user_id: str, delta: Decimal) -> Decimal:
    """Add delta to the user's balance inside conn's transaction; returns the new balance."""
    ensure_user(conn, user_id)
    balance = get_lifetime_earnings(conn, user_id) + delta
    set_lifetime_earnings(conn, user_id, balance)
    return balance


def record_ledger_change(
    conn: sqlite3.Connection,
    user_id: str,
    balance: Decimal,
    recorded_at: Optional[datetime] = None,
    fallback_quotes: Optional[Mapping[QuoteKey, Decimal]] = None,
) -> None:
    """Stat points after a value-changing operation. Failures are logged, not raised."""
    history.append(user_id, history.LIFETIME_EARNINGS, balance, recorded_at, conn)
    history.record_profit_loss(user_id, conn, recorded_at, fallback_quotes)


# ===== Lots =====

def merge_into_lot(
    conn: sqlite3.Connection,
    user_id: str,
    product_id: int,
    grading: GradingVariant,
    quantity: int,
    unit_cost: Decimal,
) -> int:
    """
    Add quantity units at unit_cost to the lot with this identity, creating it if needed.

    Existing lots take the quantity-weighted mean of old and new cost basis.
    Returns the lot id.
    """
    status, company, grade, condition = identity_columns(grading)
    raw_cost = grading.raw_cost if isinstance(grading, Grading) else None
    grading_cost = grading.grading_cost if isinstance(grading, Grading) else None

    existing = find_lot_row(conn, user_id, product_id, status, company, grade, condition)
    if existing is None:
        cur = conn.execute(
            """INSERT INTO lots (user_id, product_id, grading_status, grading_company, grade, condition,
                                 quantity, cost_basis, raw_cost, grading_cost)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (user_id, product_id, status, company, grade, condition,
             quantity, unit_cost, raw_cost, grading_cost),
        )
        return cur.lastrowid

    old_qty = int(existing["quantity"])
    new_qty = old_qty + quantity

    def weighted(old: Optional[Decimal], new: Optional[Decimal]) -> Optional[Decimal]:
        if new is None:
            return old
        return ((old or Decimal("0")) * old_qty + new * quantity) / new_qty

    conn.execute(
        """UPDATE lots SET quantity = ?, cost_basis = ?, raw_cost = ?, grading_cost = ?,
                          updated_at = CURRENT_TIMESTAMP
           WHERE id = ?""",
        (
            new_qty,
            weighted(to_decimal(existing["cost_basis"]), unit_cost),
            weighted(to_decimal(existing["raw_cost"]), raw_cost),
            weighted(to_decimal(existing["grading_cost"]), grading_cost),
            existing["id"],
        ),
    )
    return existing["id"]


def decrement_lot(conn: sqlite3.Connection, lot_id: int, held: int, quantity: int) -> int:
    """Take quantity units out of a lot; the row is deleted at zero. Returns the remaining quantity."""
    remaining = held - quantity
    if remaining > 0:
        conn.execute(
            "UPDATE lots SET quantity = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (remaining, lot_id),
        )
    else:
        conn.execute("DELETE FROM lots WHERE id = ?", (lot_id,))
    return remaining


def add_lot(
    user_id: str,
    product_id: int,
    grading: GradingVariant,
    quantity: int = 1,
    unit_cost: Optional[Decimal] = None,
) -> Lot:
    """
    Acquire units of a product. Debits the ledger by unit_cost * quantity.

    unit_cost defaults to raw + grading cost for items in grading, else 0.
    """
    quantity = parse_quantity(quantity)
    if unit_cost is None:
        unit_cost = grading.cost_basis if isinstance(grading, Grading) else Decimal("0")
    unit_cost = parse_money(unit_cost, "unit_cost")
    if unit_cost < 0:
        raise ValidationError("unit_cost cannot be negative")

    with transaction() as conn:
        if get_product(conn, product_id) is None:
            raise NotFoundError(f"product {product_id} not found")
        ensure_user(conn, user_id)
        lot_id = merge_into_lot(conn, user_id, product_id, grading, quantity, unit_cost)
        spent = unit_cost * quantity
        if spent:
            balance = adjust_ledger(conn, user_id, -spent)
            record_ledger_change(conn, user_id, balance)
        lot = Lot.from_row(get_lot_row(conn, user_id, lot_id))

    log.info("lot_acquired", user_id=user_id, lot_id=lot_id, product_id=product_id,
             quantity=quantity, unit_cost=str(unit_cost))
    return lot


def remove_lot(
    user_id: str,
    lot_id: int,
    sold_price: Optional[Decimal] = None,
    quantity: Optional[int] = None,
) -> Decimal:
    """
    Remove units from a lot (all of them by default).

    With sold_price the sale proceeds are credited to the ledger; without it the
    removal is treated as a correction and the basis of the removed units is
    refunded. Returns the ledger delta.
    """
    if sold_price is not None:
        sold_price = parse_money(sold_price, "sold_price")
        if sold_price < 0:
            raise ValidationError("sold_price cannot be negative")

    with transaction() as conn:
        row = get_lot_row(conn, user_id, lot_id)
        if row is None:
            raise NotFoundError(f"lot {lot_id} not found")
        lot = Lot.from_row(row)
        qty = lot.quantity if quantity is None else parse_quantity(quantity)
        if qty > lot.quantity:
            raise ValidationError(f"lot {lot_id} holds {lot.quantity}, cannot remove {qty}")

        delta = sold_price if sold_price is not None else lot.cost_basis * qty
        decrement_lot(conn, lot_id, lot.quantity, qty)
        if delta:
            balance = adjust_ledger(conn, user_id, delta)
            record_ledger_change(conn, user_id, balance)

    log.info("lot_removed", user_id=user_id, lot_id=lot_id, quantity=qty,
             sold=sold_price is not None, ledger_delta=str(delta))
    return delta


def get_lots(user_id: str) -> List[Lot]:
    """All of the user's lots with product details."""
    with borrow() as conn:
        return [Lot.from_row(r) for r in get_lot_rows(conn, user_id)]


def get_lot(user_id: str, lot_id: int) -> Optional[Lot]:
    with borrow() as conn:
        row = get_lot_row(conn, user_id, lot_id)
    return Lot.from_row(row) if row else None


def get_portfolio_summary(user_id: str) -> dict:
    """Totals across the collection. Lots without a quote add cost but no market value."""
    with borrow() as conn:
        lots = [Lot.from_row(r) for r in get_lot_rows(conn, user_id)]
        quotes = get_current_quotes((lot.quote_key for lot in lots), conn)
        balance = get_lifetime_earnings(conn, user_id)

    total_cost = sum((lot.total_cost for lot in lots), Decimal("0"))
    market_value = Decimal("0")
    unquoted = 0
    for lot in lots:
        price = quotes.get(lot.quote_key)
        if price is None:
            unquoted += 1
            continue
        market_value += price * lot.quantity

    profit_loss = market_value - total_cost if total_cost > 0 else None
    return {
        "total_items": sum(lot.quantity for lot in lots),
        "lot_count": len(lots),
        "total_cost": total_cost,
        "market_value": market_value,
        "unquoted_lots": unquoted,
        "profit_loss": profit_loss,
        "roi_percent": round(profit_loss / total_cost * 100, 2) if profit_loss is not None else None,
        "lifetime_earnings": balance,
    }


def get_collection_stats(user_id: str) -> dict:
    """
    Counts and investment totals for the collection.

    avg_purchase_price is the mean cost basis per lot, not per unit.
    """
    with borrow() as conn:
        lots = [Lot.from_row(r) for r in get_lot_rows(conn, user_id)]
        balance = get_lifetime_earnings(conn, user_id)

    cards = sum(lot.quantity for lot in lots if not lot.is_sealed)
    sealed = sum(lot.quantity for lot in lots if lot.is_sealed)
    avg_price = Decimal("0")
    if lots:
        avg_price = (sum((lot.cost_basis for lot in lots), Decimal("0")) / len(lots)).quantize(Decimal("0.01"))
    return {
        "total_cards": cards,
        "total_sealed": sealed,
        "total_investment": sum((lot.total_cost for lot in lots), Decimal("0")),
        "avg_purchase_price": avg_price,
        "lifetime_earnings": balance,
        "sets": sorted({lot.set_name for lot in lots if lot.set_name}),
    }


def get_price_alerts(
    user_id: str,
    threshold: Optional[Decimal] = None,
    limit: Optional[int] = None,
) -> List[dict]:
    """
    Lots whose current quote has moved more than threshold (a fraction) away
    from their cost basis, biggest absolute move first.

    Lots without a quote or with zero basis never alert.
    """
    settings = get_settings()
    threshold = Decimal(str(settings.price_alert_threshold if threshold is None else threshold))
    limit = settings.price_alert_limit if limit is None else limit

    with borrow() as conn:
        lots = [Lot.from_row(r) for r in get_lot_rows(conn, user_id)]
        quotes = get_current_quotes((lot.quote_key for lot in lots), conn)

    alerts = []
    for lot in lots:
        price = quotes.get(lot.quote_key)
        if price is None or lot.cost_basis <= 0:
            continue
        change = price - lot.cost_basis
        if abs(change) / lot.cost_basis > threshold:
            alerts.append({
                **lot.to_dict(),
                "quote": price,
                "price_change": change,
                "change_pct": (change / lot.cost_basis * 100).quantize(Decimal("0.01")),
            })
    alerts.sort(key=lambda a: abs(a["price_change"]), reverse=True)
    return alerts[:limit]
