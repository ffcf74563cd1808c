"""
Trade settlement.

A trade surrenders units from existing lots, brings in new items and
optionally moves cash. Settling it:

1. totals the surrendered cost basis and market value and the received
   market value;
2. decides how much basis carries over to the received items and how much
   the ledger moves (compute_allocation);
3. splits that basis over the received items by market share;
4. applies lot, ledger, stat-history and trade-record changes in one
   transaction.

A trade is either fully applied or not at all.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

import structlog

from collection.errors import NotFoundError, ValidationError
from collection.manager import (
    adjust_ledger,
    decrement_lot,
    merge_into_lot,
    parse_quantity,
    record_ledger_change,
)
from collection.models import GradingVariant, Lot, grading_from_fields, identity_columns, parse_money
from db.connection import get_connection, transaction
from db.queries import (
    as_utc,
    ensure_user,
    from_iso,
    get_lifetime_earnings,
    get_lot_row,
    get_products,
    to_decimal,
    to_iso,
    utcnow,
)
from market.prices import QuoteKey, get_current_quote

log = structlog.get_logger(__name__)

ZERO = Decimal("0")

MONEY_FIELDS = ("cost_basis", "quote", "allocated_basis", "unit_basis")


@dataclass(frozen=True)
class TradedAwayItem:
    lot_id: int
    quantity: int = 1
    quote: Optional[Decimal] = None


@dataclass(frozen=True)
class ReceivedItem:
    product_id: int
    grading: GradingVariant
    quantity: int
    quote: Optional[Decimal]


@dataclass(frozen=True)
class Allocation:
    allocatable_basis: Decimal
    ledger_delta: Decimal


@dataclass(frozen=True)
class Trade:
    id: int
    user_id: str
    traded_away: list
    received: list
    cash_delta: Decimal
    ledger_delta: Decimal
    allocatable_basis: Decimal
    away_basis: Decimal
    away_market: Decimal
    received_market: Decimal
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> Trade:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            traded_away=_load_items(row["traded_away"]),
            received=_load_items(row["received"]),
            cash_delta=to_decimal(row["cash_delta"]),
            ledger_delta=to_decimal(row["ledger_delta"]),
            allocatable_basis=to_decimal(row["allocatable_basis"]),
            away_basis=to_decimal(row["away_basis"]),
            away_market=to_decimal(row["away_market"]),
            received_market=to_decimal(row["received_market"]),
            created_at=from_iso(row["created_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "traded_away": self.traded_away,
            "received": self.received,
            "cash_delta": self.cash_delta,
            "ledger_delta": self.ledger_delta,
            "allocatable_basis": self.allocatable_basis,
            "away_basis": self.away_basis,
            "away_market": self.away_market,
            "received_market": self.received_market,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Settlement:
    trade: Trade
    allocation: Allocation
    ledger_balance: Decimal

    @property
    def ledger_delta(self) -> Decimal:
        return self.allocation.ledger_delta


def _dump_items(items: list) -> str:
    return json.dumps(items, default=str)


def _load_items(raw: str) -> list:
    items = json.loads(raw)
    for item in items:
        for name in MONEY_FIELDS:
            if item.get(name) is not None:
                item[name] = Decimal(str(item[name]))
    return items


# ===== Pure settlement math =====

def compute_allocation(
    away_basis: Decimal,
    away_market: Decimal,
    received_market: Decimal,
    cash_delta: Decimal,
) -> Allocation:
    """
    Basis carried to the received items and the ledger movement for a trade.

    cash_delta > 0: the user paid cash on top; it becomes basis and leaves the ledger.
    cash_delta < 0: the user was paid. If the received items are worth more than
    what was given up, the cash is pure gain. Otherwise the basis shrinks in
    proportion to the value kept and only cash beyond the value lost is gain.
    cash_delta == 0: basis carries over unchanged.
    """
    if cash_delta > 0:
        return Allocation(away_basis + cash_delta, -cash_delta)
    if cash_delta < 0:
        cash_in = -cash_delta
        if received_market > away_market:
            return Allocation(away_basis, cash_in)
        ratio = received_market / away_market if away_market != 0 else ZERO
        excess = cash_in - (away_market - received_market)
        return Allocation(away_basis * ratio, max(excess, ZERO))
    return Allocation(away_basis, ZERO)


def allocate_basis(allocatable: Decimal, market_values: Sequence[Decimal]) -> List[Decimal]:
    """
    Split allocatable over items proportionally to their market values.

    Falls back to an even split when nothing has market value. The last item
    takes the remainder so the parts always sum to allocatable exactly.
    """
    n = len(market_values)
    if n == 0:
        return []
    total = sum(market_values, ZERO)
    if total > 0:
        parts = [allocatable * mv / total for mv in market_values[:-1]]
    else:
        parts = [allocatable / n for _ in range(n - 1)]
    parts.append(allocatable - sum(parts, ZERO))
    return parts


# ===== Request parsing / validation =====

def validate_request(traded_away: Sequence[TradedAwayItem], received: Sequence[ReceivedItem]) -> None:
    """Shape checks that need no database access."""
    if not received:
        raise ValidationError("a trade needs at least one received item")
    seen = set()
    for item in traded_away:
        parse_quantity(item.quantity, f"quantity for lot {item.lot_id}")
        if item.lot_id in seen:
            raise ValidationError(f"lot {item.lot_id} is listed more than once")
        seen.add(item.lot_id)
        if item.quote is not None and item.quote < 0:
            raise ValidationError(f"quote for lot {item.lot_id} cannot be negative")
    for i, item in enumerate(received):
        parse_quantity(item.quantity, f"quantity for received item {i}")
        if item.quote is None:
            raise ValidationError(f"received item {i} (product {item.product_id}) has no market quote")
        if item.quote < 0:
            raise ValidationError(f"quote for received item {i} cannot be negative")


def request_from_json(payload: dict) -> tuple[List[TradedAwayItem], List[ReceivedItem], Decimal]:
    """
    Parse {traded_away: [{lot_id, quantity, quote?}], received: [{product_id, grading_status?,
    grading_company?, grade?, condition?, raw_cost?, grading_cost?, quantity, quote}], cash_delta}.
    """
    traded_away_raw = payload.get("traded_away") or []
    received_raw = payload.get("received") or []
    if not isinstance(traded_away_raw, list) or not isinstance(received_raw, list):
        raise ValidationError("traded_away and received must be arrays")

    traded_away = []
    for i, entry in enumerate(traded_away_raw):
        if not isinstance(entry, dict) or entry.get("lot_id") is None:
            raise ValidationError(f"traded_away[{i}] needs a lot_id")
        quote = entry.get("quote")
        traded_away.append(TradedAwayItem(
            lot_id=parse_quantity(entry["lot_id"], f"traded_away[{i}].lot_id"),
            quantity=parse_quantity(entry.get("quantity", 1), f"traded_away[{i}].quantity"),
            quote=None if quote is None else parse_money(quote, f"traded_away[{i}].quote"),
        ))

    received = []
    for i, entry in enumerate(received_raw):
        if not isinstance(entry, dict) or entry.get("product_id") is None:
            raise ValidationError(f"received[{i}] needs a product_id")
        quote = entry.get("quote")
        received.append(ReceivedItem(
            product_id=parse_quantity(entry["product_id"], f"received[{i}].product_id"),
            grading=grading_from_fields(
                entry.get("grading_status"),
                entry.get("grading_company"),
                entry.get("grade"),
                entry.get("condition"),
                entry.get("raw_cost"),
                entry.get("grading_cost"),
            ),
            quantity=parse_quantity(entry.get("quantity", 1), f"received[{i}].quantity"),
            quote=None if quote is None else parse_money(quote, f"received[{i}].quote"),
        ))

    cash_delta = payload.get("cash_delta")
    cash = ZERO if cash_delta in (None, "") else parse_money(cash_delta, "cash_delta")
    return traded_away, received, cash


# ===== Settlement =====

def settle(
    user_id: str,
    traded_away: Iterable[TradedAwayItem],
    received: Iterable[ReceivedItem],
    cash_delta: Decimal = ZERO,
    now: Optional[datetime] = None,
) -> Settlement:
    """
    Settle a trade atomically.

    Raises:
        ValidationError / NotFoundError: bad request; nothing changed.
        ConcurrencyConflict: another writer held the lock; retry.
        PersistenceError: storage failed; everything rolled back.
    """
    traded_away = list(traded_away)
    received = list(received)
    cash_delta = parse_money(cash_delta, "cash_delta")
    validate_request(traded_away, received)
    now = as_utc(now or utcnow())

    with transaction() as conn:
        ensure_user(conn, user_id)

        # Surrendered lots are read under the write lock.
        surrendered = []
        for item in traded_away:
            row = get_lot_row(conn, user_id, item.lot_id)
            if row is None:
                raise NotFoundError(f"lot {item.lot_id} not found")
            lot = Lot.from_row(row)
            if item.quantity > lot.quantity:
                raise ValidationError(
                    f"lot {lot.id} holds {lot.quantity}, cannot trade away {item.quantity}"
                )
            quote = item.quote if item.quote is not None else get_current_quote(lot.quote_key, conn)
            surrendered.append((item, lot, quote))

        products = get_products(conn, (r.product_id for r in received))
        for r in received:
            if r.product_id not in products:
                raise NotFoundError(f"product {r.product_id} not found")

        away_basis = sum((lot.cost_basis * item.quantity for item, lot, _ in surrendered), ZERO)
        away_market = sum(((quote or ZERO) * item.quantity for item, _, quote in surrendered), ZERO)
        received_values = [r.quote * r.quantity for r in received]
        received_market = sum(received_values, ZERO)

        allocation = compute_allocation(away_basis, away_market, received_market, cash_delta)
        allocated = allocate_basis(allocation.allocatable_basis, received_values)

        away_records = []
        for item, lot, quote in surrendered:
            decrement_lot(conn, lot.id, lot.quantity, item.quantity)
            away_records.append({
                "lot_id": lot.id,
                "product_id": lot.product_id,
                "product_name": lot.product_name,
                "grading_status": lot.grading_status,
                "grading_company": lot.grading_company,
                "grade": lot.grade,
                "condition": lot.condition,
                "quantity": item.quantity,
                "cost_basis": lot.cost_basis,
                "quote": quote,
            })

        received_records = []
        for r, total in zip(received, allocated):
            unit_basis = total / r.quantity
            lot_id = merge_into_lot(conn, user_id, r.product_id, r.grading, r.quantity, unit_basis)
            status, company, grade, condition = identity_columns(r.grading)
            received_records.append({
                "lot_id": lot_id,
                "product_id": r.product_id,
                "product_name": products[r.product_id]["name"],
                "grading_status": status,
                "grading_company": company,
                "grade": grade,
                "condition": condition,
                "quantity": r.quantity,
                "quote": r.quote,
                "allocated_basis": total,
                "unit_basis": unit_basis,
            })

        if allocation.ledger_delta:
            balance = adjust_ledger(conn, user_id, allocation.ledger_delta)
        else:
            balance = get_lifetime_earnings(conn, user_id)
        agreed = {lot.quote_key: quote for _, lot, quote in surrendered if quote is not None}
        for r in received:
            _, company, grade, condition = identity_columns(r.grading)
            agreed[QuoteKey.of(r.product_id, company, grade, condition)] = r.quote
        record_ledger_change(conn, user_id, balance, now, agreed)

        cur = conn.execute(
            """INSERT INTO trades (user_id, traded_away, received, cash_delta, ledger_delta,
                                   allocatable_basis, away_basis, away_market, received_market, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (user_id, _dump_items(away_records), _dump_items(received_records), cash_delta,
             allocation.ledger_delta, allocation.allocatable_basis, away_basis, away_market,
             received_market, to_iso(now)),
        )
        trade = Trade(
            id=cur.lastrowid,
            user_id=user_id,
            traded_away=away_records,
            received=received_records,
            cash_delta=cash_delta,
            ledger_delta=allocation.ledger_delta,
            allocatable_basis=allocation.allocatable_basis,
            away_basis=away_basis,
            away_market=away_market,
            received_market=received_market,
            created_at=now,
        )

    log.info(
        "trade_settled",
        user_id=user_id,
        trade_id=trade.id,
        away_basis=str(away_basis),
        away_market=str(away_market),
        received_market=str(received_market),
        cash_delta=str(cash_delta),
        ledger_delta=str(allocation.ledger_delta),
    )
    return Settlement(trade=trade, allocation=allocation, ledger_balance=balance)


def list_trades(user_id: str) -> List[Trade]:
    """User's trades, newest first."""
    conn = get_connection()
    try:
        cur = conn.execute(
            "SELECT * FROM trades WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        )
        return [Trade.from_row(row) for row in cur.fetchall()]
    finally:
        conn.close()


def get_trade(user_id: str, trade_id: int) -> Optional[Trade]:
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT * FROM trades WHERE id = ? AND user_id = ?", (trade_id, user_id)
        ).fetchone()
        return Trade.from_row(row) if row else None
    finally:
        conn.close()
