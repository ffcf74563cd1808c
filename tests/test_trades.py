"""
Tests for trade settlement: basis allocation, ledger movement and atomicity.
"""
import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

import collection.trades
from collection import history
from collection.errors import NotFoundError, PersistenceError, ValidationError
from collection.manager import add_lot, get_ledger_balance, get_lot, get_lots
from collection.models import Graded, Raw
from collection.trades import (
    ReceivedItem,
    TradedAwayItem,
    allocate_basis,
    compute_allocation,
    list_trades,
    request_from_json,
    settle,
)
from market.prices import QuoteKey, persist_quote

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
D = Decimal


def total_units(user_id):
    return sum(lot.quantity for lot in get_lots(user_id))


# ===== Allocation math =====

class TestComputeAllocation:
    """Basis carried over and ledger movement per cash direction."""

    def test_paid_more_than_value_lost(self):
        # Received items are worth more and cash came in: cash is pure gain.
        a = compute_allocation(D("100"), D("120"), D("150"), D("-30"))
        assert a.allocatable_basis == D("100")
        assert a.ledger_delta == D("30")

    def test_paid_for_value_lost(self):
        a = compute_allocation(D("100"), D("120"), D("90"), D("-50"))
        assert a.allocatable_basis == D("75")
        assert a.ledger_delta == D("20")

    def test_paid_less_than_value_lost(self):
        a = compute_allocation(D("100"), D("120"), D("90"), D("-10"))
        assert a.allocatable_basis == D("75")
        assert a.ledger_delta == D("0")

    def test_cash_paid_out_becomes_basis(self):
        a = compute_allocation(D("100"), D("120"), D("150"), D("25"))
        assert a.allocatable_basis == D("125")
        assert a.ledger_delta == D("-25")

    def test_even_swap(self):
        a = compute_allocation(D("100"), D("120"), D("80"), D("0"))
        assert a.allocatable_basis == D("100")
        assert a.ledger_delta == D("0")


class TestAllocateBasis:

    def test_proportional_to_market_value(self):
        assert allocate_basis(D("100"), [D("30"), D("70")]) == [D("30"), D("70")]

    def test_parts_sum_exactly(self):
        parts = allocate_basis(D("10"), [D("20"), D("10")])
        assert sum(parts) == D("10")

    def test_even_split_without_market_value(self):
        parts = allocate_basis(D("100"), [D("0"), D("0"), D("0")])
        assert len(parts) == 3
        assert sum(parts) == D("100")
        assert parts[0] == parts[1]

    def test_empty(self):
        assert allocate_basis(D("100"), []) == []


# ===== Request parsing =====

class TestRequestParsing:

    def test_parses_variants_and_cash(self):
        away, received, cash = request_from_json({
            "traded_away": [{"lot_id": 7, "quantity": 2}],
            "received": [
                {"product_id": 1, "grading_company": "PSA", "grade": "10", "quantity": 1, "quote": "400"},
                {"product_id": 2, "condition": "NM", "quantity": 3, "quote": 5},
            ],
            "cash_delta": "-12.50",
        })
        assert away == [TradedAwayItem(7, 2, None)]
        assert received[0].grading == Graded("PSA", "10")
        assert received[1].grading == Raw("NM")
        assert received[1].quote == D("5")
        assert cash == D("-12.50")

    def test_missing_cash_is_zero(self):
        _, _, cash = request_from_json({"received": [{"product_id": 1, "quote": 1}]})
        assert cash == D("0")

    def test_bad_cash_rejected(self):
        with pytest.raises(ValidationError):
            request_from_json({"received": [{"product_id": 1, "quote": 1}], "cash_delta": "lots"})

    def test_received_needs_product(self):
        with pytest.raises(ValidationError):
            request_from_json({"received": [{"quote": 1}]})


# ===== Settlement =====

class TestSettle:
    """End-to-end settlement against the database."""

    def test_cash_received_shrinks_basis(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("100"))
        settlement = settle(
            "ash",
            [TradedAwayItem(lot.id, 1, D("120"))],
            [ReceivedItem(2, Raw("NM"), 1, D("90"))],
            cash_delta=D("-50"),
        )
        assert settlement.ledger_delta == D("20")
        assert get_ledger_balance("ash") == D("-80")
        assert get_lot("ash", lot.id) is None

        (received,) = get_lots("ash")
        assert received.product_id == 2
        assert received.cost_basis == D("75")

    def test_even_swap_splits_basis_by_market_share(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 2, D("10"))
        settle(
            "ash",
            [TradedAwayItem(lot.id, 1, D("30"))],
            [ReceivedItem(2, Raw(), 1, D("20")), ReceivedItem(4, Raw(), 1, D("10"))],
        )
        assert get_ledger_balance("ash") == D("-20")
        lots = {l.product_id: l for l in get_lots("ash")}
        assert lots[1].quantity == 1
        assert lots[2].cost_basis + lots[4].cost_basis == D("10")
        assert lots[2].cost_basis > lots[4].cost_basis

    def test_quantities_are_conserved(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 3, D("10"))
        add_lot("ash", 2, Raw(), 1, D("5"))
        before = total_units("ash")

        settle(
            "ash",
            [TradedAwayItem(lot.id, 2, D("12"))],
            [ReceivedItem(2, Raw(), 4, D("6"))],
        )
        assert get_lot("ash", lot.id).quantity == 1
        assert total_units("ash") == before - 2 + 4
        assert len(get_lots("ash")) == 2

    def test_received_merges_into_existing_lot(self, temp_db, products):
        away = add_lot("ash", 1, Raw(), 1, D("30"))
        held = add_lot("ash", 2, Raw(), 1, D("10"))
        settle("ash", [TradedAwayItem(away.id, 1, D("30"))], [ReceivedItem(2, Raw(), 1, D("30"))])

        merged = get_lot("ash", held.id)
        assert merged.quantity == 2
        assert merged.cost_basis == D("20")

    def test_cash_paid_adds_to_basis(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("100"))
        settlement = settle(
            "ash",
            [TradedAwayItem(lot.id, 1, D("120"))],
            [ReceivedItem(4, Graded("PSA", "10"), 1, D("150"))],
            cash_delta=D("25"),
        )
        assert settlement.ledger_delta == D("-25")
        assert get_ledger_balance("ash") == D("-125")
        (received,) = get_lots("ash")
        assert received.cost_basis == D("125")
        assert received.grading_company == "PSA"

    def test_away_quote_falls_back_to_persisted(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("100"))
        persist_quote(QuoteKey.of(1), D("120"), now=T0)
        settlement = settle(
            "ash",
            [TradedAwayItem(lot.id, 1)],
            [ReceivedItem(2, Raw(), 1, D("90"))],
            cash_delta=D("-50"),
        )
        assert settlement.trade.away_market == D("120")
        assert settlement.allocation.allocatable_basis == D("75")

    def test_trade_is_recorded(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 2, D("10"))
        settle("ash", [TradedAwayItem(lot.id, 1, D("15"))], [ReceivedItem(2, Raw(), 1, D("15"))],
               now=T0)
        settle("ash", [TradedAwayItem(lot.id, 1, D("15"))], [ReceivedItem(4, Raw(), 1, D("15"))],
               now=T0 + timedelta(minutes=1))

        trades = list_trades("ash")
        assert len(trades) == 2
        assert trades[0].received[0]["product_id"] == 4
        assert trades[1].traded_away[0]["cost_basis"] == D("10")
        assert trades[1].received[0]["allocated_basis"] == D("10")

    def test_ledger_point_appended(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("100"))
        settle("ash", [TradedAwayItem(lot.id, 1, D("120"))], [ReceivedItem(2, Raw(), 1, D("150"))],
               cash_delta=D("-30"))
        points = history.query("ash", history.LIFETIME_EARNINGS)
        assert [p.value for p in points] == [D("-100"), D("-70")]

    def test_profit_loss_recorded_after_trade(self, temp_db, products):
        away = add_lot("ash", 1, Raw(), 1, D("100"))
        add_lot("ash", 2, Raw(), 1, D("50"))
        later = datetime.now(timezone.utc) + timedelta(hours=1)

        settle(
            "ash",
            [TradedAwayItem(away.id, 1, D("120"))],
            [ReceivedItem(4, Raw(), 1, D("150"))],
            cash_delta=D("-30"),
            now=later,
        )

        # held Pikachu has no quote: its 50 counts as cost, nothing as value
        pct = history.query("ash", history.PROFIT_LOSS_PCT)[-1]
        value = history.query("ash", history.PROFIT_LOSS_VALUE)[-1]
        assert pct.value == D("0")
        assert value.value == D("0")
        assert pct.recorded_at == later
        assert history.query("ash", history.LIFETIME_EARNINGS)[-1].recorded_at == later

    def test_profit_loss_after_trade_prefers_persisted_quote(self, temp_db, products):
        away = add_lot("ash", 1, Raw(), 1, D("100"))
        add_lot("ash", 2, Raw(), 1, D("50"))
        persist_quote(QuoteKey.of(4), D("200"), now=T0)

        settle(
            "ash",
            [TradedAwayItem(away.id, 1, D("120"))],
            [ReceivedItem(4, Raw(), 1, D("150"))],
            cash_delta=D("-30"),
        )

        points = history.query("ash", history.PROFIT_LOSS_PCT)
        assert points[-1].value == D("33.333333")
        assert history.query("ash", history.PROFIT_LOSS_VALUE)[-1].value == D("50")

    def test_traded_away_record_names_product(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("100"))
        settlement = settle("ash", [TradedAwayItem(lot.id, 1, D("120"))], [ReceivedItem(2, Raw(), 1, D("90"))])
        assert settlement.trade.traded_away[0]["product_name"] == "Charizard ex"
        assert list_trades("ash")[0].traded_away[0]["product_name"] == "Charizard ex"

    def test_failure_rolls_back_everything(self, temp_db, products, monkeypatch):
        lot = add_lot("ash", 1, Raw(), 2, D("10"))

        def broken_ledger(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(collection.trades, "adjust_ledger", broken_ledger)
        with pytest.raises(PersistenceError):
            settle(
                "ash",
                [TradedAwayItem(lot.id, 1, D("15"))],
                [ReceivedItem(2, Raw(), 1, D("20"))],
                cash_delta=D("5"),
            )

        lots = get_lots("ash")
        assert len(lots) == 1
        assert lots[0].quantity == 2
        assert get_ledger_balance("ash") == D("-20")
        assert list_trades("ash") == []

    def test_missing_received_quote(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("10"))
        with pytest.raises(ValidationError):
            settle("ash", [TradedAwayItem(lot.id, 1, D("10"))], [ReceivedItem(2, Raw(), 1, None)])
        assert get_lot("ash", lot.id).quantity == 1

    def test_trading_more_than_held(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("10"))
        with pytest.raises(ValidationError):
            settle("ash", [TradedAwayItem(lot.id, 2, D("10"))], [ReceivedItem(2, Raw(), 1, D("10"))])
        assert get_lot("ash", lot.id).quantity == 1
        assert get_lots("ash")[0].product_id == 1

    def test_duplicate_lot_rejected(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 2, D("10"))
        with pytest.raises(ValidationError):
            settle(
                "ash",
                [TradedAwayItem(lot.id, 1, D("10")), TradedAwayItem(lot.id, 1, D("10"))],
                [ReceivedItem(2, Raw(), 1, D("10"))],
            )

    def test_unknown_lot(self, temp_db, products):
        with pytest.raises(NotFoundError):
            settle("ash", [TradedAwayItem(999, 1, D("10"))], [ReceivedItem(2, Raw(), 1, D("10"))])

    def test_unknown_received_product(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("10"))
        with pytest.raises(NotFoundError):
            settle("ash", [TradedAwayItem(lot.id, 1, D("10"))], [ReceivedItem(999, Raw(), 1, D("10"))])
        assert get_lot("ash", lot.id).quantity == 1

    def test_nothing_received(self, temp_db, products):
        lot = add_lot("ash", 1, Raw(), 1, D("10"))
        with pytest.raises(ValidationError):
            settle("ash", [TradedAwayItem(lot.id, 1, D("10"))], [])
