"""
Valuation groups for display.

Lots are collapsed by how a collector thinks of them: graded copies by
(product, company, grade), sealed product by product, raw cards by
(product, condition).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from collection.models import Lot
from market.prices import QuoteKey


def _fold(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def group_key(lot: Lot) -> tuple:
    if lot.grading_company and lot.grade:
        return ("graded", lot.product_id, _fold(lot.grading_company), _fold(lot.grade))
    if lot.is_sealed:
        return ("sealed", lot.product_id)
    return ("raw", lot.product_id, _fold(lot.condition))


@dataclass
class ValuationGroup:
    key: tuple
    product_id: int
    product_name: Optional[str]
    quote_key: QuoteKey
    quantity: int = 0
    total_investment: Decimal = Decimal("0")
    quote: Optional[Decimal] = None
    lots: list = field(default_factory=list)

    @property
    def mean_investment(self) -> Decimal:
        if self.quantity == 0:
            return Decimal("0")
        return self.total_investment / self.quantity

    @property
    def current_value(self) -> Optional[Decimal]:
        """quote * quantity, or None when the group has no quote (unknown, not zero)."""
        if self.quote is None:
            return None
        return self.quote * self.quantity

    @property
    def profit_loss(self) -> Optional[Decimal]:
        value = self.current_value
        if value is None:
            return None
        return value - self.total_investment

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "grading_company": self.quote_key.grading_company or None,
            "grade": self.quote_key.grade or None,
            "condition": self.quote_key.condition or None,
            "quantity": self.quantity,
            "total_investment": self.total_investment,
            "mean_investment": self.mean_investment,
            "quote": self.quote,
            "current_value": self.current_value,
            "profit_loss": self.profit_loss,
            "lot_ids": [lot.id for lot in self.lots],
        }


def group_for_display(lots: Iterable[Lot], quotes: Mapping[QuoteKey, Decimal]) -> list[ValuationGroup]:
    """
    Collapse lots into valuation groups, in order of first appearance.

    The group's quote is looked up with its first lot's quote key; quotes
    missing from the mapping leave the group's value unknown.
    """
    groups: dict[tuple, ValuationGroup] = {}
    for lot in lots:
        key = group_key(lot)
        group = groups.get(key)
        if group is None:
            group = ValuationGroup(
                key=key,
                product_id=lot.product_id,
                product_name=lot.product_name,
                quote_key=lot.quote_key,
                quote=quotes.get(lot.quote_key),
            )
            groups[key] = group
        elif group.quote is None:
            group.quote = quotes.get(lot.quote_key)
        group.quantity += lot.quantity
        group.total_investment += lot.cost_basis * lot.quantity
        group.lots.append(lot)
    return list(groups.values())
