"""
Lot types: grading identity variants and the Lot row model.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Union

from collection.errors import ValidationError
from db.queries import to_decimal
from market.prices import QuoteKey

SEALED_PRODUCT = "sealed_product"


class GradingStatus(Enum):
    RAW = "raw"
    GRADING = "grading"
    GRADED = "graded"


@dataclass(frozen=True)
class Raw:
    condition: str = ""

    status = GradingStatus.RAW


@dataclass(frozen=True)
class Grading:
    """Sent off for grading; basis is what the raw copy cost plus the grading fee."""
    raw_cost: Decimal
    grading_cost: Decimal
    condition: str = ""

    status = GradingStatus.GRADING

    @property
    def cost_basis(self) -> Decimal:
        return self.raw_cost + self.grading_cost


@dataclass(frozen=True)
class Graded:
    company: str
    grade: str
    condition: str = ""

    status = GradingStatus.GRADED


GradingVariant = Union[Raw, Grading, Graded]


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def parse_money(value: Any, field: str) -> Decimal:
    """Decimal from user input; rejects missing, non-numeric and non-finite values."""
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be a number") from e
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return amount


def grading_from_fields(
    grading_status: Optional[str] = None,
    grading_company: Optional[str] = None,
    grade: Optional[str] = None,
    condition: Optional[str] = None,
    raw_cost: Any = None,
    grading_cost: Any = None,
) -> GradingVariant:
    """
    Build the grading variant from loose request fields.

    An explicit grading_status wins. Without one, company + grade means
    Graded and neither means Raw; only one of the two is rejected.
    """
    company, grd, cond = _text(grading_company), _text(grade), _text(condition)
    status = _text(grading_status).lower()

    if status:
        try:
            status_enum = GradingStatus(status)
        except ValueError as e:
            raise ValidationError(f"unknown grading_status {grading_status!r}") from e
    elif company or grd:
        status_enum = GradingStatus.GRADED
    else:
        status_enum = GradingStatus.RAW

    if status_enum is GradingStatus.GRADED:
        if not (company and grd):
            raise ValidationError("graded items need both grading_company and grade")
        return Graded(company=company, grade=grd, condition=cond)
    if status_enum is GradingStatus.GRADING:
        return Grading(
            raw_cost=parse_money(raw_cost, "raw_cost"),
            grading_cost=parse_money(grading_cost, "grading_cost"),
            condition=cond,
        )
    return Raw(condition=cond)


def identity_columns(grading: GradingVariant) -> tuple[str, str, str, str]:
    """(grading_status, grading_company, grade, condition) as stored on the lots table."""
    if isinstance(grading, Graded):
        return grading.status.value, grading.company, grading.grade, grading.condition
    return grading.status.value, "", "", grading.condition


def grading_from_row(row: dict) -> GradingVariant:
    status = GradingStatus(row.get("grading_status") or "raw")
    if status is GradingStatus.GRADED:
        return Graded(company=row["grading_company"], grade=row["grade"], condition=row.get("condition") or "")
    if status is GradingStatus.GRADING:
        return Grading(
            raw_cost=to_decimal(row.get("raw_cost")) or Decimal("0"),
            grading_cost=to_decimal(row.get("grading_cost")) or Decimal("0"),
            condition=row.get("condition") or "",
        )
    return Raw(condition=row.get("condition") or "")


@dataclass
class Lot:
    id: Optional[int]
    user_id: str
    product_id: int
    grading: GradingVariant
    quantity: int
    cost_basis: Decimal
    product_name: Optional[str] = None
    product_type: Optional[str] = None
    set_name: Optional[str] = None
    card_number: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> Lot:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            product_id=row["product_id"],
            grading=grading_from_row(row),
            quantity=int(row["quantity"]),
            cost_basis=to_decimal(row["cost_basis"]) or Decimal("0"),
            product_name=row.get("product_name"),
            product_type=row.get("product_type"),
            set_name=row.get("set_name"),
            card_number=row.get("card_number"),
        )

    @property
    def grading_status(self) -> str:
        return self.grading.status.value

    @property
    def grading_company(self) -> str:
        return identity_columns(self.grading)[1]

    @property
    def grade(self) -> str:
        return identity_columns(self.grading)[2]

    @property
    def condition(self) -> str:
        return self.grading.condition

    @property
    def is_sealed(self) -> bool:
        return self.product_type == SEALED_PRODUCT

    @property
    def quote_key(self) -> QuoteKey:
        return QuoteKey.of(self.product_id, self.grading_company, self.grade, self.condition)

    @property
    def total_cost(self) -> Decimal:
        return self.cost_basis * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_type": self.product_type,
            "set_name": self.set_name,
            "grading_status": self.grading_status,
            "grading_company": self.grading_company or None,
            "grade": self.grade or None,
            "condition": self.condition or None,
            "quantity": self.quantity,
            "cost_basis": self.cost_basis,
        }
