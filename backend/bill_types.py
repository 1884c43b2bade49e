"""
Value records shared by the totals engine and its callers.

Money is carried as Decimal end to end. Anything numeric handed in (int, float,
str) goes through str() first so 0.1 stays 0.1 rather than its binary float.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Tuple

from errors import ValidationError

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number, got a boolean")
    if isinstance(value, Decimal):
        out = value
    else:
        try:
            out = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be a number, got {value!r}") from None
    if not out.is_finite():
        raise ValidationError(f"{field_name} must be finite, got {value!r}")
    return out


def _require_id(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string")
    return value


class SplitMethod(str, Enum):
    PROPORTIONAL = "proportional"
    EVEN = "even"

    @classmethod
    def parse(cls, value: Any) -> "SplitMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Split method must be one of {[m.value for m in cls]}, got {value!r}"
            ) from None


class UnassignedPolicy(str, Enum):
    # Unassigned items stay in the proportional base; part of each pool is left unallocated.
    COUNT_IN_BASE = "count_in_base"
    # Proportional base is the assigned subtotal only.
    EXCLUDE_FROM_BASE = "exclude_from_base"

    @classmethod
    def parse(cls, value: Any) -> "UnassignedPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unassigned policy must be one of {[p.value for p in cls]}, got {value!r}"
            ) from None


@dataclass(frozen=True)
class Item:
    id: str
    label: str
    unit_price: Decimal
    quantity: int = 1
    emoji: Optional[str] = None

    def __post_init__(self) -> None:
        _require_id(self.id, "item.id")
        unit_price = to_decimal(self.unit_price, f"unit_price of item {self.id}")
        if unit_price < 0:
            raise ValidationError(f"unit_price of item {self.id} must be >= 0, got {unit_price}")
        quantity = self.quantity
        if isinstance(quantity, bool):
            raise ValidationError(f"quantity of item {self.id} must be an integer")
        if isinstance(quantity, float) and quantity.is_integer():
            quantity = int(quantity)
        if not isinstance(quantity, int):
            raise ValidationError(f"quantity of item {self.id} must be an integer, got {self.quantity!r}")
        if quantity < 1:
            raise ValidationError(f"quantity of item {self.id} must be >= 1, got {quantity}")
        object.__setattr__(self, "unit_price", unit_price)
        object.__setattr__(self, "quantity", quantity)

    @property
    def price(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Person:
    id: str
    name: str
    is_paid: bool = False

    def __post_init__(self) -> None:
        _require_id(self.id, "person.id")


@dataclass(frozen=True)
class ItemShare:
    """`person_id` claims `weight` parts of `item_id`, relative to the item's other shares."""

    item_id: str
    person_id: str
    weight: Decimal = Decimal("1")

    def __post_init__(self) -> None:
        _require_id(self.item_id, "share.item_id")
        _require_id(self.person_id, "share.person_id")
        weight = to_decimal(self.weight, f"weight of share {self.item_id}/{self.person_id}")
        if weight <= 0:
            raise ValidationError(
                f"weight of share {self.item_id}/{self.person_id} must be > 0, got {weight}"
            )
        object.__setattr__(self, "weight", weight)


@dataclass(frozen=True)
class ItemLine:
    item_id: str
    label: str
    emoji: Optional[str]
    price: Decimal
    quantity: int
    weight: Decimal
    fraction: Decimal
    share_amount: Decimal


@dataclass(frozen=True)
class PersonTotal:
    person_id: str
    name: str
    subtotal: Decimal
    discount_share: Decimal
    service_fee_share: Decimal
    tax_share: Decimal
    tip_share: Decimal
    total: Decimal
    rounding_adjustment: Decimal = ZERO
    items: Tuple[ItemLine, ...] = ()


@dataclass(frozen=True)
class Reconciliation:
    distributed_cents: int = 0
    method: str = "largest_remainder"


@dataclass(frozen=True)
class BillTotals:
    subtotal: Decimal
    tax: Decimal
    tip: Decimal
    discount: Decimal
    service_fee: Decimal
    total: Decimal
    assigned_subtotal: Decimal = ZERO
    unassigned_subtotal: Decimal = ZERO
    unallocated: Decimal = ZERO
    person_totals: Tuple[PersonTotal, ...] = ()
    reconciliation: Reconciliation = field(default_factory=Reconciliation)
