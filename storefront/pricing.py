"""
Deterministic price breakdown for a cart snapshot.

All amounts are integers in the minor currency unit (cents). Tax is rounded
half-up to the minor unit, so `total == subtotal + tax_amount` always holds
exactly.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple, Iterable, Mapping

from .errors import PriceMismatch, ValidationError


@dataclass(frozen=True)
class LineItem:
    product_id: str
    unit_price: int
    quantity: int
    variation: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "variation": self.variation,
        }

    @classmethod
    def from_dict(cls, d: Mapping) -> "LineItem":
        try:
            return cls(
                product_id=str(d["product_id"]),
                unit_price=_whole(d.get("unit_price") or 0),
                quantity=_whole(d["quantity"]),
                variation=d.get("variation"),
            )
        except (KeyError, TypeError, ValueError, OverflowError):
            raise ValidationError(f"malformed line item: {dict(d)!r}")


def _whole(value) -> int:
    # int() would truncate 1.9 to 1 and accept True as 1
    if isinstance(value, bool):
        raise TypeError(f"not a count: {value!r}")
    if isinstance(value, (float, Decimal)) and value != int(value):
        raise ValueError(f"not a whole number: {value!r}")
    return int(value)


@dataclass(frozen=True)
class CartSnapshot:
    items: Tuple[LineItem, ...]

    @classmethod
    def of(cls, items: Iterable[LineItem]) -> "CartSnapshot":
        return cls(items=tuple(items))

    def is_empty(self) -> bool:
        return len(self.items) == 0

    def with_prices(self, prices: Mapping[str, int]) -> "CartSnapshot":
        # swap caller supplied unit prices for authoritative ones
        return CartSnapshot(items=tuple(
            LineItem(
                product_id=i.product_id,
                unit_price=int(prices[i.product_id]),
                quantity=i.quantity,
                variation=i.variation,
            )
            for i in self.items
        ))


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: int
    tax_rate: Decimal
    tax_amount: int
    total: int

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "tax_rate": str(self.tax_rate),
            "tax_amount": self.tax_amount,
            "total": self.total,
        }


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def price(cart: CartSnapshot, tax_rate: Decimal) -> PricingBreakdown:
    rate = Decimal(tax_rate)
    subtotal = sum(i.line_total for i in cart.items)
    tax_amount = round_half_up(Decimal(subtotal) * rate)
    return PricingBreakdown(
        subtotal=subtotal,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=subtotal + tax_amount,
    )


def verify_quote(
    quoted_total: int, breakdown: PricingBreakdown, tolerance: int = 0
) -> None:
    if abs(int(quoted_total) - breakdown.total) > tolerance:
        raise PriceMismatch(quoted=int(quoted_total), verified=breakdown.total)
