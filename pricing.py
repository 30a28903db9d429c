"""Price and discount arithmetic. Single currency (AED) throughout."""

from typing import Optional

CURRENCY = "aed"


def round_money(amount: float) -> float:
    return round(float(amount), 2)


def discounted_price(base_price: float, discount: Optional[float], discount_type: Optional[str] = "PERCENTAGE") -> float:
    """Apply a percentage or fixed-amount discount; the result is never negative."""
    base_price = float(base_price)
    if discount is None or discount <= 0:
        return base_price
    if discount_type == "FIXED_AMOUNT":
        return max(0.0, base_price - discount)
    return max(0.0, base_price * (1 - discount / 100))


def line_total(unit_price: float, quantity: int) -> float:
    return round_money(unit_price * quantity)


def to_minor_units(amount: float) -> int:
    """AED -> fils, the unit the payment gateway charges in."""
    return int(round(float(amount) * 100))


def from_minor_units(amount: int) -> float:
    return round_money(amount / 100)
