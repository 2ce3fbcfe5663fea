from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from coupon_engine.core.config import CURRENCY_MINOR_UNITS
from coupon_engine.models.campaign import DiscountType

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class DiscountOutcome:
    amount: Decimal
    free_shipping: bool


def to_decimal(value: object) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def minor_unit(minor_units: int = CURRENCY_MINOR_UNITS) -> Decimal:
    return Decimal(1).scaleb(-minor_units)


def round_money(value: Decimal, minor_units: int = CURRENCY_MINOR_UNITS) -> Decimal:
    return value.quantize(minor_unit(minor_units), rounding=ROUND_HALF_UP)


def compute_discount(
    *,
    discount_type: str,
    discount_value: object,
    cart_subtotal: object,
    max_discount_cap: object | None = None,
    minor_units: int = CURRENCY_MINOR_UNITS,
) -> DiscountOutcome:
    subtotal = to_decimal(cart_subtotal)
    if subtotal < ZERO:
        subtotal = ZERO
    value = to_decimal(discount_value)
    kind = DiscountType(discount_type)

    if kind is DiscountType.FREE_SHIPPING:
        return DiscountOutcome(amount=round_money(ZERO, minor_units), free_shipping=True)

    if kind is DiscountType.PERCENTAGE:
        amount = subtotal * value / HUNDRED
        if max_discount_cap is not None:
            amount = min(amount, to_decimal(max_discount_cap))
    else:
        amount = min(value, subtotal)

    return DiscountOutcome(amount=round_money(max(amount, ZERO), minor_units), free_shipping=False)
