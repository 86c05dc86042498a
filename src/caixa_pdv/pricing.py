"""Money and discount calculator for cart checkout.

All helpers are pure: they take cart lines and a discount variant and return
:class:`~decimal.Decimal` figures quantized to cents. The discount amount is
clamped to the subtotal for both percentage and fixed discounts, so a sale
total can never become negative.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional, Union

from . import log
from .constants import CENTS, ZERO, DiscountType
from .records import (
    NO_DISCOUNT,
    Discount,
    FixedDiscount,
    NoDiscount,
    PercentageDiscount,
    SaleItem,
)


@dataclass(frozen=True)
class CartTotals:
    """Priced view of a cart."""

    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal


def quantize_money(amount: Decimal) -> Decimal:
    """Round ``amount`` to cents using commercial (half-up) rounding."""

    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def calculate_subtotal(items: Iterable[SaleItem]) -> Decimal:
    """Return ``Σ quantity × price_per_item`` for the supplied cart lines."""

    return quantize_money(sum((item.line_total for item in items), ZERO))


def calculate_discount_amount(subtotal: Decimal, discount: Discount) -> Decimal:
    """Compute how much ``discount`` takes off ``subtotal``.

    Args:
        subtotal (Decimal): Cart subtotal before any discount.
        discount (Discount): Tagged discount variant. ``NoDiscount`` and
            zero-valued variants yield no reduction.

    Returns:
        Decimal: Discount amount in ``[0, subtotal]`` rounded to cents.
    """

    if isinstance(discount, NoDiscount) or discount.value is None or discount.value <= ZERO:
        return ZERO

    if isinstance(discount, PercentageDiscount):
        raw = subtotal * discount.value / Decimal("100")
    else:
        raw = discount.value

    return quantize_money(min(subtotal, max(ZERO, raw)))


def price_cart(items: Iterable[SaleItem], discount: Discount = NO_DISCOUNT) -> CartTotals:
    """Price a cart: subtotal, discount amount and the resulting total."""

    subtotal = calculate_subtotal(items)
    discount_amount = calculate_discount_amount(subtotal, discount)
    return CartTotals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        total=subtotal - discount_amount,
    )


def make_discount(
    discount_type: Optional[Union[DiscountType, str]],
    value: Optional[Union[Decimal, str, int]],
) -> Discount:
    """Build a discount variant from loosely typed input.

    Args:
        discount_type (DiscountType | str | None): Requested discount flavour.
        value (Decimal | str | int | None): Discount magnitude; a percentage
            for :attr:`DiscountType.PERCENTAGE`, an amount otherwise.

    Returns:
        Discount: ``NO_DISCOUNT`` when either argument is missing, otherwise
            the matching variant.

    Raises:
        ValueError: If ``value`` is not a number, is negative, or the type is
            unknown.
    """

    if discount_type is None or value is None or value == "":
        return NO_DISCOUNT

    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid discount value: {value!r}") from exc
    if not amount.is_finite() or amount < ZERO:
        log.error("Discount validation failed: %s", value)
        raise ValueError("Discount value must be zero or positive")

    kind = DiscountType(discount_type)
    if kind is DiscountType.PERCENTAGE:
        return PercentageDiscount(amount)
    return FixedDiscount(amount)
