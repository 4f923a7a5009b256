"""Currency arithmetic.

All amounts are Decimal quantized to cents with ROUND_HALF_UP. Provider
amounts arrive as integer minor units.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(amount: Decimal | int | str) -> Decimal:
    """Round an amount to whole cents."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def from_minor_units(cents: int | None) -> Decimal:
    """Convert an integer cent amount (None counts as 0) to dollars."""
    return quantize(Decimal(int(cents or 0)) / 100)


def compute_tax(subtotal: Decimal, shipping: Decimal, rate: Decimal) -> Decimal:
    """Tax is a flat rate over subtotal plus shipping."""
    return quantize((subtotal + shipping) * rate)


def unit_price(line_total: Decimal, quantity: int) -> Decimal:
    """Per-unit price of a line, from what was actually charged for it."""
    if quantity < 1:
        raise ValueError(f"quantity must be >= 1, got {quantity}")
    return quantize(line_total / quantity)


def within_one_cent(a: Decimal, b: Decimal) -> bool:
    return abs(a - b) <= CENT


def shipping_for_subtotal(
    subtotal: Decimal, standard_rate: Decimal, free_threshold: Decimal
) -> Decimal:
    """Shipping charge applied at checkout: free at or above the threshold."""
    if subtotal >= free_threshold:
        return ZERO
    return quantize(standard_rate)


def remaining_for_free_shipping(subtotal: Decimal, free_threshold: Decimal) -> Decimal:
    remaining = free_threshold - subtotal
    return quantize(remaining) if remaining > 0 else ZERO
