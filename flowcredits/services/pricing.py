"""
Bulk pricing for credit purchases.

Pure functions only: no I/O, no database, no settings lookups beyond the
default base price. All amounts are integer minor currency units.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flowcredits.config import settings
from flowcredits.errors import InvalidQuantity


@dataclass(frozen=True)
class PricingTier:
    """A bulk discount bracket, applied when quantity >= min_quantity."""
    name: str
    min_quantity: int
    discount_pct: int


# Highest threshold first; the first matching tier wins.
PRICING_TIERS: tuple[PricingTier, ...] = (
    PricingTier(name="bulk_tier_2", min_quantity=2500, discount_pct=30),
    PricingTier(name="bulk_tier_1", min_quantity=500, discount_pct=25),
    PricingTier(name="individual", min_quantity=1, discount_pct=0),
)


@dataclass(frozen=True)
class PriceQuote:
    tier: str
    quantity: int
    base_price_minor: int
    unit_price_minor: int
    discount_pct: int

    @property
    def total_amount_minor(self) -> int:
        return self.unit_price_minor * self.quantity

    @property
    def discount_amount_minor(self) -> int:
        return (self.base_price_minor - self.unit_price_minor) * self.quantity


def div_round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounding halves away from zero (non-negative inputs)."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    quotient, remainder = divmod(numerator, denominator)
    if remainder * 2 >= denominator:
        quotient += 1
    return quotient


def tier_for(quantity: int) -> PricingTier:
    for tier in PRICING_TIERS:
        if quantity >= tier.min_quantity:
            return tier
    return PRICING_TIERS[-1]


def validate_quantity(quantity: int, max_quantity: int | None = None) -> int:
    max_quantity = settings.MAX_PURCHASE_QUANTITY if max_quantity is None else max_quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidQuantity("Quantity must be an integer", quantity=quantity)
    if quantity <= 0:
        raise InvalidQuantity("Quantity must be greater than 0", quantity=quantity)
    if quantity > max_quantity:
        raise InvalidQuantity(
            f"Quantity exceeds the maximum of {max_quantity}",
            quantity=quantity,
        )
    return quantity


def price_per_unit(quantity: int, base_price_minor: int | None = None) -> PriceQuote:
    """
    Map a requested purchase quantity to its unit price.

    Args:
        quantity: Number of credits requested
        base_price_minor: Undiscounted price per credit (defaults to settings)

    Returns:
        PriceQuote with tier name, discounted unit price and discount percent

    Raises:
        InvalidQuantity: quantity is not a positive integer within limits
    """
    validate_quantity(quantity)
    base = settings.BASE_PRICE_MINOR if base_price_minor is None else base_price_minor
    tier = tier_for(quantity)
    unit = div_round_half_up(base * (100 - tier.discount_pct), 100)
    return PriceQuote(
        tier=tier.name,
        quantity=quantity,
        base_price_minor=base,
        unit_price_minor=unit,
        discount_pct=tier.discount_pct,
    )


def tier_table(base_price_minor: int | None = None) -> list[dict]:
    """Tier table in ascending order, as shown to customers."""
    base = settings.BASE_PRICE_MINOR if base_price_minor is None else base_price_minor
    rows = []
    ordered = sorted(PRICING_TIERS, key=lambda t: t.min_quantity)
    for index, tier in enumerate(ordered):
        upper = ordered[index + 1].min_quantity - 1 if index + 1 < len(ordered) else None
        rows.append({
            "tier": tier.name,
            "min_quantity": tier.min_quantity,
            "max_quantity": upper,
            "discount_pct": tier.discount_pct,
            "unit_price": format_minor(div_round_half_up(base * (100 - tier.discount_pct), 100)),
        })
    return rows


def format_minor(amount_minor: int) -> str:
    """Render minor units as a decimal string, e.g. 11250 -> '112.50'."""
    return str((Decimal(amount_minor) / 100).quantize(Decimal("0.01")))
