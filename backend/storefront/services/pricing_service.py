"""
Volume Pricing

Server-side recomputation of the cart subtotal. The client-submitted
subtotal is only ever compared against this result, never stored.

Pricing Invariants (authoritative):
- Discounts are scoped per (product_id, variant_label) group.
- Pack entries (tier_quantity > 1) are priced at the bundle price the
  tier table lists for their size x count; no further discounting. The
  client's tier_price_cents must match that listing or the cart is
  rejected.
- Single entries (tier_quantity == 1) in a group are pooled. The pool's
  unit total selects the highest quantity break it clears, and every
  pooled unit is priced at that break's per-unit rate.
- Per-unit rate for a break = bundle price / bundle quantity. A base
  break missing from the tiers falls back to the cheapest per-unit
  price in the group's tier table; a missing higher break falls back to
  the next lower break's rate. A group with no usable tier is rejected.
- Exempt products always price single units at the base-break rate.
- Line totals are rounded half-up to the cent; the subtotal is the sum
  of the rounded line totals, so subtotal == sum(line_totals) exactly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence

from ..validation import CartLineItem, PricingTierInput, ValidationError


DEFAULT_BREAKS = (1, 5, 10)

# Client/server subtotal drift tolerated before a submission is rejected
SUBTOTAL_TOLERANCE_CENTS = 1


@dataclass
class VolumePricing:
    subtotal_cents: int = 0
    line_totals: dict[str, int] = field(default_factory=dict)
    total_units: int = 0

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "line_totals": dict(self.line_totals),
            "total_units": self.total_units,
        }


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sanitize_tiers(tiers: Iterable[PricingTierInput] | None) -> list[PricingTierInput]:
    """Drop zero-quantity and zero-price tiers; they are never candidates."""
    return [t for t in (tiers or []) if t.quantity > 0 and t.price_cents > 0]


def validate_pricing_tiers(tiers: Iterable[PricingTierInput] | None) -> None:
    """
    Quantities strictly increasing; per-unit price non-increasing.

    Raises ValidationError on a malformed tier table.
    """
    clean = sanitize_tiers(tiers)
    previous: PricingTierInput | None = None
    for tier in clean:
        if previous is not None:
            if tier.quantity <= previous.quantity:
                raise ValidationError("Pricing tier quantities must be strictly increasing")
            # Compare per-unit prices without division
            if tier.price_cents * previous.quantity > previous.price_cents * tier.quantity:
                raise ValidationError("Pricing tier unit prices must not increase with quantity")
        previous = tier


def derive_break_rates(
    tiers: Iterable[PricingTierInput] | None,
    breaks: Sequence[int] = DEFAULT_BREAKS,
) -> dict[int, Decimal]:
    """
    Per-unit rate (in cents, unrounded) for each quantity break.

    Raises ValidationError when no usable tier is listed.
    """
    clean = sanitize_tiers(tiers)
    if not clean:
        raise ValidationError("Pricing is unavailable for an item in your cart")
    by_quantity = {t.quantity: Decimal(t.price_cents) / Decimal(t.quantity) for t in clean}
    fallback = min(by_quantity.values())

    rates: dict[int, Decimal] = {}
    previous: Decimal | None = None
    for quantity in sorted(breaks):
        rate = by_quantity.get(quantity)
        if rate is None:
            rate = previous if previous is not None else fallback
        rates[quantity] = rate
        previous = rate
    return rates


def pack_price_cents(pack: CartLineItem, tiers: Iterable[PricingTierInput] | None) -> int:
    """
    Listed bundle price for a pack entry.

    Raises ValidationError when the pack size is not listed or the
    displayed price disagrees with the listing.
    """
    listed = next((t for t in sanitize_tiers(tiers) if t.quantity == pack.tier_quantity), None)
    if listed is None:
        raise ValidationError(f"{pack.product_name or pack.product_id} is not sold in packs of {pack.tier_quantity}")
    if pack.tier_price_cents != listed.price_cents:
        raise ValidationError("Cart totals changed. Refresh your cart and try again.")
    return listed.price_cents


def effective_break(total_units: int, breaks: Sequence[int]) -> int:
    """Highest break the pooled unit count clears (the smallest break otherwise)."""
    ordered = sorted(breaks)
    chosen = ordered[0]
    for quantity in ordered:
        if total_units >= quantity:
            chosen = quantity
    return chosen


def price_cart(
    items: Sequence[CartLineItem],
    *,
    breaks: Sequence[int] = DEFAULT_BREAKS,
    exempt_products: Iterable[str] = (),
) -> VolumePricing:
    """Authoritative subtotal and per-line totals for a cart."""
    if not items:
        return VolumePricing()

    breaks = tuple(sorted(set(breaks))) or DEFAULT_BREAKS
    exempt = {p.strip().lower() for p in exempt_products}

    groups: dict[tuple[str, str], list[CartLineItem]] = {}
    for item in items:
        groups.setdefault((item.product_id, item.variant_label), []).append(item)

    pricing = VolumePricing()

    for (product_id, _variant), group in groups.items():
        tiers = next((i.pricing_tiers for i in group if i.pricing_tiers), [])
        rates = derive_break_rates(tiers, breaks)

        packs = [i for i in group if i.tier_quantity > 1]
        singles = [i for i in group if i.tier_quantity == 1]

        for pack in packs:
            line_total = pack_price_cents(pack, tiers) * pack.count
            pricing.line_totals[pack.key] = line_total
            pricing.subtotal_cents += line_total
            pricing.total_units += pack.units

        if not singles:
            continue

        pooled_units = sum(i.units for i in singles)
        if product_id.lower() in exempt:
            unit_rate = rates[breaks[0]]
        else:
            unit_rate = rates[effective_break(pooled_units, breaks)]

        for single in singles:
            line_total = _round_cents(unit_rate * single.units)
            pricing.line_totals[single.key] = line_total
            pricing.subtotal_cents += line_total
            pricing.total_units += single.units

    return pricing


def subtotal_matches(declared_cents: int, computed_cents: int) -> bool:
    return abs(declared_cents - computed_cents) <= SUBTOTAL_TOLERANCE_CENTS


def shipping_cost_cents(subtotal_cents: int, *, free_threshold_cents: int, flat_cents: int) -> int:
    """Free shipping at or above the threshold, flat fee otherwise."""
    if subtotal_cents >= free_threshold_cents:
        return 0
    return flat_cents
