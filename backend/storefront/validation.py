from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any


# Maximum price: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999
MAX_LINE_COUNT = 1_000

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\d\s()\-+]+$")

REQUIRED_CUSTOMER_FIELDS = (
    "customer_name",
    "customer_email",
    "customer_phone",
    "shipping_street",
    "shipping_city",
    "shipping_state",
    "shipping_zip_code",
    "shipping_country",
)


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate referral code)."""


@dataclass(frozen=True)
class PricingTierInput:
    quantity: int
    price_cents: int


@dataclass
class CartLineItem:
    """
    One cart entry as submitted by the storefront.

    key identifies (product, variant, tier quantity); only count is mutable.
    tier_price_cents is the bundle price the client displayed. Pricing
    checks it against pricing_tiers and never derives a total from it.
    """
    key: str
    product_id: str
    variant_label: str
    tier_quantity: int
    tier_price_cents: int
    count: int
    product_name: str = ""
    pricing_tiers: list[PricingTierInput] = field(default_factory=list)

    @property
    def units(self) -> int:
        return self.tier_quantity * self.count

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "variant_label": self.variant_label,
            "tier_quantity": self.tier_quantity,
            "tier_price_cents": self.tier_price_cents,
            "count": self.count,
            "pricing_tiers": [
                {"quantity": t.quantity, "price_cents": t.price_cents}
                for t in self.pricing_tiers
            ],
        }


@dataclass
class CheckoutSubmission:
    """Normalized order submission (cart + customer + shipping)."""
    items: list[CartLineItem]
    customer_name: str
    customer_email: str
    customer_phone: str
    shipping_street: str
    shipping_city: str
    shipping_state: str
    shipping_zip_code: str
    shipping_country: str
    declared_subtotal_cents: int
    declared_total_units: int | None = None
    referral_code: str | None = None


def coerce_int(value: Any, name: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion: rejects floats, bools, scientific notation
    and decimal strings.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            parsed = int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{name} must be an integer")

    if minimum is not None and parsed < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    if maximum is not None and parsed > maximum:
        raise ValidationError(f"{name} cannot exceed {maximum}")
    return parsed


def _required_str(payload: dict, key: str) -> str:
    value = payload.get(key)
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError("Missing required fields")
    return value.strip()


def normalize_email(value: str) -> str:
    return value.strip().lower()


def parse_pricing_tiers(raw: Any, item_label: str) -> list[PricingTierInput]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"pricing_tiers for {item_label} must be a list")
    tiers = []
    for tier in raw:
        if not isinstance(tier, dict):
            raise ValidationError(f"pricing_tiers for {item_label} must contain objects")
        tiers.append(PricingTierInput(
            quantity=coerce_int(tier.get("quantity"), "pricing tier quantity", minimum=0),
            price_cents=coerce_int(tier.get("price_cents"), "pricing tier price_cents", minimum=0, maximum=MAX_PRICE_CENTS),
        ))
    return tiers


def parse_cart_items(raw: Any) -> list[CartLineItem]:
    """
    Parse submitted line items. Entries sharing a key accumulate count
    instead of duplicating the line.
    """
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Cart is empty")

    by_key: dict[str, CartLineItem] = {}
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError("Invalid cart line item")

        product_id = entry.get("product_id")
        variant_label = entry.get("variant_label")
        if not isinstance(product_id, str) or not product_id.strip():
            raise ValidationError("Cart line item missing product_id")
        if not isinstance(variant_label, str) or not variant_label.strip():
            raise ValidationError("Cart line item missing variant_label")

        tier_quantity = coerce_int(entry.get("tier_quantity"), "tier_quantity", minimum=1)
        key = entry.get("key")
        if not isinstance(key, str) or not key.strip():
            key = f"{product_id.strip()}|{variant_label.strip()}|{tier_quantity}"

        item = CartLineItem(
            key=key.strip(),
            product_id=product_id.strip(),
            product_name=str(entry.get("product_name") or product_id).strip(),
            variant_label=variant_label.strip(),
            tier_quantity=tier_quantity,
            tier_price_cents=coerce_int(entry.get("tier_price_cents"), "tier_price_cents", minimum=0, maximum=MAX_PRICE_CENTS),
            count=coerce_int(entry.get("count"), "count", minimum=1, maximum=MAX_LINE_COUNT),
            pricing_tiers=parse_pricing_tiers(entry.get("pricing_tiers"), product_id.strip()),
        )

        existing = by_key.get(item.key)
        if existing is None:
            by_key[item.key] = item
            continue
        if (existing.product_id, existing.variant_label, existing.tier_quantity) != (
            item.product_id, item.variant_label, item.tier_quantity
        ):
            raise ValidationError(f"Conflicting cart line items for key {item.key}")
        existing.count += item.count

    return list(by_key.values())


def parse_checkout_submission(payload: Any) -> CheckoutSubmission:
    """
    Structural validation of an order submission.

    Raises ValidationError for an empty cart, missing customer/shipping
    fields, or malformed email/phone.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    items = parse_cart_items(payload.get("items"))

    values = {key: _required_str(payload, key) for key in REQUIRED_CUSTOMER_FIELDS}

    if not EMAIL_RE.match(values["customer_email"]):
        raise ValidationError("Invalid email address format")
    if not PHONE_RE.match(values["customer_phone"]):
        raise ValidationError("Invalid phone number format")
    values["customer_email"] = normalize_email(values["customer_email"])

    if "subtotal_cents" not in payload:
        raise ValidationError("Missing required fields")
    declared_subtotal = coerce_int(payload.get("subtotal_cents"), "subtotal_cents", minimum=0)

    declared_units = None
    if payload.get("total_units") is not None:
        declared_units = coerce_int(payload.get("total_units"), "total_units", minimum=0)

    referral_code = payload.get("referral_code")
    if referral_code is not None and not isinstance(referral_code, str):
        raise ValidationError("referral_code must be a string")
    if referral_code is not None and not referral_code.strip():
        referral_code = None

    return CheckoutSubmission(
        items=items,
        declared_subtotal_cents=declared_subtotal,
        declared_total_units=declared_units,
        referral_code=referral_code,
        **values,
    )
