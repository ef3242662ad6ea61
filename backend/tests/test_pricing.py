"""
Volume pricing tests.

Verifies:
- Pooled single-unit pricing per (product, variant)
- Packs keep their own bundle price
- Exempt products never pool
- subtotal == sum(line totals) exactly
- Tier table validation and shipping thresholds
"""

import pytest

from storefront.services.pricing_service import (
    derive_break_rates,
    effective_break,
    price_cart,
    shipping_cost_cents,
    subtotal_matches,
    validate_pricing_tiers,
)
from storefront.validation import PricingTierInput, ValidationError

from factories import cart_item


class TestPooling:
    def test_split_singles_pool_into_five_break(self):
        items = [
            cart_item(variant_label="5mg", count=3, key="a"),
            cart_item(variant_label="5mg", count=3, key="b"),
        ]
        pricing = price_cart(items)

        # 6 pooled units clear the 5-unit break (4500 / unit)
        assert pricing.line_totals == {"a": 13500, "b": 13500}
        assert pricing.subtotal_cents == 27000
        assert pricing.total_units == 6

    def test_ten_singles_price_at_ten_break(self):
        pricing = price_cart([cart_item(count=10)])
        assert pricing.subtotal_cents == 10 * 4000

    def test_below_first_break_uses_single_rate(self):
        pricing = price_cart([cart_item(count=4)])
        assert pricing.subtotal_cents == 4 * 5000

    def test_pooling_is_scoped_per_variant(self):
        items = [
            cart_item(variant_label="5mg", count=3, key="a"),
            cart_item(variant_label="10mg", count=3, key="b"),
        ]
        pricing = price_cart(items)
        assert pricing.line_totals == {"a": 15000, "b": 15000}

    def test_packs_do_not_count_toward_pool(self):
        items = [
            cart_item(tier_quantity=5, count=1, key="pack"),
            cart_item(tier_quantity=1, count=2, key="single"),
        ]
        pricing = price_cart(items)

        assert pricing.line_totals["pack"] == 22500
        assert pricing.line_totals["single"] == 10000
        assert pricing.total_units == 7

    def test_pack_priced_at_listed_bundle_price_times_count(self):
        pricing = price_cart([cart_item(tier_quantity=10, count=2, key="p")])
        assert pricing.line_totals == {"p": 80000}

    def test_pack_price_must_match_listed_tier(self):
        with pytest.raises(ValidationError, match="Cart totals changed"):
            price_cart([cart_item(tier_quantity=10, tier_price_cents=1, key="p")])

    def test_unlisted_pack_size_is_rejected(self):
        with pytest.raises(ValidationError, match="not sold in packs of 3"):
            price_cart([cart_item(tier_quantity=3, tier_price_cents=15000, key="p")])

    def test_exempt_product_never_pools(self):
        items = [cart_item(product_id="bpc-tb-combo", count=10, key="combo")]
        pricing = price_cart(items, exempt_products=["bpc-tb-combo"])
        assert pricing.subtotal_cents == 10 * 5000

    def test_exempt_list_is_configurable(self):
        items = [cart_item(product_id="bpc-tb-combo", count=10, key="combo")]
        pricing = price_cart(items, exempt_products=[])
        assert pricing.subtotal_cents == 10 * 4000


class TestRatesAndRounding:
    def test_empty_cart(self):
        pricing = price_cart([])
        assert pricing.subtotal_cents == 0
        assert pricing.line_totals == {}

    def test_subtotal_equals_sum_of_rounded_lines(self):
        tiers = [
            {"quantity": 1, "price_cents": 3333},
            {"quantity": 5, "price_cents": 14999},
            {"quantity": 10, "price_cents": 26999},
        ]
        items = [
            cart_item(tiers=tiers, count=3, key="a"),
            cart_item(tiers=tiers, count=4, key="b"),
            cart_item(tiers=tiers, variant_label="10mg", count=1, key="c"),
        ]
        pricing = price_cart(items)
        assert pricing.subtotal_cents == sum(pricing.line_totals.values())
        # 7 pooled units at 14999 / 5 = 2999.8 per unit
        assert pricing.line_totals["a"] == 8999
        assert pricing.line_totals["b"] == 11999

    def test_missing_break_falls_back_to_lower_break(self):
        tiers = [PricingTierInput(1, 5000), PricingTierInput(5, 22500)]
        rates = derive_break_rates(tiers, (1, 5, 10))
        assert rates[10] == rates[5]

    def test_missing_base_break_uses_cheapest_listed_rate(self):
        tiers = [PricingTierInput(5, 22500), PricingTierInput(10, 40000)]
        rates = derive_break_rates(tiers, (1, 5, 10))
        assert rates[1] == 4000

    def test_group_without_tiers_is_rejected(self):
        with pytest.raises(ValidationError, match="Pricing is unavailable"):
            price_cart([cart_item(tier_quantity=5, tier_price_cents=20000, tiers=[])])

    def test_zero_tiers_are_ignored(self):
        tiers = [
            {"quantity": 1, "price_cents": 5000},
            {"quantity": 5, "price_cents": 0},
            {"quantity": 0, "price_cents": 100},
        ]
        pricing = price_cart([cart_item(tiers=tiers, count=6)])
        assert pricing.subtotal_cents == 6 * 5000

    @pytest.mark.parametrize("units,expected", [(0, 1), (1, 1), (4, 1), (5, 5), (9, 5), (10, 10), (250, 10)])
    def test_effective_break(self, units, expected):
        assert effective_break(units, (1, 5, 10)) == expected


class TestTierValidation:
    def test_valid_table(self):
        validate_pricing_tiers([PricingTierInput(1, 5000), PricingTierInput(5, 22500)])

    def test_quantities_must_increase(self):
        with pytest.raises(ValidationError):
            validate_pricing_tiers([PricingTierInput(5, 22500), PricingTierInput(1, 5000)])

    def test_unit_price_must_not_increase(self):
        with pytest.raises(ValidationError):
            validate_pricing_tiers([PricingTierInput(1, 5000), PricingTierInput(5, 30000)])


class TestTotals:
    def test_subtotal_tolerance_is_one_cent(self):
        assert subtotal_matches(10001, 10000)
        assert subtotal_matches(9999, 10000)
        assert not subtotal_matches(10002, 10000)

    def test_free_shipping_at_threshold(self):
        assert shipping_cost_cents(30000, free_threshold_cents=30000, flat_cents=1000) == 0
        assert shipping_cost_cents(29999, free_threshold_cents=30000, flat_cents=1000) == 1000
