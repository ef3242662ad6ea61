"""
Order intake pipeline tests.

Verifies:
- Happy path pricing, stock, shipping and notifications
- Typed failures (VALIDATION_ERROR, RATE_LIMITED, OUT_OF_STOCK, UNKNOWN)
  with no partial writes
- Referral discount, attribution and redemption side effects
- Notifier failures never change the result
"""

import pytest

from storefront.extensions import db
from storefront.models import Order, ReferralAttribution, ReferralCode
from storefront.services import inventory_service, order_service, referral_service
from storefront.services.order_service import (
    ERROR_OUT_OF_STOCK,
    ERROR_RATE_LIMITED,
    ERROR_UNKNOWN,
    ERROR_VALIDATION,
    submit_order,
)

from factories import checkout_payload, line, make_code, make_partner, make_stock

CLIENT_IP = "203.0.113.9"


def submit(payload, ip=CLIENT_IP, user_id=None):
    return submit_order(payload, ip, user_id=user_id)


class TestHappyPath:
    def test_ten_singles_price_at_ten_break(self, db_session, notifier):
        make_stock(stock_units=25)

        result = submit(checkout_payload([line(count=10)], subtotal_cents=40000))

        assert result.success, result.error
        order = db.session.get(Order, result.order_id)
        assert len(order.order_number) == 6
        assert order.status == "PENDING_PAYMENT"
        assert order.gross_subtotal_cents == 40000
        assert order.subtotal_cents == 40000
        assert order.shipping_cents == 0
        assert order.total_cents == 40000
        assert order.total_units == 10
        assert order.items[0]["line_total_cents"] == 40000
        assert inventory_service.get_stock("bpc-157", "5mg") == 15
        assert db.session.query(ReferralAttribution).count() == 0
        assert order.referral_context() is None

    def test_flat_shipping_below_threshold(self, db_session, notifier):
        make_stock()
        result = submit(checkout_payload([line(count=2)], subtotal_cents=10000))

        assert result.success
        order = db.session.get(Order, result.order_id)
        assert order.shipping_cents == 1000
        assert order.total_cents == 11000

    def test_notifications_sent_after_commit(self, db_session, notifier):
        make_stock()
        result = submit(checkout_payload([line(count=1)], subtotal_cents=5000))

        assert notifier.sent == [("receipt", result.order_number), ("admin", result.order_number)]

    def test_email_is_normalized(self, db_session, notifier):
        make_stock()
        result = submit(checkout_payload([line()], subtotal_cents=5000, email="  Buyer@Example.COM "))
        assert result.success
        assert result.order["customer_email"] == "buyer@example.com"

    def test_one_cent_drift_tolerated(self, db_session, notifier):
        make_stock()
        result = submit(checkout_payload([line()], subtotal_cents=5001))
        assert result.success
        assert result.order["subtotal_cents"] == 5000

    def test_result_payload(self, db_session, notifier):
        make_stock()
        payload = submit(checkout_payload([line()], subtotal_cents=5000)).to_dict()
        assert payload["success"] is True
        assert set(payload) == {"success", "order_id", "order_number", "order"}


class TestValidation:
    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"items": []}, "Cart is empty"),
            ({"customer_name": ""}, "Missing required fields"),
            ({"shipping_zip_code": None}, "Missing required fields"),
            ({"customer_email": "not-an-email"}, "Invalid email address format"),
            ({"customer_phone": "call me"}, "Invalid phone number format"),
        ],
    )
    def test_structural_failures(self, db_session, notifier, overrides, message):
        make_stock()
        payload = checkout_payload([line()], subtotal_cents=5000)
        payload.update(overrides)

        result = submit(payload)

        assert not result.success
        assert result.error_code == ERROR_VALIDATION
        assert result.error == message
        assert db.session.query(Order).count() == 0

    def test_subtotal_mismatch_rejected_without_writes(self, db_session, notifier):
        make_stock(stock_units=10)

        # Client claims the 10-unit rate for 6 units
        result = submit(checkout_payload([line(count=6)], subtotal_cents=24000))

        assert result.error_code == ERROR_VALIDATION
        assert "Cart totals changed" in result.error
        assert inventory_service.get_stock("bpc-157", "5mg") == 10
        assert db.session.query(Order).count() == 0
        assert notifier.sent == []

    def test_tampered_pack_price_rejected(self, db_session, notifier):
        make_stock(stock_units=20)

        # 10-pack listed at $400.00, submitted at one cent
        result = submit(checkout_payload([line(tier_quantity=10, tier_price_cents=1)], subtotal_cents=1))

        assert result.error_code == ERROR_VALIDATION
        assert inventory_service.get_stock("bpc-157", "5mg") == 20
        assert db.session.query(Order).count() == 0

    def test_unit_count_mismatch_rejected(self, db_session, notifier):
        make_stock()
        result = submit(checkout_payload([line(count=2)], subtotal_cents=10000, total_units=3))
        assert result.error_code == ERROR_VALIDATION

    def test_bad_tier_table_rejected(self, db_session, notifier):
        make_stock()
        tiers = [{"quantity": 5, "price_cents": 22500}, {"quantity": 1, "price_cents": 5000}]
        result = submit(checkout_payload([line(tiers=tiers, tier_price_cents=5000)], subtotal_cents=5000))
        assert result.error_code == ERROR_VALIDATION

    def test_invalid_json_payload(self, db_session, notifier):
        result = submit(["not", "a", "dict"])
        assert result.error_code == ERROR_VALIDATION


class TestRateLimit:
    def test_eleventh_submission_is_rate_limited(self, db_session, notifier):
        make_stock(stock_units=100)
        for _ in range(10):
            assert submit(checkout_payload([line()], subtotal_cents=5000)).success

        result = submit(checkout_payload([line()], subtotal_cents=5000))

        assert result.error_code == ERROR_RATE_LIMITED
        assert result.retry_after_seconds > 0
        assert db.session.query(Order).count() == 10

    def test_invalid_attempts_count_toward_limit(self, db_session, notifier):
        make_stock()
        for _ in range(10):
            submit(checkout_payload([line()], subtotal_cents=1))

        result = submit(checkout_payload([line()], subtotal_cents=5000))
        assert result.error_code == ERROR_RATE_LIMITED


class TestStock:
    def test_out_of_stock_mutates_nothing(self, db_session, notifier):
        make_stock(variant_label="5mg", stock_units=10)
        make_stock(variant_label="10mg", stock_units=1)
        partner = make_partner()
        code = make_code(partner)

        payload = checkout_payload(
            [line(variant_label="5mg", count=2), line(variant_label="10mg", count=2)],
            subtotal_cents=20000,
            referral_code="JANE20",
        )
        result = submit(payload)

        assert result.error_code == ERROR_OUT_OF_STOCK
        assert "Only 1 unit of BPC-157 (10mg) remain" in result.error
        assert inventory_service.get_stock("bpc-157", "5mg") == 10
        assert inventory_service.get_stock("bpc-157", "10mg") == 1
        assert db.session.query(Order).count() == 0
        assert db.session.query(ReferralAttribution).count() == 0
        assert db.session.get(ReferralCode, code.id).current_redemptions == 0


class TestReferrals:
    def test_first_time_code_applies_discount(self, db_session, notifier):
        make_stock()
        partner = make_partner(commission_bps=1000)
        code = make_code(partner, "JANE20", "percent", 2000)

        result = submit(checkout_payload([line(count=2)], subtotal_cents=10000, referral_code="jane20"))

        assert result.success, result.error
        order = db.session.get(Order, result.order_id)
        assert order.gross_subtotal_cents == 10000
        assert order.referral_discount_cents == 2000
        assert order.subtotal_cents == 8000
        assert order.total_cents == 9000

        attribution = db.session.query(ReferralAttribution).one()
        assert attribution.partner_id == partner.id
        assert attribution.lifetime_revenue_cents == 8000
        assert attribution.total_orders == 1
        assert order.referral_attribution_id == attribution.id
        assert db.session.get(ReferralCode, code.id).current_redemptions == 1

    def test_rejected_code_rejects_order(self, db_session, notifier):
        make_stock(stock_units=5)
        make_code(make_partner(), max_total_redemptions=2, current_redemptions=2)

        result = submit(checkout_payload([line()], subtotal_cents=5000, referral_code="JANE20"))

        assert result.error_code == ERROR_VALIDATION
        assert result.error == "This referral code has reached its usage limit."
        assert inventory_service.get_stock("bpc-157", "5mg") == 5

    def test_repeat_customer_accumulates_without_discount(self, db_session, notifier):
        make_stock()
        partner = make_partner(commission_bps=1000)
        make_code(partner, "JANE20")
        make_code(make_partner(name="Other"), "OTHER50", discount_value=5000)

        first = submit(checkout_payload([line(count=2)], subtotal_cents=10000, referral_code="JANE20"))
        second = submit(checkout_payload([line(count=2)], subtotal_cents=10000, referral_code="OTHER50"))
        third = submit(checkout_payload([line(count=1)], subtotal_cents=5000))

        assert first.success and second.success and third.success
        assert second.order["referral_discount_cents"] == 0
        assert second.order["subtotal_cents"] == 10000
        assert second.order["referral"]["partner_id"] == partner.id

        attribution = db.session.query(ReferralAttribution).one()
        assert attribution.partner_id == partner.id
        assert attribution.total_orders == 3
        assert attribution.lifetime_revenue_cents == 8000 + 10000 + 5000
        assert attribution.last_order_number == third.order_number

    def test_same_cart_and_code_twice_keeps_one_attribution(self, db_session, notifier):
        make_stock()
        code = make_code(make_partner())
        payload = checkout_payload([line(count=2)], subtotal_cents=10000, referral_code="JANE20")

        submit(payload)
        submit(payload)

        attribution = db.session.query(ReferralAttribution).one()
        assert attribution.total_orders == 2
        # Only the first order redeemed the code
        assert db.session.get(ReferralCode, code.id).current_redemptions == 1

    def test_cap_reached_after_validation_rejects_order(self, db_session, notifier, monkeypatch):
        make_stock(stock_units=5)
        code = make_code(make_partner(), max_total_redemptions=1)
        resolve = referral_service.resolve_referral

        def resolve_then_exhaust(**kwargs):
            decision = resolve(**kwargs)
            # Another checkout takes the last slot before this one writes
            db.session.execute(
                ReferralCode.__table__.update()
                .where(ReferralCode.id == code.id)
                .values(current_redemptions=1)
            )
            db.session.commit()
            return decision

        monkeypatch.setattr(referral_service, "resolve_referral", resolve_then_exhaust)

        result = submit(checkout_payload([line()], subtotal_cents=5000, referral_code="JANE20"))

        assert result.error_code == ERROR_VALIDATION
        assert result.error == "This referral code has reached its usage limit."
        assert inventory_service.get_stock("bpc-157", "5mg") == 5
        assert db.session.query(Order).count() == 0
        assert db.session.get(ReferralCode, code.id).current_redemptions == 1

    def test_finalize_failure_keeps_order(self, db_session, notifier, monkeypatch):
        make_stock()
        make_code(make_partner())

        def explode(*args, **kwargs):
            raise RuntimeError("referral store unavailable")

        monkeypatch.setattr(referral_service, "finalize_referral_for_order", explode)

        result = submit(checkout_payload([line(count=2)], subtotal_cents=10000, referral_code="JANE20"))

        assert result.success
        assert db.session.get(Order, result.order_id).referral_discount_cents == 2000


class TestFailureIsolation:
    def test_notifier_failure_does_not_fail_order(self, db_session, notifier):
        notifier.fail = True
        make_stock()

        result = submit(checkout_payload([line()], subtotal_cents=5000))

        assert result.success
        assert db.session.query(Order).count() == 1

    def test_unexpected_error_is_unknown(self, db_session, notifier, monkeypatch):
        make_stock(stock_units=3)

        def explode(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(order_service, "_build_order", explode)

        result = submit(checkout_payload([line()], subtotal_cents=5000))

        assert result.error_code == ERROR_UNKNOWN
        assert "disk full" not in result.error
        assert inventory_service.get_stock("bpc-157", "5mg") == 3

    def test_order_number_collision_retries(self, db_session, notifier, monkeypatch):
        make_stock(stock_units=3)
        first = submit(checkout_payload([line()], subtotal_cents=5000))

        numbers = iter([first.order_number] * 6 + ["654321"])
        monkeypatch.setattr(order_service, "_generate_order_number", lambda: next(numbers))

        second = submit(checkout_payload([line()], subtotal_cents=5000, email="other@example.com"))

        assert second.success, second.error
        assert second.order_number == "654321"
        assert inventory_service.get_stock("bpc-157", "5mg") == 1
