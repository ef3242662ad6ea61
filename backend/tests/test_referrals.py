"""
Referral resolver tests.

Verifies:
- Validation order and rejection reasons for explicit codes
- Existing attribution wins over any new code
- Discount variants never exceed the subtotal
- Finalization creates or accumulates exactly one attribution
- Admin partner/code management and the dashboard
"""

from datetime import timedelta

import pytest

from storefront.extensions import db
from storefront.models import Order, ReferralAttribution, ReferralCode
from storefront.services import referral_service
from storefront.services.referral_service import (
    DECISION_ALREADY_ATTRIBUTED,
    DECISION_APPLIED,
    DECISION_NONE,
    FixedDiscount,
    PercentDiscount,
    ReferralRejectedError,
    discount_policy_for,
    normalize_referral_code,
)
from storefront.time_utils import utcnow
from storefront.validation import ConflictError, ValidationError

from factories import make_code, make_partner


def resolve(code=None, email="buyer@example.com", subtotal=10000, user_id=None):
    return referral_service.resolve_referral(
        customer_email=email,
        customer_name="Pat Buyer",
        subtotal_cents=subtotal,
        submitted_code=code,
        user_id=user_id,
    )


def persisted_order(number="100001", subtotal=10000, email="buyer@example.com", status="PENDING_PAYMENT", **kwargs):
    order = Order(
        order_number=number,
        status=status,
        customer_name="Pat Buyer",
        customer_email=email,
        customer_phone="555-0100",
        shipping_street="1 Main St",
        shipping_city="Springfield",
        shipping_state="IL",
        shipping_zip_code="62701",
        shipping_country="US",
        items=[],
        gross_subtotal_cents=kwargs.pop("gross_subtotal_cents", subtotal),
        subtotal_cents=subtotal,
        shipping_cents=0,
        total_cents=subtotal,
        total_units=1,
        **kwargs,
    )
    db.session.add(order)
    db.session.commit()
    return order


class TestNormalization:
    def test_code_normalized(self):
        assert normalize_referral_code(" jane-20 ") == "JANE20"
        assert normalize_referral_code("***") == ""
        assert normalize_referral_code(None) == ""

    def test_percent_discount_capped_at_subtotal(self):
        assert PercentDiscount(2000).compute_discount(10000) == 2000
        assert PercentDiscount(20000).compute_discount(10000) == 10000

    def test_fixed_discount_capped_at_subtotal(self):
        assert FixedDiscount(1500).compute_discount(10000) == 1500
        assert FixedDiscount(15000).compute_discount(10000) == 10000
        assert FixedDiscount(1500).compute_discount(0) == 0

    def test_policy_from_type(self):
        assert isinstance(discount_policy_for("fixed", 500), FixedDiscount)
        assert isinstance(discount_policy_for("percent", 500), PercentDiscount)


class TestResolve:
    def test_no_code_no_attribution(self, db_session):
        assert resolve().status == DECISION_NONE

    def test_blank_code_is_no_code(self, db_session):
        assert resolve(code="   ").status == DECISION_NONE

    def test_applied_percent_code(self, db_session):
        partner = make_partner(commission_bps=1000)
        make_code(partner, "JANE20", "percent", 2000)

        decision = resolve(code="jane-20", subtotal=10000)

        assert decision.status == DECISION_APPLIED
        assert decision.discount_cents == 2000
        # 10% commission on the post-discount subtotal
        assert decision.commission_cents == 800
        assert decision.pending.customer_email == "buyer@example.com"

    def test_resolve_consumes_nothing(self, db_session):
        partner = make_partner()
        code = make_code(partner, max_total_redemptions=1)
        resolve(code="JANE20")
        resolve(code="JANE20")

        assert db.session.get(ReferralCode, code.id).current_redemptions == 0
        assert db.session.query(ReferralAttribution).count() == 0

    @pytest.mark.parametrize(
        "setup,reason",
        [
            ({"partner_active": False}, "This partner is currently inactive."),
            ({"active": False}, "This referral code is inactive."),
            ({"starts_in": 1}, "This referral code is not active yet."),
            ({"expires_in": -1}, "This referral code has expired."),
            ({"max_total_redemptions": 3, "current_redemptions": 3}, "This referral code has reached its usage limit."),
            ({"discount_value": 0}, "This referral code does not provide a discount."),
            ({"min_order_subtotal_cents": 20000}, "This referral code requires a minimum order of $200.00."),
        ],
    )
    def test_rejections(self, db_session, setup, reason):
        setup = dict(setup)
        partner = make_partner(active=setup.pop("partner_active", True))
        now = utcnow()
        if "starts_in" in setup:
            setup["starts_at"] = now + timedelta(days=setup.pop("starts_in"))
        if "expires_in" in setup:
            setup["expires_at"] = now + timedelta(days=setup.pop("expires_in"))
        make_code(partner, "JANE20", **setup)

        with pytest.raises(ReferralRejectedError) as exc:
            resolve(code="JANE20")
        assert exc.value.reason == reason

    def test_unknown_code(self, db_session):
        with pytest.raises(ReferralRejectedError) as exc:
            resolve(code="NOPE")
        assert exc.value.reason == "Referral code not found."

    def test_inactive_partner_checked_before_code(self, db_session):
        partner = make_partner(active=False)
        make_code(partner, active=False)
        with pytest.raises(ReferralRejectedError) as exc:
            resolve(code="JANE20")
        assert exc.value.reason == "This partner is currently inactive."

    def test_zero_subtotal_does_not_apply(self, db_session):
        make_code(make_partner())
        with pytest.raises(ReferralRejectedError) as exc:
            resolve(code="JANE20", subtotal=0)
        assert exc.value.reason == "This referral code does not apply to the current cart."

    def test_existing_attribution_ignores_new_code(self, db_session):
        original = make_partner(name="Original", commission_bps=500)
        original_code = make_code(original, "FIRST10", discount_value=1000)
        other = make_partner(name="Other")
        make_code(other, "OTHER50", discount_value=5000)

        db.session.add(ReferralAttribution(
            partner_id=original.id,
            code_id=original_code.id,
            customer_email="buyer@example.com",
            total_orders=1,
        ))
        db.session.commit()

        decision = resolve(code="OTHER50", email="Buyer@Example.com", subtotal=10000)

        assert decision.status == DECISION_ALREADY_ATTRIBUTED
        assert decision.partner_id == original.id
        assert decision.discount_cents == 0
        assert decision.commission_cents == 500

    def test_existing_attribution_wins_over_invalid_code(self, db_session):
        partner = make_partner()
        db.session.add(ReferralAttribution(partner_id=partner.id, customer_email="buyer@example.com"))
        db.session.commit()

        assert resolve(code="DOES-NOT-EXIST").status == DECISION_ALREADY_ATTRIBUTED

    def test_attribution_found_by_account_id(self, db_session):
        partner = make_partner()
        db.session.add(ReferralAttribution(
            partner_id=partner.id, customer_email="old@example.com", customer_user_id="user-1"
        ))
        db.session.commit()

        decision = resolve(email="new@example.com", user_id="user-1")
        assert decision.status == DECISION_ALREADY_ATTRIBUTED


class TestFinalize:
    def test_applied_creates_attribution(self, db_session):
        partner = make_partner(commission_bps=1000)
        code = make_code(partner, max_total_redemptions=5)
        decision = resolve(code="JANE20", subtotal=10000)
        order = persisted_order(subtotal=8000, gross_subtotal_cents=10000)

        attribution = referral_service.finalize_referral_for_order(order.id, decision)

        assert attribution.total_orders == 1
        assert attribution.lifetime_revenue_cents == 8000
        assert attribution.lifetime_commission_cents == 800
        assert attribution.first_order_number == "100001"
        # Redemption slots are claimed when the order is written, not here
        assert db.session.get(ReferralCode, code.id).current_redemptions == 0
        assert db.session.get(Order, order.id).referral_attribution_id == attribution.id

    def test_already_attributed_accumulates(self, db_session):
        partner = make_partner(commission_bps=1000)
        make_code(partner)
        first = persisted_order(number="100001", subtotal=8000)
        referral_service.finalize_referral_for_order(first.id, resolve(code="JANE20"))

        decision = resolve(code="JANE20", subtotal=5000)
        second = persisted_order(number="100002", subtotal=5000)
        referral_service.finalize_referral_for_order(second.id, decision)

        attributions = db.session.query(ReferralAttribution).all()
        assert len(attributions) == 1
        db.session.refresh(attributions[0])
        assert attributions[0].total_orders == 2
        assert attributions[0].lifetime_revenue_cents == 13000
        assert attributions[0].last_order_number == "100002"

    def test_losing_attribution_race_folds_into_winner(self, db_session):
        partner = make_partner(commission_bps=1000)
        code = make_code(partner)
        # Both orders resolved before either finalized
        decision_a = resolve(code="JANE20")
        decision_b = resolve(code="JANE20")
        order_a = persisted_order(number="100001", subtotal=8000)
        order_b = persisted_order(number="100002", subtotal=8000)

        winner = referral_service.finalize_referral_for_order(order_a.id, decision_a)
        folded = referral_service.finalize_referral_for_order(order_b.id, decision_b)

        assert folded.id == winner.id
        assert db.session.query(ReferralAttribution).count() == 1
        db.session.refresh(winner)
        assert winner.total_orders == 2
        assert db.session.get(ReferralCode, code.id).current_redemptions == 0

    def test_none_decision_is_noop(self, db_session):
        order = persisted_order()
        assert referral_service.finalize_referral_for_order(order.id, resolve()) is None


class TestClaimRedemption:
    def test_claim_takes_one_slot(self, db_session):
        code = make_code(make_partner(), max_total_redemptions=2)
        decision = resolve(code="JANE20")

        referral_service.claim_redemption(decision)
        db.session.commit()

        assert db.session.get(ReferralCode, code.id).current_redemptions == 1

    def test_claim_past_cap_is_rejected(self, db_session):
        code = make_code(make_partner(), max_total_redemptions=1)
        first = resolve(code="JANE20", email="first@example.com")
        second = resolve(code="JANE20", email="second@example.com")

        referral_service.claim_redemption(first)
        db.session.commit()
        with pytest.raises(ReferralRejectedError, match="usage limit"):
            referral_service.claim_redemption(second)
        db.session.rollback()

        assert db.session.get(ReferralCode, code.id).current_redemptions == 1

    def test_unbounded_code_and_non_applied_decisions(self, db_session):
        code = make_code(make_partner())

        referral_service.claim_redemption(resolve())
        referral_service.claim_redemption(resolve(code="JANE20"))
        db.session.commit()

        assert db.session.get(ReferralCode, code.id).current_redemptions == 1


class TestPreview:
    def test_applied_preview(self, db_session):
        make_code(make_partner())
        outcome = referral_service.evaluate_referral_code(
            code="jane20", customer_email="buyer@example.com", subtotal_cents=10000, declared_subtotal_cents=10000
        )
        assert outcome["status"] == "applied"
        assert outcome["discount_cents"] == 2000

    def test_preview_rejects_stale_cart(self, db_session):
        make_code(make_partner())
        outcome = referral_service.evaluate_referral_code(
            code="JANE20", customer_email="buyer@example.com", subtotal_cents=10000, declared_subtotal_cents=9000
        )
        assert outcome["status"] == "error"

    def test_preview_requires_email(self, db_session):
        outcome = referral_service.evaluate_referral_code(code="JANE20", customer_email="", subtotal_cents=10000)
        assert outcome == {"status": "error", "message": "Enter your email before applying a referral code."}

    def test_preview_already_attributed(self, db_session):
        partner = make_partner(name="Original")
        db.session.add(ReferralAttribution(partner_id=partner.id, customer_email="buyer@example.com"))
        db.session.commit()
        make_code(make_partner(name="Other"), "OTHER")

        outcome = referral_service.evaluate_referral_code(
            code="OTHER", customer_email="buyer@example.com", subtotal_cents=10000
        )
        assert outcome["status"] == "already-attributed"
        assert outcome["partner_name"] == "Original"


class TestAdmin:
    def test_create_code_uses_partner_defaults(self, db_session):
        partner = referral_service.create_partner({
            "name": "Coach Sam",
            "commission_bps": 1500,
            "default_discount_type": "fixed",
            "default_discount_value": 1000,
        })
        code = referral_service.create_code({"partner_id": partner.id, "code": "sam-10"})

        assert code.code == "SAM10"
        assert code.discount_type == "fixed"
        assert code.discount_value == 1000

    def test_duplicate_code_conflicts(self, db_session):
        partner = make_partner()
        make_code(partner, "JANE20")
        with pytest.raises(ConflictError):
            referral_service.create_code({"partner_id": partner.id, "code": "jane 20", "discount_value": 100})

    def test_code_requires_positive_discount(self, db_session):
        partner = make_partner()
        with pytest.raises(ValidationError):
            referral_service.create_code({"partner_id": partner.id, "code": "FREE", "discount_value": 0})

    def test_start_must_precede_expiry(self, db_session):
        partner = make_partner()
        with pytest.raises(ValidationError):
            referral_service.create_code({
                "partner_id": partner.id,
                "code": "WINDOW",
                "discount_value": 500,
                "starts_at": "2026-06-01T00:00:00Z",
                "expires_at": "2026-05-01T00:00:00Z",
            })

    def test_partner_requires_name(self, db_session):
        with pytest.raises(ValidationError):
            referral_service.create_partner({"name": "  "})

    def test_deactivate_and_delete(self, db_session):
        partner = make_partner()
        code = make_code(partner)
        referral_service.set_code_active(code.id, False)
        assert db.session.get(ReferralCode, code.id).active is False

        referral_service.delete_partner(partner.id)
        assert db.session.get(ReferralCode, code.id) is None


class TestDashboard:
    def test_actual_vs_potential_revenue(self, db_session):
        partner = make_partner(commission_bps=1000)
        common = {"referral_partner_id": partner.id, "referral_partner_name": partner.name}
        persisted_order(number="100001", subtotal=8000, status="PAID", referral_commission_cents=800, **common)
        persisted_order(number="100002", subtotal=5000, status="SHIPPED", referral_commission_cents=500, **common)
        persisted_order(number="100003", subtotal=3000, status="PENDING_PAYMENT", referral_commission_cents=300, **common)
        persisted_order(number="100004", subtotal=9000, status="CANCELLED", referral_commission_cents=900, **common)

        dashboard = referral_service.get_referral_dashboard()
        row = dashboard["partners"][0]

        assert row["total_revenue_cents"] == 13000
        assert row["total_commission_cents"] == 1300
        assert row["lifetime_potential_revenue_cents"] == 3000
        assert row["period_orders"] == 2
        assert dashboard["totals"]["lifetime_revenue_cents"] == 13000
        assert dashboard["filters"]["selected_year"] == utcnow().year

    def test_month_filter_excludes_other_months(self, db_session):
        partner = make_partner()
        persisted_order(
            number="100001",
            subtotal=8000,
            status="PAID",
            referral_partner_id=partner.id,
            created_at=utcnow().replace(year=2024, month=3, day=15),
        )

        march = referral_service.get_referral_dashboard(year=2024, month=3)
        april = referral_service.get_referral_dashboard(year=2024, month=4)

        assert march["partners"][0]["period_revenue_cents"] == 8000
        assert april["partners"][0]["period_revenue_cents"] == 0
        assert april["partners"][0]["total_revenue_cents"] == 8000
