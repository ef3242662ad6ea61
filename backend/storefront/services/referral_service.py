"""
Referral Partner Service

WHY: Partners earn commission on every order from the customers they refer.
A customer is bound to exactly one partner for life: the partner whose
code was on their first referred order.

DECISION ORDER (resolve_referral):
1. Existing attribution for the customer (email or account id) wins.
   The customer gets no discount; the order still counts toward the
   partner's lifetime revenue. Any newly submitted code is ignored.
2. No attribution, no code: unattributed order.
3. No attribution, code submitted: validate partner active -> code active
   -> validity window -> redemption cap -> positive discount value ->
   minimum order subtotal. The first failure rejects the whole order.
4. Discount = min(subtotal, percent-or-fixed amount); zero rejects.
5. APPLIED decisions carry a pending attribution, written only by
   finalize_referral_for_order() after the order is durable. The code's
   redemption slot is claimed by claim_redemption() inside the order's
   own transaction; validating a code consumes nothing.

CONCURRENCY:
- Attribution uniqueness is enforced by unique constraints on
  customer_email and customer_user_id. The loser of a creation race folds
  its order into the winning attribution instead of failing.
- Counters (redemptions, lifetime revenue, order counts) move through
  single UPDATE ... SET col = col + n statements. The redemption UPDATE
  is guarded by current_redemptions < max_total_redemptions, so the cap
  holds under concurrent checkouts.

Money is integer cents; percentages are basis points (10000 = 100%).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    Order,
    ReferralAttribution,
    ReferralCode,
    ReferralPartner,
)
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING_PAYMENT,
    ORDER_STATUS_SHIPPED,
)
from ..models.referrals import DISCOUNT_FIXED, DISCOUNT_PERCENT, DISCOUNT_TYPES
from ..time_utils import utcnow, parse_iso_datetime
from ..validation import ConflictError, ValidationError, coerce_int, normalize_email
from .concurrency import begin_immediate, run_with_retry


REFERRAL_CODE_CLEANUP = re.compile(r"[^A-Z0-9]")
MAX_BPS = 10_000

DECISION_NONE = "none"
DECISION_ALREADY_ATTRIBUTED = "already_attributed"
DECISION_APPLIED = "applied"


class ReferralError(Exception):
    """Raised for referral administration errors."""
    pass


class ReferralRejectedError(Exception):
    """An explicitly entered code failed validation; the reason is user-facing."""
    def __init__(self, reason: str, code: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code


# =============================================================================
# NORMALIZATION & MONEY
# =============================================================================

def normalize_referral_code(value: str | None) -> str:
    if not value:
        return ""
    return REFERRAL_CODE_CLEANUP.sub("", value.strip().upper())


def _clamp_bps(value: int | None) -> int:
    if value is None:
        return 0
    return max(0, min(MAX_BPS, int(value)))


def _bps_of(amount_cents: int, bps: int) -> int:
    if amount_cents <= 0 or bps <= 0:
        return 0
    exact = Decimal(amount_cents) * Decimal(bps) / Decimal(MAX_BPS)
    return int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def commission_cents(amount_cents: int, commission_bps: int) -> int:
    return _bps_of(amount_cents, _clamp_bps(commission_bps))


# =============================================================================
# DISCOUNT VARIANTS
# =============================================================================

@dataclass(frozen=True)
class PercentDiscount:
    bps: int

    def compute_discount(self, subtotal_cents: int) -> int:
        return min(subtotal_cents, _bps_of(subtotal_cents, _clamp_bps(self.bps)))


@dataclass(frozen=True)
class FixedDiscount:
    cents: int

    def compute_discount(self, subtotal_cents: int) -> int:
        if subtotal_cents <= 0 or self.cents <= 0:
            return 0
        return min(subtotal_cents, self.cents)


def discount_policy_for(discount_type: str | None, discount_value: int | None):
    if discount_type == DISCOUNT_FIXED:
        return FixedDiscount(cents=int(discount_value or 0))
    return PercentDiscount(bps=int(discount_value or 0))


# =============================================================================
# DECISIONS
# =============================================================================

@dataclass
class PendingAttribution:
    partner_id: int
    partner_name: str
    code_id: int
    code_value: str
    customer_email: str
    customer_name: str
    customer_user_id: str | None
    discount_cents: int


@dataclass
class ReferralDecision:
    status: str = DECISION_NONE
    partner_id: int | None = None
    partner_name: str | None = None
    code_id: int | None = None
    code_value: str | None = None
    attribution_id: int | None = None
    discount_cents: int = 0
    commission_bps: int = 0
    commission_cents: int = 0
    pending: PendingAttribution | None = field(default=None, repr=False)

    @property
    def applied(self) -> bool:
        return self.status == DECISION_APPLIED

    @property
    def already_attributed(self) -> bool:
        return self.status == DECISION_ALREADY_ATTRIBUTED

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "partner_id": self.partner_id,
            "partner_name": self.partner_name,
            "code": self.code_value,
            "attribution_id": self.attribution_id,
            "discount_cents": self.discount_cents,
            "commission_bps": self.commission_bps,
            "commission_cents": self.commission_cents,
        }


# =============================================================================
# LOOKUPS & VALIDATION
# =============================================================================

def find_attribution(email: str | None, user_id: str | None = None) -> ReferralAttribution | None:
    """Any attribution bound to this customer's email or account id."""
    conditions = []
    if email:
        conditions.append(ReferralAttribution.customer_email == normalize_email(email))
    if user_id:
        conditions.append(ReferralAttribution.customer_user_id == user_id)
    if not conditions:
        return None
    return (
        db.session.query(ReferralAttribution)
        .filter(or_(*conditions))
        .order_by(ReferralAttribution.id)
        .first()
    )


def get_code(code_value: str) -> ReferralCode | None:
    normalized = normalize_referral_code(code_value)
    if not normalized:
        return None
    return db.session.query(ReferralCode).filter_by(code=normalized).first()


def validate_code_record(code: ReferralCode, now: datetime | None = None) -> str | None:
    """First failing rule as a user-facing reason, or None if the code is usable."""
    now = now or utcnow()
    partner = code.partner
    if partner is None or not partner.active:
        return "This partner is currently inactive."
    if not code.active:
        return "This referral code is inactive."
    if code.starts_at and code.starts_at > now:
        return "This referral code is not active yet."
    if code.expires_at and code.expires_at < now:
        return "This referral code has expired."
    if code.max_total_redemptions is not None and code.current_redemptions >= code.max_total_redemptions:
        return "This referral code has reached its usage limit."
    if code.discount_value is None or code.discount_value <= 0:
        return "This referral code does not provide a discount."
    return None


def validate_minimum_subtotal(code: ReferralCode, subtotal_cents: int) -> str | None:
    minimum = code.min_order_subtotal_cents
    if minimum and minimum > 0 and subtotal_cents < minimum:
        return f"This referral code requires a minimum order of ${minimum / 100:,.2f}."
    return None


# =============================================================================
# RESOLUTION
# =============================================================================

def _decision_for_attribution(attribution: ReferralAttribution, subtotal_cents: int) -> ReferralDecision:
    partner = attribution.partner
    commission_bps = _clamp_bps(partner.commission_bps if partner else 0)
    return ReferralDecision(
        status=DECISION_ALREADY_ATTRIBUTED,
        partner_id=attribution.partner_id,
        partner_name=partner.name if partner else None,
        code_id=attribution.code_id,
        code_value=attribution.code.code if attribution.code else None,
        attribution_id=attribution.id,
        discount_cents=0,
        commission_bps=commission_bps,
        commission_cents=commission_cents(subtotal_cents, commission_bps),
    )


def resolve_referral(
    *,
    customer_email: str,
    customer_name: str,
    subtotal_cents: int,
    submitted_code: str | None = None,
    user_id: str | None = None,
    now: datetime | None = None,
) -> ReferralDecision:
    """
    Decide the referral outcome for an order. Read-only.

    Raises ReferralRejectedError when an explicitly submitted code is
    unusable.
    """
    email = normalize_email(customer_email)

    existing = find_attribution(email, user_id)
    if existing is not None:
        return _decision_for_attribution(existing, subtotal_cents)

    if submitted_code is None or not submitted_code.strip():
        return ReferralDecision()

    normalized = normalize_referral_code(submitted_code)
    if not normalized:
        raise ReferralRejectedError("Enter a valid referral code.")

    code = get_code(normalized)
    if code is None:
        raise ReferralRejectedError("Referral code not found.", code=normalized)

    reason = validate_code_record(code, now) or validate_minimum_subtotal(code, subtotal_cents)
    if reason:
        raise ReferralRejectedError(reason, code=normalized)

    discount = discount_policy_for(code.discount_type, code.discount_value).compute_discount(subtotal_cents)
    if discount <= 0:
        raise ReferralRejectedError("This referral code does not apply to the current cart.", code=normalized)

    partner = code.partner
    commission_bps = _clamp_bps(partner.commission_bps)

    return ReferralDecision(
        status=DECISION_APPLIED,
        partner_id=partner.id,
        partner_name=partner.name,
        code_id=code.id,
        code_value=code.code,
        discount_cents=discount,
        commission_bps=commission_bps,
        commission_cents=commission_cents(subtotal_cents - discount, commission_bps),
        pending=PendingAttribution(
            partner_id=partner.id,
            partner_name=partner.name,
            code_id=code.id,
            code_value=code.code,
            customer_email=email,
            customer_name=customer_name,
            customer_user_id=user_id,
            discount_cents=discount,
        ),
    )


def evaluate_referral_code(
    *,
    code: str,
    customer_email: str,
    subtotal_cents: int,
    declared_subtotal_cents: int | None = None,
    user_id: str | None = None,
) -> dict:
    """
    Checkout preview for the "apply code" button. Never writes.

    Returns {"status": "applied" | "already-attributed" | "error", "message": ...}.
    """
    email = normalize_email(customer_email or "")
    if not email:
        return {"status": "error", "message": "Enter your email before applying a referral code."}

    normalized = normalize_referral_code(code)
    if not normalized:
        return {"status": "error", "message": "Enter a referral code to continue."}

    if declared_subtotal_cents is not None and abs(declared_subtotal_cents - subtotal_cents) > 1:
        return {
            "status": "error",
            "message": "Your cart changed while applying this code. Refresh or try again.",
        }

    try:
        decision = resolve_referral(
            customer_email=email,
            customer_name="",
            subtotal_cents=subtotal_cents,
            submitted_code=normalized,
            user_id=user_id,
        )
    except ReferralRejectedError as exc:
        return {"status": "error", "message": exc.reason}

    if decision.already_attributed:
        return {
            "status": "already-attributed",
            "partner_id": decision.partner_id,
            "partner_name": decision.partner_name,
            "attribution_id": decision.attribution_id,
            "message": f"This customer is already assigned to {decision.partner_name}.",
        }

    code_row = db.session.get(ReferralCode, decision.code_id)
    return {
        "status": "applied",
        "code": decision.code_value,
        "partner_id": decision.partner_id,
        "partner_name": decision.partner_name,
        "discount_cents": decision.discount_cents,
        "discount_type": code_row.discount_type,
        "discount_value": code_row.discount_value,
        "message": f"Referral code applied. You'll save ${decision.discount_cents / 100:,.2f}.",
    }


# =============================================================================
# FINALIZATION (after the order is committed)
# =============================================================================

def _accumulate(attribution_id: int, order: Order, commission: int) -> None:
    db.session.execute(
        update(ReferralAttribution)
        .where(ReferralAttribution.id == attribution_id)
        .values(
            lifetime_revenue_cents=ReferralAttribution.lifetime_revenue_cents + order.subtotal_cents,
            lifetime_commission_cents=ReferralAttribution.lifetime_commission_cents + commission,
            total_orders=ReferralAttribution.total_orders + 1,
            last_order_id=order.id,
            last_order_number=order.order_number,
            last_order_at=order.created_at or utcnow(),
        )
    )


def _increment_redemptions(code_id: int) -> bool:
    result = db.session.execute(
        update(ReferralCode)
        .where(
            ReferralCode.id == code_id,
            or_(
                ReferralCode.max_total_redemptions.is_(None),
                ReferralCode.current_redemptions < ReferralCode.max_total_redemptions,
            ),
        )
        .values(current_redemptions=ReferralCode.current_redemptions + 1)
    )
    return bool(result.rowcount)


def claim_redemption(decision: ReferralDecision | None) -> None:
    """
    Take one redemption slot for an APPLIED decision. Does not commit.

    Runs inside the order-creation transaction so the slot is consumed
    only if the order commits. Raises ReferralRejectedError when the cap
    was reached after the code was validated.
    """
    if decision is None or not decision.applied or decision.code_id is None:
        return
    if not _increment_redemptions(decision.code_id):
        raise ReferralRejectedError("This referral code has reached its usage limit.", decision.code_value)


def _create_attribution(order: Order, decision: ReferralDecision) -> ReferralAttribution:
    pending = decision.pending
    attribution = ReferralAttribution(
        partner_id=pending.partner_id,
        code_id=pending.code_id,
        customer_email=pending.customer_email,
        customer_user_id=pending.customer_user_id,
        customer_name=pending.customer_name,
        first_order_id=order.id,
        first_order_number=order.order_number,
        first_order_discount_cents=pending.discount_cents,
        lifetime_revenue_cents=order.subtotal_cents,
        lifetime_commission_cents=decision.commission_cents,
        total_orders=1,
        last_order_id=order.id,
        last_order_number=order.order_number,
        last_order_at=order.created_at or utcnow(),
    )
    db.session.add(attribution)
    db.session.flush()
    return attribution


def finalize_referral_for_order(order_id: int, decision: ReferralDecision) -> ReferralAttribution | None:
    """
    Apply referral side effects for a committed order. Commits.

    APPLIED: create the attribution. The redemption slot was already
    taken by claim_redemption() when the order was written. If another order for the same customer won the attribution race, the
    order is folded into the winner instead.
    ALREADY_ATTRIBUTED: accumulate revenue/commission/order count.
    """
    if decision is None or decision.status == DECISION_NONE:
        return None

    def _attach(order: Order, attribution: ReferralAttribution) -> None:
        order.referral_attribution_id = attribution.id

    def _apply_op():
        begin_immediate()
        order = db.session.get(Order, order_id)
        attribution = _create_attribution(order, decision)
        _attach(order, attribution)
        db.session.commit()
        return attribution

    def _fold_op():
        begin_immediate()
        order = db.session.get(Order, order_id)
        winner = find_attribution(decision.pending.customer_email, decision.pending.customer_user_id)
        if winner is None:
            raise ReferralError("Attribution conflict without a surviving attribution")
        partner = winner.partner
        commission_bps = _clamp_bps(partner.commission_bps if partner else 0)
        commission = commission_cents(order.subtotal_cents, commission_bps)
        _accumulate(winner.id, order, commission)
        order.referral_attribution_id = winner.id
        order.referral_partner_id = winner.partner_id
        order.referral_partner_name = partner.name if partner else None
        order.referral_commission_bps = commission_bps
        order.referral_commission_cents = commission
        db.session.commit()
        return winner

    def _accumulate_op():
        begin_immediate()
        order = db.session.get(Order, order_id)
        _accumulate(decision.attribution_id, order, decision.commission_cents)
        if order.referral_attribution_id is None:
            order.referral_attribution_id = decision.attribution_id
        db.session.commit()
        return db.session.get(ReferralAttribution, decision.attribution_id)

    if decision.applied:
        try:
            return run_with_retry(_apply_op)
        except IntegrityError:
            db.session.rollback()
            return run_with_retry(_fold_op)

    return run_with_retry(_accumulate_op)


# =============================================================================
# ADMINISTRATION
# =============================================================================

def _optional_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def list_partners() -> list[ReferralPartner]:
    return db.session.query(ReferralPartner).order_by(ReferralPartner.name).all()


def create_partner(data: dict) -> ReferralPartner:
    name = _optional_str(data, "name")
    if not name:
        raise ValidationError("Partner name is required.")

    discount_type = (data.get("default_discount_type") or DISCOUNT_PERCENT).strip().lower()
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError("default_discount_type must be percent or fixed")

    contact_email = _optional_str(data, "contact_email")
    if contact_email:
        contact_email = normalize_email(contact_email)
        if db.session.query(ReferralPartner).filter_by(contact_email=contact_email).first():
            raise ConflictError("A partner with that contact email already exists.")

    partner = ReferralPartner(
        name=name,
        contact_name=_optional_str(data, "contact_name"),
        contact_email=contact_email,
        contact_phone=_optional_str(data, "contact_phone"),
        notes=_optional_str(data, "notes"),
        commission_bps=_clamp_bps(coerce_int(data.get("commission_bps", 0), "commission_bps", minimum=0)),
        default_discount_type=discount_type,
        default_discount_value=coerce_int(data.get("default_discount_value", 0), "default_discount_value", minimum=0),
        active=True,
    )
    db.session.add(partner)
    db.session.commit()
    return partner


def set_partner_active(partner_id: int, active: bool) -> ReferralPartner:
    partner = db.session.get(ReferralPartner, partner_id)
    if partner is None:
        raise ReferralError("Partner not found")
    partner.active = bool(active)
    db.session.commit()
    return partner


def delete_partner(partner_id: int) -> None:
    partner = db.session.get(ReferralPartner, partner_id)
    if partner is None:
        raise ReferralError("Partner not found")
    db.session.delete(partner)
    db.session.commit()


def create_code(data: dict) -> ReferralCode:
    """
    Create a referral code for a partner.

    discount_type/discount_value default to the partner's defaults.
    discount_value is basis points for percent codes, cents for fixed.
    """
    partner_id = data.get("partner_id")
    if partner_id is None:
        raise ValidationError("Select a partner for this referral code.")
    partner = db.session.get(ReferralPartner, coerce_int(partner_id, "partner_id", minimum=1))
    if partner is None:
        raise ReferralError("Partner not found")

    normalized = normalize_referral_code(data.get("code") or "")
    if not normalized:
        raise ValidationError("Referral code must contain letters or numbers.")
    if db.session.query(ReferralCode).filter_by(code=normalized).first():
        raise ConflictError("That referral code is already in use.")

    discount_type = (data.get("discount_type") or partner.default_discount_type or DISCOUNT_PERCENT).strip().lower()
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError("discount_type must be percent or fixed")

    raw_value = data.get("discount_value")
    discount_value = partner.default_discount_value if raw_value is None else coerce_int(raw_value, "discount_value")
    if discount_value is None or discount_value <= 0:
        raise ValidationError("Discount value must be greater than zero.")
    if discount_type == DISCOUNT_PERCENT:
        discount_value = _clamp_bps(discount_value)

    min_subtotal = data.get("min_order_subtotal_cents")
    min_subtotal = coerce_int(min_subtotal, "min_order_subtotal_cents", minimum=0) if min_subtotal is not None else None

    max_total = data.get("max_total_redemptions")
    max_total = max(1, coerce_int(max_total, "max_total_redemptions")) if max_total is not None else None

    try:
        starts_at = parse_iso_datetime(data.get("starts_at"))
        expires_at = parse_iso_datetime(data.get("expires_at"))
    except ValueError:
        raise ValidationError("starts_at/expires_at must be ISO-8601 datetimes")
    if starts_at and expires_at and starts_at > expires_at:
        raise ValidationError("Start date must be before the expiration date.")

    code = ReferralCode(
        partner_id=partner.id,
        code=normalized,
        description=_optional_str(data, "description"),
        discount_type=discount_type,
        discount_value=discount_value,
        min_order_subtotal_cents=min_subtotal or None,
        max_total_redemptions=max_total,
        current_redemptions=0,
        starts_at=starts_at,
        expires_at=expires_at,
        active=True,
    )
    db.session.add(code)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("That referral code is already in use.")
    return code


def set_code_active(code_id: int, active: bool) -> ReferralCode:
    code = db.session.get(ReferralCode, code_id)
    if code is None:
        raise ReferralError("Referral code not found")
    code.active = bool(active)
    db.session.commit()
    return code


def delete_code(code_id: int) -> None:
    code = db.session.get(ReferralCode, code_id)
    if code is None:
        raise ReferralError("Referral code not found")
    db.session.delete(code)
    db.session.commit()


# =============================================================================
# DASHBOARD
# =============================================================================

def _order_totals_by_partner(statuses: tuple[str, ...], start: datetime | None = None, end: datetime | None = None) -> dict:
    q = db.session.query(
        Order.referral_partner_id,
        func.coalesce(func.sum(Order.subtotal_cents), 0),
        func.coalesce(func.sum(Order.referral_commission_cents), 0),
        func.count(Order.id),
    ).filter(
        Order.referral_partner_id.isnot(None),
        Order.status.in_(statuses),
    )
    if start is not None:
        q = q.filter(Order.created_at >= start)
    if end is not None:
        q = q.filter(Order.created_at < end)

    return {
        partner_id: {"revenue_cents": int(revenue), "commission_cents": int(commission), "orders": int(count)}
        for partner_id, revenue, commission, count in q.group_by(Order.referral_partner_id).all()
    }


def _period_bounds(year: int, month: int | None) -> tuple[datetime, datetime]:
    if month:
        start = datetime(year, month, 1)
        end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
        return start, end
    return datetime(year, 1, 1), datetime(year + 1, 1, 1)


def get_referral_dashboard(year: int | None = None, month: int | None = None, now: datetime | None = None) -> dict:
    """
    Partner performance summary for the admin dashboard.

    Actual revenue/commission counts PAID and SHIPPED orders; potential
    counts PENDING_PAYMENT. Cancelled orders never count.
    """
    now = now or utcnow()
    actual = (ORDER_STATUS_PAID, ORDER_STATUS_SHIPPED)
    potential = (ORDER_STATUS_PENDING_PAYMENT,)

    year_expr = func.extract("year", Order.created_at)
    available_years = sorted(
        {
            int(y)
            for (y,) in db.session.query(year_expr)
            .filter(Order.referral_partner_id.isnot(None), Order.status != ORDER_STATUS_CANCELLED)
            .distinct()
            .all()
            if y is not None
        },
        reverse=True,
    )

    resolved_year = year if year else (available_years[0] if available_years else now.year)
    resolved_month = month if month and 1 <= month <= 12 else None
    period_start, period_end = _period_bounds(resolved_year, resolved_month)

    lifetime_actual = _order_totals_by_partner(actual)
    lifetime_potential = _order_totals_by_partner(potential)
    period_actual = _order_totals_by_partner(actual, period_start, period_end)
    period_potential = _order_totals_by_partner(potential, period_start, period_end)

    customers = dict(
        db.session.query(ReferralAttribution.partner_id, func.count(ReferralAttribution.id))
        .group_by(ReferralAttribution.partner_id)
        .all()
    )
    last_orders = dict(
        db.session.query(ReferralAttribution.partner_id, func.max(ReferralAttribution.last_order_at))
        .group_by(ReferralAttribution.partner_id)
        .all()
    )

    empty = {"revenue_cents": 0, "commission_cents": 0, "orders": 0}
    partners = []
    for partner in list_partners():
        la = lifetime_actual.get(partner.id, empty)
        lp = lifetime_potential.get(partner.id, empty)
        pa = period_actual.get(partner.id, empty)
        pp = period_potential.get(partner.id, empty)
        summary = partner.to_dict()
        last_order_at = last_orders.get(partner.id)
        summary.update({
            "total_customers": int(customers.get(partner.id, 0)),
            "total_revenue_cents": la["revenue_cents"],
            "total_commission_cents": la["commission_cents"],
            "lifetime_potential_revenue_cents": lp["revenue_cents"],
            "lifetime_potential_commission_cents": lp["commission_cents"],
            "period_orders": pa["orders"],
            "period_revenue_cents": pa["revenue_cents"],
            "period_commission_cents": pa["commission_cents"],
            "period_potential_orders": pp["orders"],
            "period_potential_revenue_cents": pp["revenue_cents"],
            "period_potential_commission_cents": pp["commission_cents"],
            "last_order_at": last_order_at.isoformat() if last_order_at else None,
            "codes": [c.to_dict() for c in sorted(partner.codes, key=lambda c: c.code)],
        })
        partners.append(summary)

    recent_orders = db.session.query(func.count(Order.id)).filter(
        Order.referral_partner_id.isnot(None),
        Order.status != ORDER_STATUS_CANCELLED,
        Order.created_at >= now - timedelta(days=30),
    ).scalar() or 0

    def _sum(rows: list[dict], key: str) -> int:
        return sum(r[key] for r in rows)

    return {
        "filters": {
            "years": sorted(set(available_years) | {resolved_year}, reverse=True),
            "selected_year": resolved_year,
            "selected_month": resolved_month,
        },
        "totals": {
            "partners": len(partners),
            "active_partners": sum(1 for p in partners if p["active"]),
            "active_codes": db.session.query(func.count(ReferralCode.id)).filter_by(active=True).scalar() or 0,
            "total_customers": _sum(partners, "total_customers"),
            "attributed_orders_last_30_days": int(recent_orders),
            "lifetime_revenue_cents": _sum(partners, "total_revenue_cents"),
            "lifetime_commission_cents": _sum(partners, "total_commission_cents"),
            "lifetime_potential_revenue_cents": _sum(partners, "lifetime_potential_revenue_cents"),
            "lifetime_potential_commission_cents": _sum(partners, "lifetime_potential_commission_cents"),
            "period_orders": _sum(partners, "period_orders"),
            "period_revenue_cents": _sum(partners, "period_revenue_cents"),
            "period_commission_cents": _sum(partners, "period_commission_cents"),
            "period_potential_orders": _sum(partners, "period_potential_orders"),
            "period_potential_revenue_cents": _sum(partners, "period_potential_revenue_cents"),
            "period_potential_commission_cents": _sum(partners, "period_potential_commission_cents"),
        },
        "partners": partners,
    }
