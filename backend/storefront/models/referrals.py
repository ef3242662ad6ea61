from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


DISCOUNT_PERCENT = "percent"
DISCOUNT_FIXED = "fixed"
DISCOUNT_TYPES = (DISCOUNT_PERCENT, DISCOUNT_FIXED)


class ReferralPartner(db.Model):
    """
    A referral partner (affiliate) credited with the customers they bring in.

    commission_bps is paid on every order from an attributed customer, not
    only the first one.
    """
    __tablename__ = "referral_partners"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact_name = db.Column(db.String(255), nullable=True)
    contact_email = db.Column(db.String(255), nullable=True, unique=True)
    contact_phone = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    commission_bps = db.Column(db.Integer, nullable=False, default=0)

    # Defaults applied to new codes created without an explicit discount
    default_discount_type = db.Column(db.String(10), nullable=False, default=DISCOUNT_PERCENT)
    default_discount_value = db.Column(db.Integer, nullable=False, default=0)  # bps for percent, cents for fixed

    active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    codes = db.relationship(
        "ReferralCode",
        backref="partner",
        lazy=True,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<ReferralPartner id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_name": self.contact_name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "notes": self.notes,
            "commission_bps": self.commission_bps,
            "default_discount_type": self.default_discount_type,
            "default_discount_value": self.default_discount_value,
            "active": self.active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ReferralCode(db.Model):
    """
    Redeemable referral code owned by a partner.

    code is stored normalized (uppercase, alphanumerics only) and is
    globally unique. discount_value is basis points for percent codes and
    cents for fixed codes.

    current_redemptions only moves when an order is actually placed.
    """
    __tablename__ = "referral_codes"
    __table_args__ = (
        db.Index("ix_referral_codes_partner", "partner_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    partner_id = db.Column(
        db.Integer, db.ForeignKey("referral_partners.id", ondelete="CASCADE"), nullable=False
    )
    code = db.Column(db.String(64), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)

    discount_type = db.Column(db.String(10), nullable=False, default=DISCOUNT_PERCENT)
    discount_value = db.Column(db.Integer, nullable=False, default=0)
    min_order_subtotal_cents = db.Column(db.Integer, nullable=True)

    max_total_redemptions = db.Column(db.Integer, nullable=True)
    current_redemptions = db.Column(db.Integer, nullable=False, default=0)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def __repr__(self) -> str:
        return f"<ReferralCode id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "partner_id": self.partner_id,
            "code": self.code,
            "description": self.description,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "min_order_subtotal_cents": self.min_order_subtotal_cents,
            "max_total_redemptions": self.max_total_redemptions,
            "current_redemptions": self.current_redemptions,
            "starts_at": to_utc_z(self.starts_at),
            "expires_at": to_utc_z(self.expires_at),
            "active": self.active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ReferralAttribution(db.Model):
    """
    Lifetime binding of one customer to the partner of their first referred order.

    INVARIANT: at most one row per customer, ever. Enforced by the unique
    constraints on customer_email and customer_user_id; rows are only
    created on a successful first referred order and afterwards only
    accumulate revenue/order counts.
    """
    __tablename__ = "referral_attributions"
    __table_args__ = (
        db.UniqueConstraint("customer_email", name="uq_referral_attributions_customer_email"),
        db.UniqueConstraint("customer_user_id", name="uq_referral_attributions_customer_user"),
        db.Index("ix_referral_attributions_partner", "partner_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    partner_id = db.Column(
        db.Integer, db.ForeignKey("referral_partners.id", ondelete="CASCADE"), nullable=False
    )
    code_id = db.Column(
        db.Integer, db.ForeignKey("referral_codes.id", ondelete="SET NULL"), nullable=True
    )

    customer_email = db.Column(db.String(255), nullable=False)
    customer_user_id = db.Column(db.String(64), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)

    first_order_id = db.Column(db.Integer, nullable=True)
    first_order_number = db.Column(db.String(16), nullable=True)
    first_order_discount_cents = db.Column(db.Integer, nullable=False, default=0)

    lifetime_revenue_cents = db.Column(db.Integer, nullable=False, default=0)
    lifetime_commission_cents = db.Column(db.Integer, nullable=False, default=0)
    total_orders = db.Column(db.Integer, nullable=False, default=0)

    last_order_id = db.Column(db.Integer, nullable=True)
    last_order_number = db.Column(db.String(16), nullable=True)
    last_order_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    partner = db.relationship("ReferralPartner", backref=db.backref("attributions", lazy=True, cascade="all, delete-orphan"))
    code = db.relationship("ReferralCode")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "partner_id": self.partner_id,
            "code_id": self.code_id,
            "customer_email": self.customer_email,
            "customer_user_id": self.customer_user_id,
            "customer_name": self.customer_name,
            "first_order_id": self.first_order_id,
            "first_order_number": self.first_order_number,
            "first_order_discount_cents": self.first_order_discount_cents,
            "lifetime_revenue_cents": self.lifetime_revenue_cents,
            "lifetime_commission_cents": self.lifetime_commission_cents,
            "total_orders": self.total_orders,
            "last_order_id": self.last_order_id,
            "last_order_number": self.last_order_number,
            "last_order_at": to_utc_z(self.last_order_at),
            "created_at": to_utc_z(self.created_at),
        }
