from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


ORDER_STATUS_PENDING_PAYMENT = "PENDING_PAYMENT"
ORDER_STATUS_PAID = "PAID"
ORDER_STATUS_SHIPPED = "SHIPPED"
ORDER_STATUS_CANCELLED = "CANCELLED"

ORDER_STATUSES = (
    ORDER_STATUS_PENDING_PAYMENT,
    ORDER_STATUS_PAID,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_CANCELLED,
)


class Order(db.Model):
    """
    Customer order created by the checkout intake pipeline.

    Created exactly once with status PENDING_PAYMENT (payment is manual,
    out-of-band). Afterwards only admin status transitions mutate it.

    Money is integer cents:
    - gross_subtotal_cents: server-recomputed volume-priced subtotal
    - subtotal_cents: gross subtotal minus referral discount
    - total_cents: subtotal + shipping

    items holds the submitted cart line items with the server line totals.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.Index("ix_orders_referral_partner_status", "referral_partner_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-quotable 6-digit code
    order_number = db.Column(db.String(16), nullable=False, unique=True, index=True)
    status = db.Column(db.String(20), nullable=False, default=ORDER_STATUS_PENDING_PAYMENT, index=True)

    # Customer identity
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_phone = db.Column(db.String(32), nullable=False)
    customer_user_id = db.Column(db.String(64), nullable=True, index=True)

    # Shipping address
    shipping_street = db.Column(db.String(255), nullable=False)
    shipping_city = db.Column(db.String(128), nullable=False)
    shipping_state = db.Column(db.String(64), nullable=False)
    shipping_zip_code = db.Column(db.String(16), nullable=False)
    shipping_country = db.Column(db.String(64), nullable=False)

    items = db.Column(db.JSON, nullable=False)

    gross_subtotal_cents = db.Column(db.Integer, nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    total_units = db.Column(db.Integer, nullable=False)

    notes = db.Column(db.Text, nullable=True)
    tracking_number = db.Column(db.String(64), nullable=True)
    tracking_carrier = db.Column(db.String(10), nullable=True)  # UPS, USPS

    # Referral context (snapshot at order time)
    referral_partner_id = db.Column(
        db.Integer, db.ForeignKey("referral_partners.id", ondelete="SET NULL"), nullable=True
    )
    referral_partner_name = db.Column(db.String(255), nullable=True)
    referral_code_id = db.Column(
        db.Integer, db.ForeignKey("referral_codes.id", ondelete="SET NULL"), nullable=True
    )
    referral_code_value = db.Column(db.String(64), nullable=True)
    referral_attribution_id = db.Column(db.Integer, nullable=True, index=True)
    referral_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    referral_commission_bps = db.Column(db.Integer, nullable=False, default=0)
    referral_commission_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    @property
    def shipping_address(self) -> dict:
        return {
            "street": self.shipping_street,
            "city": self.shipping_city,
            "state": self.shipping_state,
            "zip_code": self.shipping_zip_code,
            "country": self.shipping_country,
        }

    def referral_context(self) -> dict | None:
        if self.referral_partner_id is None and self.referral_attribution_id is None:
            return None
        return {
            "partner_id": self.referral_partner_id,
            "partner_name": self.referral_partner_name,
            "code_id": self.referral_code_id,
            "code": self.referral_code_value,
            "attribution_id": self.referral_attribution_id,
            "discount_cents": self.referral_discount_cents,
            "commission_bps": self.referral_commission_bps,
            "commission_cents": self.referral_commission_cents,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "status": self.status,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "customer_user_id": self.customer_user_id,
            "shipping_address": self.shipping_address,
            "items": self.items,
            "gross_subtotal_cents": self.gross_subtotal_cents,
            "referral_discount_cents": self.referral_discount_cents,
            "subtotal_cents": self.subtotal_cents,
            "shipping_cents": self.shipping_cents,
            "total_cents": self.total_cents,
            "total_units": self.total_units,
            "notes": self.notes,
            "tracking_number": self.tracking_number,
            "tracking_carrier": self.tracking_carrier,
            "referral": self.referral_context(),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
