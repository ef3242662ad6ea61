"""
Order Intake & Lifecycle

submit_order() is the checkout pipeline:

1. Structural validation (cart, customer, shipping, tier tables)
2. Rate limit on client IP and normalized email
3. Server-side volume pricing; reject when the client's subtotal or unit
   count disagrees (stale cart or tampering)
4. Referral resolution; a rejected explicit code rejects the order
5. Inventory reservation      } one transaction: the order either
6. Order persisted as PENDING } exists with its stock taken, or neither
7. Referral side effects (attribution / redemption / accumulation), in
   their own transaction after the order is durable
8. Detached customer receipt + admin alert

Steps 1-6 are the success boundary. Failures after step 6 are logged and
never change the result returned to the caller.

Lifecycle (admin only):
    PENDING_PAYMENT -> PAID -> SHIPPED
    PENDING_PAYMENT | PAID -> CANCELLED   (restocks the order's items)
SHIPPED and CANCELLED are terminal.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order
from ..models.orders import (
    ORDER_STATUSES,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING_PAYMENT,
    ORDER_STATUS_SHIPPED,
)
from ..validation import (
    CartLineItem,
    CheckoutSubmission,
    PricingTierInput,
    ValidationError,
    coerce_int,
    normalize_email,
    parse_cart_items,
    parse_checkout_submission,
)
from . import inventory_service, pricing_service, referral_service
from .concurrency import begin_immediate, lock_for_update, run_with_retry
from .inventory_service import OutOfStockError
from .notification_service import notify_order
from .rate_limit_service import RateLimitedError, check_order_submission
from .referral_service import ReferralDecision, ReferralRejectedError


ERROR_RATE_LIMITED = "RATE_LIMITED"
ERROR_VALIDATION = "VALIDATION_ERROR"
ERROR_OUT_OF_STOCK = "OUT_OF_STOCK"
ERROR_UNKNOWN = "UNKNOWN"

ORDER_NUMBER_ATTEMPTS = 5
SHIPPING_CARRIERS = ("UPS", "USPS")

ALLOWED_TRANSITIONS = {
    ORDER_STATUS_PENDING_PAYMENT: {ORDER_STATUS_PAID, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_PAID: {ORDER_STATUS_SHIPPED, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_SHIPPED: set(),
    ORDER_STATUS_CANCELLED: set(),
}


class OrderError(Exception):
    """Raised for invalid admin operations on an existing order."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class OrderNotFoundError(OrderError):
    pass


@dataclass
class OrderResult:
    success: bool
    order_id: int | None = None
    order_number: str | None = None
    order: dict | None = None
    error: str | None = None
    error_code: str | None = None
    retry_after_seconds: int | None = None
    details: dict = field(default_factory=dict)

    @classmethod
    def failure(cls, error_code: str, error: str, **kwargs) -> "OrderResult":
        return cls(success=False, error_code=error_code, error=error, **kwargs)

    def to_dict(self) -> dict:
        if self.success:
            return {
                "success": True,
                "order_id": self.order_id,
                "order_number": self.order_number,
                "order": self.order,
            }
        payload = {"success": False, "error": self.error, "error_code": self.error_code}
        if self.retry_after_seconds is not None:
            payload["retry_after_seconds"] = self.retry_after_seconds
        if self.details:
            payload["details"] = self.details
        return payload


# =============================================================================
# HELPERS
# =============================================================================

def _pricing_options() -> dict:
    config = current_app.config
    return {
        "breaks": config.get("PRICING_BREAKS") or pricing_service.DEFAULT_BREAKS,
        "exempt_products": config.get("POOLING_EXEMPT_PRODUCTS") or (),
    }


def price_items(items: list[CartLineItem]) -> pricing_service.VolumePricing:
    for item in items:
        pricing_service.validate_pricing_tiers(item.pricing_tiers)
    return pricing_service.price_cart(items, **_pricing_options())


def _order_rate_limiter():
    return current_app.extensions["storefront.order_rate_limiter"]


def _generate_order_number() -> str:
    return f"{secrets.randbelow(900_000) + 100_000}"


def allocate_order_number() -> str:
    """Random 6-digit number not yet used. The unique index settles races."""
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = _generate_order_number()
        if not db.session.query(Order.id).filter_by(order_number=candidate).first():
            return candidate
    return _generate_order_number()


def _stored_items(items: list[CartLineItem], pricing: pricing_service.VolumePricing) -> list[dict]:
    stored = []
    for item in items:
        entry = item.to_dict()
        entry["units"] = item.units
        entry["line_total_cents"] = pricing.line_totals.get(item.key, 0)
        stored.append(entry)
    return stored


def _cart_items_from_order(order: Order) -> list[CartLineItem]:
    items = []
    for entry in order.items or []:
        items.append(CartLineItem(
            key=entry.get("key") or f"{entry['product_id']}|{entry['variant_label']}|{entry['tier_quantity']}",
            product_id=entry["product_id"],
            product_name=entry.get("product_name") or entry["product_id"],
            variant_label=entry["variant_label"],
            tier_quantity=int(entry.get("tier_quantity") or 1),
            tier_price_cents=int(entry.get("tier_price_cents") or 0),
            count=int(entry.get("count") or 1),
            pricing_tiers=[
                PricingTierInput(quantity=t["quantity"], price_cents=t["price_cents"])
                for t in entry.get("pricing_tiers") or []
            ],
        ))
    return items


def _build_order(
    submission: CheckoutSubmission,
    pricing: pricing_service.VolumePricing,
    decision: ReferralDecision,
    user_id: str | None,
) -> Order:
    config = current_app.config
    discount = decision.discount_cents if decision.applied else 0
    subtotal = pricing.subtotal_cents - discount
    shipping = pricing_service.shipping_cost_cents(
        subtotal,
        free_threshold_cents=config.get("FREE_SHIPPING_THRESHOLD_CENTS", 30000),
        flat_cents=config.get("FLAT_SHIPPING_CENTS", 1000),
    )

    order = Order(
        order_number=allocate_order_number(),
        status=ORDER_STATUS_PENDING_PAYMENT,
        customer_name=submission.customer_name,
        customer_email=submission.customer_email,
        customer_phone=submission.customer_phone,
        customer_user_id=user_id,
        shipping_street=submission.shipping_street,
        shipping_city=submission.shipping_city,
        shipping_state=submission.shipping_state,
        shipping_zip_code=submission.shipping_zip_code,
        shipping_country=submission.shipping_country,
        items=_stored_items(submission.items, pricing),
        gross_subtotal_cents=pricing.subtotal_cents,
        subtotal_cents=subtotal,
        shipping_cents=shipping,
        total_cents=subtotal + shipping,
        total_units=pricing.total_units,
        referral_discount_cents=discount,
    )

    if decision.status != referral_service.DECISION_NONE:
        order.referral_partner_id = decision.partner_id
        order.referral_partner_name = decision.partner_name
        order.referral_code_id = decision.code_id
        order.referral_code_value = decision.code_value
        order.referral_attribution_id = decision.attribution_id
        order.referral_commission_bps = decision.commission_bps
        order.referral_commission_cents = decision.commission_cents

    return order


def _reserve_and_persist(submission, pricing, decision, user_id) -> Order:
    """Steps 5-6 in one transaction. Rolls back on any failure."""

    def _op():
        begin_immediate()
        inventory_service.reserve_items(submission.items)
        referral_service.claim_redemption(decision)
        order = _build_order(submission, pricing, decision, user_id)
        db.session.add(order)
        db.session.commit()
        return order

    last_exc = None
    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        try:
            return run_with_retry(_op)
        except IntegrityError as exc:
            # Order number collision; the reservation rolled back with it
            db.session.rollback()
            last_exc = exc
            current_app.logger.warning("Order number collision, retrying (attempt %s)", attempt + 1)
        except Exception:
            db.session.rollback()
            raise
    raise last_exc


# =============================================================================
# INTAKE
# =============================================================================

def submit_order(payload: dict, client_ip: str, user_id: str | None = None) -> OrderResult:
    """
    Run the checkout pipeline. Never raises; failures come back typed.
    """
    email_context = None
    try:
        # 1. Structure
        submission = parse_checkout_submission(payload)
        email_context = submission.customer_email
        for item in submission.items:
            pricing_service.validate_pricing_tiers(item.pricing_tiers)

        # 2. Throttle
        check_order_submission(_order_rate_limiter(), client_ip, submission.customer_email)

        # 3. Price
        pricing = pricing_service.price_cart(submission.items, **_pricing_options())
        if (
            submission.declared_total_units is not None
            and submission.declared_total_units != pricing.total_units
        ):
            raise ValidationError("Cart quantities changed. Refresh your cart and try again.")
        if not pricing_service.subtotal_matches(submission.declared_subtotal_cents, pricing.subtotal_cents):
            current_app.logger.warning(
                "Subtotal mismatch for %s: declared=%s computed=%s",
                submission.customer_email,
                submission.declared_subtotal_cents,
                pricing.subtotal_cents,
            )
            raise ValidationError("Cart totals changed. Refresh your cart and try again.")

        # 4. Referral
        decision = referral_service.resolve_referral(
            customer_email=submission.customer_email,
            customer_name=submission.customer_name,
            subtotal_cents=pricing.subtotal_cents,
            submitted_code=submission.referral_code,
            user_id=user_id,
        )

        # 5-6. Reserve + persist
        order = _reserve_and_persist(submission, pricing, decision, user_id)

    except ValidationError as e:
        current_app.logger.info("Order rejected (validation) for %s: %s", email_context, e)
        return OrderResult.failure(ERROR_VALIDATION, str(e))
    except ReferralRejectedError as e:
        current_app.logger.info("Order rejected (referral %s) for %s: %s", e.code, email_context, e.reason)
        return OrderResult.failure(ERROR_VALIDATION, e.reason, details={"referral_code": e.code})
    except RateLimitedError as e:
        current_app.logger.warning("Order rate limited for ip=%s email=%s", client_ip, email_context)
        return OrderResult.failure(
            ERROR_RATE_LIMITED, str(e), retry_after_seconds=e.retry_after_seconds
        )
    except OutOfStockError as e:
        current_app.logger.info("Order rejected (stock) for %s: %s", email_context, e)
        return OrderResult.failure(ERROR_OUT_OF_STOCK, str(e), details=e.details)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create order for %s", email_context)
        return OrderResult.failure(ERROR_UNKNOWN, "Unable to submit your order right now. Please try again.")

    order_id = order.id
    order_number = order.order_number

    # 7. Referral side effects (best-effort once the order is durable)
    if decision.status != referral_service.DECISION_NONE:
        try:
            referral_service.finalize_referral_for_order(order_id, decision)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Failed to finalize referral for order %s", order_number)

    # 8. Notifications
    try:
        notify_order("send_order_receipt", order_id)
        notify_order("send_admin_alert", order_id)
    except Exception:
        current_app.logger.exception("Failed to dispatch notifications for order %s", order_number)

    order = db.session.get(Order, order_id)
    return OrderResult(
        success=True,
        order_id=order_id,
        order_number=order_number,
        order=order.to_dict() if order else None,
    )


def preview_referral_code(payload: dict, user_id: str | None = None) -> dict:
    """Checkout "apply code" preview against the server-priced cart."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    items = parse_cart_items(payload.get("items"))
    pricing = price_items(items)

    declared = payload.get("subtotal_cents")
    declared = coerce_int(declared, "subtotal_cents", minimum=0) if declared is not None else None

    return referral_service.evaluate_referral_code(
        code=payload.get("code") or payload.get("referral_code") or "",
        customer_email=payload.get("customer_email") or "",
        subtotal_cents=pricing.subtotal_cents,
        declared_subtotal_cents=declared,
        user_id=user_id,
    )


# =============================================================================
# LIFECYCLE
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError("Order not found", details={"order_id": order_id})
    return order


def get_order_by_number(order_number: str) -> Order | None:
    if not order_number:
        return None
    return db.session.query(Order).filter_by(order_number=str(order_number).strip()).first()


def lookup_order(order_number: str, email: str) -> Order | None:
    """Customer-facing lookup: the email must match the order."""
    order = get_order_by_number(order_number)
    if order is None or not email:
        return None
    if order.customer_email != normalize_email(email):
        return None
    return order


def list_orders(status: str | None = None, limit: int = 100, offset: int = 0) -> list[Order]:
    q = db.session.query(Order)
    if status:
        q = q.filter(Order.status == status.upper())
    return q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def update_order_status(
    order_id: int,
    status: str,
    *,
    notes: str | None = None,
    tracking_number: str | None = None,
    tracking_carrier: str | None = None,
) -> Order:
    """
    Apply an admin status transition. Commits.

    Re-submitting the current status only updates notes. Cancelling
    restocks every unit on the order in the same transaction.
    """
    target = (status or "").strip().upper()
    if target not in ORDER_STATUSES:
        raise OrderError(f"Invalid status: {status}")

    tracking_number = (tracking_number or "").strip() or None
    tracking_carrier = (tracking_carrier or "").strip().upper() or None

    if target == ORDER_STATUS_SHIPPED:
        if not tracking_number or not tracking_carrier:
            raise OrderError("Tracking number and carrier are required to mark an order shipped.")
        if tracking_carrier not in SHIPPING_CARRIERS:
            raise OrderError("Carrier must be UPS or USPS.")
    elif tracking_number or tracking_carrier:
        raise OrderError("Tracking details can only be set when marking an order shipped.")

    def _op():
        begin_immediate()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise OrderNotFoundError("Order not found", details={"order_id": order_id})

        previous = order.status
        if notes is not None:
            order.notes = notes.strip() or None

        if previous == target:
            db.session.commit()
            return order, False

        if not can_transition(previous, target):
            raise OrderError(
                f"Cannot change order from {previous} to {target}",
                details={"from": previous, "to": target},
            )

        if target == ORDER_STATUS_CANCELLED:
            inventory_service.restock_items(_cart_items_from_order(order))
        if target == ORDER_STATUS_SHIPPED:
            order.tracking_number = tracking_number
            order.tracking_carrier = tracking_carrier

        order.status = target
        db.session.commit()
        return order, True

    try:
        order, changed = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    if changed:
        current_app.logger.info("Order %s moved to %s", order.order_number, order.status)
        if order.status == ORDER_STATUS_PAID:
            notify_order("send_order_paid", order.id)
        elif order.status == ORDER_STATUS_SHIPPED:
            notify_order("send_order_shipped", order.id)

    return order


def delete_order(order_id: int) -> None:
    """Admin purge. Does not touch inventory or referral totals."""
    order = get_order(order_id)
    db.session.delete(order)
    db.session.commit()
