# Overview: Public checkout API; order submission, referral preview and order lookup.

# backend/storefront/routes/checkout.py
"""
Checkout routes (unauthenticated storefront surface).

The customer's account id, when the storefront session layer has one, is
read from g.customer_user_id; anonymous checkout leaves it unset.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..services import order_service
from ..services.order_service import (
    ERROR_OUT_OF_STOCK,
    ERROR_RATE_LIMITED,
    ERROR_VALIDATION,
)
from ..services.rate_limit_service import extract_client_ip
from ..validation import ValidationError


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")

ERROR_STATUS = {
    ERROR_RATE_LIMITED: 429,
    ERROR_VALIDATION: 400,
    ERROR_OUT_OF_STOCK: 409,
}


def _customer_user_id():
    return getattr(g, "customer_user_id", None)


@checkout_bp.post("/orders")
def submit_order_route():
    """
    Submit a checkout.

    Returns:
    - 201 with order number on success
    - 400 validation / rejected referral code
    - 409 out of stock
    - 429 rate limited (Retry-After header in seconds)
    - 500 unexpected failure
    """
    payload = request.get_json(silent=True)
    client_ip = extract_client_ip(request.headers, request.remote_addr)

    result = order_service.submit_order(payload, client_ip, user_id=_customer_user_id())
    if result.success:
        return jsonify(result.to_dict()), 201

    response = jsonify(result.to_dict())
    response.status_code = ERROR_STATUS.get(result.error_code, 500)
    if result.retry_after_seconds is not None:
        response.headers["Retry-After"] = str(result.retry_after_seconds)
    return response


@checkout_bp.post("/referrals/apply")
def apply_referral_route():
    """Preview a referral code against the current cart. Never consumes the code."""
    payload = request.get_json(silent=True) or {}
    try:
        outcome = order_service.preview_referral_code(payload, user_id=_customer_user_id())
    except ValidationError as e:
        return jsonify({"status": "error", "message": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to evaluate referral code")
        return jsonify({"status": "error", "message": "Unable to apply referral code right now."}), 500

    status = 400 if outcome.get("status") == "error" else 200
    return jsonify(outcome), status


@checkout_bp.get("/orders/lookup")
def lookup_order_route():
    """Order status for a customer who knows both the order number and email."""
    order_number = (request.args.get("order_number") or "").strip()
    email = (request.args.get("email") or "").strip()
    if not order_number or not email:
        return jsonify({"error": "order_number and email required"}), 400

    order = order_service.lookup_order(order_number, email)
    if order is None:
        return jsonify({"error": "Order not found"}), 404

    return jsonify({"order": order.to_dict()}), 200
