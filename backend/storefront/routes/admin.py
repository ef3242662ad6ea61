# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/storefront/routes/admin.py
"""
Admin routes for order fulfilment, stock and referral partners.

Provides endpoints for:
- Orders (list, get, status transitions, purge)
- Inventory (list, set stock)
- Referral partners and codes (create, activate/deactivate, delete)
- Referral dashboard

All endpoints require the admin API key (see decorators.require_admin).
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_admin
from ..services import inventory_service, order_service, referral_service
from ..services.order_service import OrderError, OrderNotFoundError
from ..services.referral_service import ReferralError
from ..validation import ConflictError, ValidationError, coerce_int

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _bool_field(data: dict, key: str) -> bool:
    value = data.get(key)
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false")
    return value


# =============================================================================
# ORDERS
# =============================================================================

@admin_bp.get("/orders")
@require_admin
def list_orders():
    """
    List orders, newest first.

    Query params:
    - status: PENDING_PAYMENT | PAID | SHIPPED | CANCELLED
    - limit (default 100), offset
    """
    status = request.args.get("status")
    limit = min(request.args.get("limit", 100, type=int), 500)
    offset = request.args.get("offset", 0, type=int)

    orders = order_service.list_orders(status=status, limit=limit, offset=offset)
    return jsonify({"orders": [o.to_dict() for o in orders], "count": len(orders)})


@admin_bp.get("/orders/<int:order_id>")
@require_admin
def get_order(order_id: int):
    try:
        order = order_service.get_order(order_id)
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"order": order.to_dict()})


@admin_bp.post("/orders/<int:order_id>/status")
@require_admin
def update_order_status(order_id: int):
    """
    Change order status.

    Request body:
    - status: str (required)
    - notes: str (optional)
    - tracking_number, tracking_carrier (required together for SHIPPED)
    """
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return jsonify({"error": "status required"}), 400

    try:
        order = order_service.update_order_status(
            order_id,
            data["status"],
            notes=data.get("notes"),
            tracking_number=data.get("tracking_number"),
            tracking_carrier=data.get("tracking_carrier"),
        )
        return jsonify({"order": order.to_dict()})
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except OrderError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to update status for order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.delete("/orders/<int:order_id>")
@require_admin
def delete_order(order_id: int):
    try:
        order_service.delete_order(order_id)
        return jsonify({"deleted": True})
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to delete order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# INVENTORY
# =============================================================================

@admin_bp.get("/inventory")
@require_admin
def list_inventory():
    rows = inventory_service.list_inventory(request.args.get("product_id"))
    return jsonify({"inventory": [r.to_dict() for r in rows], "count": len(rows)})


@admin_bp.put("/inventory")
@require_admin
def set_stock():
    """
    Set stock for a variant.

    Request body:
    - product_id, variant_label: str (required)
    - stock_units: int (required, clamped at 0)
    """
    data = request.get_json(silent=True) or {}
    product_id = (data.get("product_id") or "").strip()
    variant_label = (data.get("variant_label") or "").strip()
    if not product_id or not variant_label:
        return jsonify({"error": "product_id and variant_label required"}), 400

    try:
        stock_units = coerce_int(data.get("stock_units"), "stock_units")
        row = inventory_service.set_stock(product_id, variant_label, stock_units)
        return jsonify({"inventory": row.to_dict()})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set stock for %s/%s", product_id, variant_label)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REFERRALS
# =============================================================================

@admin_bp.get("/referrals/dashboard")
@require_admin
def referral_dashboard():
    """
    Partner performance summary.

    Query params:
    - year: int (defaults to the most recent year with referral orders)
    - month: 1-12 (optional)
    """
    year = request.args.get("year", type=int)
    month = request.args.get("month", type=int)
    return jsonify(referral_service.get_referral_dashboard(year=year, month=month))


@admin_bp.post("/referrals/partners")
@require_admin
def create_partner():
    """
    Create a referral partner.

    Request body:
    - name: str (required)
    - contact_name, contact_email, contact_phone, notes: str (optional)
    - commission_bps: int (0-10000)
    - default_discount_type: percent | fixed
    - default_discount_value: int (bps or cents)
    """
    data = request.get_json(silent=True) or {}
    try:
        partner = referral_service.create_partner(data)
        return jsonify({"partner": partner.to_dict()}), 201
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create referral partner")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.patch("/referrals/partners/<int:partner_id>")
@require_admin
def update_partner(partner_id: int):
    data = request.get_json(silent=True) or {}
    try:
        partner = referral_service.set_partner_active(partner_id, _bool_field(data, "active"))
        return jsonify({"partner": partner.to_dict()})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ReferralError as e:
        return jsonify({"error": str(e)}), 404


@admin_bp.delete("/referrals/partners/<int:partner_id>")
@require_admin
def delete_partner(partner_id: int):
    try:
        referral_service.delete_partner(partner_id)
        return jsonify({"deleted": True})
    except ReferralError as e:
        return jsonify({"error": str(e)}), 404


@admin_bp.post("/referrals/codes")
@require_admin
def create_code():
    """
    Create a referral code.

    Request body:
    - partner_id: int (required)
    - code: str (required; normalized to uppercase alphanumerics)
    - discount_type, discount_value (default to the partner's defaults)
    - min_order_subtotal_cents, max_total_redemptions: int (optional)
    - starts_at, expires_at: ISO-8601 (optional)
    """
    data = request.get_json(silent=True) or {}
    try:
        code = referral_service.create_code(data)
        return jsonify({"code": code.to_dict()}), 201
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ReferralError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to create referral code")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.patch("/referrals/codes/<int:code_id>")
@require_admin
def update_code(code_id: int):
    data = request.get_json(silent=True) or {}
    try:
        code = referral_service.set_code_active(code_id, _bool_field(data, "active"))
        return jsonify({"code": code.to_dict()})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ReferralError as e:
        return jsonify({"error": str(e)}), 404


@admin_bp.delete("/referrals/codes/<int:code_id>")
@require_admin
def delete_code(code_id: int):
    try:
        referral_service.delete_code(code_id)
        return jsonify({"deleted": True})
    except ReferralError as e:
        return jsonify({"error": str(e)}), 404
