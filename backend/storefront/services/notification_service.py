"""
Order Notifications

Plain-text emails for order events, posted to the Resend HTTP API.
Without RESEND_API_KEY the notifier only logs what it would have sent.

Notifications never affect the outcome of the operation that triggered
them: dispatch_detached() runs the send on a worker thread (inside an app
context) and logs any failure there.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor

import httpx
from flask import Flask, current_app

from ..extensions import db
from ..models import Order


SMS_MAX_LENGTH = 160


class NotificationError(Exception):
    """Delivery failed (non-2xx from the provider or transport error)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def format_cents(cents: int | None) -> str:
    return f"${(cents or 0) / 100:,.2f}"


def _item_lines(order) -> list[str]:
    lines = []
    for item in order.items or []:
        name = item.get("product_name") or item.get("product_id")
        variant = item.get("variant_label")
        tier_quantity = item.get("tier_quantity", 1)
        count = item.get("count", 1)
        pack = f" ({tier_quantity}-pack)" if tier_quantity and tier_quantity > 1 else ""
        line_total = item.get("line_total_cents")
        suffix = f" - {format_cents(line_total)}" if line_total is not None else ""
        lines.append(f"  {count} x {name} {variant}{pack}{suffix}")
    return lines


def _totals_lines(order) -> list[str]:
    lines = [f"Subtotal: {format_cents(order.gross_subtotal_cents)}"]
    if order.referral_discount_cents:
        code = f" ({order.referral_code_value})" if order.referral_code_value else ""
        lines.append(f"Referral discount{code}: -{format_cents(order.referral_discount_cents)}")
    lines.append(f"Shipping: {'FREE' if not order.shipping_cents else format_cents(order.shipping_cents)}")
    lines.append(f"Total: {format_cents(order.total_cents)}")
    return lines


def _address_lines(order) -> list[str]:
    return [
        f"  {order.customer_name}",
        f"  {order.shipping_street}",
        f"  {order.shipping_city}, {order.shipping_state} {order.shipping_zip_code}",
        f"  {order.shipping_country}",
    ]


def build_receipt_message(order) -> tuple[str, str]:
    subject = f"Order #{order.order_number} received"
    body = "\n".join([
        f"Hi {order.customer_name},",
        "",
        f"Thanks for your order. Your order number is #{order.order_number}.",
        "Payment instructions will follow; your order ships once payment is confirmed.",
        "",
        "Items:",
        *_item_lines(order),
        "",
        *_totals_lines(order),
        "",
        "Shipping to:",
        *_address_lines(order),
    ])
    return subject, body


def build_admin_message(order) -> tuple[str, str]:
    subject = f"New order #{order.order_number} - {format_cents(order.total_cents)}"
    referral = ""
    if order.referral_partner_name:
        referral = f"Referral: {order.referral_partner_name}"
        if order.referral_code_value:
            referral += f" ({order.referral_code_value})"
    body = "\n".join(filter(None, [
        f"Order #{order.order_number}",
        f"Customer: {order.customer_name} <{order.customer_email}> {order.customer_phone}",
        f"Units: {order.total_units}",
        *_totals_lines(order),
        referral,
        "",
        "Items:",
        *_item_lines(order),
    ]))
    return subject, body


def build_admin_sms(order) -> str:
    text = (
        f"New order #{order.order_number}: {format_cents(order.total_cents)}, "
        f"{order.total_units} units, {order.customer_name}"
    )
    return text[:SMS_MAX_LENGTH]


def build_paid_message(order) -> tuple[str, str]:
    subject = f"Payment received for order #{order.order_number}"
    body = "\n".join([
        f"Hi {order.customer_name},",
        "",
        f"We received your payment of {format_cents(order.total_cents)} for order #{order.order_number}.",
        "We'll email your tracking number as soon as it ships.",
    ])
    return subject, body


def build_shipped_message(order) -> tuple[str, str]:
    subject = f"Order #{order.order_number} has shipped"
    body = "\n".join([
        f"Hi {order.customer_name},",
        "",
        f"Order #{order.order_number} is on its way.",
        f"Carrier: {order.tracking_carrier}",
        f"Tracking number: {order.tracking_number}",
    ])
    return subject, body


class Notifier:
    """Sends order emails through Resend (or logs them when unconfigured)."""

    def __init__(
        self,
        *,
        api_key: str | None,
        api_url: str,
        from_email: str,
        admin_email: str | None = None,
        admin_sms_email: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.from_email = from_email
        self.admin_email = admin_email
        self.admin_sms_email = admin_sms_email
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config) -> "Notifier":
        return cls(
            api_key=config.get("RESEND_API_KEY"),
            api_url=config.get("RESEND_API_URL"),
            from_email=config.get("RESEND_FROM_EMAIL"),
            admin_email=config.get("ADMIN_EMAIL"),
            admin_sms_email=config.get("ADMIN_SMS_EMAIL"),
            timeout=config.get("NOTIFIER_TIMEOUT_SECONDS", 10.0),
        )

    def send_email(self, to: str, subject: str, text: str) -> dict | None:
        if not self.api_key:
            current_app.logger.info("Notifier not configured; skipping email to %s: %s", to, subject)
            return None

        payload = {"from": self.from_email, "to": [to], "subject": subject, "text": text}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as exc:
            raise NotificationError(f"Email transport failed: {exc}", details={"to": to}) from exc

        if response.status_code >= 400:
            raise NotificationError(
                "Email provider rejected the message",
                details={"to": to, "status": response.status_code, "body": response.text[:500]},
            )
        return response.json() if response.content else {}

    def send_order_receipt(self, order) -> None:
        subject, body = build_receipt_message(order)
        self.send_email(order.customer_email, subject, body)

    def send_admin_alert(self, order) -> None:
        if self.admin_email:
            subject, body = build_admin_message(order)
            self.send_email(self.admin_email, subject, body)
        if self.admin_sms_email:
            self.send_email(self.admin_sms_email, f"Order #{order.order_number}", build_admin_sms(order))

    def send_order_paid(self, order) -> None:
        subject, body = build_paid_message(order)
        self.send_email(order.customer_email, subject, body)

    def send_order_shipped(self, order) -> None:
        subject, body = build_shipped_message(order)
        self.send_email(order.customer_email, subject, body)


# =============================================================================
# DETACHED DISPATCH
# =============================================================================

_executor: ThreadPoolExecutor | None = None


def _get_executor(max_workers: int) -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
    return _executor


def get_notifier() -> Notifier:
    return current_app.extensions["storefront.notifier"]


ORDER_NOTIFICATIONS = ("send_order_receipt", "send_admin_alert", "send_order_paid", "send_order_shipped")


def send_order_notification(kind: str, order_id: int) -> None:
    """Load the order in the current context and send one notification for it."""
    if kind not in ORDER_NOTIFICATIONS:
        raise ValueError(f"Unknown order notification: {kind}")
    order = db.session.get(Order, order_id)
    if order is None:
        current_app.logger.warning("Order %s vanished before %s was sent", order_id, kind)
        return
    getattr(get_notifier(), kind)(order)


def notify_order(kind: str, order_id: int) -> Future | None:
    return dispatch_detached(f"{kind}:{order_id}", send_order_notification, kind, order_id)


def _run_logged(app: Flask, label: str, fn, args) -> None:
    try:
        fn(*args)
    except Exception:
        app.logger.exception("Detached task %s failed", label)


def _run_detached(app: Flask, label: str, fn, args) -> None:
    with app.app_context():
        _run_logged(app, label, fn, args)


def dispatch_detached(label: str, fn, *args) -> Future | None:
    """
    Run fn(*args) off the request path. Failures are logged, never raised.

    With NOTIFICATIONS_INLINE the task runs synchronously in the caller's
    context (tests); failures are still only logged.
    """
    app = current_app._get_current_object()
    if app.config.get("NOTIFICATIONS_INLINE"):
        _run_logged(app, label, fn, args)
        return None
    executor = _get_executor(app.config.get("NOTIFIER_MAX_WORKERS", 4))
    return executor.submit(_run_detached, app, label, fn, args)
