"""Transactional email built from Jinja templates and delivered through Resend.

Every sender returns a ``(sent, error)`` pair and never raises, so callers can
log a failed delivery without interrupting the request that triggered it.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

import resend
from flask import current_app, render_template

from .helpers import normalize_email, safe_float, safe_positive_int

ORDER_STATUS_DETAILS = {
    "pending": ("🕒", "Order Received", "We have received your order and will start preparing it soon."),
    "processing": ("📦", "Order Processing", "Your order is being carefully prepared by our team."),
    "shipped": ("🚚", "Order Shipped", "Great news! Your order is on its way to you."),
    "delivered": ("🎉", "Order Delivered", "Your order has been successfully delivered!"),
    "cancelled": ("❌", "Order Cancelled", "Your order has been cancelled as requested."),
}


def short_order_id(order_document) -> str:
    return str(order_document.get("_id") or "")[-8:].upper()


def status_details(status: str) -> Tuple[str, str, str]:
    return ORDER_STATUS_DETAILS.get(
        status,
        ("📋", "Order Update", f"Your order status has been updated to {status}."),
    )


def sender_address() -> str:
    config = current_app.config
    return f"{config.get('EMAIL_FROM_NAME')} <{config.get('EMAIL_FROM_ADDRESS')}>"


def send_email_via_resend(payload: Dict[str, object], api_key: Optional[str] = None):
    configured_api_key = (api_key or current_app.config.get("RESEND_API_KEY") or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def deliver(recipient: Optional[str], subject: str, template: str, text_body: str, **context):
    normalized_email = normalize_email(recipient)
    if not normalized_email:
        return False, "Missing recipient email."

    html_body = render_template(
        f"emails/{template}",
        client_url=current_app.config.get("CLIENT_URL"),
        **context,
    )
    payload: Dict[str, object] = {
        "from": sender_address(),
        "to": [normalized_email],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    sent, error = send_email_via_resend(payload)
    if not sent:
        current_app.logger.warning(
            "Email '%s' to %s was not delivered: %s", subject, normalized_email, error
        )
    return sent, error


def normalize_order_email_items(items: List[Dict]) -> List[Dict]:
    normalized_items: List[Dict] = []
    for entry in items or []:
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_value = round(safe_float(entry.get("price"), 0.0), 2)
        normalized_items.append(
            {
                "name": str(entry.get("name") or "").strip() or "Item",
                "size": entry.get("size") or "",
                "quantity": quantity,
                "price": price_value,
                "line_total": round(price_value * quantity, 2),
            }
        )
    return normalized_items


def send_order_confirmation(order_document):
    shipping = order_document.get("shipping_address") or {}
    items = normalize_order_email_items(order_document.get("items"))
    estimated = (order_document.get("delivery_info") or {}).get("estimated_delivery")
    order_number = short_order_id(order_document)
    text_body = (
        f"Thank you for your order #{order_number}.\n"
        + "\n".join(f"{item['name']} x{item['quantity']}: ₹{item['line_total']:.2f}" for item in items)
        + f"\nTotal: ₹{safe_float(order_document.get('total_amount')):.2f}"
    )
    return deliver(
        shipping.get("email"),
        "✅ Order Confirmed - Thank You for Choosing Sigma Clothing",
        "order_confirmation.html",
        text_body,
        order=order_document,
        order_number=order_number,
        customer_name=shipping.get("full_name") or "there",
        items=items,
        estimated_delivery=estimated if isinstance(estimated, datetime) else None,
    )


def send_order_status_update(order_document, recipient: Optional[str]):
    status = order_document.get("order_status") or "pending"
    emoji, title, message = status_details(status)
    order_number = short_order_id(order_document)
    delivery_info = order_document.get("delivery_info") or {}
    text_body = f"{title}: {message} (Order #{order_number})"
    if delivery_info.get("tracking_number"):
        text_body += f"\nTracking number: {delivery_info['tracking_number']}"
    return deliver(
        recipient,
        f"Order #{order_number} – {title}",
        "order_status.html",
        text_body,
        order=order_document,
        order_number=order_number,
        title=title,
        emoji=emoji,
        message=message,
        tracking_number=delivery_info.get("tracking_number"),
        carrier=delivery_info.get("carrier"),
    )


def send_order_cancellation(order_document, recipient: Optional[str]):
    order_number = short_order_id(order_document)
    refunded = (order_document.get("payment_info") or {}).get("status") == "refunded"
    text_body = f"Your order #{order_number} has been cancelled."
    if refunded:
        text_body += " Your refund is being processed."
    return deliver(
        recipient,
        f"❌ Order Cancelled - Refund Processing #{order_number}",
        "order_cancellation.html",
        text_body,
        order=order_document,
        order_number=order_number,
        refunded=refunded,
        items=normalize_order_email_items(order_document.get("items")),
    )


def send_low_stock_alert(product_document):
    admin_email = current_app.config.get("ADMIN_EMAIL")
    if not admin_email:
        return False, "ADMIN_EMAIL is not configured."
    name = product_document.get("name") or "Product"
    stock = int(product_document.get("stock") or 0)
    return deliver(
        admin_email,
        f"🚨 URGENT: Low Stock Alert - {name}",
        "low_stock_alert.html",
        f"{name} has only {stock} unit(s) left in stock.",
        product=product_document,
        stock=stock,
        threshold=current_app.config.get("LOW_STOCK_THRESHOLD"),
    )


def send_welcome_email(user_document):
    name = user_document.get("full_name") or "there"
    return deliver(
        user_document.get("email"),
        "🎉 Welcome to Sigma Clothing - Your Premium Fashion Journey Begins!",
        "welcome.html",
        f"Welcome to Sigma Clothing, {name}!",
        name=name,
    )


def send_password_reset_email(user_document, reset_url: str):
    return deliver(
        user_document.get("email"),
        "🔐 Reset Your Sigma Clothing Password - Secure Link Inside",
        "password_reset.html",
        f"Reset your password within 1 hour using this link: {reset_url}",
        name=user_document.get("full_name") or "there",
        reset_url=reset_url,
    )
