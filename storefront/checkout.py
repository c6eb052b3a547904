"""Order placement.

Placing an order happens in three phases. The draft phase reads products and
the coupon and computes every amount without writing anything. The write
phase reserves stock, claims the coupon and inserts the order; it runs in a
multi-document transaction when the deployment supports one and falls back
to guarded updates with compensation otherwise. The last phase sends
notifications and clears the cart; its failures are logged only.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from flask import current_app
from pymongo.errors import OperationFailure, PyMongoError

from .audit import record_audit_log
from .cart import clear_cart
from .coupons import (
    claim_coupon_usage,
    find_active_coupon,
    record_coupon_usage,
    release_coupon_usage,
    validate_for_order,
)
from .emails import send_low_stock_alert, send_order_confirmation
from .helpers import (
    effective_price,
    normalize_email,
    normalize_object_id_value,
    parse_quantity,
    safe_float,
)
from .inventory import release_stock, reserve_stock

PRICE_TOLERANCE = 0.01
PAYMENT_METHODS = {"razorpay", "cod"}
SHIPPING_FIELDS = {
    "full_name": ("fullName", "full_name", "name"),
    "email": ("email",),
    "phone": ("phone",),
    "street": ("street", "address", "addressLine1"),
    "city": ("city",),
    "state": ("state",),
    "zip_code": ("zipCode", "zip_code", "pincode", "postalCode"),
    "country": ("country",),
}
REQUIRED_SHIPPING_FIELDS = ("full_name", "email", "phone", "street", "city", "state", "zip_code")


class CheckoutError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def normalize_shipping_address(payload: Optional[Dict], fallback_email: str = "") -> Dict[str, str]:
    payload = payload if isinstance(payload, dict) else {}
    address: Dict[str, str] = {}
    for field_name, keys in SHIPPING_FIELDS.items():
        value = next((payload.get(key) for key in keys if payload.get(key)), "")
        address[field_name] = str(value or "").strip()
    address["email"] = normalize_email(address["email"] or fallback_email)
    address["country"] = address["country"] or "India"
    return address


def build_order_draft(db, user, payload: Dict) -> Dict[str, object]:
    raw_items = payload.get("items") or []
    if not isinstance(raw_items, list) or not raw_items:
        raise CheckoutError("Order must contain at least one item")

    shipping_address = normalize_shipping_address(
        payload.get("shippingAddress") or payload.get("shipping_address"),
        user.get("email", ""),
    )
    missing = [field for field in REQUIRED_SHIPPING_FIELDS if not shipping_address.get(field)]
    if missing:
        raise CheckoutError(f"Shipping address is incomplete: missing {', '.join(missing)}")

    requested_per_product: Dict[object, int] = defaultdict(int)
    order_items: List[Dict] = []
    coupon_items: List[Dict] = []
    for entry in raw_items:
        if not isinstance(entry, dict):
            raise CheckoutError("Invalid order item")
        raw_product_id = entry.get("productId") or entry.get("product_id") or entry.get("product")
        product_id = normalize_object_id_value(raw_product_id)
        product = db.products.find_one({"_id": product_id}) if product_id else None
        if not product:
            raise CheckoutError(f"Product not found: {raw_product_id}")

        quantity = parse_quantity(entry.get("quantity"))
        if quantity is None:
            raise CheckoutError(f"Invalid quantity for product: {product.get('name')}")
        requested_per_product[product["_id"]] += quantity
        if int(product.get("stock") or 0) < requested_per_product[product["_id"]]:
            raise CheckoutError(f"Insufficient stock for product: {product.get('name')}")

        actual_price = effective_price(product)
        if entry.get("price") not in (None, ""):
            client_price = safe_float(entry.get("price"), -1.0)
            if abs(client_price - actual_price) > PRICE_TOLERANCE:
                raise CheckoutError(f"Price mismatch for product: {product.get('name')}")

        images = product.get("images") or []
        order_items.append(
            {
                "product_id": product["_id"],
                "name": product.get("name", ""),
                "image": images[0] if images else "",
                "quantity": quantity,
                "size": str(entry.get("size") or "").strip(),
                "price": round(actual_price, 2),
            }
        )
        coupon_items.append({"product_id": product["_id"], "category": product.get("category")})

    subtotal = round(sum(item["price"] * item["quantity"] for item in order_items), 2)

    coupon = None
    discount_amount = 0
    coupon_code = str(payload.get("couponCode") or payload.get("coupon_code") or "").strip()
    if coupon_code:
        coupon = find_active_coupon(db, coupon_code)
        if not coupon:
            raise CheckoutError("Invalid coupon code")
        validation = validate_for_order(coupon, subtotal, user["_id"], coupon_items)
        if not validation["is_valid"]:
            raise CheckoutError(validation["errors"][0])
        discount_amount = validation["discount_amount"]

    total = round(subtotal - discount_amount, 2)
    client_total = payload.get("totalAmount", payload.get("total_amount"))
    if client_total not in (None, "") and abs(safe_float(client_total, -1.0) - total) > PRICE_TOLERANCE:
        raise CheckoutError("Total amount mismatch after coupon application")

    payment_payload = payload.get("paymentInfo") or payload.get("payment_info") or {}
    payment_method = str(payment_payload.get("method") or "razorpay").strip().lower()
    if payment_method not in PAYMENT_METHODS:
        raise CheckoutError("Invalid payment method")

    now = datetime.utcnow()
    delivery_days = current_app.config.get("ORDER_DELIVERY_DAYS", 7)
    order_document = {
        "user_id": user["_id"],
        "items": order_items,
        "shipping_address": shipping_address,
        "payment_info": {
            "method": payment_method,
            "razorpay_order_id": payment_payload.get("razorpayOrderId")
            or payment_payload.get("razorpay_order_id"),
            "razorpay_payment_id": None,
            "status": "pending",
        },
        "subtotal_amount": subtotal,
        "discount_amount": discount_amount,
        "total_amount": total,
        "applied_coupon": None,
        "order_status": "pending",
        "delivery_info": {
            "estimated_delivery": now + timedelta(days=delivery_days),
            "tracking_number": None,
            "carrier": None,
        },
        "user_deleted": False,
        "user_email": user.get("email"),
        "created_at": now,
        "updated_at": now,
    }
    if coupon:
        order_document["applied_coupon"] = {
            "coupon_id": coupon["_id"],
            "code": coupon.get("code"),
            "discount_type": coupon.get("discount_type"),
            "discount_value": coupon.get("discount_value"),
            "discount_amount": discount_amount,
        }

    return {"order": order_document, "coupon": coupon}


def write_order(db, draft: Dict, session=None):
    order_document = dict(draft["order"])
    coupon = draft.get("coupon")
    stock_lines = [
        {"product_id": item["product_id"], "quantity": item["quantity"]}
        for item in order_document["items"]
    ]

    updated_products, failed_line = reserve_stock(db, stock_lines, session=session)
    if failed_line is not None:
        raise CheckoutError("Product stock was updated by another order. Please try again.")

    if coupon and not claim_coupon_usage(db, coupon, session=session):
        if session is None:
            release_stock(db, stock_lines)
        raise CheckoutError("Coupon usage limit exceeded")

    try:
        result = db.orders.insert_one(order_document, session=session)
    except PyMongoError:
        if session is None:
            release_stock(db, stock_lines)
            if coupon:
                release_coupon_usage(db, coupon["_id"])
        raise
    order_document["_id"] = result.inserted_id

    if coupon:
        record_coupon_usage(
            db,
            coupon["_id"],
            order_document["user_id"],
            order_document["_id"],
            order_document["discount_amount"],
            session=session,
        )
    return order_document, updated_products


def transactions_unsupported(exc: Exception) -> bool:
    if isinstance(exc, NotImplementedError):
        return True
    if isinstance(exc, OperationFailure):
        return exc.code == 20 or "Transaction numbers" in str(exc)
    return False


def commit_order(db, draft: Dict, client=None):
    config = current_app.config
    if client is not None and config.get("MONGO_USE_TRANSACTIONS"):
        try:
            with client.start_session() as session:
                return session.with_transaction(lambda active: write_order(db, draft, active))
        except (NotImplementedError, OperationFailure) as exc:
            if not transactions_unsupported(exc):
                raise
            current_app.logger.warning(
                "MongoDB transactions unavailable (%s); using compensating updates", exc
            )
            config["MONGO_USE_TRANSACTIONS"] = False
    return write_order(db, draft, session=None)


def notify_low_stock(updated_products: List[Dict]):
    threshold = current_app.config.get("LOW_STOCK_THRESHOLD", 10)
    for product in updated_products:
        if int(product.get("stock") or 0) <= threshold:
            sent, error = send_low_stock_alert(product)
            if not sent:
                current_app.logger.info(
                    "Low stock alert for %s not sent: %s", product.get("_id"), error
                )


def place_order(db, user, payload: Dict, client=None) -> Dict:
    """Validate, persist and announce a new order. Raises ``CheckoutError``."""
    draft = build_order_draft(db, user, payload)
    order_document, updated_products = commit_order(db, draft, client)

    current_app.logger.info(
        "Order %s placed by %s for %.2f",
        order_document["_id"],
        user.get("email"),
        order_document["total_amount"],
    )

    send_order_confirmation(order_document)
    notify_low_stock(updated_products)
    clear_cart(db, user["_id"])
    record_audit_log(
        db,
        user.get("email"),
        "Placed order",
        {
            "order_id": str(order_document["_id"]),
            "total": str(order_document["total_amount"]),
            "coupon": (order_document.get("applied_coupon") or {}).get("code"),
        },
    )
    return order_document
