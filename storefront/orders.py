from datetime import datetime, timedelta
from typing import Dict

from flask import current_app
from flask_jwt_extended import jwt_required
from pymongo import ReturnDocument

from .audit import record_audit_log
from .checkout import PRICE_TOLERANCE, CheckoutError, place_order
from .emails import send_order_cancellation, send_order_confirmation, send_order_status_update
from .helpers import effective_price, error_response, normalize_object_id_value, parse_quantity, safe_float, success_response
from .inventory import release_stock
from .payments import PaymentGatewayError, get_gateway, timestamp_ms, to_paise, verify_payment_signature
from .security import get_current_user, read_payload, require_admin_user, validate_object_id
from .serializers import serialize_order

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
CANCELLABLE_STATUSES = {"pending", "processing"}


def is_cancellable(order_document) -> bool:
    return order_document.get("order_status") in CANCELLABLE_STATUSES


def customer_summary(user_document, order_document) -> Dict[str, str]:
    if user_document:
        return {
            "id": str(user_document["_id"]),
            "fullName": user_document.get("full_name", ""),
            "email": user_document.get("email", ""),
            "phone": user_document.get("phone", "") or "",
        }
    return {
        "id": None,
        "fullName": (order_document.get("shipping_address") or {}).get("full_name", ""),
        "email": order_document.get("user_email") or "",
        "phone": "",
    }


def register_order_routes(app, db):
    try:
        db.orders.create_index([("user_id", 1), ("created_at", -1)])
        db.orders.create_index("payment_info.razorpay_order_id")
        db.orders.create_index([("order_status", 1), ("created_at", -1)])
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for orders: %s", exc)

    def fetch_order(order_id: str):
        object_id, id_error = validate_object_id(order_id)
        if id_error:
            return None, id_error
        order_document = db.orders.find_one({"_id": object_id})
        if not order_document:
            return None, error_response("Order not found", 404)
        return order_document, None

    def order_recipient(order_document) -> str:
        user_document = (
            db.users.find_one({"_id": order_document["user_id"]})
            if order_document.get("user_id")
            else None
        )
        if user_document and user_document.get("email"):
            return user_document["email"]
        return (order_document.get("shipping_address") or {}).get("email") or order_document.get("user_email") or ""

    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        try:
            order_document = place_order(
                db, user, read_payload(), client=current_app.extensions.get("mongo_client")
            )
        except CheckoutError as exc:
            app.logger.info("Order rejected for %s: %s", user.get("email"), exc.message)
            return error_response(exc.message, exc.status)

        return success_response(serialize_order(order_document), 201)

    @app.route("/api/orders/create-payment", methods=["POST"])
    @jwt_required()
    def create_order_payment():
        _, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        cart_items = payload.get("cartItems") or payload.get("cart_items")
        amount = safe_float(payload.get("amount"), 0.0)
        if amount <= 0 or not isinstance(cart_items, list) or not cart_items:
            return error_response("Amount and cart items are required", 400)

        calculated_total = 0.0
        for item in cart_items:
            raw_product_id = (item or {}).get("productId") or (item or {}).get("product_id")
            product_id = normalize_object_id_value(raw_product_id)
            product = db.products.find_one({"_id": product_id}) if product_id else None
            if not product:
                return error_response(f"Product not found: {raw_product_id}", 400)
            quantity = parse_quantity(item.get("quantity"))
            if quantity is None:
                return error_response(f"Invalid quantity for product: {product.get('name')}", 400)
            calculated_total += effective_price(product) * quantity

        discount = safe_float(payload.get("discountAmount"), 0.0)
        if abs(amount - round(calculated_total - discount, 2)) > PRICE_TOLERANCE:
            return error_response("Amount validation failed", 400)

        gateway = get_gateway()
        if not gateway.configured:
            return error_response("Payment gateway not configured. Please contact support.", 500)

        try:
            razorpay_order = gateway.create_order(to_paise(amount), "INR", f"order_{timestamp_ms()}")
        except PaymentGatewayError as exc:
            app.logger.error("Razorpay order creation failed: %s", exc)
            return error_response("Failed to create payment", 500)

        return success_response(
            {
                "id": razorpay_order.get("id"),
                "amount": razorpay_order.get("amount"),
                "currency": razorpay_order.get("currency"),
            }
        )

    @app.route("/api/orders/verify-payment", methods=["POST"])
    @jwt_required()
    def verify_order_payment():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        razorpay_order_id = str(payload.get("razorpay_order_id") or "").strip()
        razorpay_payment_id = str(payload.get("razorpay_payment_id") or "").strip()
        razorpay_signature = str(payload.get("razorpay_signature") or "").strip()

        order_document = db.orders.find_one(
            {"payment_info.razorpay_order_id": razorpay_order_id, "user_id": user["_id"]}
        ) if razorpay_order_id else None
        if not order_document:
            return error_response("Order not found", 404)

        now = datetime.utcnow()
        if not verify_payment_signature(
            razorpay_order_id,
            razorpay_payment_id,
            razorpay_signature,
            app.config.get("RAZORPAY_KEY_SECRET") or "",
        ):
            db.orders.update_one(
                {"_id": order_document["_id"], "payment_info.status": {"$ne": "completed"}},
                {"$set": {"payment_info.status": "failed", "updated_at": now}},
            )
            app.logger.warning(
                "Payment signature mismatch for order %s", order_document["_id"]
            )
            return error_response("Payment verification failed", 400)

        updated = db.orders.find_one_and_update(
            {"_id": order_document["_id"], "order_status": {"$in": list(CANCELLABLE_STATUSES)}},
            {
                "$set": {
                    "payment_info.status": "completed",
                    "payment_info.razorpay_payment_id": razorpay_payment_id,
                    "order_status": "processing",
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            app.logger.warning(
                "Payment verified for order %s in status %s; not reopening",
                order_document["_id"],
                order_document.get("order_status"),
            )
            return error_response("Order is no longer awaiting payment", 400)

        send_order_confirmation(updated)
        record_audit_log(
            db,
            user.get("email"),
            "Verified payment",
            {"order_id": str(updated["_id"]), "payment_id": razorpay_payment_id},
        )
        return success_response(serialize_order(updated))

    @app.route("/api/orders/my-orders", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        cursor = db.orders.find({"user_id": user["_id"]}).sort("created_at", -1)
        return success_response([serialize_order(document) for document in cursor])

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        order_document, error = fetch_order(order_id)
        if error:
            return error

        is_owner = order_document.get("user_id") == user["_id"]
        if not is_owner and user.get("role") != "admin":
            return error_response("Not authorized to access this order", 403)

        owner = (
            db.users.find_one({"_id": order_document["user_id"]})
            if order_document.get("user_id")
            else None
        )
        return success_response(
            serialize_order(order_document, customer=customer_summary(owner, order_document))
        )

    @app.route("/api/orders/<order_id>/cancel", methods=["POST"])
    @jwt_required()
    def cancel_order(order_id: str):
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        order_document, error = fetch_order(order_id)
        if error:
            return error

        if order_document.get("user_id") != user["_id"]:
            return error_response("Not authorized to cancel this order", 403)
        if not is_cancellable(order_document):
            return error_response("Order cannot be cancelled", 400)

        updates = {"order_status": "cancelled", "updated_at": datetime.utcnow()}
        if (order_document.get("payment_info") or {}).get("status") == "completed":
            updates["payment_info.status"] = "refunded"

        updated = db.orders.find_one_and_update(
            {"_id": order_document["_id"], "order_status": {"$in": list(CANCELLABLE_STATUSES)}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return error_response("Order cannot be cancelled", 400)

        release_stock(
            db,
            [
                {"product_id": item["product_id"], "quantity": item["quantity"]}
                for item in updated.get("items") or []
            ],
        )

        send_order_cancellation(updated, order_recipient(updated))
        record_audit_log(db, user.get("email"), "Cancelled order", {"order_id": str(updated["_id"])})
        return success_response(serialize_order(updated), message="Order cancelled successfully")

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        orders = list(db.orders.find({}).sort("created_at", -1))
        user_ids = {order["user_id"] for order in orders if order.get("user_id")}
        users = {
            document["_id"]: document
            for document in db.users.find({"_id": {"$in": list(user_ids)}})
        }
        return success_response(
            [
                serialize_order(
                    order, customer=customer_summary(users.get(order.get("user_id")), order)
                )
                for order in orders
            ]
        )

    @app.route("/api/orders/<order_id>/status", methods=["PATCH"])
    @jwt_required()
    def update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        order_document, error = fetch_order(order_id)
        if error:
            return error

        payload = read_payload()
        new_status = str(payload.get("orderStatus") or payload.get("status") or "").strip().lower()
        if new_status not in ORDER_STATUSES:
            return error_response("Invalid order status", 400)

        updates: Dict[str, object] = {"order_status": new_status, "updated_at": datetime.utcnow()}
        delivery_info = order_document.get("delivery_info") or {}
        if new_status == "shipped" and not delivery_info.get("estimated_delivery"):
            updates["delivery_info.estimated_delivery"] = datetime.utcnow() + timedelta(
                days=app.config.get("SHIPPED_DELIVERY_DAYS", 3)
            )
        tracking_number = str(payload.get("trackingNumber") or "").strip()
        if tracking_number:
            updates["delivery_info.tracking_number"] = tracking_number
        carrier = str(payload.get("carrier") or "").strip()
        if carrier:
            updates["delivery_info.carrier"] = carrier

        updated = db.orders.find_one_and_update(
            {"_id": order_document["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        record_audit_log(
            db,
            admin_user.get("email"),
            "Updated order status",
            {"order_id": str(updated["_id"]), "status": new_status},
        )

        sent, _ = send_order_status_update(updated, order_recipient(updated))
        return success_response(
            serialize_order(updated),
            message="Order status updated successfully",
            emailSent=sent,
        )
