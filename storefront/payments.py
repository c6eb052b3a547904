import hashlib
import hmac
import time
from datetime import datetime
from typing import Dict, Optional

import requests
from flask import current_app, request
from flask_jwt_extended import jwt_required

from .audit import record_audit_log
from .helpers import error_response, safe_float, success_response
from .security import get_current_user, read_payload

MOCK_ORDER_PREFIX = "order_mock_"


class PaymentGatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RazorpayClient:
    """Thin wrapper over the Razorpay REST API."""

    def __init__(self, key_id: str, key_secret: str, base_url: str = "https://api.razorpay.com/v1", timeout: int = 15):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _request(self, method: str, path: str, **kwargs) -> Dict:
        if not self.configured:
            raise PaymentGatewayError("Razorpay credentials are not configured")
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise PaymentGatewayError(f"Razorpay request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                details = response.json().get("error", {}).get("description")
            except ValueError:
                details = None
            raise PaymentGatewayError(
                details or f"Razorpay responded with {response.status_code}",
                response.status_code,
            )
        return response.json()

    def create_order(self, amount_paise: int, currency: str = "INR", receipt: Optional[str] = None) -> Dict:
        payload = {"amount": int(amount_paise), "currency": currency}
        if receipt:
            payload["receipt"] = receipt
        return self._request("POST", "/orders", json=payload)

    def fetch_payment(self, payment_id: str) -> Dict:
        return self._request("GET", f"/payments/{payment_id}")


def compute_signature(message: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not (order_id and payment_id and signature and secret):
        return False
    expected = compute_signature(f"{order_id}|{payment_id}", secret)
    return hmac.compare_digest(expected.encode("utf-8"), str(signature).encode("utf-8"))


def verify_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    if not (signature and secret):
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), str(signature).encode("utf-8"))


def timestamp_ms() -> int:
    return int(time.time() * 1000)


def to_paise(amount) -> int:
    return int(round(safe_float(amount, 0.0) * 100))


def get_gateway() -> RazorpayClient:
    return current_app.extensions["payment_gateway"]


def register_payment_routes(app, db):
    @app.route("/api/payment/create", methods=["POST"])
    @jwt_required()
    def create_payment():
        _, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        amount = safe_float(payload.get("amount"), 0.0)
        currency = str(payload.get("currency") or "INR").strip().upper() or "INR"
        if amount <= 0:
            return error_response("Invalid amount", 400)

        gateway = get_gateway()
        if not gateway.configured:
            app.logger.error("Razorpay credentials not configured")
            return error_response("Payment gateway not configured. Please contact support.", 500)

        amount_paise = to_paise(amount)
        try:
            order = gateway.create_order(amount_paise, currency, f"receipt_{timestamp_ms()}")
        except PaymentGatewayError as exc:
            app.logger.error("Razorpay order creation failed: %s", exc)
            if exc.status_code == 401:
                return error_response(
                    "Payment gateway authentication failed. Please contact support.", 500
                )
            if app.config.get("APP_ENV") != "development":
                return error_response("Payment initialization failed", 500)
            order = {
                "id": f"{MOCK_ORDER_PREFIX}{timestamp_ms()}",
                "amount": amount_paise,
                "currency": currency,
                "status": "created",
            }

        return success_response(
            {"id": order.get("id"), "amount": order.get("amount"), "currency": order.get("currency")}
        )

    @app.route("/api/payment/verify", methods=["POST"])
    @jwt_required()
    def verify_payment():
        _, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        order_id = str(payload.get("razorpay_order_id") or "").strip()
        payment_id = str(payload.get("razorpay_payment_id") or "").strip()
        signature = str(payload.get("razorpay_signature") or "").strip()

        if order_id.startswith(MOCK_ORDER_PREFIX) and app.config.get("APP_ENV") == "development":
            return success_response(
                {
                    "paymentId": payment_id or f"pay_mock_{timestamp_ms()}",
                    "orderId": order_id,
                    "signature": signature or "mock_signature",
                    "status": "captured",
                }
            )

        secret = app.config.get("RAZORPAY_KEY_SECRET")
        if not secret:
            return error_response("Payment verification not configured", 500)

        if not verify_payment_signature(order_id, payment_id, signature, secret):
            return error_response("Payment verification failed", 400)

        try:
            payment = get_gateway().fetch_payment(payment_id)
        except PaymentGatewayError as exc:
            app.logger.warning("Unable to fetch Razorpay payment %s: %s", payment_id, exc)
            payment = {"id": payment_id, "order_id": order_id, "status": "captured"}

        return success_response(
            {
                "paymentId": payment.get("id", payment_id),
                "orderId": payment.get("order_id", order_id),
                "signature": signature,
                "amount": payment.get("amount"),
                "status": payment.get("status"),
            }
        )

    @app.route("/api/payment/webhook", methods=["POST"])
    def payment_webhook():
        secret = app.config.get("RAZORPAY_WEBHOOK_SECRET")
        raw_body = request.get_data() or b""
        signature = request.headers.get("X-Razorpay-Signature", "")
        if not verify_webhook_signature(raw_body, signature, secret):
            app.logger.warning("Rejected Razorpay webhook with invalid signature")
            return error_response("Invalid webhook signature", 400)

        event = request.get_json(silent=True) or {}
        event_type = event.get("event")
        entity = (
            ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
        )
        gateway_order_id = entity.get("order_id")
        if not gateway_order_id:
            return success_response(message="Ignored")

        now = datetime.utcnow()
        if event_type == "payment.captured":
            order_document = db.orders.find_one(
                {"payment_info.razorpay_order_id": gateway_order_id}
            )
            if order_document:
                updates = {
                    "payment_info.status": "completed",
                    "payment_info.razorpay_payment_id": entity.get("id"),
                    "updated_at": now,
                }
                if order_document.get("order_status") == "pending":
                    updates["order_status"] = "processing"
                db.orders.update_one({"_id": order_document["_id"]}, {"$set": updates})
                record_audit_log(
                    db,
                    None,
                    "Payment captured via webhook",
                    {"order_id": str(order_document["_id"]), "payment_id": entity.get("id")},
                )
        elif event_type == "payment.failed":
            db.orders.update_one(
                {
                    "payment_info.razorpay_order_id": gateway_order_id,
                    "payment_info.status": {"$ne": "completed"},
                },
                {"$set": {"payment_info.status": "failed", "updated_at": now}},
            )

        return success_response(message="Webhook processed")
