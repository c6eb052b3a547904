from datetime import datetime, timedelta

import mongomock
import pytest

from storefront import create_app
from storefront import emails
from storefront.auth import hash_password
from storefront.security import issue_token

TEST_PASSWORD = "Passw0rd!"


@pytest.fixture
def db():
    return mongomock.MongoClient()["sigma_test"]


@pytest.fixture
def app(db, tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "APP_ENV": "testing",
            "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-1234",
            "JWT_COOKIE_SECURE": False,
            "MONGO_USE_TRANSACTIONS": False,
            "RATELIMIT_ENABLED": False,
            "RESEND_API_KEY": "",
            "RAZORPAY_KEY_ID": "rzp_test_key",
            "RAZORPAY_KEY_SECRET": "rzp_test_secret",
            "RAZORPAY_WEBHOOK_SECRET": "rzp_webhook_secret",
            "ENCRYPTION_KEY": "ab" * 32,
            "ADMIN_EMAIL": "alerts@sigma.test",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "TRUSTED_PROXY_HOPS": 0,
        },
        database=db,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture outgoing email payloads instead of calling Resend."""
    outbox = []

    def fake_send(payload, api_key=None):
        outbox.append(payload)
        return True, None

    monkeypatch.setattr(emails, "send_email_via_resend", fake_send)
    return outbox


@pytest.fixture
def make_user(db):
    def _make_user(email="shopper@sigma.test", role="user", password=TEST_PASSWORD, **extra):
        now = datetime.utcnow()
        document = {
            "email": email,
            "password": hash_password(password),
            "full_name": extra.pop("full_name", "Test Shopper"),
            "phone": "9876543210",
            "role": role,
            "is_email_verified": True,
            "wishlist": [],
            "address": {},
            "created_at": now,
            "updated_at": now,
        }
        document.update(extra)
        document["_id"] = db.users.insert_one(document).inserted_id
        return document

    return _make_user


@pytest.fixture
def auth_headers(app):
    def _auth_headers(user_document):
        with app.app_context():
            token = issue_token(user_document)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def make_product(db):
    def _make_product(**overrides):
        now = datetime.utcnow()
        document = {
            "name": "Classic Tee",
            "description": "Heavyweight cotton tee",
            "price": 500.0,
            "discount_price": None,
            "category": "men",
            "sub_category": "t-shirts",
            "sizes": ["S", "M", "L"],
            "tags": ["cotton"],
            "images": ["/uploads/products/tee.jpg"],
            "stock": 20,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        document.update(overrides)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return _make_product


@pytest.fixture
def make_coupon(db):
    def _make_coupon(**overrides):
        now = datetime.utcnow()
        document = {
            "code": "SAVE10",
            "description": "Ten percent off",
            "discount_type": "percentage",
            "discount_value": 10,
            "minimum_order_amount": 0,
            "maximum_discount_amount": None,
            "usage_limit": None,
            "used_count": 0,
            "user_usage_limit": 1,
            "valid_from": now - timedelta(days=1),
            "valid_until": now + timedelta(days=30),
            "is_active": True,
            "applicable_categories": [],
            "excluded_products": [],
            "usage_history": [],
            "created_at": now,
            "updated_at": now,
        }
        document.update(overrides)
        document["_id"] = db.coupons.insert_one(document).inserted_id
        return document

    return _make_coupon


SHIPPING_ADDRESS = {
    "fullName": "Test Shopper",
    "email": "shopper@sigma.test",
    "phone": "9876543210",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "zipCode": "560001",
    "country": "India",
}


@pytest.fixture
def order_payload():
    def _order_payload(*lines, **extra):
        payload = {
            "items": [
                {"productId": str(product["_id"]), "quantity": quantity, "size": "M"}
                for product, quantity in lines
            ],
            "shippingAddress": dict(SHIPPING_ADDRESS),
            "paymentInfo": {"method": "cod"},
        }
        payload.update(extra)
        return payload

    return _order_payload
