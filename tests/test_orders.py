from datetime import datetime
from types import SimpleNamespace

import pytest
from bson import ObjectId

from storefront import checkout
from storefront.checkout import CheckoutError, write_order
from storefront.inventory import reserve_stock
from storefront.payments import compute_signature


class TestPlaceOrder:
    def test_decrements_exactly_the_ordered_quantity(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        tee = make_product(stock=20)
        cap = make_product(name="Logo Cap", category="accessories", price=300.0, stock=8, sizes=[])

        response = client.post(
            "/api/orders",
            json=order_payload((tee, 3), (cap, 2)),
            headers=auth_headers(user),
        )

        assert response.status_code == 201
        body = response.get_json()
        assert body["success"] is True
        assert body["data"]["totalAmount"] == 2100
        assert body["data"]["orderStatus"] == "pending"
        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 17
        assert db.products.find_one({"_id": cap["_id"]})["stock"] == 6
        assert db.orders.count_documents({"user_id": user["_id"]}) == 1

    def test_uses_discount_price_as_effective_price(
        self, client, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        tee = make_product(price=500.0, discount_price=350.0)

        response = client.post("/api/orders", json=order_payload((tee, 2)), headers=auth_headers(user))

        assert response.status_code == 201
        assert response.get_json()["data"]["items"][0]["price"] == 350.0
        assert response.get_json()["data"]["totalAmount"] == 700.0

    def test_rejects_insufficient_stock(
        self, client, db, make_user, make_product, auth_headers, order_payload
    ):
        user = make_user()
        tee = make_product(stock=2)

        response = client.post("/api/orders", json=order_payload((tee, 3)), headers=auth_headers(user))

        assert response.status_code == 400
        assert response.get_json()["message"] == "Insufficient stock for product: Classic Tee"
        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 2
        assert db.orders.count_documents({}) == 0

    @pytest.mark.parametrize("quantity", [-3, 0, 2.7, "two", True])
    def test_rejects_quantity_that_is_not_a_positive_whole_number(
        self, client, db, make_user, make_product, auth_headers, order_payload, quantity
    ):
        tee = make_product(stock=5)

        response = client.post(
            "/api/orders", json=order_payload((tee, quantity)), headers=auth_headers(make_user())
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid quantity for product: Classic Tee"
        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 5
        assert db.orders.count_documents({}) == 0

    def test_rejects_price_mismatch(
        self, client, make_user, make_product, auth_headers, order_payload
    ):
        user = make_user()
        tee = make_product()
        payload = order_payload((tee, 1))
        payload["items"][0]["price"] = 400

        response = client.post("/api/orders", json=payload, headers=auth_headers(user))

        assert response.status_code == 400
        assert response.get_json()["message"] == "Price mismatch for product: Classic Tee"

    def test_rejects_unknown_product(self, client, make_user, auth_headers, order_payload):
        user = make_user()
        payload = order_payload()
        payload["items"] = [{"productId": "64b7f0c2a1b2c3d4e5f60718", "quantity": 1}]

        response = client.post("/api/orders", json=payload, headers=auth_headers(user))

        assert response.status_code == 400
        assert response.get_json()["message"] == "Product not found: 64b7f0c2a1b2c3d4e5f60718"

    def test_rejects_empty_order(self, client, make_user, auth_headers, order_payload):
        response = client.post("/api/orders", json=order_payload(), headers=auth_headers(make_user()))

        assert response.status_code == 400
        assert response.get_json()["message"] == "Order must contain at least one item"

    def test_applies_coupon_and_records_usage(
        self, client, db, make_user, make_product, make_coupon, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        tee = make_product()
        coupon = make_coupon(code="SAVE10", discount_value=10)

        response = client.post(
            "/api/orders",
            json=order_payload((tee, 2), couponCode="save10", totalAmount=900),
            headers=auth_headers(user),
        )

        assert response.status_code == 201
        data = response.get_json()["data"]
        assert data["subtotalAmount"] == 1000
        assert data["discountAmount"] == 100
        assert data["totalAmount"] == 900
        assert data["appliedCoupon"]["code"] == "SAVE10"

        stored = db.coupons.find_one({"_id": coupon["_id"]})
        assert stored["used_count"] == 1
        assert len(stored["usage_history"]) == 1
        assert stored["usage_history"][0]["user_id"] == user["_id"]

    def test_rejects_total_mismatch_after_coupon(
        self, client, make_user, make_product, make_coupon, auth_headers, order_payload
    ):
        user = make_user()
        tee = make_product()
        make_coupon()

        response = client.post(
            "/api/orders",
            json=order_payload((tee, 2), couponCode="SAVE10", totalAmount=1000),
            headers=auth_headers(user),
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Total amount mismatch after coupon application"

    def test_rejects_coupon_already_used_by_customer(
        self, client, make_user, make_product, make_coupon, auth_headers, order_payload
    ):
        user = make_user()
        tee = make_product()
        make_coupon(usage_history=[{"user_id": user["_id"], "discount_amount": 50}], used_count=1)

        response = client.post(
            "/api/orders",
            json=order_payload((tee, 1), couponCode="SAVE10"),
            headers=auth_headers(user),
        )

        assert response.status_code == 400
        assert (
            response.get_json()["message"]
            == "You have already used this coupon the maximum number of times"
        )

    def test_clears_cart_and_sends_confirmation(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        tee = make_product(stock=11)
        db.carts.insert_one(
            {"user_id": user["_id"], "items": [{"product_id": tee["_id"], "quantity": 2, "size": "M"}]}
        )

        response = client.post("/api/orders", json=order_payload((tee, 2)), headers=auth_headers(user))

        assert response.status_code == 201
        assert db.carts.find_one({"user_id": user["_id"]})["items"] == []
        recipients = [payload["to"][0] for payload in sent_emails]
        assert "shopper@sigma.test" in recipients
        # Stock fell to 9, under the alert threshold.
        assert "alerts@sigma.test" in recipients


class TestWritePhase:
    def draft_for(self, user, lines, coupon=None):
        return {
            "order": {
                "user_id": user["_id"],
                "items": [
                    {"product_id": product["_id"], "quantity": quantity, "price": product["price"]}
                    for product, quantity in lines
                ],
                "discount_amount": 0,
                "total_amount": 0,
                "created_at": datetime.utcnow(),
            },
            "coupon": coupon,
        }

    def test_stock_conflict_restores_earlier_lines(self, app, db, make_user, make_product):
        user = make_user()
        tee = make_product(stock=5)
        cap = make_product(name="Logo Cap", stock=1)

        with app.app_context():
            with pytest.raises(CheckoutError):
                write_order(db, self.draft_for(user, [(tee, 2), (cap, 3)]))

        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 5
        assert db.products.find_one({"_id": cap["_id"]})["stock"] == 1
        assert db.orders.count_documents({}) == 0

    def test_coupon_claim_conflict_restores_stock(self, app, db, make_user, make_product, make_coupon):
        user = make_user()
        tee = make_product(stock=5)
        coupon = make_coupon(usage_limit=1, used_count=1)

        with app.app_context():
            with pytest.raises(CheckoutError) as excinfo:
                write_order(db, self.draft_for(user, [(tee, 2)], coupon=coupon))

        assert excinfo.value.message == "Coupon usage limit exceeded"
        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 5
        assert db.coupons.find_one({"_id": coupon["_id"]})["used_count"] == 1

    def test_sequential_orders_cannot_oversell(self, app, db, make_user, make_product):
        user = make_user()
        tee = make_product(stock=3)

        with app.app_context():
            write_order(db, self.draft_for(user, [(tee, 2)]))
            with pytest.raises(CheckoutError):
                write_order(db, self.draft_for(user, [(tee, 2)]))

        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 1
        assert db.orders.count_documents({}) == 1


class TestOrderLifecycle:
    def place(self, client, user, product, headers, order_payload, quantity=2, **extra):
        response = client.post(
            "/api/orders", json=order_payload((product, quantity), **extra), headers=headers
        )
        assert response.status_code == 201
        return response.get_json()["data"]

    def test_owner_can_cancel_pending_order(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        headers = auth_headers(user)
        tee = make_product(stock=10)
        order = self.place(client, user, tee, headers, order_payload)

        response = client.post(f"/api/orders/{order['id']}/cancel", headers=headers)

        assert response.status_code == 200
        assert response.get_json()["data"]["orderStatus"] == "cancelled"
        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 10

    def test_delivered_order_cannot_be_cancelled(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        headers = auth_headers(user)
        order = self.place(client, user, make_product(), headers, order_payload)
        db.orders.update_one({}, {"$set": {"order_status": "delivered"}})

        response = client.post(f"/api/orders/{order['id']}/cancel", headers=headers)

        assert response.status_code == 400
        assert response.get_json()["message"] == "Order cannot be cancelled"

    def test_other_customer_cannot_view_order(
        self, client, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        owner = make_user()
        stranger = make_user(email="stranger@sigma.test")
        order = self.place(client, owner, make_product(), auth_headers(owner), order_payload)

        response = client.get(f"/api/orders/{order['id']}", headers=auth_headers(stranger))

        assert response.status_code == 403

    def test_admin_updates_status_and_notifies(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        admin = make_user(email="admin@sigma.test", role="admin")
        order = self.place(client, user, make_product(), auth_headers(user), order_payload)
        sent_emails.clear()

        response = client.patch(
            f"/api/orders/{order['id']}/status",
            json={"orderStatus": "shipped", "trackingNumber": "TRK123"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["data"]["orderStatus"] == "shipped"
        assert body["data"]["deliveryInfo"]["trackingNumber"] == "TRK123"
        assert body["emailSent"] is True
        assert sent_emails[0]["to"] == ["shopper@sigma.test"]
        assert db.audit_logs.count_documents({"action": "Updated order status"}) == 1

    def test_customer_cannot_update_status(
        self, client, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        order = self.place(client, user, make_product(), auth_headers(user), order_payload)

        response = client.patch(
            f"/api/orders/{order['id']}/status",
            json={"orderStatus": "shipped"},
            headers=auth_headers(user),
        )

        assert response.status_code == 403

    def test_invalid_signature_marks_payment_failed(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        headers = auth_headers(user)
        order = self.place(
            client,
            user,
            make_product(),
            headers,
            order_payload,
            paymentInfo={"method": "razorpay", "razorpayOrderId": "order_abc123"},
        )

        response = client.post(
            "/api/orders/verify-payment",
            json={
                "razorpay_order_id": "order_abc123",
                "razorpay_payment_id": "pay_xyz",
                "razorpay_signature": "not-a-valid-signature",
            },
            headers=headers,
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Payment verification failed"
        stored = db.orders.find_one({"_id": db.orders.find_one()["_id"]})
        assert stored["payment_info"]["status"] == "failed"
        assert str(stored["_id"]) == order["id"]

    def test_valid_signature_completes_payment(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        headers = auth_headers(user)
        self.place(
            client,
            user,
            make_product(),
            headers,
            order_payload,
            paymentInfo={"method": "razorpay", "razorpayOrderId": "order_abc123"},
        )

        response = client.post(
            "/api/orders/verify-payment",
            json={
                "razorpay_order_id": "order_abc123",
                "razorpay_payment_id": "pay_xyz",
                "razorpay_signature": compute_signature("order_abc123|pay_xyz", "rzp_test_secret"),
            },
            headers=headers,
        )

        assert response.status_code == 200
        data = response.get_json()["data"]
        assert data["paymentInfo"]["status"] == "completed"
        assert data["paymentInfo"]["razorpayPaymentId"] == "pay_xyz"
        assert data["orderStatus"] == "processing"

    def place_razorpay_order(self, client, user, product, headers, order_payload, quantity=2):
        return self.place(
            client,
            user,
            product,
            headers,
            order_payload,
            quantity=quantity,
            paymentInfo={"method": "razorpay", "razorpayOrderId": "order_abc123"},
        )

    def verify(self, client, headers, signature):
        return client.post(
            "/api/orders/verify-payment",
            json={
                "razorpay_order_id": "order_abc123",
                "razorpay_payment_id": "pay_xyz",
                "razorpay_signature": signature,
            },
            headers=headers,
        )

    def test_payment_cannot_reopen_cancelled_order(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        headers = auth_headers(user)
        tee = make_product(stock=2)
        order = self.place_razorpay_order(client, user, tee, headers, order_payload)
        assert client.post(f"/api/orders/{order['id']}/cancel", headers=headers).status_code == 200

        response = self.verify(
            client, headers, compute_signature("order_abc123|pay_xyz", "rzp_test_secret")
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Order is no longer awaiting payment"
        stored = db.orders.find_one()
        assert stored["order_status"] == "cancelled"
        assert stored["payment_info"]["status"] == "pending"
        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 2

    def test_bad_signature_keeps_completed_payment(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        headers = auth_headers(user)
        self.place_razorpay_order(client, user, make_product(), headers, order_payload)
        valid = self.verify(
            client, headers, compute_signature("order_abc123|pay_xyz", "rzp_test_secret")
        )
        assert valid.status_code == 200

        replay = self.verify(client, headers, "junk")

        assert replay.status_code == 400
        stored = db.orders.find_one()
        assert stored["payment_info"]["status"] == "completed"
        assert stored["order_status"] == "processing"

    def test_non_ascii_signature_is_rejected(
        self, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        user = make_user()
        headers = auth_headers(user)
        self.place_razorpay_order(client, user, make_product(), headers, order_payload)

        response = self.verify(client, headers, "é")

        assert response.status_code == 400
        assert response.get_json()["message"] == "Payment verification failed"


class StubSession:
    def __init__(self):
        self.ended = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.ended = True
        return False

    def with_transaction(self, callback):
        return callback(self)


class StubClient:
    def __init__(self):
        self.session = StubSession()

    def start_session(self):
        return self.session


class StubProducts:
    """Products collection that refuses to reserve a given product."""

    def __init__(self, out_of_stock_id):
        self.out_of_stock_id = out_of_stock_id
        self.reserved = []
        self.released = []
        self.sessions = []

    def find_one_and_update(self, filter, update, return_document=None, session=None):
        self.sessions.append(session)
        if filter["_id"] == self.out_of_stock_id:
            return None
        self.reserved.append(filter["_id"])
        return {"_id": filter["_id"], "stock": 1}

    def update_one(self, filter, update, session=None):
        self.released.append(filter["_id"])


class TestTransactions:
    def test_unsupported_transactions_fall_back_once(
        self, app, client, db, make_user, make_product, auth_headers, order_payload, sent_emails
    ):
        app.config["MONGO_USE_TRANSACTIONS"] = True
        app.extensions["mongo_client"] = db.client
        tee = make_product(stock=5)

        response = client.post(
            "/api/orders", json=order_payload((tee, 2)), headers=auth_headers(make_user())
        )

        assert response.status_code == 201
        assert app.config["MONGO_USE_TRANSACTIONS"] is False
        assert db.products.find_one({"_id": tee["_id"]})["stock"] == 3
        assert db.orders.count_documents({}) == 1

    def test_write_phase_runs_inside_session(self, app, db, monkeypatch):
        stub_client = StubClient()
        calls = []

        def fake_write_order(database, draft, session=None):
            calls.append(session)
            return {"_id": "order"}, []

        monkeypatch.setattr(checkout, "write_order", fake_write_order)
        app.config["MONGO_USE_TRANSACTIONS"] = True

        with app.app_context():
            result = checkout.commit_order(db, {"order": {}}, client=stub_client)

        assert result == ({"_id": "order"}, [])
        assert calls == [stub_client.session]
        assert stub_client.session.ended is True
        assert app.config["MONGO_USE_TRANSACTIONS"] is True

    def test_reserve_inside_transaction_leaves_release_to_abort(self, app):
        first, second = ObjectId(), ObjectId()
        products = StubProducts(out_of_stock_id=second)
        session = StubSession()
        lines = [{"product_id": first, "quantity": 1}, {"product_id": second, "quantity": 1}]

        with app.app_context():
            updated, failed_line = reserve_stock(SimpleNamespace(products=products), lines, session=session)

        assert updated == []
        assert failed_line == lines[1]
        assert products.reserved == [first]
        assert products.released == []
        assert products.sessions == [session, session]

    def test_reserve_outside_transaction_releases_earlier_lines(self, app):
        first, second = ObjectId(), ObjectId()
        products = StubProducts(out_of_stock_id=second)
        lines = [{"product_id": first, "quantity": 1}, {"product_id": second, "quantity": 1}]

        with app.app_context():
            _, failed_line = reserve_stock(SimpleNamespace(products=products), lines)

        assert failed_line == lines[1]
        assert products.released == [first]
