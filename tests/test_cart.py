class TestCart:
    def test_add_merges_same_product_and_size(self, client, make_user, make_product, auth_headers):
        headers = auth_headers(make_user())
        tee = make_product(price=500.0, discount_price=400.0)

        client.post("/api/cart", json={"productId": str(tee["_id"]), "quantity": 1, "size": "M"}, headers=headers)
        response = client.post(
            "/api/cart", json={"productId": str(tee["_id"]), "quantity": 2, "size": "M"}, headers=headers
        )

        assert response.status_code == 200
        cart = response.get_json()["data"]
        assert len(cart["items"]) == 1
        assert cart["items"][0]["quantity"] == 3
        assert cart["totalItems"] == 3
        assert cart["totalAmount"] == 1200.0

    def test_rejects_more_than_stock(self, client, make_user, make_product, auth_headers):
        tee = make_product(stock=2)

        response = client.post(
            "/api/cart",
            json={"productId": str(tee["_id"]), "quantity": 3, "size": "M"},
            headers=auth_headers(make_user()),
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Only 2 items available in stock"

    def test_rejects_negative_quantity(self, client, db, make_user, make_product, auth_headers):
        tee = make_product(stock=5)

        response = client.post(
            "/api/cart",
            json={"productId": str(tee["_id"]), "quantity": -3, "size": "M"},
            headers=auth_headers(make_user()),
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Quantity must be a positive whole number"
        assert db.carts.count_documents({"items.0": {"$exists": True}}) == 0

    def test_rejects_unknown_size(self, client, make_user, make_product, auth_headers):
        tee = make_product()

        response = client.post(
            "/api/cart",
            json={"productId": str(tee["_id"]), "quantity": 1, "size": "XXL"},
            headers=auth_headers(make_user()),
        )

        assert response.status_code == 400

    def test_inactive_product_cannot_be_added(self, client, make_user, make_product, auth_headers):
        tee = make_product(is_active=False)

        response = client.post(
            "/api/cart", json={"productId": str(tee["_id"]), "size": "M"}, headers=auth_headers(make_user())
        )

        assert response.status_code == 404

    def test_update_to_zero_removes_line(self, client, make_user, make_product, auth_headers):
        headers = auth_headers(make_user())
        tee = make_product()
        client.post("/api/cart", json={"productId": str(tee["_id"]), "quantity": 1, "size": "M"}, headers=headers)

        response = client.put(f"/api/cart/{tee['_id']}", json={"quantity": 0, "size": "M"}, headers=headers)

        assert response.status_code == 200
        assert response.get_json()["data"]["items"] == []

    def test_invalid_product_id(self, client, make_user, auth_headers):
        response = client.delete("/api/cart/not-an-id", headers=auth_headers(make_user()))

        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid ID format"


class TestWishlist:
    def test_add_and_remove(self, client, db, make_user, make_product, auth_headers):
        user = make_user()
        headers = auth_headers(user)
        tee = make_product()

        added = client.post(f"/api/wishlist/{tee['_id']}", headers=headers)
        client.post(f"/api/wishlist/{tee['_id']}", headers=headers)
        assert added.get_json()["data"] == [str(tee["_id"])]
        assert db.users.find_one({"_id": user["_id"]})["wishlist"] == [tee["_id"]]

        listing = client.get("/api/wishlist", headers=headers)
        assert listing.get_json()["data"][0]["name"] == "Classic Tee"

        removed = client.delete(f"/api/wishlist/{tee['_id']}", headers=headers)
        assert removed.get_json()["data"] == []
