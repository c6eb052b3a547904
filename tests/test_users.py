from datetime import datetime

import pytest

from storefront.card_vault import CardVaultError, decrypt_card_number, encrypt_card_number, luhn_valid

KEY = "ab" * 32
VISA_TEST_NUMBER = "4111111111111111"


class TestCardVault:
    def test_encrypts_with_fresh_iv(self):
        first, first_iv = encrypt_card_number(VISA_TEST_NUMBER, KEY)
        second, second_iv = encrypt_card_number(VISA_TEST_NUMBER, KEY)

        assert first_iv != second_iv
        assert first != second
        assert VISA_TEST_NUMBER not in first
        assert decrypt_card_number(first, first_iv, KEY) == VISA_TEST_NUMBER

    def test_rejects_bad_keys(self):
        with pytest.raises(CardVaultError):
            encrypt_card_number(VISA_TEST_NUMBER, "abcd")
        with pytest.raises(CardVaultError):
            encrypt_card_number(VISA_TEST_NUMBER, "zz" * 32)

    def test_luhn(self):
        assert luhn_valid(VISA_TEST_NUMBER) is True
        assert luhn_valid("4111111111111112") is False


class TestPaymentMethods:
    def test_add_card_stores_only_ciphertext(self, client, db, make_user, auth_headers):
        user = make_user()
        expiry_year = datetime.utcnow().year + 2

        response = client.post(
            "/api/users/payment-methods",
            json={
                "cardNumber": "4111 1111 1111 1111",
                "cardHolderName": "Test Shopper",
                "expiryMonth": "08",
                "expiryYear": str(expiry_year),
            },
            headers=auth_headers(user),
        )

        assert response.status_code == 201
        data = response.get_json()["data"]
        assert data["lastFourDigits"] == "1111"
        assert data["isDefault"] is True
        stored = db.payment_methods.find_one({"user_id": user["_id"]})
        assert VISA_TEST_NUMBER not in str(stored)
        assert decrypt_card_number(stored["encrypted_card_number"], stored["iv"], KEY) == VISA_TEST_NUMBER

    def test_rejects_expired_card(self, client, make_user, auth_headers):
        response = client.post(
            "/api/users/payment-methods",
            json={"cardNumber": VISA_TEST_NUMBER, "cardHolderName": "Test", "expiryDate": "01/20"},
            headers=auth_headers(make_user()),
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Card has expired"

    def test_rejects_invalid_number(self, client, make_user, auth_headers):
        response = client.post(
            "/api/users/payment-methods",
            json={"cardNumber": "1234", "cardHolderName": "Test", "expiryDate": "01/40"},
            headers=auth_headers(make_user()),
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid card number"


class TestProfile:
    def test_update_profile(self, client, make_user, auth_headers):
        response = client.put(
            "/api/users/profile",
            json={"fullName": "Renamed Shopper", "address": {"city": "Pune", "zipCode": "411001"}},
            headers=auth_headers(make_user()),
        )

        assert response.status_code == 200
        data = response.get_json()["data"]
        assert data["fullName"] == "Renamed Shopper"
        assert data["address"]["city"] == "Pune"
        assert data["address"]["zipCode"] == "411001"

    def test_change_password_requires_current(self, client, make_user, auth_headers):
        response = client.put(
            "/api/users/change-password",
            json={"currentPassword": "Wrong!pass1", "newPassword": "N3w!password"},
            headers=auth_headers(make_user()),
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "Current password is incorrect"

    def test_delete_account(self, client, db, make_user, auth_headers):
        user = make_user()
        db.orders.insert_one({"user_id": user["_id"], "items": []})

        response = client.delete("/api/users/account", headers=auth_headers(user))

        assert response.status_code == 200
        assert db.users.count_documents({}) == 0
        assert db.orders.find_one()["user_deleted"] is True
