from datetime import datetime, timedelta

from bson import ObjectId

from storefront.coupons import (
    calculate_discount,
    can_user_use_coupon,
    format_amount,
    normalize_coupon_payload,
    validate_coupon_fields,
    validate_for_order,
)


def coupon(**overrides):
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
        "valid_until": now + timedelta(days=1),
        "is_active": True,
        "applicable_categories": [],
        "usage_history": [],
    }
    document.update(overrides)
    return document


class TestCalculateDiscount:
    def test_percentage_discount(self):
        assert calculate_discount(coupon(discount_value=15), 1000) == 150

    def test_percentage_discount_is_capped(self):
        assert calculate_discount(coupon(discount_value=50, maximum_discount_amount=200), 1000) == 200

    def test_fixed_discount_never_exceeds_total(self):
        assert calculate_discount(coupon(discount_type="fixed", discount_value=300), 250) == 250

    def test_fixed_discount(self):
        assert calculate_discount(coupon(discount_type="fixed", discount_value=100), 250) == 100

    def test_below_minimum_gives_no_discount(self):
        assert calculate_discount(coupon(minimum_order_amount=500), 499) == 0


class TestValidateForOrder:
    def test_valid_coupon(self):
        result = validate_for_order(coupon(), 1000, ObjectId())
        assert result["is_valid"] is True
        assert result["errors"] == []
        assert result["discount_amount"] == 100

    def test_inactive_coupon(self):
        result = validate_for_order(coupon(is_active=False), 1000, ObjectId())
        assert result["is_valid"] is False
        assert "Coupon is not active" in result["errors"]
        assert result["discount_amount"] == 0

    def test_expired_coupon(self):
        expired = coupon(valid_until=datetime.utcnow() - timedelta(minutes=1))
        assert "Coupon has expired" in validate_for_order(expired, 1000, None)["errors"]

    def test_not_yet_valid_coupon(self):
        future = coupon(valid_from=datetime.utcnow() + timedelta(days=1))
        assert "Coupon is not yet valid" in validate_for_order(future, 1000, None)["errors"]

    def test_usage_limit_reached(self):
        result = validate_for_order(coupon(usage_limit=5, used_count=5), 1000, None)
        assert "Coupon usage limit exceeded" in result["errors"]

    def test_minimum_order_message(self):
        result = validate_for_order(coupon(minimum_order_amount=999), 500, None)
        assert result["errors"] == ["Minimum order amount of ₹999 required"]

    def test_per_user_limit(self):
        user_id = ObjectId()
        used = coupon(usage_history=[{"user_id": user_id, "order_id": ObjectId()}])
        assert can_user_use_coupon(used, user_id) is False
        assert can_user_use_coupon(used, ObjectId()) is True
        result = validate_for_order(used, 1000, user_id)
        assert "You have already used this coupon the maximum number of times" in result["errors"]

    def test_category_restriction(self):
        restricted = coupon(applicable_categories=["women"])
        result = validate_for_order(restricted, 1000, None, [{"category": "men"}])
        assert "Coupon not applicable to items in your cart" in result["errors"]
        result = validate_for_order(restricted, 1000, None, [{"category": "men"}, {"category": "women"}])
        assert result["is_valid"] is True

    def test_collects_every_failing_rule(self):
        result = validate_for_order(
            coupon(is_active=False, minimum_order_amount=5000), 100, None
        )
        assert len(result["errors"]) == 2


class TestCouponFields:
    def test_normalize_uppercases_code_and_defaults(self):
        fields = normalize_coupon_payload(
            {
                "code": " summer25 ",
                "description": "Summer sale",
                "discountType": "Percentage",
                "discountValue": "25",
                "validUntil": "2099-01-01",
            }
        )
        assert fields["code"] == "SUMMER25"
        assert fields["discount_type"] == "percentage"
        assert fields["discount_value"] == 25.0
        assert fields["user_usage_limit"] == 1
        assert fields["usage_limit"] is None
        assert fields["is_active"] is True
        assert validate_coupon_fields(fields) == []

    def test_rejects_bad_values(self):
        errors = validate_coupon_fields(
            {
                "code": "ab",
                "description": "",
                "discount_type": "percentage",
                "discount_value": 150,
                "minimum_order_amount": 0,
                "user_usage_limit": 1,
                "valid_until": None,
            }
        )
        assert "Coupon code must be at least 3 characters" in errors
        assert "Coupon description is required" in errors
        assert "Percentage discount cannot exceed 100%" in errors
        assert "Valid until date is required" in errors

    def test_format_amount(self):
        assert format_amount(500) == "500"
        assert format_amount(99.5) == "99.50"
