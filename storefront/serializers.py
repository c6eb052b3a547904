from typing import Dict, Optional

from .helpers import effective_price, isoformat, safe_float


def stringify_id(value) -> Optional[str]:
    return str(value) if value is not None else None


def serialize_address(address: Optional[Dict]) -> Dict[str, str]:
    address = address if isinstance(address, dict) else {}
    return {
        "street": address.get("street", "") or "",
        "city": address.get("city", "") or "",
        "state": address.get("state", "") or "",
        "zipCode": address.get("zip_code", "") or "",
        "country": address.get("country", "") or "",
    }


def serialize_user(user_document) -> Dict[str, object]:
    if not user_document:
        return {}
    user_id = str(user_document["_id"])
    return {
        "_id": user_id,
        "id": user_id,
        "email": user_document.get("email", ""),
        "fullName": user_document.get("full_name", ""),
        "phone": user_document.get("phone", "") or "",
        "role": user_document.get("role", "user"),
        "isEmailVerified": bool(user_document.get("is_email_verified")),
        "profilePicture": user_document.get("profile_picture") or "",
        "address": serialize_address(user_document.get("address")),
        "wishlist": [str(item) for item in user_document.get("wishlist") or []],
        "lastLogin": isoformat(user_document.get("last_login")),
        "createdAt": isoformat(user_document.get("created_at")),
    }


def serialize_product(product_document) -> Dict[str, object]:
    if not product_document:
        return {}
    product_id = str(product_document["_id"])
    discount_price = product_document.get("discount_price")
    return {
        "_id": product_id,
        "id": product_id,
        "name": product_document.get("name", ""),
        "description": product_document.get("description", ""),
        "price": round(safe_float(product_document.get("price")), 2),
        "discountPrice": round(safe_float(discount_price), 2) if discount_price else None,
        "effectivePrice": round(effective_price(product_document), 2),
        "stock": int(product_document.get("stock") or 0),
        "category": product_document.get("category", ""),
        "subCategory": product_document.get("sub_category", "") or "",
        "sizes": list(product_document.get("sizes") or []),
        "tags": list(product_document.get("tags") or []),
        "images": list(product_document.get("images") or []),
        "isActive": product_document.get("is_active", True),
        "createdAt": isoformat(product_document.get("created_at")),
        "updatedAt": isoformat(product_document.get("updated_at")),
    }


def serialize_applied_coupon(applied: Optional[Dict]):
    if not applied:
        return None
    return {
        "couponId": stringify_id(applied.get("coupon_id")),
        "code": applied.get("code"),
        "discountType": applied.get("discount_type"),
        "discountValue": applied.get("discount_value"),
        "discountAmount": applied.get("discount_amount"),
    }


def serialize_order(order_document, customer: Optional[Dict] = None) -> Dict[str, object]:
    if not order_document:
        return {}
    order_id = str(order_document["_id"])
    shipping = order_document.get("shipping_address") or {}
    payment_info = order_document.get("payment_info") or {}
    delivery_info = order_document.get("delivery_info") or {}

    serialized = {
        "_id": order_id,
        "id": order_id,
        "userId": stringify_id(order_document.get("user_id")),
        "items": [
            {
                "productId": stringify_id(item.get("product_id")),
                "name": item.get("name", ""),
                "image": item.get("image", ""),
                "quantity": item.get("quantity", 0),
                "size": item.get("size", ""),
                "price": item.get("price", 0),
            }
            for item in order_document.get("items") or []
        ],
        "shippingAddress": {
            "fullName": shipping.get("full_name", ""),
            "email": shipping.get("email", ""),
            "phone": shipping.get("phone", ""),
            "street": shipping.get("street", ""),
            "city": shipping.get("city", ""),
            "state": shipping.get("state", ""),
            "zipCode": shipping.get("zip_code", ""),
            "country": shipping.get("country", ""),
        },
        "paymentInfo": {
            "method": payment_info.get("method", ""),
            "razorpayOrderId": payment_info.get("razorpay_order_id"),
            "razorpayPaymentId": payment_info.get("razorpay_payment_id"),
            "status": payment_info.get("status", "pending"),
        },
        "subtotalAmount": order_document.get("subtotal_amount", 0),
        "discountAmount": order_document.get("discount_amount", 0),
        "totalAmount": order_document.get("total_amount", 0),
        "appliedCoupon": serialize_applied_coupon(order_document.get("applied_coupon")),
        "orderStatus": order_document.get("order_status", "pending"),
        "deliveryInfo": {
            "estimatedDelivery": isoformat(delivery_info.get("estimated_delivery")),
            "trackingNumber": delivery_info.get("tracking_number"),
            "carrier": delivery_info.get("carrier"),
        },
        "userDeleted": bool(order_document.get("user_deleted")),
        "createdAt": isoformat(order_document.get("created_at")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }
    if customer is not None:
        serialized["customer"] = customer
    return serialized


def serialize_coupon(coupon_document, include_history: bool = False) -> Dict[str, object]:
    if not coupon_document:
        return {}
    coupon_id = str(coupon_document["_id"])
    serialized = {
        "_id": coupon_id,
        "id": coupon_id,
        "code": coupon_document.get("code", ""),
        "description": coupon_document.get("description", ""),
        "discountType": coupon_document.get("discount_type"),
        "discountValue": coupon_document.get("discount_value"),
        "minimumOrderAmount": coupon_document.get("minimum_order_amount", 0),
        "maximumDiscountAmount": coupon_document.get("maximum_discount_amount"),
        "usageLimit": coupon_document.get("usage_limit"),
        "usedCount": coupon_document.get("used_count", 0),
        "userUsageLimit": coupon_document.get("user_usage_limit", 1),
        "validFrom": isoformat(coupon_document.get("valid_from")),
        "validUntil": isoformat(coupon_document.get("valid_until")),
        "isActive": bool(coupon_document.get("is_active")),
        "applicableCategories": list(coupon_document.get("applicable_categories") or []),
        "excludedProducts": [
            str(item) for item in coupon_document.get("excluded_products") or []
        ],
        "createdBy": stringify_id(coupon_document.get("created_by")),
        "createdAt": isoformat(coupon_document.get("created_at")),
    }
    if include_history:
        serialized["usageHistory"] = [
            {
                "userId": stringify_id(entry.get("user_id")),
                "orderId": stringify_id(entry.get("order_id")),
                "discountAmount": entry.get("discount_amount", 0),
                "usedAt": isoformat(entry.get("used_at")),
            }
            for entry in coupon_document.get("usage_history") or []
        ]
    return serialized


def serialize_payment_method(document) -> Dict[str, object]:
    method_id = str(document["_id"])
    return {
        "_id": method_id,
        "id": method_id,
        "cardHolderName": document.get("card_holder_name", ""),
        "lastFourDigits": document.get("last_four", ""),
        "expiryMonth": document.get("expiry_month", ""),
        "expiryYear": document.get("expiry_year", ""),
        "isDefault": bool(document.get("is_default")),
    }
