"""Coupon rules and the ``/api/coupons`` routes.

The rule functions work on raw coupon documents (snake_case fields as stored
in MongoDB) and have no Flask dependency, so checkout can reuse them.
"""

import math
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from pymongo import ReturnDocument

from .audit import record_audit_log
from .cart import summarize_cart
from .helpers import (
    ValidationError,
    build_regex,
    error_response,
    normalize_object_id_list,
    pagination_args,
    parse_iso_date,
    safe_float,
    success_response,
)
from .security import get_current_user, read_payload, require_admin_user, validate_object_id
from .serializers import serialize_coupon

DISCOUNT_TYPES = {"percentage", "fixed"}
COUPON_CATEGORIES = {"men", "women", "accessories"}
code_pattern = re.compile(r"^[A-Z0-9]+$")


def format_amount(value) -> str:
    numeric = safe_float(value, 0.0)
    if numeric.is_integer():
        return str(int(numeric))
    return f"{numeric:.2f}"


def normalize_coupon_payload(payload: Dict, partial: bool = False) -> Dict[str, object]:
    """Map an API payload (camelCase or snake_case) onto stored coupon fields."""
    aliases = {
        "code": ("code",),
        "description": ("description",),
        "discount_type": ("discountType", "discount_type"),
        "discount_value": ("discountValue", "discount_value"),
        "minimum_order_amount": ("minimumOrderAmount", "minimum_order_amount"),
        "maximum_discount_amount": ("maximumDiscountAmount", "maximum_discount_amount"),
        "usage_limit": ("usageLimit", "usage_limit"),
        "user_usage_limit": ("userUsageLimit", "user_usage_limit"),
        "valid_from": ("validFrom", "valid_from"),
        "valid_until": ("validUntil", "valid_until"),
        "is_active": ("isActive", "is_active"),
        "applicable_categories": ("applicableCategories", "applicable_categories"),
        "excluded_products": ("excludedProducts", "excluded_products"),
    }
    fields: Dict[str, object] = {}
    for field_name, keys in aliases.items():
        for key in keys:
            if key in payload:
                fields[field_name] = payload[key]
                break

    if "code" in fields:
        fields["code"] = str(fields["code"] or "").strip().upper()
    if "description" in fields:
        fields["description"] = str(fields["description"] or "").strip()
    if "discount_type" in fields:
        fields["discount_type"] = str(fields["discount_type"] or "").strip().lower()
    for numeric_field in ("discount_value", "minimum_order_amount"):
        if numeric_field in fields:
            fields[numeric_field] = safe_float(fields[numeric_field], None)
    if "maximum_discount_amount" in fields:
        raw_value = fields["maximum_discount_amount"]
        fields["maximum_discount_amount"] = (
            None if raw_value in (None, "") else safe_float(raw_value, None)
        )
    if "usage_limit" in fields:
        raw_value = fields["usage_limit"]
        fields["usage_limit"] = None if raw_value in (None, "") else int(safe_float(raw_value, 0))
    if "user_usage_limit" in fields:
        fields["user_usage_limit"] = int(safe_float(fields["user_usage_limit"], 0))
    for date_field in ("valid_from", "valid_until"):
        if date_field in fields:
            fields[date_field] = parse_iso_date(fields[date_field])
    if "is_active" in fields:
        raw_active = fields["is_active"]
        if isinstance(raw_active, str):
            raw_active = raw_active.strip().lower() in {"1", "true", "yes", "on"}
        fields["is_active"] = bool(raw_active)
    if "applicable_categories" in fields:
        categories = fields["applicable_categories"] or []
        if isinstance(categories, str):
            categories = [categories]
        fields["applicable_categories"] = [
            str(category).strip().lower() for category in categories if str(category).strip()
        ]
    if "excluded_products" in fields:
        fields["excluded_products"] = normalize_object_id_list(fields["excluded_products"])

    if not partial:
        fields.setdefault("minimum_order_amount", 0)
        fields.setdefault("maximum_discount_amount", None)
        fields.setdefault("usage_limit", None)
        fields.setdefault("user_usage_limit", 1)
        fields.setdefault("is_active", True)
        fields.setdefault("applicable_categories", [])
        fields.setdefault("excluded_products", [])
        if not fields.get("valid_from"):
            fields["valid_from"] = datetime.utcnow()
    return fields


def validate_coupon_fields(coupon: Dict) -> List[str]:
    errors: List[str] = []

    code = coupon.get("code") or ""
    if not code:
        errors.append("Coupon code is required")
    elif len(code) < 3:
        errors.append("Coupon code must be at least 3 characters")
    elif len(code) > 20:
        errors.append("Coupon code cannot exceed 20 characters")
    elif not code_pattern.match(code):
        errors.append("Coupon code can only contain uppercase letters and numbers")

    description = coupon.get("description") or ""
    if not description:
        errors.append("Coupon description is required")
    elif len(description) > 200:
        errors.append("Description cannot exceed 200 characters")

    discount_type = coupon.get("discount_type")
    if discount_type not in DISCOUNT_TYPES:
        errors.append("Discount type must be either percentage or fixed")

    discount_value = coupon.get("discount_value")
    if discount_value is None:
        errors.append("Discount value is required")
    elif discount_value < 0:
        errors.append("Discount value cannot be negative")
    elif discount_type == "percentage" and discount_value > 100:
        errors.append("Percentage discount cannot exceed 100%")

    minimum = coupon.get("minimum_order_amount")
    if minimum is None or minimum < 0:
        errors.append("Minimum order amount cannot be negative")

    maximum = coupon.get("maximum_discount_amount")
    if maximum is not None and discount_type == "percentage" and maximum <= 0:
        errors.append("Maximum discount amount must be greater than 0")

    usage_limit = coupon.get("usage_limit")
    if usage_limit is not None and usage_limit < 1:
        errors.append("Usage limit must be at least 1")

    if (coupon.get("user_usage_limit") or 0) < 1:
        errors.append("User usage limit must be at least 1")

    valid_from = coupon.get("valid_from")
    valid_until = coupon.get("valid_until")
    if not isinstance(valid_until, datetime):
        errors.append("Valid until date is required")
    elif isinstance(valid_from, datetime) and valid_until <= valid_from:
        errors.append("Valid until date must be after valid from date")

    for category in coupon.get("applicable_categories") or []:
        if category not in COUPON_CATEGORIES:
            errors.append(f"Invalid category: {category}")

    return errors


def count_user_usages(coupon: Dict, user_id) -> int:
    if user_id is None:
        return 0
    target = str(user_id)
    return sum(
        1
        for entry in coupon.get("usage_history") or []
        if str(entry.get("user_id")) == target
    )


def can_user_use_coupon(coupon: Dict, user_id) -> bool:
    user_limit = coupon.get("user_usage_limit") or 1
    return count_user_usages(coupon, user_id) < user_limit


def calculate_discount(coupon: Dict, order_total) -> float:
    total = safe_float(order_total, 0.0)
    if total < safe_float(coupon.get("minimum_order_amount"), 0.0):
        return 0

    discount_value = safe_float(coupon.get("discount_value"), 0.0)
    if coupon.get("discount_type") == "percentage":
        discount = total * discount_value / 100
        maximum = coupon.get("maximum_discount_amount")
        if maximum and discount > maximum:
            discount = maximum
    else:
        discount = min(discount_value, total)

    return round(discount, 2)


def validate_for_order(
    coupon: Dict,
    order_total,
    user_id,
    items: Optional[List[Dict]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """Evaluate every rule and collect the messages of those that fail.

    ``items`` are dicts carrying at least a ``category`` key.
    """
    now = now or datetime.utcnow()
    total = safe_float(order_total, 0.0)
    errors: List[str] = []

    if not coupon.get("is_active"):
        errors.append("Coupon is not active")

    valid_from = coupon.get("valid_from")
    valid_until = coupon.get("valid_until")
    if isinstance(valid_from, datetime) and now < valid_from:
        errors.append("Coupon is not yet valid")
    if isinstance(valid_until, datetime) and now > valid_until:
        errors.append("Coupon has expired")

    usage_limit = coupon.get("usage_limit")
    if usage_limit is not None and (coupon.get("used_count") or 0) >= usage_limit:
        errors.append("Coupon usage limit exceeded")

    if user_id is not None and not can_user_use_coupon(coupon, user_id):
        errors.append("You have already used this coupon the maximum number of times")

    minimum = safe_float(coupon.get("minimum_order_amount"), 0.0)
    if total < minimum:
        errors.append(f"Minimum order amount of ₹{format_amount(minimum)} required")

    categories = coupon.get("applicable_categories") or []
    if categories and items:
        applicable = any(item.get("category") in categories for item in items)
        if not applicable:
            errors.append("Coupon not applicable to items in your cart")

    is_valid = not errors
    return {
        "is_valid": is_valid,
        "errors": errors,
        "discount_amount": calculate_discount(coupon, total) if is_valid else 0,
    }


def find_active_coupon(db, code: Optional[str], session=None):
    normalized_code = str(code or "").strip().upper()
    if not normalized_code:
        return None
    return db.coupons.find_one(
        {"code": normalized_code, "is_active": True}, session=session
    )


def claim_coupon_usage(db, coupon: Dict, session=None) -> bool:
    """Increment used_count only while the usage limit still allows it."""
    guard: Dict[str, object] = {"_id": coupon["_id"], "is_active": True}
    usage_limit = coupon.get("usage_limit")
    if usage_limit is not None:
        guard["used_count"] = {"$lt": usage_limit}
    claimed = db.coupons.find_one_and_update(
        guard,
        {"$inc": {"used_count": 1}},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return claimed is not None


def release_coupon_usage(db, coupon_id, session=None):
    db.coupons.update_one(
        {"_id": coupon_id, "used_count": {"$gt": 0}},
        {"$inc": {"used_count": -1}},
        session=session,
    )


def record_coupon_usage(db, coupon_id, user_id, order_id, discount_amount, session=None):
    db.coupons.update_one(
        {"_id": coupon_id},
        {
            "$push": {
                "usage_history": {
                    "user_id": user_id,
                    "order_id": order_id,
                    "discount_amount": discount_amount,
                    "used_at": datetime.utcnow(),
                }
            }
        },
        session=session,
    )


def register_coupon_routes(app, db):
    try:
        db.coupons.create_index("code", unique=True)
        db.coupons.create_index([("is_active", 1), ("valid_until", 1)])
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for coupons: %s", exc)

    def fetch_coupon(coupon_id: str) -> Tuple[Optional[Dict], Optional[tuple]]:
        object_id, id_error = validate_object_id(coupon_id)
        if id_error:
            return None, id_error
        coupon_document = db.coupons.find_one({"_id": object_id})
        if not coupon_document:
            return None, error_response("Coupon not found", 404)
        return coupon_document, None

    @app.route("/api/coupons/validate", methods=["POST"])
    @jwt_required()
    def validate_coupon():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        code = str(payload.get("code") or "").strip()
        if not code:
            return error_response("Coupon code is required", 400)

        cart_document = db.carts.find_one({"user_id": user["_id"]})
        lines, cart_total = summarize_cart(db, cart_document)
        if not lines:
            return error_response("Cart is empty", 400)

        coupon = find_active_coupon(db, code)
        if not coupon:
            return error_response("Invalid coupon code", 404)

        items = [{"category": line["product"].get("category")} for line in lines]
        validation = validate_for_order(coupon, cart_total, user["_id"], items)
        if not validation["is_valid"]:
            return error_response(validation["errors"][0], 400)

        discount_amount = validation["discount_amount"]
        return success_response(
            {
                "coupon": {
                    "id": str(coupon["_id"]),
                    "code": coupon.get("code"),
                    "description": coupon.get("description"),
                    "discountType": coupon.get("discount_type"),
                    "discountValue": coupon.get("discount_value"),
                },
                "cartTotal": cart_total,
                "discountAmount": discount_amount,
                "finalAmount": round(cart_total - discount_amount, 2),
            },
            message="Coupon applied successfully",
        )

    @app.route("/api/coupons", methods=["GET"])
    @jwt_required()
    def list_coupons():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        page, limit = pagination_args(default_limit=10)
        query: Dict[str, object] = {}

        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = build_regex(search_term)
            query["$or"] = [{"code": regex}, {"description": regex}]

        status = (request.args.get("status") or "").strip().lower()
        now = datetime.utcnow()
        if status == "active":
            query["is_active"] = True
            query["valid_until"] = {"$gte": now}
        elif status == "inactive":
            query["is_active"] = False
        elif status == "expired":
            query["valid_until"] = {"$lt": now}

        total = db.coupons.count_documents(query)
        cursor = (
            db.coupons.find(query)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total_pages = math.ceil(total / limit) if total else 0
        return success_response(
            [serialize_coupon(document) for document in cursor],
            pagination={
                "currentPage": page,
                "totalPages": total_pages,
                "totalCoupons": total,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        )

    @app.route("/api/coupons/stats", methods=["GET"])
    @jwt_required()
    def coupon_stats():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        usage_totals = list(
            db.coupons.aggregate(
                [{"$group": {"_id": None, "totalUsage": {"$sum": "$used_count"}}}]
            )
        )
        discount_totals = list(
            db.coupons.aggregate(
                [
                    {"$unwind": "$usage_history"},
                    {
                        "$group": {
                            "_id": None,
                            "totalDiscount": {"$sum": "$usage_history.discount_amount"},
                        }
                    },
                ]
            )
        )
        return success_response(
            {
                "totalCoupons": db.coupons.count_documents({}),
                "activeCoupons": db.coupons.count_documents({"is_active": True}),
                "totalUsage": usage_totals[0]["totalUsage"] if usage_totals else 0,
                "totalDiscountGiven": round(
                    discount_totals[0]["totalDiscount"], 2
                )
                if discount_totals
                else 0,
            }
        )

    @app.route("/api/coupons/<coupon_id>", methods=["GET"])
    @jwt_required()
    def get_coupon(coupon_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        coupon_document, error = fetch_coupon(coupon_id)
        if error:
            return error
        return success_response(serialize_coupon(coupon_document, include_history=True))

    @app.route("/api/coupons", methods=["POST"])
    @jwt_required()
    def create_coupon():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        fields = normalize_coupon_payload(read_payload())
        errors = validate_coupon_fields(fields)
        if errors:
            raise ValidationError(errors)

        if db.coupons.find_one({"code": fields["code"]}):
            return error_response("Coupon code already exists", 400)

        now = datetime.utcnow()
        fields.update(
            {
                "used_count": 0,
                "usage_history": [],
                "created_by": admin_user["_id"],
                "created_at": now,
                "updated_at": now,
            }
        )
        result = db.coupons.insert_one(fields)
        fields["_id"] = result.inserted_id

        record_audit_log(db, admin_user.get("email"), "Created coupon", {"code": fields["code"]})
        return success_response(
            serialize_coupon(fields), 201, message="Coupon created successfully"
        )

    @app.route("/api/coupons/<coupon_id>", methods=["PUT"])
    @jwt_required()
    def update_coupon(coupon_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        coupon_document, error = fetch_coupon(coupon_id)
        if error:
            return error

        updates = normalize_coupon_payload(read_payload(), partial=True)
        merged = {**coupon_document, **updates}
        errors = validate_coupon_fields(merged)
        if errors:
            raise ValidationError(errors)

        new_code = updates.get("code")
        if new_code and new_code != coupon_document.get("code"):
            duplicate = db.coupons.find_one(
                {"code": new_code, "_id": {"$ne": coupon_document["_id"]}}
            )
            if duplicate:
                return error_response("Coupon code already exists", 400)

        updates["updated_at"] = datetime.utcnow()
        updated = db.coupons.find_one_and_update(
            {"_id": coupon_document["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        record_audit_log(db, admin_user.get("email"), "Updated coupon", {"code": updated.get("code")})
        return success_response(serialize_coupon(updated), message="Coupon updated successfully")

    @app.route("/api/coupons/<coupon_id>", methods=["DELETE"])
    @jwt_required()
    def delete_coupon(coupon_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        coupon_document, error = fetch_coupon(coupon_id)
        if error:
            return error

        if (coupon_document.get("used_count") or 0) > 0:
            return error_response("Cannot delete coupon that has been used", 400)

        db.coupons.delete_one({"_id": coupon_document["_id"]})
        record_audit_log(db, admin_user.get("email"), "Deleted coupon", {"code": coupon_document.get("code")})
        return jsonify({"success": True, "message": "Coupon deleted successfully"})

    @app.route("/api/coupons/<coupon_id>/toggle-status", methods=["PATCH"])
    @app.route("/api/coupons/<coupon_id>/status", methods=["PATCH"])
    @jwt_required()
    def toggle_coupon_status(coupon_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        coupon_document, error = fetch_coupon(coupon_id)
        if error:
            return error

        is_active = not bool(coupon_document.get("is_active"))
        updated = db.coupons.find_one_and_update(
            {"_id": coupon_document["_id"]},
            {"$set": {"is_active": is_active, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        state = "activated" if is_active else "deactivated"
        record_audit_log(
            db, admin_user.get("email"), f"Coupon {state}", {"code": coupon_document.get("code")}
        )
        return success_response(
            serialize_coupon(updated), message=f"Coupon {state} successfully"
        )
