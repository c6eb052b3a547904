import math
from datetime import datetime, timedelta
from typing import Dict, List

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from pymongo import ReturnDocument

from .audit import record_audit_log
from .catalog import (
    PRODUCT_CATEGORIES,
    build_product_query,
    normalize_product_payload,
    validate_product_fields,
)
from .helpers import (
    ValidationError,
    build_regex,
    error_response,
    normalize_object_id_list,
    pagination_args,
    parse_iso_date,
    parse_json_list,
    success_response,
)
from .security import normalize_role, read_payload, require_admin_user, validate_object_id
from .serializers import serialize_order, serialize_product, serialize_user
from .uploads import save_images
from .users import anonymize_user_data

COMPLETED_SALE_FILTER = {
    "$or": [
        {"order_status": "delivered"},
        {"payment_info.status": "completed"},
    ]
}


def sum_field(collection, match: Dict, field: str) -> float:
    rows = list(
        collection.aggregate(
            [
                {"$match": match},
                {"$group": {"_id": None, "total": {"$sum": f"${field}"}}},
            ]
        )
    )
    return round(rows[0]["total"], 2) if rows else 0


def register_admin_routes(app, db):
    @app.route("/api/admin/dashboard", methods=["GET"])
    @jwt_required()
    def admin_dashboard():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        now = datetime.utcnow()
        threshold = app.config.get("LOW_STOCK_THRESHOLD", 10)
        week_start = now - timedelta(days=7)
        month_start = now - timedelta(days=30)

        trend_rows = db.orders.aggregate(
            [
                {"$match": {"created_at": {"$gte": week_start}}},
                {
                    "$group": {
                        "_id": {
                            "year": {"$year": "$created_at"},
                            "month": {"$month": "$created_at"},
                            "day": {"$dayOfMonth": "$created_at"},
                        },
                        "sales": {"$sum": "$total_amount"},
                        "orders": {"$sum": 1},
                    }
                },
            ]
        )
        sales_trend = sorted(
            (
                {
                    "_id": "{year:04d}-{month:02d}-{day:02d}".format(**row["_id"]),
                    "sales": round(row["sales"], 2),
                    "orders": row["orders"],
                }
                for row in trend_rows
            ),
            key=lambda entry: entry["_id"],
        )

        recent_orders = db.orders.find({}).sort("created_at", -1).limit(10)
        low_stock = db.products.find({"stock": {"$lt": threshold}}).sort("stock", 1)
        active_user_ids = [
            user_id
            for user_id in db.orders.distinct("user_id", {"created_at": {"$gte": month_start}})
            if user_id is not None
        ]

        return success_response(
            {
                "totalOrders": db.orders.count_documents({}),
                "totalProducts": db.products.count_documents({}),
                "totalUsers": db.users.count_documents({}),
                "totalSales": sum_field(db.orders, COMPLETED_SALE_FILTER, "total_amount"),
                "recentOrders": [serialize_order(document) for document in recent_orders],
                "lowStockProducts": [serialize_product(document) for document in low_stock],
                "salesTrend": sales_trend,
                "newUsers": db.users.count_documents({"created_at": {"$gte": month_start}}),
                "activeUsers": len(active_user_ids),
            }
        )

    @app.route("/api/admin/sales-report", methods=["GET"])
    @jwt_required()
    def admin_sales_report():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        start_date = parse_iso_date(request.args.get("startDate"))
        end_date = parse_iso_date(request.args.get("endDate"), end_of_day=True)
        match: Dict[str, object] = {}
        if start_date or end_date:
            created_filter: Dict[str, datetime] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lt"] = end_date
            match["created_at"] = created_filter

        orders = list(db.orders.find(match).sort("created_at", -1))
        sales_match = {"$and": [match, COMPLETED_SALE_FILTER]} if match else COMPLETED_SALE_FILTER
        total_sales = sum_field(db.orders, sales_match, "total_amount")
        by_status = db.orders.aggregate(
            [
                {"$match": match},
                {
                    "$group": {
                        "_id": "$order_status",
                        "count": {"$sum": 1},
                        "total": {"$sum": "$total_amount"},
                    }
                },
            ]
        )
        return success_response(
            {
                "orders": [serialize_order(document) for document in orders],
                "totalSales": total_sales,
                "totalOrders": len(orders),
                "averageOrderValue": round(total_sales / len(orders), 2) if orders else 0,
                "salesByStatus": {
                    row["_id"]: {"count": row["count"], "total": round(row["total"], 2)}
                    for row in by_status
                },
            }
        )

    @app.route("/api/admin/inventory-report", methods=["GET"])
    @jwt_required()
    def admin_inventory_report():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        threshold = app.config.get("LOW_STOCK_THRESHOLD", 10)
        low_stock = db.products.find({"stock": {"$lt": threshold, "$gt": 0}}).sort("stock", 1)
        out_of_stock = db.products.find({"stock": 0})
        by_category = db.products.aggregate(
            [
                {
                    "$group": {
                        "_id": "$category",
                        "products": {"$sum": 1},
                        "stock": {"$sum": "$stock"},
                    }
                }
            ]
        )
        return success_response(
            {
                "totalProducts": db.products.count_documents({}),
                "lowStock": [serialize_product(document) for document in low_stock],
                "outOfStock": [serialize_product(document) for document in out_of_stock],
                "stockByCategory": {
                    row["_id"]: {"products": row["products"], "stock": row["stock"]}
                    for row in by_category
                },
            }
        )

    @app.route("/api/admin/user-analytics", methods=["GET"])
    @jwt_required()
    def admin_user_analytics():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        month_start = datetime.utcnow() - timedelta(days=30)
        by_role = db.users.aggregate([{"$group": {"_id": "$role", "count": {"$sum": 1}}}])
        active_user_ids = [
            user_id
            for user_id in db.orders.distinct("user_id", {"created_at": {"$gte": month_start}})
            if user_id is not None
        ]
        return success_response(
            {
                "totalUsers": db.users.count_documents({}),
                "usersByRole": {row["_id"] or "user": row["count"] for row in by_role},
                "newUsersLast30Days": db.users.count_documents({"created_at": {"$gte": month_start}}),
                "activeUsers": len(active_user_ids),
            }
        )

    # --- Products ---

    def fetch_product(product_id: str):
        object_id, id_error = validate_object_id(product_id)
        if id_error:
            return None, id_error
        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return None, error_response("Product not found", 404)
        return product_document, None

    @app.route("/api/admin/products", methods=["GET"])
    @jwt_required()
    def admin_list_products():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        query = build_product_query(request.args, include_inactive=True)
        cursor = db.products.find(query).sort("created_at", -1)
        return success_response([serialize_product(document) for document in cursor])

    @app.route("/api/admin/products", methods=["POST"])
    @jwt_required()
    def admin_create_product():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        fields, payload_error = normalize_product_payload(read_payload())
        if payload_error:
            return error_response(payload_error, 400)
        errors = validate_product_fields(fields)
        if errors:
            raise ValidationError(errors)

        images, upload_error = save_images(request.files.getlist("images"))
        if upload_error:
            return error_response(upload_error, 400)

        now = datetime.utcnow()
        fields.update({"images": images, "created_at": now, "updated_at": now})
        result = db.products.insert_one(fields)
        fields["_id"] = result.inserted_id

        record_audit_log(
            db, admin_user.get("email"), "Created product",
            {"product_id": str(result.inserted_id), "name": fields.get("name")},
        )
        return success_response(serialize_product(fields), 201)

    @app.route("/api/admin/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def admin_update_product(product_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        product_document, error = fetch_product(product_id)
        if error:
            return error

        payload = read_payload()
        updates, payload_error = normalize_product_payload(payload, partial=True)
        if payload_error:
            return error_response(payload_error, 400)
        errors = validate_product_fields({**product_document, **updates})
        if errors:
            raise ValidationError(errors)

        images: List[str] = list(product_document.get("images") or [])
        if "existingImages" in payload:
            existing, list_error = parse_json_list(payload.get("existingImages"), "existingImages")
            if list_error:
                return error_response(list_error, 400)
            images = [str(item) for item in existing or []]
        new_images, upload_error = save_images(request.files.getlist("images"))
        if upload_error:
            return error_response(upload_error, 400)
        updates["images"] = images + new_images
        updates["updated_at"] = datetime.utcnow()

        updated = db.products.find_one_and_update(
            {"_id": product_document["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        record_audit_log(
            db, admin_user.get("email"), "Updated product",
            {"product_id": product_id, "name": updated.get("name")},
        )
        return success_response(serialize_product(updated))

    @app.route("/api/admin/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_product(product_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        product_document, error = fetch_product(product_id)
        if error:
            return error

        db.products.delete_one({"_id": product_document["_id"]})
        db.featured.update_many({}, {"$pull": {"products": product_document["_id"]}})
        db.users.update_many({}, {"$pull": {"wishlist": product_document["_id"]}})

        record_audit_log(
            db, admin_user.get("email"), "Deleted product",
            {"product_id": product_id, "name": product_document.get("name")},
        )
        return jsonify({"success": True, "message": "Product deleted successfully"})

    # --- Users ---

    @app.route("/api/admin/users", methods=["GET"])
    @jwt_required()
    def admin_list_users():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        page, limit = pagination_args(default_limit=10)
        query: Dict[str, object] = {}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = build_regex(search_term)
            query["$or"] = [{"full_name": regex}, {"email": regex}]
        role = (request.args.get("role") or "").strip().lower()
        if role:
            query["role"] = role

        total = db.users.count_documents(query)
        cursor = db.users.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        total_pages = math.ceil(total / limit) if total else 0
        return success_response(
            [serialize_user(document) for document in cursor],
            pagination={
                "currentPage": page,
                "totalPages": total_pages,
                "totalUsers": total,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        )

    @app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def admin_update_user_role(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        object_id, id_error = validate_object_id(user_id)
        if id_error:
            return id_error

        requested_role = str(read_payload().get("role") or "").strip().lower()
        if requested_role != normalize_role(requested_role):
            return error_response("Invalid role", 400)

        updated = db.users.find_one_and_update(
            {"_id": object_id},
            {"$set": {"role": requested_role, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return error_response("User not found", 404)

        record_audit_log(
            db, admin_user.get("email"), "Changed user role",
            {"target_email": updated.get("email"), "role": requested_role},
        )
        return success_response(serialize_user(updated), message="User role updated")

    @app.route("/api/admin/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_user(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        object_id, id_error = validate_object_id(user_id)
        if id_error:
            return id_error

        if object_id == admin_user["_id"]:
            return error_response("You cannot delete your own account", 400)

        user_to_delete = db.users.find_one({"_id": object_id})
        if not user_to_delete:
            return error_response("User not found", 404)

        anonymize_user_data(db, user_to_delete)
        record_audit_log(
            db, admin_user.get("email"), "Deleted user",
            {"target_email": user_to_delete.get("email")},
        )
        return jsonify({"success": True, "message": "User deleted successfully"})

    # --- Featured ---

    def ensure_featured_documents():
        for category in PRODUCT_CATEGORIES:
            db.featured.update_one(
                {"category": category},
                {"$setOnInsert": {"category": category, "products": []}},
                upsert=True,
            )

    @app.route("/api/admin/featured", methods=["GET"])
    @jwt_required()
    def admin_get_featured():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        ensure_featured_documents()
        featured = []
        for document in db.featured.find({}).sort("category", 1):
            product_ids = document.get("products") or []
            products = {
                product["_id"]: product
                for product in db.products.find({"_id": {"$in": product_ids}})
            }
            featured.append(
                {
                    "category": document["category"],
                    "products": [
                        serialize_product(products[product_id])
                        for product_id in product_ids
                        if product_id in products
                    ],
                }
            )
        return success_response(featured)

    @app.route("/api/admin/featured/<category>", methods=["PUT"])
    @jwt_required()
    def admin_update_featured(category: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        normalized_category = category.strip().lower()
        if normalized_category not in PRODUCT_CATEGORIES:
            return error_response("Invalid category", 400)

        raw_ids = read_payload().get("productIds")
        if not isinstance(raw_ids, list):
            return error_response("productIds must be an array", 400)
        product_ids = normalize_object_id_list(raw_ids)
        if len(product_ids) != len(raw_ids):
            return error_response("One or more products not found", 400)
        unique_ids = list(dict.fromkeys(product_ids))
        if db.products.count_documents({"_id": {"$in": unique_ids}}) != len(unique_ids):
            return error_response("One or more products not found", 400)

        db.featured.update_one(
            {"category": normalized_category},
            {"$set": {"products": unique_ids, "updated_at": datetime.utcnow()}},
            upsert=True,
        )
        record_audit_log(
            db, admin_user.get("email"), "Updated featured products",
            {"category": normalized_category, "count": str(len(unique_ids))},
        )
        return success_response(
            {"category": normalized_category, "products": [str(item) for item in unique_ids]},
            message="Featured products updated",
        )
