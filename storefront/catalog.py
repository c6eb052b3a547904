import math
from datetime import datetime
from typing import Dict, List

from flask import request
from flask_jwt_extended import jwt_required
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from .helpers import (
    build_regex,
    error_response,
    pagination_args,
    parse_json_list,
    safe_float,
    success_response,
)
from .security import read_payload, require_admin_user, validate_object_id
from .serializers import serialize_product

PRODUCT_CATEGORIES = ("men", "women", "accessories")
SORT_OPTIONS = {
    "newest": [("created_at", DESCENDING)],
    "oldest": [("created_at", ASCENDING)],
    "price_asc": [("price", ASCENDING)],
    "price_desc": [("price", DESCENDING)],
    "name": [("name", ASCENDING)],
}


def normalize_product_payload(payload: Dict, partial: bool = False):
    """Convert API/multipart input into stored product fields.

    Returns ``(fields, error_message)``.
    """
    fields: Dict[str, object] = {}
    for field_name, keys in {
        "name": ("name",),
        "description": ("description",),
        "category": ("category",),
        "sub_category": ("subCategory", "sub_category"),
    }.items():
        for key in keys:
            if key in payload:
                fields[field_name] = str(payload[key] or "").strip()
                break
    if "category" in fields:
        fields["category"] = fields["category"].lower()

    if payload.get("price") not in (None, ""):
        fields["price"] = safe_float(payload.get("price"), None)
    discount_raw = payload.get("discountPrice", payload.get("discount_price"))
    if discount_raw is not None:
        fields["discount_price"] = None if discount_raw in ("", 0, "0") else safe_float(discount_raw, None)
    if payload.get("stock") not in (None, ""):
        stock_value = safe_float(payload.get("stock"), None)
        fields["stock"] = int(stock_value) if stock_value is not None else None

    for list_field in ("sizes", "tags"):
        if list_field in payload:
            parsed, list_error = parse_json_list(payload.get(list_field), list_field)
            if list_error:
                return None, list_error
            fields[list_field] = [str(item).strip() for item in parsed or [] if str(item).strip()]

    if "isActive" in payload or "is_active" in payload:
        raw_active = payload.get("isActive", payload.get("is_active"))
        if isinstance(raw_active, str):
            raw_active = raw_active.strip().lower() in {"1", "true", "yes", "on"}
        fields["is_active"] = bool(raw_active)

    if not partial:
        fields.setdefault("sub_category", "")
        fields.setdefault("sizes", [])
        fields.setdefault("tags", [])
        fields.setdefault("discount_price", None)
        fields.setdefault("stock", 0)
        fields.setdefault("is_active", True)
    return fields, None


def validate_product_fields(product: Dict) -> List[str]:
    errors: List[str] = []
    name = product.get("name") or ""
    if not name:
        errors.append("Product name is required")
    elif len(name) > 100:
        errors.append("Product name cannot exceed 100 characters")
    if not product.get("description"):
        errors.append("Product description is required")

    price = product.get("price")
    if price is None or price <= 0:
        errors.append("Price must be greater than 0")
    discount_price = product.get("discount_price")
    if discount_price is not None:
        if discount_price < 0:
            errors.append("Discount price cannot be negative")
        elif price is not None and discount_price >= price:
            errors.append("Discount price must be less than the regular price")

    stock = product.get("stock")
    if stock is None or stock < 0:
        errors.append("Stock cannot be negative")
    if product.get("category") not in PRODUCT_CATEGORIES:
        errors.append("Category must be one of men, women or accessories")
    return errors


def build_product_query(args, include_inactive: bool = False) -> Dict[str, object]:
    query: Dict[str, object] = {}
    if not include_inactive:
        query["is_active"] = {"$ne": False}

    category = (args.get("category") or "").strip().lower()
    if category:
        query["category"] = category
    sub_category = (args.get("subCategory") or args.get("sub_category") or "").strip()
    if sub_category:
        query["sub_category"] = build_regex(sub_category)
    size = (args.get("size") or "").strip()
    if size:
        query["sizes"] = size
    if (args.get("inStock") or "").strip().lower() in {"1", "true", "yes"}:
        query["stock"] = {"$gt": 0}

    search_term = (args.get("search") or "").strip()
    if search_term:
        regex = build_regex(search_term)
        query["$or"] = [{"name": regex}, {"description": regex}, {"tags": regex}]

    price_filter: Dict[str, float] = {}
    min_price = safe_float(args.get("minPrice"), None)
    max_price = safe_float(args.get("maxPrice"), None)
    if min_price is not None:
        price_filter["$gte"] = min_price
    if max_price is not None:
        price_filter["$lte"] = max_price
    if price_filter:
        # Filter on the effective price: discount price when set, else price.
        query["$and"] = [
            {
                "$or": [
                    {"discount_price": {"$gt": 0, **price_filter}},
                    {
                        "$and": [
                            {"$or": [{"discount_price": None}, {"discount_price": {"$lte": 0}}]},
                            {"price": price_filter},
                        ]
                    },
                ]
            }
        ]
    return query


def register_catalog_routes(app, db):
    try:
        db.products.create_index([("category", 1), ("created_at", -1)])
        db.products.create_index([("name", 1)])
        db.featured.create_index("category", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for products: %s", exc)

    @app.route("/api/products", methods=["GET"])
    def list_products():
        page, limit = pagination_args(default_limit=12)
        query = build_product_query(request.args)
        sort = SORT_OPTIONS.get((request.args.get("sort") or "newest").strip(), SORT_OPTIONS["newest"])

        total = db.products.count_documents(query)
        cursor = db.products.find(query).sort(sort).skip((page - 1) * limit).limit(limit)
        total_pages = math.ceil(total / limit) if total else 0
        return success_response(
            [serialize_product(document) for document in cursor],
            pagination={
                "currentPage": page,
                "totalPages": total_pages,
                "totalProducts": total,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        )

    @app.route("/api/products/featured", methods=["GET"])
    def list_featured_products():
        grouped: Dict[str, List[Dict]] = {category: [] for category in PRODUCT_CATEGORIES}
        for featured_document in db.featured.find({}):
            product_ids = featured_document.get("products") or []
            products = {
                document["_id"]: document
                for document in db.products.find(
                    {"_id": {"$in": product_ids}, "is_active": {"$ne": False}}
                )
            }
            grouped[featured_document.get("category")] = [
                serialize_product(products[product_id])
                for product_id in product_ids
                if product_id in products
            ]
        return success_response(grouped)

    @app.route("/api/products/categories/<category>", methods=["GET"])
    def list_category_products(category: str):
        normalized = category.strip().lower()
        if normalized not in PRODUCT_CATEGORIES:
            return error_response("Invalid category", 400)
        cursor = db.products.find(
            {"category": normalized, "is_active": {"$ne": False}}
        ).sort("created_at", -1)
        return success_response([serialize_product(document) for document in cursor])

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        object_id, id_error = validate_object_id(product_id)
        if id_error:
            return id_error
        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return error_response("Product not found", 404)
        return success_response(serialize_product(product_document))

    def serialize_banner(document):
        if not document:
            return None
        return {
            "title": document.get("title", ""),
            "subtitle": document.get("subtitle", ""),
            "image": document.get("image", ""),
            "link": document.get("link", ""),
            "isActive": bool(document.get("is_active")),
        }

    @app.route("/api/banner", methods=["GET"])
    def get_banner():
        banner = db.banners.find_one({"is_active": True})
        return success_response(serialize_banner(banner))

    @app.route("/api/banner", methods=["PUT"])
    @jwt_required()
    def update_banner():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = read_payload()
        updates = {
            key: str(payload.get(key) or "").strip()
            for key in ("title", "subtitle", "image", "link")
            if key in payload
        }
        raw_active = payload.get("isActive", True)
        if isinstance(raw_active, str):
            raw_active = raw_active.strip().lower() in {"1", "true", "yes", "on"}
        updates["is_active"] = bool(raw_active)
        updates["updated_at"] = datetime.utcnow()

        banner = db.banners.find_one_and_update(
            {},
            {"$set": updates},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return success_response(serialize_banner(banner), message="Banner updated")
