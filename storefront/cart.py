from datetime import datetime
from typing import Dict, List, Optional, Tuple

from flask import request
from flask_jwt_extended import jwt_required

from .helpers import effective_price, error_response, parse_quantity, safe_positive_int, success_response
from .security import get_current_user, read_payload, validate_object_id
from .serializers import serialize_product


def summarize_cart(db, cart_document) -> Tuple[List[Dict], float]:
    """Resolve cart lines against current products.

    Lines whose product no longer exists are dropped and prices come from
    the product, not from what was stored when the line was added.
    """
    if not cart_document:
        return [], 0.0

    items = cart_document.get("items") or []
    product_ids = [item.get("product_id") for item in items if item.get("product_id")]
    products = {
        document["_id"]: document
        for document in db.products.find({"_id": {"$in": product_ids}})
    }

    lines: List[Dict] = []
    total = 0.0
    for item in items:
        product = products.get(item.get("product_id"))
        if not product:
            continue
        quantity = safe_positive_int(item.get("quantity"), 1) or 1
        price = effective_price(product)
        line_total = round(price * quantity, 2)
        total += line_total
        lines.append(
            {
                "product": product,
                "quantity": quantity,
                "size": item.get("size", "") or "",
                "price": price,
                "line_total": line_total,
            }
        )
    return lines, round(total, 2)


def serialize_cart(db, cart_document) -> Dict[str, object]:
    lines, total = summarize_cart(db, cart_document)
    return {
        "items": [
            {
                "productId": str(line["product"]["_id"]),
                "product": serialize_product(line["product"]),
                "quantity": line["quantity"],
                "size": line["size"],
                "price": line["price"],
                "lineTotal": line["line_total"],
            }
            for line in lines
        ],
        "totalItems": sum(line["quantity"] for line in lines),
        "totalAmount": total,
    }


def clear_cart(db, user_id, session=None):
    db.carts.update_one(
        {"user_id": user_id},
        {"$set": {"items": [], "total_amount": 0, "updated_at": datetime.utcnow()}},
        session=session,
    )


def register_cart_routes(app, db):
    try:
        db.carts.create_index("user_id", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for carts: %s", exc)

    def load_cart(user_id):
        cart_document = db.carts.find_one({"user_id": user_id})
        if cart_document:
            return cart_document
        cart_document = {
            "user_id": user_id,
            "items": [],
            "total_amount": 0,
            "updated_at": datetime.utcnow(),
        }
        result = db.carts.insert_one(cart_document)
        cart_document["_id"] = result.inserted_id
        return cart_document

    def save_cart(cart_document, items: List[Dict]):
        cart_document["items"] = items
        _, total = summarize_cart(db, cart_document)
        db.carts.update_one(
            {"_id": cart_document["_id"]},
            {
                "$set": {
                    "items": items,
                    "total_amount": total,
                    "updated_at": datetime.utcnow(),
                }
            },
        )
        return cart_document

    def fetch_active_product(product_id) -> Tuple[Optional[Dict], Optional[tuple]]:
        object_id, id_error = validate_object_id(product_id)
        if id_error:
            return None, id_error
        product = db.products.find_one({"_id": object_id, "is_active": {"$ne": False}})
        if not product:
            return None, error_response("Product not found", 404)
        return product, None

    def check_size_and_stock(product, size: str, quantity: int):
        sizes = product.get("sizes") or []
        if sizes and size not in sizes:
            return error_response("Please select a valid size", 400)
        if quantity > int(product.get("stock") or 0):
            return error_response(f"Only {int(product.get('stock') or 0)} items available in stock", 400)
        return None

    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        cart_document = db.carts.find_one({"user_id": user["_id"]})
        return success_response(serialize_cart(db, cart_document))

    @app.route("/api/cart", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        product, product_error = fetch_active_product(
            payload.get("productId") or payload.get("product_id")
        )
        if product_error:
            return product_error

        quantity = parse_quantity(payload.get("quantity"))
        if quantity is None:
            return error_response("Quantity must be a positive whole number", 400)
        size = str(payload.get("size") or "").strip()

        cart_document = load_cart(user["_id"])
        items = list(cart_document.get("items") or [])
        existing = next(
            (
                item
                for item in items
                if item.get("product_id") == product["_id"] and (item.get("size") or "") == size
            ),
            None,
        )
        requested = quantity + (existing.get("quantity", 0) if existing else 0)
        stock_error = check_size_and_stock(product, size, requested)
        if stock_error:
            return stock_error

        if existing:
            existing["quantity"] = requested
            existing["price"] = effective_price(product)
        else:
            items.append(
                {
                    "product_id": product["_id"],
                    "quantity": quantity,
                    "size": size,
                    "price": effective_price(product),
                }
            )

        save_cart(cart_document, items)
        return success_response(serialize_cart(db, cart_document), message="Item added to cart")

    @app.route("/api/cart/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_cart_item(product_id: str):
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        object_id, id_error = validate_object_id(product_id)
        if id_error:
            return id_error

        payload = read_payload()
        quantity = safe_positive_int(payload.get("quantity"), 0)
        size = str(payload.get("size") or "").strip()

        cart_document = db.carts.find_one({"user_id": user["_id"]})
        items = list((cart_document or {}).get("items") or [])
        target = next(
            (
                item
                for item in items
                if item.get("product_id") == object_id
                and (not size or (item.get("size") or "") == size)
            ),
            None,
        )
        if not target:
            return error_response("Item not found in cart", 404)

        if quantity <= 0:
            items.remove(target)
        else:
            product = db.products.find_one({"_id": object_id})
            if not product:
                return error_response("Product not found", 404)
            stock_error = check_size_and_stock(product, target.get("size") or "", quantity)
            if stock_error:
                return stock_error
            target["quantity"] = quantity
            target["price"] = effective_price(product)

        save_cart(cart_document, items)
        return success_response(serialize_cart(db, cart_document), message="Cart updated")

    @app.route("/api/cart/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_cart_item(product_id: str):
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        object_id, id_error = validate_object_id(product_id)
        if id_error:
            return id_error

        size = (request.args.get("size") or "").strip()
        cart_document = db.carts.find_one({"user_id": user["_id"]})
        if not cart_document:
            return error_response("Cart not found", 404)

        items = [
            item
            for item in cart_document.get("items") or []
            if not (
                item.get("product_id") == object_id
                and (not size or (item.get("size") or "") == size)
            )
        ]
        save_cart(cart_document, items)
        return success_response(serialize_cart(db, cart_document), message="Item removed from cart")

    @app.route("/api/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart_route():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        clear_cart(db, user["_id"])
        return success_response(serialize_cart(db, None), message="Cart cleared")

    @app.route("/api/wishlist", methods=["GET"])
    @jwt_required()
    def get_wishlist():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        product_ids = user.get("wishlist") or []
        products = db.products.find({"_id": {"$in": product_ids}})
        return success_response([serialize_product(document) for document in products])

    @app.route("/api/wishlist/<product_id>", methods=["POST"])
    @jwt_required()
    def add_to_wishlist(product_id: str):
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        product, product_error = fetch_active_product(product_id)
        if product_error:
            return product_error

        db.users.update_one({"_id": user["_id"]}, {"$addToSet": {"wishlist": product["_id"]}})
        wishlist = db.users.find_one({"_id": user["_id"]}).get("wishlist") or []
        return success_response([str(item) for item in wishlist], message="Added to wishlist")

    @app.route("/api/wishlist/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_from_wishlist(product_id: str):
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        object_id, id_error = validate_object_id(product_id)
        if id_error:
            return id_error

        db.users.update_one({"_id": user["_id"]}, {"$pull": {"wishlist": object_id}})
        wishlist = db.users.find_one({"_id": user["_id"]}).get("wishlist") or []
        return success_response([str(item) for item in wishlist], message="Removed from wishlist")
