import re
from datetime import datetime, timedelta
from typing import Dict

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from pymongo import ReturnDocument

from .audit import record_audit_log
from .auth import check_password, hash_password
from .card_vault import CardVaultError, encrypt_card_number, luhn_valid
from .helpers import error_response, isoformat, success_response
from .security import clear_token_cookie, get_current_user, read_payload, validate_object_id, validate_password
from .serializers import serialize_order, serialize_payment_method, serialize_user
from .uploads import remove_local_image, save_images

phone_pattern = re.compile(r"^\d{10}$")
expiry_pattern = re.compile(r"^(\d{1,2})\s*/\s*(\d{2}|\d{4})$")
ADDRESS_FIELDS = {
    "street": ("street",),
    "city": ("city",),
    "state": ("state",),
    "zip_code": ("zipCode", "zip_code"),
    "country": ("country",),
}


def order_number(order_document) -> str:
    return f"ORD{str(order_document['_id'])[-6:].upper()}"


def anonymize_user_data(db, user_document):
    """Detach a user's orders and drop everything else they own."""
    db.orders.update_many(
        {"user_id": user_document["_id"]},
        {
            "$set": {
                "user_id": None,
                "user_deleted": True,
                "user_email": user_document.get("email"),
                "updated_at": datetime.utcnow(),
            }
        },
    )
    db.payment_methods.delete_many({"user_id": user_document["_id"]})
    db.carts.delete_one({"user_id": user_document["_id"]})
    remove_local_image(user_document.get("profile_picture"))
    db.users.delete_one({"_id": user_document["_id"]})


def parse_expiry(payload: Dict):
    expiry_date = str(payload.get("expiryDate") or "").strip()
    if expiry_date:
        match = expiry_pattern.match(expiry_date)
        if not match:
            return None, None
        month, year = match.group(1), match.group(2)
    else:
        month = str(payload.get("expiryMonth") or "").strip()
        year = str(payload.get("expiryYear") or "").strip()
    if not month.isdigit() or not year.isdigit():
        return None, None
    month_value = int(month)
    year_value = int(year) + 2000 if len(year) == 2 else int(year)
    if not 1 <= month_value <= 12:
        return None, None
    return month_value, year_value


def register_user_routes(app, db):
    try:
        db.payment_methods.create_index("user_id")
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for payment methods: %s", exc)

    @app.route("/api/users/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        updates: Dict[str, object] = {}
        full_name = str(payload.get("fullName") or "").strip()
        if full_name:
            if not 2 <= len(full_name) <= 50:
                return error_response("Full name must be between 2 and 50 characters", 400)
            updates["full_name"] = full_name
        phone = str(payload.get("phone") or "").strip()
        if phone:
            if not phone_pattern.match(phone):
                return error_response("Please provide a valid 10-digit phone number", 400)
            updates["phone"] = phone

        address_payload = payload.get("address")
        if isinstance(address_payload, dict):
            for field_name, keys in ADDRESS_FIELDS.items():
                value = next((address_payload.get(key) for key in keys if address_payload.get(key)), "")
                if str(value).strip():
                    updates[f"address.{field_name}"] = str(value).strip()

        if not updates:
            return success_response(serialize_user(user), message="Nothing to update")

        updates["updated_at"] = datetime.utcnow()
        updated = db.users.find_one_and_update(
            {"_id": user["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        return success_response(serialize_user(updated), message="Profile updated successfully")

    @app.route("/api/users/profile-picture", methods=["POST"])
    @jwt_required()
    def upload_profile_picture():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        picture = request.files.get("profilePicture")
        if not picture:
            return error_response("Please upload an image", 400)

        urls, upload_error = save_images([picture], subfolder="profiles", allow_remote=False)
        if upload_error:
            return error_response(upload_error, 400)

        remove_local_image(user.get("profile_picture"))
        updated = db.users.find_one_and_update(
            {"_id": user["_id"]},
            {"$set": {"profile_picture": urls[0], "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return success_response(serialize_user(updated), message="Profile picture updated")

    @app.route("/api/users/payment-methods", methods=["GET"])
    @jwt_required()
    def list_payment_methods():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        cursor = db.payment_methods.find({"user_id": user["_id"]}).sort("created_at", -1)
        return success_response([serialize_payment_method(document) for document in cursor])

    @app.route("/api/users/payment-methods", methods=["POST"])
    @jwt_required()
    def add_payment_method():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        card_number = re.sub(r"[\s-]", "", str(payload.get("cardNumber") or ""))
        holder_name = str(payload.get("cardHolderName") or "").strip()
        if not re.fullmatch(r"\d{13,19}", card_number) or not luhn_valid(card_number):
            return error_response("Invalid card number", 400)
        if not holder_name:
            return error_response("Card holder name is required", 400)

        month, year = parse_expiry(payload)
        if month is None:
            return error_response("Invalid expiry date", 400)
        now = datetime.utcnow()
        if (year, month) < (now.year, now.month):
            return error_response("Card has expired", 400)

        try:
            encrypted, iv = encrypt_card_number(card_number, app.config.get("ENCRYPTION_KEY"))
        except CardVaultError as exc:
            app.logger.error("Card encryption unavailable: %s", exc)
            return error_response("Payment methods are not available right now", 500)

        document = {
            "user_id": user["_id"],
            "card_holder_name": holder_name,
            "encrypted_card_number": encrypted,
            "iv": iv,
            "last_four": card_number[-4:],
            "expiry_month": f"{month:02d}",
            "expiry_year": str(year),
            "is_default": db.payment_methods.count_documents({"user_id": user["_id"]}) == 0,
            "created_at": now,
        }
        result = db.payment_methods.insert_one(document)
        document["_id"] = result.inserted_id
        return success_response(serialize_payment_method(document), 201, message="Payment method added")

    @app.route("/api/users/payment-methods/<method_id>", methods=["DELETE"])
    @jwt_required()
    def delete_payment_method(method_id: str):
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        object_id, id_error = validate_object_id(method_id)
        if id_error:
            return id_error

        removed = db.payment_methods.find_one_and_delete({"_id": object_id, "user_id": user["_id"]})
        if not removed:
            return error_response("Payment method not found", 404)
        if removed.get("is_default"):
            replacement = db.payment_methods.find_one({"user_id": user["_id"]})
            if replacement:
                db.payment_methods.update_one(
                    {"_id": replacement["_id"]}, {"$set": {"is_default": True}}
                )
        return jsonify({"success": True, "message": "Payment method removed"})

    @app.route("/api/users/orders", methods=["GET"])
    @jwt_required()
    def order_history():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        orders = []
        for document in db.orders.find({"user_id": user["_id"]}).sort("created_at", -1):
            serialized = serialize_order(document)
            serialized["orderNumber"] = order_number(document)
            estimated = (document.get("delivery_info") or {}).get("estimated_delivery")
            if not estimated and isinstance(document.get("created_at"), datetime):
                estimated = document["created_at"] + timedelta(
                    days=app.config.get("ORDER_DELIVERY_DAYS", 7)
                )
            serialized["expectedDeliveryDate"] = isoformat(estimated)
            orders.append(serialized)
        return success_response(orders)

    @app.route("/api/users/change-password", methods=["PUT"])
    @jwt_required()
    def change_password():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        payload = read_payload()
        current_password = str(payload.get("currentPassword") or "")
        new_password = str(payload.get("newPassword") or "")
        if not check_password(current_password, user.get("password")):
            return error_response("Current password is incorrect", 400)
        password_error = validate_password(new_password)
        if password_error:
            return error_response(password_error, 400)

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password": hash_password(new_password), "updated_at": datetime.utcnow()}},
        )
        record_audit_log(db, user.get("email"), "Changed password")
        return jsonify({"success": True, "message": "Password updated successfully"})

    @app.route("/api/users/account", methods=["DELETE"])
    @jwt_required()
    def delete_account():
        user, auth_error = get_current_user(db)
        if auth_error:
            return auth_error

        anonymize_user_data(db, user)
        record_audit_log(db, None, "Deleted own account", {"email": user.get("email")})
        response = jsonify({"success": True, "message": "Account deleted successfully"})
        return clear_token_cookie(response), 200
