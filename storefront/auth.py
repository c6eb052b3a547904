import hashlib
import re
import secrets
from datetime import datetime, timedelta

import bcrypt
from flask import jsonify
from flask_jwt_extended import jwt_required

from .audit import record_audit_log
from .emails import send_password_reset_email, send_welcome_email
from .helpers import error_response, is_valid_email, normalize_email, success_response
from .security import (
    attach_token_cookie,
    clear_token_cookie,
    client_address,
    get_current_user,
    issue_token,
    read_payload,
    validate_password,
)
from .serializers import serialize_user

phone_pattern = re.compile(r"^\d{10}$")
RESET_TOKEN_TTL = timedelta(hours=1)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_password(password: str) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())


def check_password(password: str, hashed) -> bool:
    if not password or not hashed:
        return False
    if isinstance(hashed, str):
        hashed = hashed.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed)
    except ValueError:
        return False


def validate_registration(payload) -> str:
    if not is_valid_email(payload.get("email")):
        return "Please provide a valid email"
    password_error = validate_password(payload.get("password"))
    if password_error:
        return password_error
    full_name = str(payload.get("fullName") or payload.get("full_name") or "").strip()
    if not 2 <= len(full_name) <= 50:
        return "Full name must be between 2 and 50 characters"
    phone = str(payload.get("phone") or "").strip()
    if phone and not phone_pattern.match(phone):
        return "Please provide a valid 10-digit phone number"
    return ""


def token_response(user_document, message: str, status: int = 200):
    token = issue_token(user_document)
    response, status = success_response(
        {"user": serialize_user(user_document), "token": token},
        status,
        message=message,
    )
    return attach_token_cookie(response, token), status


def register_auth_routes(app, db):
    try:
        db.users.create_index("email", unique=True)
        db.users.create_index("reset_password_token", sparse=True)
        db.users.create_index("email_verification_token", sparse=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for users: %s", exc)

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = read_payload()
        validation_error = validate_registration(payload)
        if validation_error:
            return error_response(validation_error, 400)

        email = normalize_email(payload.get("email"))
        if db.users.find_one({"email": email}):
            return error_response("User already exists", 400)

        verification_token = secrets.token_hex(32)
        now = datetime.utcnow()
        user_document = {
            "email": email,
            "password": hash_password(str(payload.get("password"))),
            "full_name": str(payload.get("fullName") or payload.get("full_name")).strip(),
            "phone": str(payload.get("phone") or "").strip(),
            "role": "user",
            "is_email_verified": False,
            "email_verification_token": hash_token(verification_token),
            "wishlist": [],
            "address": {},
            "created_at": now,
            "updated_at": now,
        }
        result = db.users.insert_one(user_document)
        user_document["_id"] = result.inserted_id

        sent, email_error = send_welcome_email(user_document)
        if not sent:
            app.logger.info("Welcome email skipped for %s: %s", email, email_error)

        record_audit_log(db, email, "Registered new account", {"user_id": str(result.inserted_id)})
        return token_response(user_document, "Registration successful", 201)

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        if not email or not password:
            return error_response("Please provide email and password", 400)

        user_document = db.users.find_one({"email": email})
        if not user_document or not check_password(password, user_document.get("password")):
            app.logger.warning("Failed login for %s from %s", email, client_address())
            return error_response("Invalid email or password", 401)

        now = datetime.utcnow()
        db.users.update_one({"_id": user_document["_id"]}, {"$set": {"last_login": now}})
        user_document["last_login"] = now

        record_audit_log(db, email, "Signed in", {"ip": client_address()})
        return token_response(user_document, "Login successful")

    @app.route("/api/auth/logout", methods=["POST"])
    def logout():
        response = jsonify({"success": True, "message": "Logged out successfully"})
        return clear_token_cookie(response), 200

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def get_me():
        user_document, auth_error = get_current_user(db)
        if auth_error:
            return auth_error
        return success_response(serialize_user(user_document))

    @app.route("/api/auth/verify-email/<token>", methods=["GET"])
    def verify_email(token: str):
        user_document = db.users.find_one({"email_verification_token": hash_token(token)})
        if not user_document:
            return error_response("Invalid verification token", 400)

        db.users.update_one(
            {"_id": user_document["_id"]},
            {
                "$set": {"is_email_verified": True, "updated_at": datetime.utcnow()},
                "$unset": {"email_verification_token": ""},
            },
        )
        return jsonify({"success": True, "message": "Email verified successfully"})

    @app.route("/api/auth/forgot-password", methods=["POST"])
    def forgot_password():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        generic_message = {
            "success": True,
            "message": "If an account with that email exists, a password reset link has been sent.",
        }
        if not is_valid_email(email):
            return jsonify(generic_message), 200

        user_document = db.users.find_one({"email": email})
        if user_document:
            reset_token = secrets.token_hex(32)
            db.users.update_one(
                {"_id": user_document["_id"]},
                {
                    "$set": {
                        "reset_password_token": hash_token(reset_token),
                        "reset_password_expire": datetime.utcnow() + RESET_TOKEN_TTL,
                    }
                },
            )
            reset_url = f"{app.config['CLIENT_URL']}/reset-password/{reset_token}"
            sent, error_details = send_password_reset_email(user_document, reset_url)
            if not sent:
                app.logger.error(
                    "Password reset email delivery failed for %s: %s",
                    email,
                    error_details or "Unknown delivery error",
                )
                db.users.update_one(
                    {"_id": user_document["_id"]},
                    {"$unset": {"reset_password_token": "", "reset_password_expire": ""}},
                )

        return jsonify(generic_message), 200

    @app.route("/api/auth/reset-password/<token>", methods=["PUT"])
    def reset_password(token: str):
        payload = read_payload()
        new_password = str(payload.get("password") or payload.get("newPassword") or "")
        password_error = validate_password(new_password)
        if password_error:
            return error_response(password_error, 400)

        user_document = db.users.find_one(
            {
                "reset_password_token": hash_token(token),
                "reset_password_expire": {"$gt": datetime.utcnow()},
            }
        )
        if not user_document:
            return error_response("Invalid or expired reset token", 400)

        db.users.update_one(
            {"_id": user_document["_id"]},
            {
                "$set": {"password": hash_password(new_password), "updated_at": datetime.utcnow()},
                "$unset": {"reset_password_token": "", "reset_password_expire": ""},
            },
        )
        record_audit_log(db, user_document.get("email"), "Reset password", {"context": "reset_link"})
        return token_response(user_document, "Password reset successful")
