import logging
import os
from typing import Dict, Optional

from flask import Flask, jsonify, redirect, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

from .admin import register_admin_routes
from .audit import register_audit_routes
from .auth import register_auth_routes
from .cart import register_cart_routes
from .catalog import register_catalog_routes
from .commands import register_commands
from .config import load_settings, validate_environment
from .coupons import register_coupon_routes
from .helpers import ValidationError, error_response
from .orders import register_order_routes
from .payments import RazorpayClient, register_payment_routes
from .security import RateLimiter, enforce_rate_limits
from .uploads import register_upload_routes
from .users import register_user_routes

LEGACY_PREFIXES = ("products", "auth", "cart", "wishlist", "orders", "admin", "users", "payment")
PUBLIC_CACHE_PREFIXES = ("/api/products", "/api/banner")


def create_app(config_overrides: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` replaces the Flask-PyMongo connection when given, which is
    how the test-suite injects an in-memory database.
    """
    app = Flask(__name__)

    settings = load_settings()
    settings.update(config_overrides or {})
    app.config.update(settings)
    validate_environment(app.config)

    # Honor proxy headers so generated links keep the public HTTPS origin.
    trusted_proxy_hops = max(0, int(app.config.get("TRUSTED_PROXY_HOPS") or 0))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    app.config["MAX_CONTENT_LENGTH"] = app.config["MAX_UPLOAD_SIZE_MB"] * 1024 * 1024
    upload_directory = app.config.get("UPLOAD_FOLDER") or os.path.join(app.root_path, "uploads")
    for subfolder in ("products", "profiles"):
        os.makedirs(os.path.join(upload_directory, subfolder), exist_ok=True)
    app.config["UPLOAD_FOLDER"] = upload_directory

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")), logging.INFO))

    # --- Initialize extensions ---
    CORS(
        app,
        supports_credentials=True,
        origins=list(app.config["ALLOWED_ORIGINS"]) + [r"https://.*\.vercel\.app"],
    )
    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def handle_missing_token(_reason):
        return error_response("Not authorized to access this route", 401)

    @jwt.invalid_token_loader
    def handle_invalid_token(_reason):
        return error_response("Not authorized, token failed", 401)

    @jwt.expired_token_loader
    def handle_expired_token(_jwt_header, _jwt_payload):
        return error_response("Token expired, please log in again", 401)

    if database is None:
        mongo = PyMongo(app)
        db = mongo.db
        app.extensions["mongo_client"] = mongo.cx
    else:
        db = database
        app.extensions["mongo_client"] = getattr(database, "client", None)
    app.extensions["payment_gateway"] = RazorpayClient(
        app.config["RAZORPAY_KEY_ID"],
        app.config["RAZORPAY_KEY_SECRET"],
        base_url=app.config["RAZORPAY_API_URL"],
    )

    limiter = RateLimiter()
    app.extensions["rate_limiter"] = limiter

    @app.before_request
    def apply_rate_limits():
        return enforce_rate_limits(limiter)

    @app.after_request
    def apply_response_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cross-Origin-Resource-Policy"] = "cross-origin"
        if app.config["APP_ENV"] == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        path = request.path
        if path.startswith("/uploads/"):
            response.headers["Cache-Control"] = "public, max-age=86400"
        elif request.method == "GET" and path.startswith(PUBLIC_CACHE_PREFIXES) and response.status_code == 200:
            response.headers["Cache-Control"] = "public, max-age=300"
        elif path.startswith("/api"):
            response.headers["Cache-Control"] = "no-store"
        return response

    # --- Error handlers ---
    @app.errorhandler(404)
    def handle_not_found(_error):
        return error_response("Route not found", 404)

    @app.errorhandler(405)
    def handle_method_not_allowed(_error):
        return error_response("Method not allowed", 405)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(_error):
        return error_response(
            f"File too large. Maximum size is {app.config['MAX_UPLOAD_SIZE_MB']}MB", 400
        )

    @app.errorhandler(DuplicateKeyError)
    def handle_duplicate_key(error):
        app.logger.warning("Duplicate key: %s", error)
        return error_response("Duplicate field value entered", 400)

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        return error_response(", ".join(error.errors), 400)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            return error_response(error.description or error.name, error.code or 500)
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        extra = {"error": str(error)} if app.config["APP_ENV"] == "development" else {}
        return error_response("Internal server error", 500, **extra)

    # --- Routes ---
    register_audit_routes(app, db)
    register_auth_routes(app, db)
    register_catalog_routes(app, db)
    register_cart_routes(app, db)
    register_coupon_routes(app, db)
    register_payment_routes(app, db)
    register_order_routes(app, db)
    register_user_routes(app, db)
    register_upload_routes(app, db)
    register_admin_routes(app, db)

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api", methods=["GET"])
    def api_status():
        return jsonify(
            {
                "success": True,
                "message": "Sigma Clothing API is running",
                "environment": app.config["APP_ENV"],
            }
        )

    def redirect_legacy(prefix: str, subpath: str = ""):
        target = f"/api/{prefix}"
        if subpath:
            target = f"{target}/{subpath}"
        if request.query_string:
            target = f"{target}?{request.query_string.decode('utf-8')}"
        return redirect(target, code=308)

    for prefix in LEGACY_PREFIXES:
        app.add_url_rule(
            f"/{prefix}",
            f"legacy_{prefix}",
            redirect_legacy,
            defaults={"prefix": prefix},
            methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        )
        app.add_url_rule(
            f"/{prefix}/<path:subpath>",
            f"legacy_{prefix}_path",
            redirect_legacy,
            defaults={"prefix": prefix},
            methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        )

    register_commands(app, db)
    return app
