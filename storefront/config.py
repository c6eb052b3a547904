import logging
import os
import re
from datetime import timedelta
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

WEAK_JWT_SECRETS = {
    "secret",
    "password",
    "123456",
    "your-secret-key",
    "change-me-in-production",
}
MIN_JWT_SECRET_LENGTH = 32


class ConfigurationError(RuntimeError):
    pass


def env_flag(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def parse_origins(raw_value: Optional[str]) -> List[str]:
    if not raw_value:
        return []
    return [origin.strip() for origin in raw_value.split(",") if origin.strip()]


def load_settings() -> Dict[str, object]:
    """Collect application settings from the environment."""
    app_env = (os.getenv("APP_ENV") or os.getenv("FLASK_ENV") or "development").strip().lower()
    is_production = app_env == "production"

    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        os.getenv("CLIENT_URL", "").strip(),
    ]
    allowed_origins.extend(parse_origins(os.getenv("ALLOWED_ORIGINS")))
    allowed_origins = [origin for origin in allowed_origins if origin]

    return {
        "APP_ENV": app_env,
        "SECRET_KEY": os.getenv("SECRET_KEY") or os.getenv("JWT_SECRET_KEY") or os.getenv("JWT_SECRET", ""),
        "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY") or os.getenv("JWT_SECRET", "change-me-in-production"),
        "JWT_ACCESS_TOKEN_EXPIRES": timedelta(days=env_int("JWT_EXPIRES_DAYS", 7)),
        "JWT_TOKEN_LOCATION": ["headers", "cookies"],
        "JWT_ACCESS_COOKIE_NAME": "token",
        "JWT_COOKIE_SECURE": is_production,
        "JWT_COOKIE_SAMESITE": "None" if is_production else "Lax",
        "JWT_COOKIE_CSRF_PROTECT": env_flag("JWT_COOKIE_CSRF_PROTECT", False),
        "JWT_SESSION_COOKIE": False,
        "MONGO_URI": os.getenv("MONGO_URI") or os.getenv("MONGODB_URI", "mongodb://localhost:27017/sigma"),
        "MONGO_USE_TRANSACTIONS": env_flag("MONGO_USE_TRANSACTIONS", True),
        "MAX_UPLOAD_SIZE_MB": env_int("MAX_UPLOAD_SIZE_MB", 5),
        "MAX_UPLOAD_FILES": env_int("MAX_UPLOAD_FILES", 6),
        "ALLOWED_IMAGE_EXTENSIONS": {"png", "jpg", "jpeg", "gif", "webp"},
        "ALLOWED_ORIGINS": allowed_origins,
        "CLIENT_URL": (os.getenv("CLIENT_URL") or "http://localhost:5173").rstrip("/"),
        "ADMIN_EMAIL": (os.getenv("ADMIN_EMAIL") or "").strip().lower(),
        "LOW_STOCK_THRESHOLD": env_int("LOW_STOCK_THRESHOLD", 10),
        "ORDER_DELIVERY_DAYS": env_int("ORDER_DELIVERY_DAYS", 7),
        "SHIPPED_DELIVERY_DAYS": env_int("SHIPPED_DELIVERY_DAYS", 3),
        "RATELIMIT_ENABLED": env_flag("RATELIMIT_ENABLED", is_production),
        "RAZORPAY_KEY_ID": (os.getenv("RAZORPAY_KEY_ID") or "").strip(),
        "RAZORPAY_KEY_SECRET": (os.getenv("RAZORPAY_KEY_SECRET") or "").strip(),
        "RAZORPAY_WEBHOOK_SECRET": (os.getenv("RAZORPAY_WEBHOOK_SECRET") or "").strip(),
        "RAZORPAY_API_URL": os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1"),
        "RESEND_API_KEY": (os.getenv("RESEND_API_KEY") or "").strip(),
        "EMAIL_FROM_NAME": os.getenv("EMAIL_FROM_NAME", "Sigma Clothing"),
        "EMAIL_FROM_ADDRESS": os.getenv("EMAIL_FROM_ADDRESS", "orders@sigmaclothing.store"),
        "CLOUDINARY_CLOUD_NAME": (os.getenv("CLOUDINARY_CLOUD_NAME") or "").strip(),
        "CLOUDINARY_API_KEY": (os.getenv("CLOUDINARY_API_KEY") or "").strip(),
        "CLOUDINARY_API_SECRET": (os.getenv("CLOUDINARY_API_SECRET") or "").strip(),
        "CLOUDINARY_FOLDER": os.getenv("CLOUDINARY_FOLDER", "sigma-products"),
        "ENCRYPTION_KEY": (os.getenv("ENCRYPTION_KEY") or "").strip(),
        "TRUSTED_PROXY_HOPS": env_int("TRUSTED_PROXY_HOPS", 1),
        "LOG_LEVEL": (os.getenv("LOG_LEVEL") or "INFO").upper(),
    }


def validate_environment(settings: Dict[str, object]) -> List[str]:
    """Check required and optional settings.

    Returns the list of warnings that were logged. Missing required values
    raise ``ConfigurationError`` in production and are only reported
    elsewhere.
    """
    problems: List[str] = []
    warnings: List[str] = []

    if not settings.get("MONGO_URI"):
        problems.append("MONGO_URI is not set")

    jwt_secret = str(settings.get("JWT_SECRET_KEY") or "")
    if not jwt_secret:
        problems.append("JWT_SECRET_KEY is not set")
    elif jwt_secret.lower() in WEAK_JWT_SECRETS:
        problems.append("JWT_SECRET_KEY uses a weak, well-known value")
    elif len(jwt_secret) < MIN_JWT_SECRET_LENGTH:
        problems.append(
            f"JWT_SECRET_KEY must be at least {MIN_JWT_SECRET_LENGTH} characters"
        )

    optional_groups = {
        "Razorpay": ("RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET"),
        "Cloudinary": (
            "CLOUDINARY_CLOUD_NAME",
            "CLOUDINARY_API_KEY",
            "CLOUDINARY_API_SECRET",
        ),
    }
    for label, keys in optional_groups.items():
        present = [key for key in keys if settings.get(key)]
        if present and len(present) != len(keys):
            missing = ", ".join(key for key in keys if not settings.get(key))
            warnings.append(f"{label} is partially configured; missing {missing}")

    if not settings.get("RESEND_API_KEY"):
        warnings.append("RESEND_API_KEY is not set; transactional emails are disabled")

    encryption_key = str(settings.get("ENCRYPTION_KEY") or "")
    if encryption_key and not re.fullmatch(r"[0-9a-fA-F]{64}", encryption_key):
        warnings.append("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")

    for message in warnings:
        logger.warning("Configuration: %s", message)

    if problems:
        if settings.get("APP_ENV") == "production":
            raise ConfigurationError("; ".join(problems))
        for message in problems:
            logger.warning("Configuration: %s", message)

    return warnings + problems
