import re
import threading
import time
from collections import defaultdict, deque
from typing import Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from flask import current_app, request
from flask_jwt_extended import (
    create_access_token,
    get_jwt_identity,
    set_access_cookies,
    unset_jwt_cookies,
)

from .helpers import error_response

ALLOWED_USER_ROLES = {"user", "admin"}

password_pattern = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[^A-Za-z0-9]).{8,}$"
)
blocked_string_prefixes = ("$where", "$regex", "javascript:")


def sanitize_input(value):
    """Strip MongoDB operator injection and script URLs from request data."""
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            key_text = str(key)
            if key_text.startswith("$") or "." in key_text:
                continue
            cleaned[key_text] = sanitize_input(item)
        return cleaned
    if isinstance(value, list):
        return [sanitize_input(item) for item in value]
    if isinstance(value, str):
        text = value
        lowered = text.lower()
        for prefix in blocked_string_prefixes:
            if lowered.startswith(prefix):
                text = text[len(prefix):]
                lowered = text.lower()
        return text.lstrip("$")
    return value


def read_payload() -> Dict:
    if request.is_json:
        payload = request.get_json(silent=True)
    else:
        payload = request.form.to_dict()
    if not isinstance(payload, dict):
        return {}
    return sanitize_input(payload)


def validate_password(password: Optional[str]) -> Optional[str]:
    if not password or not password_pattern.match(password):
        return (
            "Password must be at least 8 characters and include an uppercase letter, "
            "a lowercase letter, a number and a special character"
        )
    return None


def validate_object_id(value) -> Tuple[Optional[ObjectId], Optional[tuple]]:
    try:
        return ObjectId(str(value)), None
    except (InvalidId, TypeError):
        return None, error_response("Invalid ID format", 400)


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else "user"


def get_current_user(db):
    identity = get_jwt_identity()
    try:
        user_id = ObjectId(str(identity))
    except (InvalidId, TypeError):
        return None, error_response("Not authorized to access this route", 401)

    user_document = db.users.find_one({"_id": user_id})
    if not user_document:
        return None, error_response("User no longer exists", 401)
    return user_document, None


def require_role(db, *roles: str):
    user_document, error = get_current_user(db)
    if error:
        return None, error

    allowed = {normalize_role(role) for role in roles if role}
    user_role = normalize_role(user_document.get("role"))
    if user_role == "admin" or not allowed or user_role in allowed:
        return user_document, None

    return None, error_response(
        f"User role {user_role} is not authorized to access this route", 403
    )


def require_admin_user(db):
    return require_role(db, "admin")


def issue_token(user_document) -> str:
    return create_access_token(
        identity=str(user_document["_id"]),
        additional_claims={"role": normalize_role(user_document.get("role"))},
    )


def attach_token_cookie(response, token: str):
    set_access_cookies(response, token)
    return response


def clear_token_cookie(response):
    unset_jwt_cookies(response)
    return response


def client_address() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


class RateLimiter:
    """Sliding-window request counter kept in process memory."""

    def __init__(self):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = time.monotonic()
        with self._lock:
            bucket = self._hits[key]
            while bucket and bucket[0] <= now - window_seconds:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now)
            return True

    def reset(self):
        with self._lock:
            self._hits.clear()


# (path prefix, bucket, limit, window seconds, message)
RATE_LIMIT_RULES = (
    ("/api/auth/login", "auth", 5, 15 * 60, "Too many authentication attempts, please try again later."),
    ("/api/auth/register", "auth", 5, 15 * 60, "Too many authentication attempts, please try again later."),
    ("/api/auth/forgot-password", "password", 3, 60 * 60, "Too many password reset attempts, please try again later."),
    ("/api/auth/reset-password", "password", 3, 60 * 60, "Too many password reset attempts, please try again later."),
)
API_RATE_LIMIT = (300, 15 * 60)


def enforce_rate_limits(limiter: RateLimiter):
    """before_request hook body. Returns an error response when throttled."""
    if not current_app.config.get("RATELIMIT_ENABLED"):
        return None
    path = request.path
    if not path.startswith("/api/") or request.method == "OPTIONS":
        return None

    address = client_address()
    for prefix, bucket, limit, window, message in RATE_LIMIT_RULES:
        if path.startswith(prefix):
            if not limiter.hit(f"{bucket}:{address}", limit, window):
                current_app.logger.warning(
                    "Rate limit exceeded for %s on %s", address, path
                )
                return error_response(message, 429)
            break

    limit, window = API_RATE_LIMIT
    if not limiter.hit(f"api:{address}", limit, window):
        current_app.logger.warning("API rate limit exceeded for %s", address)
        return error_response(
            "Too many requests from this IP, please try again later.", 429
        )
    return None
