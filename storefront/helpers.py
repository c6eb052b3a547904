import json
import math
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from flask import jsonify, request

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ValidationError(Exception):
    """Raised when a document fails domain validation."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))


def error_response(message: str, status: int = 400, **extra):
    body = {"success": False, "message": message}
    body.update(extra)
    return jsonify(body), status


def success_response(data=None, status: int = 200, **extra):
    body: Dict[str, object] = {"success": True}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return jsonify(body), status


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(default, numeric)


def parse_quantity(value, default: Optional[int] = 1) -> Optional[int]:
    """Return a positive whole quantity, or ``None`` when the value is not one.

    A missing value falls back to ``default``.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        value = value.strip()
        if not (value.isascii() and value.isdigit()):
            return None
        value = int(value)
    if not isinstance(value, int) or value < 1:
        return None
    return value


def normalize_object_id_value(value):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def normalize_object_id_list(values) -> List[ObjectId]:
    normalized_ids: List[ObjectId] = []
    for value in values or []:
        object_id = normalize_object_id_value(value)
        if object_id is not None:
            normalized_ids.append(object_id)
    return normalized_ids


def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    candidate = str(value).strip()
    if not candidate:
        return None
    normalized = candidate.replace("Z", "+00:00")
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
        normalized = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta())
    if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
        return parsed + timedelta(days=1)
    return parsed


def isoformat(value) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat() + "Z"
    return None


def parse_json_list(value, field_name: str):
    """Accept a list or a JSON-encoded list (multipart form fields)."""
    if value is None or isinstance(value, list):
        return value, None
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return None, f"Invalid {field_name} format"
    if not isinstance(parsed, list):
        return None, f"Invalid {field_name} format"
    return parsed, None


def pagination_args(default_limit: int = 10, max_limit: int = 100) -> Tuple[int, int]:
    page = max(safe_positive_int(request.args.get("page"), 1), 1)
    limit = safe_positive_int(request.args.get("limit"), 0) or default_limit
    return page, min(max(limit, 1), max_limit)


def build_regex(term: str):
    return re.compile(re.escape(term), re.IGNORECASE)


def effective_price(product_document) -> float:
    """Price a product actually sells for: its discount price when set."""
    discount_price = safe_float(product_document.get("discount_price"), 0.0)
    if discount_price > 0:
        return discount_price
    return safe_float(product_document.get("price"), 0.0)
