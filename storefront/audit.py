import math
from datetime import datetime
from typing import Dict, Optional

from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required

from .helpers import build_regex, isoformat, normalize_email, pagination_args, parse_iso_date
from .security import read_payload, require_admin_user


def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(metadata, dict):
        return {}
    sanitized: Dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        sanitized[str(key)] = str(value)
    return sanitized


def record_audit_log(db, actor_email: Optional[str], action: str, metadata: Optional[Dict] = None):
    if not action:
        return
    try:
        normalized_email = normalize_email(actor_email)
        log_document = {
            "user_email": normalized_email or None,
            "user_name": "",
            "action": action,
            "metadata": sanitize_metadata(metadata),
            "created_at": datetime.utcnow(),
        }
        if normalized_email:
            user_document = db.users.find_one({"email": normalized_email})
            if user_document:
                log_document["user_name"] = user_document.get("full_name", "") or ""
                log_document["metadata"].setdefault(
                    "user_role", user_document.get("role") or "user"
                )
        db.audit_logs.insert_one(log_document)
    except Exception as exc:
        current_app.logger.warning("Unable to record audit log: %s", exc)


def serialize_audit_log(document):
    if not document:
        return {}
    metadata = document.get("metadata")
    return {
        "id": str(document.get("_id")),
        "userEmail": document.get("user_email") or "",
        "userName": document.get("user_name") or "",
        "action": document.get("action") or "",
        "metadata": metadata if isinstance(metadata, dict) else {},
        "createdAt": isoformat(document.get("created_at")),
    }


def build_created_filter(start_param, end_param) -> Dict[str, object]:
    start_date = parse_iso_date(start_param)
    end_date = parse_iso_date(end_param, end_of_day=True)
    created_filter: Dict[str, datetime] = {}
    if start_date:
        created_filter["$gte"] = start_date
    if end_date:
        created_filter["$lt"] = end_date
    return created_filter


def register_audit_routes(app, db):
    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        search_term = (request.args.get("search") or "").strip()
        page, limit = pagination_args(default_limit=50, max_limit=200)

        query: Dict[str, object] = {}
        if search_term:
            regex = build_regex(search_term)
            query["$or"] = [
                {"user_email": regex},
                {"user_name": regex},
                {"action": regex},
            ]

        created_filter = build_created_filter(
            request.args.get("start") or request.args.get("from"),
            request.args.get("end") or request.args.get("to"),
        )
        if created_filter:
            query["created_at"] = created_filter

        skip = (page - 1) * limit
        cursor = db.audit_logs.find(query).sort("created_at", -1).skip(skip).limit(limit)
        logs = [serialize_audit_log(document) for document in cursor]
        total = db.audit_logs.count_documents(query)

        return jsonify(
            {
                "success": True,
                "data": logs,
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
            }
        )

    @app.route("/api/admin/logs", methods=["DELETE"])
    @jwt_required()
    def admin_delete_logs():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = read_payload()
        delete_query: Dict[str, object] = {}
        created_filter = build_created_filter(
            payload.get("from") or payload.get("start"),
            payload.get("to") or payload.get("end"),
        )
        if created_filter:
            delete_query["created_at"] = created_filter

        result = db.audit_logs.delete_many(delete_query)

        record_audit_log(
            db,
            admin_user.get("email"),
            "Deleted audit logs",
            {
                "count": str(result.deleted_count),
                "range": "filtered" if delete_query else "all",
            },
        )

        return jsonify(
            {
                "success": True,
                "message": f"Removed {result.deleted_count} audit log entries.",
                "deleted": result.deleted_count,
            }
        )
