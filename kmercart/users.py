import logging
import re
from datetime import datetime
from typing import Dict

from flask import jsonify, request
from flask_jwt_extended import current_user, jwt_required

from kmercart.auth import ROLES, is_admin, require_role, serialize_user
from kmercart.errors import ForbiddenError, NotFoundError, ValidationError
from kmercart.helpers import (
    build_pagination,
    clean_text,
    parse_flag,
    parse_object_id,
    parse_pagination,
)

logger = logging.getLogger(__name__)

SELF_EDITABLE_FIELDS = ("firstName", "lastName", "phone", "avatar")


def find_user(db, user_id):
    user = db.users.find_one({"_id": parse_object_id(user_id, "user identifier")})
    if not user:
        raise NotFoundError("User not found")
    return user


def ensure_self_or_admin(actor, user_id) -> None:
    if is_admin(actor):
        return
    if str(actor.get("_id")) != str(user_id):
        raise ForbiddenError("You can only access your own account.")


def list_users(db, page: int, limit: int, role=None, search=None):
    query: Dict[str, object] = {}
    if role:
        query["role"] = role
    if search:
        regex = re.compile(re.escape(search), re.IGNORECASE)
        query["$or"] = [{"email": regex}, {"firstName": regex}, {"lastName": regex}]
    cursor = (
        db.users.find(query)
        .sort("createdAt", -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return list(cursor), db.users.count_documents(query)


def update_user(db, user_id, payload: Dict, actor):
    user = find_user(db, user_id)
    updates: Dict[str, object] = {}
    for field in SELF_EDITABLE_FIELDS:
        if field in payload:
            value = clean_text(payload.get(field))
            if field in ("firstName", "lastName") and not value:
                raise ValidationError(f"{field} cannot be empty.")
            updates[field] = value

    if is_admin(actor):
        if "role" in payload:
            role = str(payload.get("role") or "").strip().lower()
            if role not in ROLES:
                raise ValidationError("Role must be customer, vendor, or admin.")
            updates["role"] = role
        if "isActive" in payload:
            active = parse_flag(payload.get("isActive"))
            if active is None:
                raise ValidationError("isActive must be a boolean.")
            updates["isActive"] = active
    elif "role" in payload or "isActive" in payload:
        raise ForbiddenError("Only administrators can change roles or account status.")

    if not updates:
        return user
    updates["updatedAt"] = datetime.utcnow()
    db.users.update_one({"_id": user["_id"]}, {"$set": updates})
    return db.users.find_one({"_id": user["_id"]})


def deactivate_user(db, user_id):
    user = find_user(db, user_id)
    db.users.update_one(
        {"_id": user["_id"]},
        {
            "$set": {"isActive": False, "updatedAt": datetime.utcnow()},
            "$unset": {"refreshTokenJti": ""},
        },
    )
    logger.info("Deactivated user %s", user.get("email"))


def get_user_stats(db, user_id):
    user = find_user(db, user_id)
    spent = next(
        db.orders.aggregate(
            [
                {"$match": {"customerId": user["_id"], "status": {"$ne": "cancelled"}}},
                {"$group": {"_id": None, "total": {"$sum": "$total"}}},
            ]
        ),
        None,
    )
    return user, {
        "totalOrders": db.orders.count_documents({"customerId": user["_id"]}),
        "totalReviews": db.reviews.count_documents({"userId": user["_id"]}),
        "totalSpent": round((spent or {}).get("total", 0) or 0, 2),
    }


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    @app.route(f"{prefix}/users", methods=["GET"])
    @jwt_required()
    def list_users_route():
        require_role("admin")
        page, limit = parse_pagination(request.args)
        role = (request.args.get("role") or "").strip().lower() or None
        search = (request.args.get("search") or "").strip() or None
        users, total = list_users(db, page, limit, role=role, search=search)
        return jsonify(
            {
                "users": [serialize_user(user) for user in users],
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route(f"{prefix}/users/<user_id>", methods=["GET"])
    @jwt_required()
    def get_user_route(user_id: str):
        ensure_self_or_admin(current_user, user_id)
        return jsonify({"user": serialize_user(find_user(db, user_id))})

    @app.route(f"{prefix}/users/<user_id>", methods=["PUT"])
    @jwt_required()
    def update_user_route(user_id: str):
        ensure_self_or_admin(current_user, user_id)
        payload = request.get_json(silent=True) or {}
        user = update_user(db, user_id, payload, current_user)
        return jsonify({"message": "User updated successfully", "user": serialize_user(user)})

    @app.route(f"{prefix}/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def deactivate_user_route(user_id: str):
        require_role("admin")
        deactivate_user(db, user_id)
        return jsonify({"message": "User deactivated successfully"})

    @app.route(f"{prefix}/users/<user_id>/stats", methods=["GET"])
    @jwt_required()
    def user_stats_route(user_id: str):
        ensure_self_or_admin(current_user, user_id)
        user, stats = get_user_stats(db, user_id)
        return jsonify({"user": serialize_user(user), "stats": stats})
