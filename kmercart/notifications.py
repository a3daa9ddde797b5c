import logging
from datetime import datetime
from typing import Dict, Optional

from flask import jsonify, request
from flask_jwt_extended import current_user, jwt_required

from kmercart.errors import NotFoundError
from kmercart.helpers import (
    build_pagination,
    parse_flag,
    parse_object_id,
    parse_pagination,
    serialize_document,
)

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = (
    "order_placed",
    "order_shipped",
    "order_delivered",
    "payout_processed",
    "low_stock",
    "new_review",
    "account_update",
    "promotion",
)


def create_notification(
    db,
    user_id,
    notification_type: str,
    title: str,
    message: str,
    data: Optional[Dict] = None,
    link: Optional[str] = None,
):
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")
    document = {
        "userId": user_id,
        "type": notification_type,
        "title": title,
        "message": message,
        "data": data or {},
        "isRead": False,
        "createdAt": datetime.utcnow(),
    }
    if link:
        document["link"] = link
    document["_id"] = db.notifications.insert_one(document).inserted_id
    logger.debug("Queued %s notification for %s", notification_type, user_id)
    return document


def list_notifications(db, user_id, page: int, limit: int, unread_only: bool = False):
    query: Dict[str, object] = {"userId": user_id}
    if unread_only:
        query["isRead"] = False
    cursor = (
        db.notifications.find(query)
        .sort([("createdAt", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return (
        list(cursor),
        db.notifications.count_documents(query),
        db.notifications.count_documents({"userId": user_id, "isRead": False}),
    )


def mark_read(db, user_id, notification_id):
    notification_object_id = parse_object_id(notification_id, "notification identifier")
    result = db.notifications.update_one(
        {"_id": notification_object_id, "userId": user_id},
        {"$set": {"isRead": True, "readAt": datetime.utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Notification not found")
    return db.notifications.find_one({"_id": notification_object_id})


def mark_all_read(db, user_id) -> int:
    result = db.notifications.update_many(
        {"userId": user_id, "isRead": False},
        {"$set": {"isRead": True, "readAt": datetime.utcnow()}},
    )
    return result.modified_count


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    @app.route(f"{prefix}/notifications", methods=["GET"])
    @jwt_required()
    def list_notifications_route():
        page, limit = parse_pagination(request.args, default_limit=20)
        unread_only = bool(parse_flag(request.args.get("unread")))
        notifications, total, unread = list_notifications(
            db, current_user["_id"], page, limit, unread_only=unread_only
        )
        return jsonify(
            {
                "notifications": [serialize_document(n) for n in notifications],
                "unreadCount": unread,
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route(f"{prefix}/notifications/read-all", methods=["PATCH"])
    @jwt_required()
    def mark_all_notifications_read_route():
        updated = mark_all_read(db, current_user["_id"])
        return jsonify({"message": f"Marked {updated} notification(s) as read.", "updated": updated})

    @app.route(f"{prefix}/notifications/<notification_id>/read", methods=["PATCH"])
    @jwt_required()
    def mark_notification_read_route(notification_id: str):
        notification = mark_read(db, current_user["_id"], notification_id)
        return jsonify({"notification": serialize_document(notification)})
