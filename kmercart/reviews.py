import logging
from datetime import datetime
from typing import Dict

from flask import jsonify, request
from flask_jwt_extended import current_user, jwt_required
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from kmercart.auth import is_admin, require_role
from kmercart.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from kmercart.helpers import (
    build_pagination,
    clean_text,
    is_whole_number,
    parse_object_id,
    parse_pagination,
    serialize_document,
)
from kmercart.notifications import create_notification
from kmercart.products import find_active_product

logger = logging.getLogger(__name__)


def serialize_review(review_document, authors=None):
    serialized = serialize_document(review_document)
    if authors is not None:
        serialized["user"] = authors.get(review_document.get("userId"))
    return serialized


def _author_map(db, reviews) -> Dict:
    user_ids = list({review["userId"] for review in reviews})
    return {
        user["_id"]: {
            "_id": str(user["_id"]),
            "firstName": user.get("firstName", ""),
            "lastName": user.get("lastName", ""),
            "avatar": user.get("avatar", ""),
        }
        for user in db.users.find({"_id": {"$in": user_ids}})
    }


def refresh_product_rating(db, product_id) -> None:
    rows = list(
        db.reviews.aggregate(
            [
                {"$match": {"productId": product_id, "isApproved": True}},
                {
                    "$group": {
                        "_id": "$productId",
                        "average": {"$avg": "$rating"},
                        "count": {"$sum": 1},
                    }
                },
            ]
        )
    )
    rating = round(rows[0]["average"], 1) if rows else 0
    count = rows[0]["count"] if rows else 0
    db.products.update_one(
        {"_id": product_id}, {"$set": {"rating": rating, "reviewCount": count}}
    )


def list_product_reviews(db, product_id, page: int, limit: int):
    product = find_active_product(db, product_id)
    query = {"productId": product["_id"], "isApproved": True}
    cursor = (
        db.reviews.find(query)
        .sort([("createdAt", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return list(cursor), db.reviews.count_documents(query)


def _parse_rating(value) -> int:
    if not is_whole_number(value) or not 1 <= value <= 5:
        raise ValidationError("Rating must be a whole number between 1 and 5.")
    return int(value)


def create_review(db, user, product_id, payload: Dict):
    product = find_active_product(db, product_id)
    rating = _parse_rating(payload.get("rating"))
    title = clean_text(payload.get("title"))
    comment = str(payload.get("comment") or "").strip()
    if not title or not comment:
        raise ValidationError("A review needs a title and a comment.")
    images = payload.get("images") or []
    if not isinstance(images, list) or not all(isinstance(image, str) for image in images):
        raise ValidationError("Images must be a list of strings.")

    if db.reviews.find_one({"productId": product["_id"], "userId": user["_id"]}, {"_id": 1}):
        raise ConflictError("You have already reviewed this product.")

    delivered_order = db.orders.find_one(
        {"customerId": user["_id"], "status": "delivered", "items.productId": product["_id"]},
        {"_id": 1},
    )
    now = datetime.utcnow()
    review = {
        "productId": product["_id"],
        "userId": user["_id"],
        "orderId": delivered_order["_id"] if delivered_order else None,
        "rating": rating,
        "title": title,
        "comment": comment,
        "images": [image.strip() for image in images if image.strip()],
        "isVerifiedPurchase": delivered_order is not None,
        "helpfulCount": 0,
        "reportCount": 0,
        "isApproved": True,
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        review["_id"] = db.reviews.insert_one(review).inserted_id
    except DuplicateKeyError:
        raise ConflictError("You have already reviewed this product.")

    refresh_product_rating(db, product["_id"])
    create_notification(
        db,
        product["vendorId"],
        "new_review",
        "New review",
        f"{product.get('name')} received a {rating}-star review.",
        data={"productId": str(product["_id"]), "reviewId": str(review["_id"]), "rating": rating},
        link=f"/products/{product.get('slug') or product['_id']}",
    )
    logger.info("Review %s added to %s by %s", review["_id"], product["_id"], user.get("email"))
    return review


def find_review(db, review_id):
    review = db.reviews.find_one({"_id": parse_object_id(review_id, "review identifier")})
    if not review:
        raise NotFoundError("Review not found")
    return review


def respond_to_review(db, actor, review_id, comment):
    review = find_review(db, review_id)
    comment = str(comment or "").strip()
    if not comment:
        raise ValidationError("A response comment is required.")
    product = db.products.find_one({"_id": review["productId"]}, {"vendorId": 1})
    if not is_admin(actor) and (not product or product.get("vendorId") != actor["_id"]):
        raise ForbiddenError("You can only respond to reviews of your own products.")
    now = datetime.utcnow()
    return db.reviews.find_one_and_update(
        {"_id": review["_id"]},
        {
            "$set": {
                "vendorResponse": {"comment": comment, "respondedAt": now},
                "updatedAt": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )


def delete_review(db, actor, review_id) -> None:
    review = find_review(db, review_id)
    if not is_admin(actor) and review["userId"] != actor["_id"]:
        raise ForbiddenError("You can only delete your own reviews.")
    db.reviews.delete_one({"_id": review["_id"]})
    refresh_product_rating(db, review["productId"])


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    @app.route(f"{prefix}/products/<product_id>/reviews", methods=["GET"])
    def list_reviews_route(product_id: str):
        page, limit = parse_pagination(request.args)
        reviews, total = list_product_reviews(db, product_id, page, limit)
        authors = _author_map(db, reviews)
        return jsonify(
            {
                "reviews": [serialize_review(review, authors) for review in reviews],
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route(f"{prefix}/products/<product_id>/reviews", methods=["POST"])
    @jwt_required()
    def create_review_route(product_id: str):
        payload = request.get_json(silent=True) or {}
        review = create_review(db, current_user, product_id, payload)
        return (
            jsonify({"message": "Review submitted.", "review": serialize_review(review)}),
            201,
        )

    @app.route(f"{prefix}/reviews/<review_id>/response", methods=["POST"])
    @jwt_required()
    def respond_to_review_route(review_id: str):
        actor = require_role("vendor")
        payload = request.get_json(silent=True) or {}
        review = respond_to_review(db, actor, review_id, payload.get("comment"))
        return jsonify({"message": "Response saved.", "review": serialize_review(review)})

    @app.route(f"{prefix}/reviews/<review_id>", methods=["DELETE"])
    @jwt_required()
    def delete_review_route(review_id: str):
        delete_review(db, current_user, review_id)
        return jsonify({"message": "Review deleted."})
