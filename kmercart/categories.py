from datetime import datetime
from typing import Dict

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from pymongo.errors import DuplicateKeyError

from kmercart.auth import require_role
from kmercart.errors import ConflictError, NotFoundError, ValidationError
from kmercart.helpers import (
    clean_text,
    parse_flag,
    parse_object_id,
    safe_positive_int,
    serialize_document,
    slugify,
)

EDITABLE_FIELDS = ("description", "image", "icon")


def serialize_category(category_document):
    return serialize_document(category_document)


def find_category(db, category_id, active_only: bool = True):
    query: Dict[str, object] = {"_id": parse_object_id(category_id, "category identifier")}
    if active_only:
        query["isActive"] = True
    category = db.categories.find_one(query)
    if not category:
        raise NotFoundError("Category not found")
    return category


def list_categories(db, parent=None):
    query: Dict[str, object] = {"isActive": True}
    if parent == "root":
        query["parentId"] = None
    elif parent:
        query["parentId"] = parse_object_id(parent, "parent category")
    return list(db.categories.find(query).sort([("order", 1), ("name", 1)]))


def normalize_category_payload(db, payload: Dict, partial: bool = False) -> Dict[str, object]:
    fields: Dict[str, object] = {}
    if "name" in payload or not partial:
        name = clean_text(payload.get("name"))
        if len(name) < 2:
            raise ValidationError(
                "Please provide a category name with at least two characters."
            )
        fields["name"] = name
        fields["slug"] = slugify(name)
    for field in EDITABLE_FIELDS:
        if field in payload:
            fields[field] = str(payload.get(field) or "").strip()
    if "order" in payload:
        fields["order"] = safe_positive_int(payload.get("order"), 0)
    if "isActive" in payload:
        active = parse_flag(payload.get("isActive"))
        if active is None:
            raise ValidationError("isActive must be a boolean.")
        fields["isActive"] = active
    if "parentId" in payload:
        parent_value = payload.get("parentId")
        if parent_value:
            parent = find_category(db, parent_value)
            fields["parentId"] = parent["_id"]
        else:
            fields["parentId"] = None
    return fields


def create_category(db, payload: Dict):
    fields = normalize_category_payload(db, payload)
    if db.categories.find_one({"slug": fields["slug"]}, {"_id": 1}):
        raise ConflictError("A category with this name already exists.")
    now = datetime.utcnow()
    category_document = {
        "description": "",
        "parentId": None,
        "image": "",
        "icon": "",
        "order": 0,
        "isActive": True,
        "productCount": 0,
        **fields,
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        result = db.categories.insert_one(category_document)
    except DuplicateKeyError:
        raise ConflictError("A category with this name already exists.")
    category_document["_id"] = result.inserted_id
    return category_document


def update_category(db, category_id, payload: Dict):
    category = find_category(db, category_id, active_only=False)
    fields = normalize_category_payload(db, payload, partial=True)
    if fields.get("parentId") == category["_id"]:
        raise ValidationError("A category cannot be its own parent.")
    if "slug" in fields and db.categories.find_one(
        {"slug": fields["slug"], "_id": {"$ne": category["_id"]}}, {"_id": 1}
    ):
        raise ConflictError("A category with this name already exists.")
    if fields:
        fields["updatedAt"] = datetime.utcnow()
        db.categories.update_one({"_id": category["_id"]}, {"$set": fields})
    return db.categories.find_one({"_id": category["_id"]})


def deactivate_category(db, category_id):
    category = find_category(db, category_id, active_only=False)
    db.categories.update_one(
        {"_id": category["_id"]},
        {"$set": {"isActive": False, "updatedAt": datetime.utcnow()}},
    )


def refresh_product_count(db, category_id) -> None:
    if not category_id:
        return
    count = db.products.count_documents(
        {
            "isActive": True,
            "$or": [{"categoryId": category_id}, {"subcategoryId": category_id}],
        }
    )
    db.categories.update_one({"_id": category_id}, {"$set": {"productCount": count}})


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    @app.route(f"{prefix}/categories", methods=["GET"])
    def list_categories_route():
        parent = (request.args.get("parent") or "").strip() or None
        categories = list_categories(db, parent=parent)
        return jsonify({"categories": [serialize_category(c) for c in categories]})

    @app.route(f"{prefix}/categories/<category_id>", methods=["GET"])
    def get_category_route(category_id: str):
        return jsonify({"category": serialize_category(find_category(db, category_id))})

    @app.route(f"{prefix}/categories/slug/<slug>", methods=["GET"])
    def get_category_by_slug_route(slug: str):
        category = db.categories.find_one({"slug": slug.lower(), "isActive": True})
        if not category:
            raise NotFoundError("Category not found")
        return jsonify({"category": serialize_category(category)})

    @app.route(f"{prefix}/categories", methods=["POST"])
    @jwt_required()
    def create_category_route():
        require_role("admin")
        payload = request.get_json(silent=True) or {}
        category = create_category(db, payload)
        return (
            jsonify(
                {
                    "message": "Category created successfully.",
                    "category": serialize_category(category),
                }
            ),
            201,
        )

    @app.route(f"{prefix}/categories/<category_id>", methods=["PUT"])
    @jwt_required()
    def update_category_route(category_id: str):
        require_role("admin")
        payload = request.get_json(silent=True) or {}
        category = update_category(db, category_id, payload)
        return jsonify(
            {"message": "Category updated successfully.", "category": serialize_category(category)}
        )

    @app.route(f"{prefix}/categories/<category_id>", methods=["DELETE"])
    @jwt_required()
    def delete_category_route(category_id: str):
        require_role("admin")
        deactivate_category(db, category_id)
        return jsonify({"message": "Category removed successfully."})
