from datetime import datetime
from typing import Dict, List

from flask import jsonify, request
from flask_jwt_extended import current_user, jwt_required

from kmercart.errors import NotFoundError, ValidationError
from kmercart.helpers import (
    parse_object_id,
    safe_positive_int,
    serialize_document,
    serialize_value,
)
from kmercart.products import find_active_product

PRODUCT_SUMMARY_FIELDS = ("name", "slug", "price", "mainImage", "images", "stock", "isActive")


def get_or_create_cart(db, user_id):
    cart = db.carts.find_one({"userId": user_id})
    if cart:
        return cart
    now = datetime.utcnow()
    db.carts.update_one(
        {"userId": user_id},
        {"$setOnInsert": {"userId": user_id, "items": [], "createdAt": now, "updatedAt": now}},
        upsert=True,
    )
    return db.carts.find_one({"userId": user_id})


def _find_line(cart, product_id):
    for item in cart.get("items", []):
        if item.get("productId") == product_id:
            return item
    return None


def _ensure_available(product, quantity: int) -> None:
    stock = product.get("stock", 0) or 0
    if quantity > stock:
        raise ValidationError(
            f"Only {stock} unit(s) of {product.get('name', 'this product')} are available."
        )


def _parse_quantity(value, allow_zero: bool = False) -> int:
    if isinstance(value, bool):
        raise ValidationError("Quantity must be a whole number.")
    quantity = safe_positive_int(value, -1)
    minimum = 0 if allow_zero else 1
    if quantity < minimum:
        raise ValidationError(f"Quantity must be at least {minimum}.")
    return quantity


def add_item(db, user_id, product_id, quantity=1):
    quantity = _parse_quantity(quantity)
    product = find_active_product(db, product_id)
    cart = get_or_create_cart(db, user_id)
    now = datetime.utcnow()

    existing = _find_line(cart, product["_id"])
    if existing:
        new_quantity = existing.get("quantity", 0) + quantity
        _ensure_available(product, new_quantity)
        db.carts.update_one(
            {"_id": cart["_id"], "items.productId": product["_id"]},
            {"$set": {"items.$.quantity": new_quantity, "updatedAt": now}},
        )
    else:
        _ensure_available(product, quantity)
        db.carts.update_one(
            {"_id": cart["_id"]},
            {
                "$push": {
                    "items": {
                        "productId": product["_id"],
                        "quantity": quantity,
                        "price": product.get("price", 0),
                        "addedAt": now,
                    }
                },
                "$set": {"updatedAt": now},
            },
        )
    return db.carts.find_one({"_id": cart["_id"]})


def update_item_quantity(db, user_id, product_id, quantity):
    quantity = _parse_quantity(quantity, allow_zero=True)
    product_object_id = parse_object_id(product_id, "product identifier")
    cart = get_or_create_cart(db, user_id)
    if not _find_line(cart, product_object_id):
        raise NotFoundError("Item not found in cart")
    if quantity == 0:
        return remove_item(db, user_id, product_object_id)

    product = find_active_product(db, product_object_id)
    _ensure_available(product, quantity)
    db.carts.update_one(
        {"_id": cart["_id"], "items.productId": product_object_id},
        {"$set": {"items.$.quantity": quantity, "updatedAt": datetime.utcnow()}},
    )
    return db.carts.find_one({"_id": cart["_id"]})


def remove_item(db, user_id, product_id):
    product_object_id = parse_object_id(product_id, "product identifier")
    cart = get_or_create_cart(db, user_id)
    if not _find_line(cart, product_object_id):
        raise NotFoundError("Item not found in cart")
    db.carts.update_one(
        {"_id": cart["_id"]},
        {
            "$pull": {"items": {"productId": product_object_id}},
            "$set": {"updatedAt": datetime.utcnow()},
        },
    )
    return db.carts.find_one({"_id": cart["_id"]})


def clear_cart(db, user_id) -> None:
    db.carts.update_one(
        {"userId": user_id},
        {"$set": {"items": [], "updatedAt": datetime.utcnow()}},
    )


def sync_cart(db, user_id, guest_items):
    """Merge a guest cart into the stored cart.

    Quantities for the same product are summed and capped at the available
    stock. Unknown, inactive and sold-out products are skipped.
    """
    if not isinstance(guest_items, list):
        raise ValidationError("Items must be a list.")
    cart = get_or_create_cart(db, user_id)
    merged: Dict = {item["productId"]: dict(item) for item in cart.get("items", [])}
    now = datetime.utcnow()

    for entry in guest_items:
        if not isinstance(entry, dict):
            continue
        raw_product_id = str(entry.get("productId") or "").strip()
        quantity = safe_positive_int(entry.get("quantity"), 0)
        if not raw_product_id or quantity < 1:
            continue
        try:
            product = find_active_product(db, raw_product_id)
        except (NotFoundError, ValidationError):
            continue
        stock = product.get("stock", 0) or 0
        line = merged.get(product["_id"])
        combined = min((line or {}).get("quantity", 0) + quantity, stock)
        if combined < 1:
            continue
        if line:
            line["quantity"] = combined
        else:
            merged[product["_id"]] = {
                "productId": product["_id"],
                "quantity": combined,
                "price": product.get("price", 0),
                "addedAt": now,
            }

    db.carts.update_one(
        {"_id": cart["_id"]},
        {"$set": {"items": list(merged.values()), "updatedAt": now}},
    )
    return db.carts.find_one({"_id": cart["_id"]})


def calculate_cart_total(cart) -> Dict[str, object]:
    items = cart.get("items", []) if cart else []
    subtotal = sum((item.get("price", 0) or 0) * item.get("quantity", 0) for item in items)
    return {
        "subtotal": round(subtotal, 2),
        "totalItems": sum(item.get("quantity", 0) for item in items),
        "items": len(items),
    }


def serialize_cart(db, cart):
    serialized = serialize_document(cart)
    product_ids = [item["productId"] for item in cart.get("items", [])]
    products = {
        product["_id"]: product
        for product in db.products.find({"_id": {"$in": product_ids}})
    }

    items: List[Dict] = []
    for item in cart.get("items", []):
        serialized_item = serialize_value(item)
        product = products.get(item["productId"])
        serialized_item["product"] = (
            {
                "_id": str(product["_id"]),
                **{field: serialize_value(product.get(field)) for field in PRODUCT_SUMMARY_FIELDS},
            }
            if product
            else None
        )
        items.append(serialized_item)
    serialized["items"] = items
    serialized.update(calculate_cart_total(cart))
    return serialized


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    @app.route(f"{prefix}/cart", methods=["GET"])
    @jwt_required()
    def get_cart_route():
        cart = get_or_create_cart(db, current_user["_id"])
        return jsonify({"cart": serialize_cart(db, cart)})

    @app.route(f"{prefix}/cart/items", methods=["POST"])
    @jwt_required()
    def add_cart_item_route():
        payload = request.get_json(silent=True) or {}
        cart = add_item(
            db, current_user["_id"], payload.get("productId"), payload.get("quantity", 1)
        )
        return jsonify({"message": "Item added to cart.", "cart": serialize_cart(db, cart)})

    @app.route(f"{prefix}/cart/items/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_cart_item_route(product_id: str):
        payload = request.get_json(silent=True) or {}
        cart = update_item_quantity(db, current_user["_id"], product_id, payload.get("quantity"))
        return jsonify({"message": "Cart updated.", "cart": serialize_cart(db, cart)})

    @app.route(f"{prefix}/cart/items/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_cart_item_route(product_id: str):
        cart = remove_item(db, current_user["_id"], product_id)
        return jsonify({"message": "Item removed from cart.", "cart": serialize_cart(db, cart)})

    @app.route(f"{prefix}/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart_route():
        get_or_create_cart(db, current_user["_id"])
        clear_cart(db, current_user["_id"])
        return jsonify({"message": "Cart cleared."})

    @app.route(f"{prefix}/cart/sync", methods=["POST"])
    @jwt_required()
    def sync_cart_route():
        payload = request.get_json(silent=True) or {}
        cart = sync_cart(db, current_user["_id"], payload.get("items") or [])
        return jsonify({"message": "Cart synchronised.", "cart": serialize_cart(db, cart)})

    @app.route(f"{prefix}/cart/total", methods=["GET"])
    @jwt_required()
    def cart_total_route():
        cart = get_or_create_cart(db, current_user["_id"])
        return jsonify(calculate_cart_total(cart))
