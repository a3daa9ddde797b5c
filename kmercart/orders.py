"""Checkout and order lifecycle.

Orders are created from the caller's cart and are immutable snapshots of the
items, prices and addresses at checkout time. Afterwards only the status
fields change, and every status change appends to ``statusHistory`` in the
same update that sets ``status``.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from flask import jsonify, request
from flask_jwt_extended import current_user, jwt_required
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from kmercart.auth import is_admin, require_role
from kmercart.errors import NotFoundError, ValidationError
from kmercart.helpers import (
    build_pagination,
    clean_text,
    parse_object_id,
    parse_pagination,
    safe_float,
    serialize_document,
)
from kmercart.notifications import create_notification
from kmercart.products import DEFAULT_LOW_STOCK_THRESHOLD

logger = logging.getLogger(__name__)

TAX_RATE = 0.08
DEFAULT_CURRENCY = "CFA"

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
    "refunded",
)
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
CANCELLABLE_STATUSES = ("pending", "confirmed")

SHIPPING_ADDRESS_FIELDS = ("fullName", "street", "city", "state", "zipCode", "country", "phone")
BILLING_ADDRESS_FIELDS = ("fullName", "street", "city", "state", "zipCode", "country")

CUSTOMER_STATUS_NOTIFICATIONS = {
    "shipped": ("order_shipped", "Your order has shipped"),
    "delivered": ("order_delivered", "Your order was delivered"),
}


def normalize_address(payload, fields, label: str) -> Dict[str, str]:
    if not isinstance(payload, dict):
        payload = {}
    normalized = {field: clean_text(payload.get(field)) for field in fields}
    missing = [field for field in fields if not normalized[field]]
    if missing:
        raise ValidationError(f"{label} is missing required fields: {', '.join(missing)}.")
    return normalized


def parse_amount(value, label: str) -> float:
    if value is None or value == "":
        return 0.0
    amount = safe_float(value, None)
    if amount is None or isinstance(value, bool):
        raise ValidationError(f"{label} must be a valid number.")
    if amount < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return round(amount, 2)


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return f"KMC-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


def calculate_totals(
    items: Iterable[Dict],
    shipping_cost: float = 0.0,
    discount: float = 0.0,
    tax_rate: float = TAX_RATE,
) -> Dict[str, float]:
    subtotal = round(sum(item["price"] * item["quantity"] for item in items), 2)
    tax = round(subtotal * tax_rate, 2)
    if discount > subtotal + tax + shipping_cost:
        raise ValidationError("Discount cannot exceed the order total.")
    total = round(subtotal + tax + shipping_cost - discount, 2)
    return {
        "subtotal": subtotal,
        "tax": tax,
        "taxRate": tax_rate,
        "shippingCost": shipping_cost,
        "discount": discount,
        "total": total,
    }


def build_order_items(db, cart_items: List[Dict]) -> List[Dict]:
    product_ids = [item["productId"] for item in cart_items]
    products = {
        product["_id"]: product
        for product in db.products.find({"_id": {"$in": product_ids}})
    }

    order_items = []
    for line in cart_items:
        product = products.get(line["productId"])
        if not product or not product.get("isActive", False):
            raise ValidationError(f"Product {line['productId']} is no longer available.")
        quantity = int(line.get("quantity", 0))
        if quantity < 1:
            raise ValidationError(f"Invalid quantity for {product.get('name')}.")
        if (product.get("stock", 0) or 0) < quantity:
            raise ValidationError(f"Insufficient stock for {product.get('name')}.")
        price = round(float(line.get("price", product.get("price", 0))), 2)
        images = product.get("images") or []
        order_items.append(
            {
                "productId": product["_id"],
                "vendorId": product["vendorId"],
                "name": product.get("name", ""),
                "image": product.get("mainImage") or (images[0] if images else ""),
                "quantity": quantity,
                "price": price,
                "discount": 0,
                "total": round(price * quantity, 2),
            }
        )
    return order_items


def release_stock(db, items: Iterable[Dict]) -> None:
    for item in items:
        db.products.update_one(
            {"_id": item["productId"]},
            {"$inc": {"stock": item["quantity"], "totalSales": -item["quantity"]}},
        )


def reserve_stock(db, items: List[Dict]) -> List[Dict]:
    """Decrement stock for every line, or for none of them.

    Each decrement only applies while the product still has enough stock, so
    concurrent checkouts cannot push a product below zero. When one line
    fails the lines already reserved are released again.
    """
    reserved = []
    updated_products = []
    for item in items:
        product = db.products.find_one_and_update(
            {"_id": item["productId"], "isActive": True, "stock": {"$gte": item["quantity"]}},
            {"$inc": {"stock": -item["quantity"], "totalSales": item["quantity"]}},
            return_document=ReturnDocument.AFTER,
        )
        if product is None:
            release_stock(db, reserved)
            raise ValidationError(f"Insufficient stock for {item['name']}.")
        reserved.append(item)
        updated_products.append(product)
    return updated_products


def _notify_vendors(db, order) -> None:
    vendor_lines: Dict = {}
    for item in order["items"]:
        vendor_lines[item["vendorId"]] = vendor_lines.get(item["vendorId"], 0) + item["quantity"]
    for vendor_id, quantity in vendor_lines.items():
        create_notification(
            db,
            vendor_id,
            "order_placed",
            "New order received",
            f"Order {order['orderNumber']} includes {quantity} of your item(s).",
            data={"orderId": str(order["_id"]), "orderNumber": order["orderNumber"]},
            link=f"/vendor/orders/{order['_id']}",
        )


def _notify_low_stock(db, products: Iterable[Dict]) -> None:
    for product in products:
        stock = product.get("stock", 0)
        threshold = product.get("lowStockThreshold", DEFAULT_LOW_STOCK_THRESHOLD)
        if stock <= threshold:
            create_notification(
                db,
                product["vendorId"],
                "low_stock",
                "Low stock alert",
                f"{product.get('name')} has {stock} unit(s) left.",
                data={"productId": str(product["_id"]), "stock": stock},
                link=f"/vendor/products/{product['_id']}",
            )


def create_order(
    db,
    customer,
    payload: Dict,
    tax_rate: float = TAX_RATE,
    currency: str = DEFAULT_CURRENCY,
):
    shipping_address = normalize_address(
        payload.get("shippingAddress"), SHIPPING_ADDRESS_FIELDS, "Shipping address"
    )
    billing_address = None
    if payload.get("billingAddress"):
        billing_address = normalize_address(
            payload.get("billingAddress"), BILLING_ADDRESS_FIELDS, "Billing address"
        )
    payment_method = clean_text(payload.get("paymentMethod"))
    if not payment_method:
        raise ValidationError("A payment method is required.")
    shipping_cost = parse_amount(payload.get("shippingCost"), "Shipping cost")
    discount = parse_amount(payload.get("discount"), "Discount")

    cart = db.carts.find_one({"userId": customer["_id"]})
    if cart is None:
        raise NotFoundError("Cart not found")
    if not cart.get("items"):
        raise ValidationError("Your cart is empty.")

    items = build_order_items(db, cart["items"])
    totals = calculate_totals(items, shipping_cost, discount, tax_rate)
    updated_products = reserve_stock(db, items)

    now = datetime.utcnow()
    note = clean_text(payload.get("notes"))
    order = {
        "orderNumber": generate_order_number(now),
        "customerId": customer["_id"],
        "items": items,
        **totals,
        "currency": currency,
        "status": "pending",
        "paymentStatus": "pending",
        "paymentMethod": payment_method,
        "shippingAddress": shipping_address,
        "statusHistory": [{"status": "pending", "timestamp": now, "note": "Order placed"}],
        "createdAt": now,
        "updatedAt": now,
    }
    if billing_address:
        order["billingAddress"] = billing_address
    if note:
        order["notes"] = note

    try:
        order["_id"] = db.orders.insert_one(order).inserted_id
    except PyMongoError:
        release_stock(db, items)
        raise

    db.carts.update_one(
        {"_id": cart["_id"]}, {"$set": {"items": [], "updatedAt": now}}
    )
    logger.info(
        "Order %s placed by %s: %d line(s), total %.2f %s",
        order["orderNumber"],
        customer.get("email"),
        len(items),
        order["total"],
        currency,
    )
    _notify_vendors(db, order)
    _notify_low_stock(db, updated_products)
    return order


def scope_order_to_vendor(order, vendor_id):
    """Return a copy of the order that only carries the vendor's own lines."""
    scoped = dict(order)
    scoped["items"] = [item for item in order.get("items", []) if item.get("vendorId") == vendor_id]
    return scoped


def serialize_order(order_document):
    return serialize_document(order_document)


def _visible_order(order, user):
    if is_admin(user) or order.get("customerId") == user["_id"]:
        return order
    if user.get("role") == "vendor":
        scoped = scope_order_to_vendor(order, user["_id"])
        if scoped["items"]:
            return scoped
    return None


def list_orders_for(db, user, page: int, limit: int, status: Optional[str] = None):
    if is_admin(user):
        query: Dict[str, object] = {}
    elif user.get("role") == "vendor":
        query = {"items.vendorId": user["_id"]}
    else:
        query = {"customerId": user["_id"]}
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError("Unknown order status.")
        query["status"] = status

    cursor = (
        db.orders.find(query)
        .sort([("createdAt", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    orders = [_visible_order(order, user) for order in cursor]
    return [order for order in orders if order], db.orders.count_documents(query)


def get_order_for(db, order_id, user):
    order = db.orders.find_one({"_id": parse_object_id(order_id, "order identifier")})
    visible = _visible_order(order, user) if order else None
    if not visible:
        raise NotFoundError("Order not found")
    return visible


def update_order_status(db, order_id, actor, status, tracking_number=None, note=None):
    """Record a status change made by a vendor on the order, or an admin.

    Any status can follow any other; the change and its history entry are
    written together.
    """
    status = str(status or "").strip().lower()
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Status must be one of: {', '.join(ORDER_STATUSES)}.")

    query: Dict[str, object] = {"_id": parse_object_id(order_id, "order identifier")}
    if not is_admin(actor):
        query["items.vendorId"] = actor["_id"]

    now = datetime.utcnow()
    updates: Dict[str, object] = {"status": status, "updatedAt": now}
    tracking_number = clean_text(tracking_number)
    if tracking_number:
        updates["trackingNumber"] = tracking_number
    if status == "delivered":
        updates["deliveredAt"] = now

    order = db.orders.find_one_and_update(
        query,
        {
            "$set": updates,
            "$push": {
                "statusHistory": {
                    "status": status,
                    "timestamp": now,
                    "note": clean_text(note),
                }
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise NotFoundError("Order not found")

    logger.info(
        "Order %s moved to %s by %s", order["orderNumber"], status, actor.get("email")
    )
    if status in CUSTOMER_STATUS_NOTIFICATIONS:
        notification_type, title = CUSTOMER_STATUS_NOTIFICATIONS[status]
        create_notification(
            db,
            order["customerId"],
            notification_type,
            title,
            f"Order {order['orderNumber']} is now {status}.",
            data={"orderId": str(order["_id"]), "trackingNumber": order.get("trackingNumber")},
            link=f"/orders/{order['_id']}",
        )
    return order


def cancel_order(db, order_id, customer, reason=None):
    order_object_id = parse_object_id(order_id, "order identifier")
    order = db.orders.find_one({"_id": order_object_id, "customerId": customer["_id"]})
    if not order:
        raise NotFoundError("Order not found")

    now = datetime.utcnow()
    cancelled = db.orders.find_one_and_update(
        {"_id": order_object_id, "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {
            "$set": {"status": "cancelled", "cancelledAt": now, "updatedAt": now},
            "$push": {
                "statusHistory": {
                    "status": "cancelled",
                    "timestamp": now,
                    "note": clean_text(reason) or "Cancelled by customer",
                }
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    if not cancelled:
        raise ValidationError(f"Orders that are {order.get('status')} can no longer be cancelled.")

    # An order can return to a cancellable status and be cancelled again;
    # its stock goes back only once.
    released = db.orders.update_one(
        {"_id": order_object_id, "stockReleased": {"$ne": True}},
        {"$set": {"stockReleased": True}},
    )
    if released.modified_count:
        cancelled["stockReleased"] = True
        release_stock(db, cancelled["items"])
    logger.info("Order %s cancelled by %s", cancelled["orderNumber"], customer.get("email"))
    return cancelled


def count_orders_by_status(db, vendor_id=None) -> Dict[str, int]:
    """Count orders per status, across every order when no vendor is given."""
    match = {"items.vendorId": vendor_id} if vendor_id is not None else {}
    counts = {
        row["_id"]: row["count"]
        for row in db.orders.aggregate(
            [
                {"$match": match},
                {"$group": {"_id": "$status", "count": {"$sum": 1}}},
            ]
        )
    }
    return {
        "total": sum(counts.values()),
        "pending": counts.get("pending", 0),
        "processing": counts.get("processing", 0),
        "shipped": counts.get("shipped", 0),
        "delivered": counts.get("delivered", 0),
    }


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    @app.route(f"{prefix}/orders", methods=["POST"])
    @jwt_required()
    def create_order_route():
        payload = request.get_json(silent=True) or {}
        order = create_order(
            db,
            current_user,
            payload,
            tax_rate=app.config["TAX_RATE"],
            currency=app.config["DEFAULT_CURRENCY"],
        )
        return (
            jsonify({"message": "Order placed successfully.", "order": serialize_order(order)}),
            201,
        )

    @app.route(f"{prefix}/orders", methods=["GET"])
    @jwt_required()
    def list_orders_route():
        page, limit = parse_pagination(request.args)
        status = (request.args.get("status") or "").strip().lower() or None
        orders, total = list_orders_for(db, current_user, page, limit, status)
        return jsonify(
            {
                "orders": [serialize_order(order) for order in orders],
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route(f"{prefix}/orders/stats", methods=["GET"])
    @jwt_required()
    def order_stats_route():
        actor = require_role("vendor")
        vendor_id = None if is_admin(actor) else actor["_id"]
        return jsonify({"orders": count_orders_by_status(db, vendor_id)})

    @app.route(f"{prefix}/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order_route(order_id: str):
        return jsonify({"order": serialize_order(get_order_for(db, order_id, current_user))})

    @app.route(f"{prefix}/orders/<order_id>/cancel", methods=["PATCH"])
    @jwt_required()
    def cancel_order_route(order_id: str):
        payload = request.get_json(silent=True) or {}
        order = cancel_order(db, order_id, current_user, payload.get("reason"))
        return jsonify({"message": "Order cancelled.", "order": serialize_order(order)})

    @app.route(f"{prefix}/orders/<order_id>/status", methods=["PATCH"])
    @jwt_required()
    def update_order_status_route(order_id: str):
        actor = require_role("vendor")
        payload = request.get_json(silent=True) or {}
        order = update_order_status(
            db,
            order_id,
            actor,
            payload.get("status"),
            payload.get("trackingNumber"),
            payload.get("note"),
        )
        if not is_admin(actor):
            order = scope_order_to_vendor(order, actor["_id"])
        return jsonify({"message": "Order status updated.", "order": serialize_order(order)})
