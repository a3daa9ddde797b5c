"""Vendor dashboard: profile, product management, fulfilment and analytics."""

import logging
import re
from datetime import datetime
from typing import Dict, List

from flask import jsonify, request
from flask_jwt_extended import current_user, jwt_required
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from kmercart.auth import (
    ADDRESS_FIELDS,
    BANK_ACCOUNT_FIELDS,
    DEFAULT_COMMISSION_RATE,
    normalize_nested,
    serialize_user,
)
from kmercart.categories import refresh_product_count
from kmercart.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from kmercart.helpers import (
    build_pagination,
    clean_text,
    is_whole_number,
    parse_iso_date,
    parse_object_id,
    parse_pagination,
    serialize_document,
    unique_slug,
)
from kmercart.orders import (
    ORDER_STATUSES,
    count_orders_by_status,
    scope_order_to_vendor,
    update_order_status,
)
from kmercart.payouts import list_payouts, serialize_payout
from kmercart.products import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    normalize_product_payload,
    serialize_products,
)

logger = logging.getLogger(__name__)

PRODUCT_STATUS_FILTERS = ("active", "inactive", "low-stock", "out-of-stock")
RECENT_ORDER_LIMIT = 5
TOP_PRODUCT_LIMIT = 10

LOW_STOCK_EXPRESSION = {
    "$and": [
        {"$gt": ["$stock", 0]},
        {"$lte": ["$stock", "$lowStockThreshold"]},
    ]
}


def require_vendor(profile_required: bool = True):
    user = current_user
    if user.get("role") != "vendor":
        raise ForbiddenError("Only vendors can access this resource.")
    if profile_required and not user.get("vendorProfile"):
        raise ForbiddenError(
            "Vendor profile not found. Please complete your vendor profile first."
        )
    return user


# Profile


def update_vendor_profile(db, vendor, payload: Dict):
    if not isinstance(payload, dict):
        raise ValidationError("Vendor profile must be an object.")
    profile = dict(vendor.get("vendorProfile") or {})

    for field in ("businessName", "taxId"):
        if field in payload:
            value = clean_text(payload.get(field))
            if not value:
                raise ValidationError(f"{field} cannot be empty.")
            profile[field] = value
    if "businessDescription" in payload:
        profile["businessDescription"] = str(payload.get("businessDescription") or "").strip()
    if payload.get("businessAddress") is not None:
        profile["businessAddress"] = {
            **(profile.get("businessAddress") or {}),
            **normalize_nested(payload["businessAddress"], ADDRESS_FIELDS, "Business address"),
        }
    if payload.get("bankAccount") is not None:
        profile["bankAccount"] = {
            **(profile.get("bankAccount") or {}),
            **normalize_nested(payload["bankAccount"], BANK_ACCOUNT_FIELDS, "Bank account"),
        }

    profile.setdefault("isApproved", False)
    profile.setdefault("joinedDate", datetime.utcnow())
    if not profile.get("commissionRate"):
        profile["commissionRate"] = DEFAULT_COMMISSION_RATE
    profile.setdefault("rating", 0)
    profile.setdefault("totalSales", 0)

    return db.users.find_one_and_update(
        {"_id": vendor["_id"]},
        {"$set": {"vendorProfile": profile, "updatedAt": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


# Products


def find_vendor_product(db, vendor_id, product_id):
    product = db.products.find_one(
        {"_id": parse_object_id(product_id, "product identifier"), "vendorId": vendor_id}
    )
    if not product:
        raise NotFoundError("Product not found")
    return product


def _ensure_unique_sku(db, sku: str, exclude_id=None) -> None:
    query: Dict[str, object] = {"sku": sku}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db.products.find_one(query, {"_id": 1}):
        raise ConflictError("Product with this SKU already exists")


def _refresh_categories(db, *category_ids) -> None:
    for category_id in {category_id for category_id in category_ids if category_id}:
        refresh_product_count(db, category_id)


def create_vendor_product(db, vendor, payload: Dict, currency: str):
    fields = normalize_product_payload(db, payload)
    _ensure_unique_sku(db, fields["sku"])

    now = datetime.utcnow()
    product = {
        "vendorId": vendor["_id"],
        "shortDescription": "",
        "subcategoryId": None,
        "discount": 0,
        "currency": currency,
        "images": [],
        "mainImage": "",
        "lowStockThreshold": DEFAULT_LOW_STOCK_THRESHOLD,
        "attributes": [],
        "tags": [],
        "isFeatured": False,
        "isActive": True,
        "rating": 0,
        "reviewCount": 0,
        "totalSales": 0,
        **fields,
        "slug": unique_slug(db.products, fields["name"]),
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        product["_id"] = db.products.insert_one(product).inserted_id
    except DuplicateKeyError:
        raise ConflictError("Product with this SKU already exists")

    _refresh_categories(db, product["categoryId"], product.get("subcategoryId"))
    logger.info("Vendor %s created product %s (%s)", vendor.get("email"), product["name"], product["sku"])
    return product


def update_vendor_product(db, vendor, product_id, payload: Dict):
    product = find_vendor_product(db, vendor["_id"], product_id)
    fields = normalize_product_payload(db, payload, partial=True)
    if not fields:
        return product

    if "sku" in fields and fields["sku"] != product.get("sku"):
        _ensure_unique_sku(db, fields["sku"], exclude_id=product["_id"])
    if "name" in fields and fields["name"] != product.get("name"):
        fields["slug"] = unique_slug(db.products, fields["name"], exclude_id=product["_id"])
    fields["updatedAt"] = datetime.utcnow()

    try:
        updated = db.products.find_one_and_update(
            {"_id": product["_id"]},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("Product with this SKU already exists")

    _refresh_categories(
        db,
        product.get("categoryId"),
        product.get("subcategoryId"),
        updated.get("categoryId"),
        updated.get("subcategoryId"),
    )
    return updated


def deactivate_vendor_product(db, vendor, product_id) -> None:
    product = find_vendor_product(db, vendor["_id"], product_id)
    db.products.update_one(
        {"_id": product["_id"]},
        {"$set": {"isActive": False, "updatedAt": datetime.utcnow()}},
    )
    _refresh_categories(db, product.get("categoryId"), product.get("subcategoryId"))
    logger.info("Vendor %s removed product %s", vendor.get("email"), product["_id"])


def update_product_stock(db, vendor, product_id, stock):
    if not is_whole_number(stock):
        raise ValidationError("Stock must be a whole number.")
    if stock < 0:
        raise ValidationError("Stock cannot be negative.")
    product = find_vendor_product(db, vendor["_id"], product_id)
    updated = db.products.find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {"stock": int(stock), "updatedAt": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info(
        "Stock for %s changed from %s to %s", product.get("sku"), product.get("stock"), int(stock)
    )
    return updated


def _low_stock_pipeline(query: Dict) -> List[Dict]:
    return [
        {"$match": query},
        {"$addFields": {"lowStockMatch": LOW_STOCK_EXPRESSION}},
        {"$match": {"lowStockMatch": True}},
    ]


def list_vendor_products(db, vendor_id, page: int, limit: int, search=None, status=None):
    query: Dict[str, object] = {"vendorId": vendor_id}
    if search:
        regex = re.compile(re.escape(search), re.IGNORECASE)
        query["$or"] = [{"name": regex}, {"description": regex}, {"sku": regex}]
    if status and status not in PRODUCT_STATUS_FILTERS:
        raise ValidationError(f"Status must be one of: {', '.join(PRODUCT_STATUS_FILTERS)}.")

    if status == "low-stock":
        pipeline = _low_stock_pipeline(query)
        products = list(
            db.products.aggregate(
                pipeline
                + [
                    {"$sort": {"createdAt": -1}},
                    {"$skip": (page - 1) * limit},
                    {"$limit": limit},
                ]
            )
        )
        counted = list(db.products.aggregate(pipeline + [{"$count": "total"}]))
        for product in products:
            product.pop("lowStockMatch", None)
        return products, counted[0]["total"] if counted else 0

    if status == "active":
        query["isActive"] = True
    elif status == "inactive":
        query["isActive"] = False
    elif status == "out-of-stock":
        query["stock"] = 0

    cursor = (
        db.products.find(query)
        .sort([("createdAt", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return list(cursor), db.products.count_documents(query)


# Orders


def attach_customers(db, orders: List[Dict]) -> List[Dict]:
    customer_ids = list({order["customerId"] for order in orders if order.get("customerId")})
    customers = {
        user["_id"]: {
            "_id": str(user["_id"]),
            "firstName": user.get("firstName", ""),
            "lastName": user.get("lastName", ""),
            "email": user.get("email", ""),
        }
        for user in db.users.find({"_id": {"$in": customer_ids}})
    }
    serialized_orders = []
    for order in orders:
        serialized = serialize_document(order)
        serialized["customer"] = customers.get(order.get("customerId"))
        serialized_orders.append(serialized)
    return serialized_orders


def list_vendor_orders(db, vendor_id, page: int, limit: int, status=None):
    query: Dict[str, object] = {"items.vendorId": vendor_id}
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
    orders = [scope_order_to_vendor(order, vendor_id) for order in cursor]
    return orders, db.orders.count_documents(query)


def get_vendor_order(db, vendor_id, order_id):
    order = db.orders.find_one(
        {"_id": parse_object_id(order_id, "order identifier"), "items.vendorId": vendor_id}
    )
    if not order:
        raise NotFoundError("Order not found")
    return scope_order_to_vendor(order, vendor_id)


# Analytics


def _vendor_lines_pipeline(vendor_id, match: Dict) -> List[Dict]:
    return [
        {"$match": match},
        {"$unwind": "$items"},
        {"$match": {"items.vendorId": vendor_id}},
    ]


def count_products(db, vendor_id) -> Dict[str, int]:
    rows = list(
        db.products.aggregate(
            [
                {"$match": {"vendorId": vendor_id}},
                {
                    "$group": {
                        "_id": None,
                        "total": {"$sum": 1},
                        "active": {"$sum": {"$cond": [{"$eq": ["$isActive", True]}, 1, 0]}},
                        "lowStock": {"$sum": {"$cond": [LOW_STOCK_EXPRESSION, 1, 0]}},
                        "outOfStock": {"$sum": {"$cond": [{"$lte": ["$stock", 0]}, 1, 0]}},
                    }
                },
            ]
        )
    )
    counts = rows[0] if rows else {}
    return {
        "total": counts.get("total", 0),
        "active": counts.get("active", 0),
        "lowStock": counts.get("lowStock", 0),
        "outOfStock": counts.get("outOfStock", 0),
    }


def sum_vendor_sales(db, vendor_id) -> float:
    rows = list(
        db.orders.aggregate(
            _vendor_lines_pipeline(
                vendor_id, {"items.vendorId": vendor_id, "status": {"$ne": "cancelled"}}
            )
            + [{"$group": {"_id": None, "sales": {"$sum": "$items.total"}}}]
        )
    )
    return round(rows[0]["sales"], 2) if rows else 0


def build_dashboard_stats(db, vendor_id) -> Dict[str, object]:
    recent = list(
        db.orders.find({"items.vendorId": vendor_id})
        .sort([("createdAt", -1), ("_id", -1)])
        .limit(RECENT_ORDER_LIMIT)
    )
    sales = sum_vendor_sales(db, vendor_id)
    return {
        "products": count_products(db, vendor_id),
        "orders": count_orders_by_status(db, vendor_id),
        "sales": {"total": sales, "revenue": sales},
        "recentOrders": attach_customers(
            db, [scope_order_to_vendor(order, vendor_id) for order in recent]
        ),
    }


def build_sales_analytics(db, vendor_id, start_date=None, end_date=None) -> Dict[str, List]:
    match: Dict[str, object] = {"items.vendorId": vendor_id, "status": {"$ne": "cancelled"}}
    created_filter = {}
    if start_date:
        created_filter["$gte"] = start_date
    if end_date:
        created_filter["$lt"] = end_date
    if created_filter:
        match["createdAt"] = created_filter
    lines = _vendor_lines_pipeline(vendor_id, match)

    daily_rows = db.orders.aggregate(
        lines
        + [
            {
                "$group": {
                    "_id": {
                        "year": {"$year": "$createdAt"},
                        "month": {"$month": "$createdAt"},
                        "day": {"$dayOfMonth": "$createdAt"},
                    },
                    "sales": {"$sum": "$items.total"},
                    "orderIds": {"$addToSet": "$_id"},
                }
            }
        ]
    )
    daily_sales = sorted(
        (
            {
                "date": f"{row['_id']['year']:04d}-{row['_id']['month']:02d}-{row['_id']['day']:02d}",
                "sales": round(row["sales"], 2),
                "orders": len(row["orderIds"]),
            }
            for row in daily_rows
        ),
        key=lambda entry: entry["date"],
    )

    top_rows = db.orders.aggregate(
        lines
        + [
            {
                "$group": {
                    "_id": "$items.productId",
                    "productName": {"$first": "$items.name"},
                    "totalSold": {"$sum": "$items.quantity"},
                    "revenue": {"$sum": "$items.total"},
                }
            },
            {"$sort": {"totalSold": -1}},
            {"$limit": TOP_PRODUCT_LIMIT},
        ]
    )
    top_products = [
        {
            "productId": str(row["_id"]),
            "productName": row.get("productName", ""),
            "totalSold": row["totalSold"],
            "revenue": round(row["revenue"], 2),
        }
        for row in top_rows
    ]
    return {"dailySales": daily_sales, "topProducts": top_products}


def register_routes(app, db):
    prefix = f"{app.config['API_PREFIX']}/vendors"

    @app.route(f"{prefix}/profile", methods=["GET"])
    @jwt_required()
    def get_vendor_profile_route():
        vendor = require_vendor(profile_required=False)
        return jsonify({"user": serialize_user(vendor)})

    @app.route(f"{prefix}/profile", methods=["PUT"])
    @jwt_required()
    def update_vendor_profile_route():
        vendor = require_vendor(profile_required=False)
        payload = request.get_json(silent=True) or {}
        user = update_vendor_profile(db, vendor, payload)
        return jsonify({"message": "Vendor profile updated.", "user": serialize_user(user)})

    @app.route(f"{prefix}/products", methods=["POST"])
    @jwt_required()
    def create_vendor_product_route():
        vendor = require_vendor()
        payload = request.get_json(silent=True) or {}
        product = create_vendor_product(db, vendor, payload, app.config["DEFAULT_CURRENCY"])
        return (
            jsonify(
                {
                    "message": "Product created successfully.",
                    "product": serialize_products(db, [product])[0],
                }
            ),
            201,
        )

    @app.route(f"{prefix}/products", methods=["GET"])
    @jwt_required()
    def list_vendor_products_route():
        vendor = require_vendor()
        page, limit = parse_pagination(request.args)
        search = (request.args.get("search") or "").strip() or None
        status = (request.args.get("status") or "").strip().lower() or None
        products, total = list_vendor_products(db, vendor["_id"], page, limit, search, status)
        return jsonify(
            {
                "products": serialize_products(db, products),
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route(f"{prefix}/products/<product_id>", methods=["GET"])
    @jwt_required()
    def get_vendor_product_route(product_id: str):
        vendor = require_vendor()
        product = find_vendor_product(db, vendor["_id"], product_id)
        return jsonify({"product": serialize_products(db, [product])[0]})

    @app.route(f"{prefix}/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_vendor_product_route(product_id: str):
        vendor = require_vendor()
        payload = request.get_json(silent=True) or {}
        product = update_vendor_product(db, vendor, product_id, payload)
        return jsonify(
            {
                "message": "Product updated successfully.",
                "product": serialize_products(db, [product])[0],
            }
        )

    @app.route(f"{prefix}/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_vendor_product_route(product_id: str):
        vendor = require_vendor()
        deactivate_vendor_product(db, vendor, product_id)
        return jsonify({"message": "Product deleted successfully"})

    @app.route(f"{prefix}/products/<product_id>/stock", methods=["PATCH"])
    @jwt_required()
    def update_product_stock_route(product_id: str):
        vendor = require_vendor()
        payload = request.get_json(silent=True) or {}
        product = update_product_stock(db, vendor, product_id, payload.get("stock"))
        return jsonify(
            {"message": "Stock updated.", "product": serialize_products(db, [product])[0]}
        )

    @app.route(f"{prefix}/orders", methods=["GET"])
    @jwt_required()
    def list_vendor_orders_route():
        vendor = require_vendor()
        page, limit = parse_pagination(request.args)
        status = (request.args.get("status") or "").strip().lower() or None
        orders, total = list_vendor_orders(db, vendor["_id"], page, limit, status)
        return jsonify(
            {
                "orders": attach_customers(db, orders),
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route(f"{prefix}/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_vendor_order_route(order_id: str):
        vendor = require_vendor()
        order = get_vendor_order(db, vendor["_id"], order_id)
        return jsonify({"order": attach_customers(db, [order])[0]})

    @app.route(f"{prefix}/orders/<order_id>/status", methods=["PATCH"])
    @jwt_required()
    def update_vendor_order_status_route(order_id: str):
        vendor = require_vendor()
        payload = request.get_json(silent=True) or {}
        order = update_order_status(
            db,
            order_id,
            vendor,
            payload.get("status"),
            payload.get("trackingNumber"),
            payload.get("note"),
        )
        return jsonify(
            {
                "message": "Order status updated.",
                "order": serialize_document(scope_order_to_vendor(order, vendor["_id"])),
            }
        )

    @app.route(f"{prefix}/dashboard/stats", methods=["GET"])
    @jwt_required()
    def vendor_dashboard_route():
        vendor = require_vendor()
        return jsonify(build_dashboard_stats(db, vendor["_id"]))

    @app.route(f"{prefix}/analytics/sales", methods=["GET"])
    @jwt_required()
    def vendor_sales_analytics_route():
        vendor = require_vendor()
        start_date = parse_iso_date(request.args.get("startDate"))
        end_date = parse_iso_date(request.args.get("endDate"), end_of_day=True)
        if request.args.get("startDate") and start_date is None:
            raise ValidationError("startDate must be an ISO-8601 date.")
        if request.args.get("endDate") and end_date is None:
            raise ValidationError("endDate must be an ISO-8601 date.")
        return jsonify(build_sales_analytics(db, vendor["_id"], start_date, end_date))

    @app.route(f"{prefix}/payouts", methods=["GET"])
    @jwt_required()
    def vendor_payouts_route():
        vendor = require_vendor(profile_required=False)
        page, limit = parse_pagination(request.args)
        payouts, total = list_payouts(db, page, limit, vendor_id=vendor["_id"])
        return jsonify(
            {
                "payouts": [serialize_payout(payout) for payout in payouts],
                "pagination": build_pagination(total, page, limit),
            }
        )
