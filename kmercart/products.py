import re
from typing import Dict, List, Optional

from flask import jsonify, request

from kmercart.errors import NotFoundError, ValidationError
from kmercart.helpers import (
    build_pagination,
    clean_text,
    is_whole_number,
    parse_flag,
    parse_object_id,
    parse_pagination,
    safe_float,
    serialize_document,
)

DEFAULT_LOW_STOCK_THRESHOLD = 10
SORT_FIELDS = {"createdAt", "price", "rating", "totalSales", "name"}

REQUIRED_PRODUCT_FIELDS = ("name", "description", "categoryId", "price", "sku", "stock")
OPTIONAL_PRODUCT_FIELDS = (
    "shortDescription",
    "subcategoryId",
    "originalPrice",
    "discount",
    "currency",
    "images",
    "mainImage",
    "lowStockThreshold",
    "attributes",
    "tags",
    "isFeatured",
    "isActive",
    "weight",
    "dimensions",
    "seo",
)
DIMENSION_FIELDS = ("length", "width", "height")


def is_low_stock(product_document) -> bool:
    stock = product_document.get("stock", 0) or 0
    threshold = product_document.get("lowStockThreshold", DEFAULT_LOW_STOCK_THRESHOLD)
    return 0 < stock <= threshold


def build_category_map(db, product_docs) -> Dict:
    category_ids = set()
    for document in product_docs:
        for field in ("categoryId", "subcategoryId"):
            if document.get(field):
                category_ids.add(document[field])
    if not category_ids:
        return {}
    return {
        category["_id"]: {
            "_id": str(category["_id"]),
            "name": category.get("name", ""),
            "slug": category.get("slug", ""),
        }
        for category in db.categories.find({"_id": {"$in": list(category_ids)}})
    }


def serialize_product(product_document, category_map: Optional[Dict] = None):
    if not product_document:
        return None
    serialized = serialize_document(product_document)
    serialized["inStock"] = (product_document.get("stock", 0) or 0) > 0
    serialized["isLowStock"] = is_low_stock(product_document)
    if category_map:
        serialized["category"] = category_map.get(product_document.get("categoryId"))
        if product_document.get("subcategoryId"):
            serialized["subcategory"] = category_map.get(product_document["subcategoryId"])
    return serialized


def serialize_products(db, product_docs) -> List[Dict]:
    category_map = build_category_map(db, product_docs)
    return [serialize_product(document, category_map) for document in product_docs]


def _require_number(value, label: str, minimum: Optional[float] = 0, maximum: Optional[float] = None) -> float:
    if isinstance(value, bool) or value is None or value == "":
        raise ValidationError(f"{label} must be a valid number.")
    numeric = safe_float(value, None)
    if numeric is None:
        raise ValidationError(f"{label} must be a valid number.")
    if minimum is not None and numeric < minimum:
        raise ValidationError(f"{label} must be at least {minimum:g}.")
    if maximum is not None and numeric > maximum:
        raise ValidationError(f"{label} must be at most {maximum:g}.")
    return numeric


def _require_int(value, label: str) -> int:
    numeric = _require_number(value, label)
    if not is_whole_number(numeric):
        raise ValidationError(f"{label} must be a whole number.")
    return int(numeric)


def _string_list(value, label: str) -> List[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{label} must be a list of strings.")
    return [item.strip() for item in value if item.strip()]


def _boolean(value, label: str) -> bool:
    parsed = parse_flag(value)
    if parsed is None:
        raise ValidationError(f"{label} must be a boolean.")
    return parsed


def _resolve_category(db, value, label: str):
    category_id = parse_object_id(value, label)
    if not db.categories.find_one({"_id": category_id, "isActive": True}, {"_id": 1}):
        raise ValidationError(f"Unknown {label}.")
    return category_id


def normalize_product_payload(db, payload: Dict, partial: bool = False) -> Dict[str, object]:
    """Validate a vendor product payload and return the fields to store.

    With ``partial`` set only the supplied fields are validated, which is how
    updates are applied. Unknown fields are rejected.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Product payload must be an object.")

    allowed = set(REQUIRED_PRODUCT_FIELDS) | set(OPTIONAL_PRODUCT_FIELDS)
    unexpected = sorted(set(payload) - allowed)
    if unexpected:
        raise ValidationError(f"Unexpected fields: {', '.join(unexpected)}.")
    if not partial:
        missing = [field for field in REQUIRED_PRODUCT_FIELDS if payload.get(field) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}.")

    fields: Dict[str, object] = {}
    for field in ("name", "sku"):
        if field in payload:
            value = clean_text(payload.get(field))
            if not value:
                raise ValidationError(f"{field} cannot be empty.")
            fields[field] = value
    if "description" in payload:
        description = str(payload.get("description") or "").strip()
        if not description:
            raise ValidationError("description cannot be empty.")
        fields["description"] = description
    if "shortDescription" in payload:
        fields["shortDescription"] = str(payload.get("shortDescription") or "").strip()
    if "categoryId" in payload:
        fields["categoryId"] = _resolve_category(db, payload["categoryId"], "category")
    if "subcategoryId" in payload:
        fields["subcategoryId"] = (
            _resolve_category(db, payload["subcategoryId"], "subcategory")
            if payload["subcategoryId"]
            else None
        )
    if "price" in payload:
        fields["price"] = round(_require_number(payload["price"], "Price"), 2)
    if "originalPrice" in payload:
        fields["originalPrice"] = round(_require_number(payload["originalPrice"], "Original price"), 2)
    if "discount" in payload:
        fields["discount"] = _require_number(payload["discount"], "Discount", 0, 100)
    if "currency" in payload:
        fields["currency"] = clean_text(payload.get("currency")).upper()
    if "images" in payload:
        fields["images"] = _string_list(payload["images"], "Images")
    if "mainImage" in payload:
        fields["mainImage"] = str(payload.get("mainImage") or "").strip()
    if "stock" in payload:
        fields["stock"] = _require_int(payload["stock"], "Stock")
    if "lowStockThreshold" in payload:
        fields["lowStockThreshold"] = _require_int(payload["lowStockThreshold"], "Low stock threshold")
    if "tags" in payload:
        fields["tags"] = [tag.lower() for tag in _string_list(payload["tags"], "Tags")]
    if "isFeatured" in payload:
        fields["isFeatured"] = _boolean(payload["isFeatured"], "isFeatured")
    if "isActive" in payload:
        fields["isActive"] = _boolean(payload["isActive"], "isActive")
    if "weight" in payload:
        fields["weight"] = _require_number(payload["weight"], "Weight")
    if "attributes" in payload:
        attributes = payload["attributes"]
        if not isinstance(attributes, list):
            raise ValidationError("Attributes must be a list.")
        normalized_attributes = []
        for attribute in attributes:
            if not isinstance(attribute, dict):
                raise ValidationError("Each attribute needs a name and a value.")
            name = clean_text(attribute.get("name"))
            value = clean_text(attribute.get("value"))
            if not name or not value:
                raise ValidationError("Each attribute needs a name and a value.")
            normalized_attributes.append({"name": name, "value": value})
        fields["attributes"] = normalized_attributes
    if "dimensions" in payload:
        dimensions = payload["dimensions"]
        if not isinstance(dimensions, dict):
            raise ValidationError("Dimensions must be an object.")
        fields["dimensions"] = {
            field: _require_number(dimensions[field], field.capitalize())
            for field in DIMENSION_FIELDS
            if dimensions.get(field) is not None
        }
    if "seo" in payload:
        seo = payload["seo"]
        if not isinstance(seo, dict):
            raise ValidationError("SEO settings must be an object.")
        normalized_seo = {}
        for field in ("metaTitle", "metaDescription"):
            if seo.get(field) is not None:
                normalized_seo[field] = str(seo[field]).strip()
        if seo.get("keywords") is not None:
            normalized_seo["keywords"] = _string_list(seo["keywords"], "SEO keywords")
        fields["seo"] = normalized_seo

    if fields.get("images") and not fields.get("mainImage") and "mainImage" not in payload:
        fields["mainImage"] = fields["images"][0]
    return fields


def find_active_product(db, product_id):
    product = db.products.find_one(
        {"_id": parse_object_id(product_id, "product identifier"), "isActive": True}
    )
    if not product:
        raise NotFoundError("Product not found")
    return product


def build_catalog_query(args) -> Dict[str, object]:
    query: Dict[str, object] = {"isActive": True}

    search = (args.get("search") or "").strip()
    if search:
        regex = re.compile(re.escape(search), re.IGNORECASE)
        query["$or"] = [
            {"name": regex},
            {"description": regex},
            {"tags": regex},
            {"sku": regex},
        ]
    if args.get("category"):
        query["categoryId"] = parse_object_id(args.get("category"), "category")
    if args.get("subcategory"):
        query["subcategoryId"] = parse_object_id(args.get("subcategory"), "subcategory")
    if args.get("vendor"):
        query["vendorId"] = parse_object_id(args.get("vendor"), "vendor")

    price_filter: Dict[str, float] = {}
    min_price = safe_float(args.get("minPrice"), None)
    max_price = safe_float(args.get("maxPrice"), None)
    if min_price is not None:
        price_filter["$gte"] = min_price
    if max_price is not None:
        price_filter["$lte"] = max_price
    if price_filter:
        query["price"] = price_filter

    featured = parse_flag(args.get("featured"))
    if featured is not None:
        query["isFeatured"] = featured
    return query


def build_sort(args):
    sort_by = (args.get("sortBy") or "createdAt").strip()
    if sort_by not in SORT_FIELDS:
        sort_by = "createdAt"
    direction = 1 if (args.get("sortOrder") or "desc").strip().lower() == "asc" else -1
    return [(sort_by, direction), ("_id", direction)]


def search_products(db, query: Dict, sort, page: int, limit: int):
    cursor = db.products.find(query).sort(sort).skip((page - 1) * limit).limit(limit)
    return list(cursor), db.products.count_documents(query)


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    def respond_with_listing(query):
        page, limit = parse_pagination(request.args, default_limit=12)
        products, total = search_products(db, query, build_sort(request.args), page, limit)
        return jsonify(
            {
                "products": serialize_products(db, products),
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route(f"{prefix}/products", methods=["GET"])
    def list_products_route():
        return respond_with_listing(build_catalog_query(request.args))

    @app.route(f"{prefix}/products/featured", methods=["GET"])
    def featured_products_route():
        _, limit = parse_pagination(request.args, default_limit=8)
        products = list(
            db.products.find({"isActive": True, "isFeatured": True})
            .sort([("rating", -1), ("createdAt", -1)])
            .limit(limit)
        )
        return jsonify({"products": serialize_products(db, products)})

    @app.route(f"{prefix}/products/slug/<slug>", methods=["GET"])
    def get_product_by_slug_route(slug: str):
        product = db.products.find_one({"slug": slug.lower(), "isActive": True})
        if not product:
            raise NotFoundError("Product not found")
        return jsonify({"product": serialize_products(db, [product])[0]})

    @app.route(f"{prefix}/products/category/<category_id>", methods=["GET"])
    def list_category_products_route(category_id: str):
        category_object_id = parse_object_id(category_id, "category")
        query = build_catalog_query(request.args)
        query.pop("categoryId", None)
        query["$and"] = [
            {"$or": [{"categoryId": category_object_id}, {"subcategoryId": category_object_id}]}
        ]
        return respond_with_listing(query)

    @app.route(f"{prefix}/products/<product_id>", methods=["GET"])
    def get_product_route(product_id: str):
        product = find_active_product(db, product_id)
        return jsonify({"product": serialize_products(db, [product])[0]})
