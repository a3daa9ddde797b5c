from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

INDEXES = {
    "users": [
        ([("email", ASCENDING)], {"unique": True}),
        ([("role", ASCENDING)], {}),
    ],
    "categories": [
        ([("slug", ASCENDING)], {"unique": True}),
        ([("parentId", ASCENDING)], {}),
        ([("isActive", ASCENDING)], {}),
    ],
    "products": [
        ([("sku", ASCENDING)], {"unique": True}),
        ([("slug", ASCENDING)], {"unique": True}),
        ([("vendorId", ASCENDING)], {}),
        ([("categoryId", ASCENDING)], {}),
        ([("price", ASCENDING)], {}),
        ([("createdAt", DESCENDING)], {}),
        ([("isFeatured", ASCENDING), ("isActive", ASCENDING)], {}),
    ],
    "carts": [
        ([("userId", ASCENDING)], {"unique": True}),
    ],
    "orders": [
        ([("orderNumber", ASCENDING)], {"unique": True}),
        ([("customerId", ASCENDING)], {}),
        ([("items.vendorId", ASCENDING)], {}),
        ([("status", ASCENDING)], {}),
        ([("createdAt", DESCENDING)], {}),
    ],
    "reviews": [
        ([("userId", ASCENDING), ("productId", ASCENDING)], {"unique": True}),
        ([("productId", ASCENDING)], {}),
    ],
    "notifications": [
        ([("userId", ASCENDING)], {}),
        ([("isRead", ASCENDING)], {}),
        ([("createdAt", DESCENDING)], {}),
    ],
    "payouts": [
        ([("vendorId", ASCENDING)], {}),
        ([("status", ASCENDING)], {}),
    ],
}


def ensure_indexes(db, logger) -> None:
    for collection_name, indexes in INDEXES.items():
        collection = db[collection_name]
        for keys, options in indexes:
            try:
                collection.create_index(keys, **options)
            except PyMongoError as exc:
                logger.warning(
                    "Unable to ensure index %s on %s: %s", keys, collection_name, exc
                )
