import math
import re
import unicodedata
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple
from uuid import uuid4

from bson import ObjectId
from bson.errors import InvalidId

from kmercart.errors import ValidationError

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100
# Largest integer BSON can store.
MAX_INT64 = 2 ** 63 - 1


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def clean_text(value) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split())


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    numeric = safe_float(value, None)
    if numeric is None:
        return default
    return max(default, min(int(numeric), MAX_INT64))


def is_whole_number(value, maximum: int = MAX_INT64) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, float) and not math.isfinite(value):
        return False
    return value == int(value) and abs(value) <= maximum


def parse_object_id(value, label: str = "identifier") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}.")


def slugify(value: Optional[str]) -> str:
    normalized_name = clean_text(value).lower()
    ascii_name = (
        unicodedata.normalize("NFKD", normalized_name)
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")
    if not slug:
        slug = uuid4().hex
    return slug


def unique_slug(collection, value: Optional[str], exclude_id: Optional[ObjectId] = None) -> str:
    base_slug = slugify(value)
    candidate = base_slug
    while True:
        query: Dict[str, object] = {"slug": candidate}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if not collection.find_one(query, {"_id": 1}):
            return candidate
        candidate = f"{base_slug}-{uuid4().hex[:6]}"


def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
    if not value:
        return None
    candidate = str(value).strip()
    if not candidate:
        return None
    normalized = candidate.replace("Z", "+00:00")
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
        normalized = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
    if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
        return parsed + timedelta(days=1)
    return parsed


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    return value.isoformat() + "Z"


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, dict):
        return serialize_document(value)
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def serialize_document(document, exclude: Iterable[str] = ()):
    """Convert a Mongo document into JSON-ready data.

    ObjectIds become strings, datetimes become ISO-8601 strings in UTC and the
    document identifier is exposed as both ``_id`` and ``id``.
    """
    if document is None:
        return None
    excluded = set(exclude)
    serialized = {
        key: serialize_value(value)
        for key, value in document.items()
        if key not in excluded
    }
    if "_id" in serialized:
        serialized["id"] = serialized["_id"]
    return serialized


def parse_pagination(args, default_limit: int = DEFAULT_PAGE_LIMIT) -> Tuple[int, int]:
    page = min(max(safe_positive_int(args.get("page"), 1), 1), MAX_INT64 // MAX_PAGE_LIMIT)
    limit = safe_positive_int(args.get("limit"), 0) or default_limit
    return page, min(max(limit, 1), MAX_PAGE_LIMIT)


def build_pagination(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }


def parse_flag(value) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None
