import logging
import re
from datetime import datetime
from typing import Dict, Optional

import bcrypt
from bson import ObjectId
from flask import jsonify, request
from flask_jwt_extended import (
    create_access_token,
    create_refresh_token,
    current_user,
    decode_token,
    get_jwt,
    jwt_required,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from pymongo.errors import DuplicateKeyError

from kmercart.errors import (
    ConflictError,
    ForbiddenError,
    UnauthorizedError,
    ValidationError,
)
from kmercart.helpers import clean_text, is_valid_email, normalize_email, serialize_document

logger = logging.getLogger(__name__)

ROLES = ("customer", "vendor", "admin")
SELF_REGISTER_ROLES = {"customer", "vendor"}
PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&#])")
PRIVATE_USER_FIELDS = ("password", "refreshTokenJti")

ADDRESS_FIELDS = ("street", "city", "state", "zipCode", "country")
BANK_ACCOUNT_FIELDS = ("accountNumber", "routingNumber", "accountHolderName")
DEFAULT_COMMISSION_RATE = 0.15

limiter = Limiter(get_remote_address)


def hash_password(password: str, rounds: int = 12) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))


def verify_password(password: str, password_hash) -> bool:
    if not password_hash:
        return False
    if isinstance(password_hash, str):
        password_hash = password_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash)
    except ValueError:
        return False


def validate_password(password: str) -> None:
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long.")
    if not PASSWORD_PATTERN.match(password):
        raise ValidationError(
            "Password must contain at least one uppercase letter, one lowercase "
            "letter, one number, and one special character."
        )


def serialize_user(user_document) -> Optional[Dict]:
    if not user_document:
        return None
    serialized = serialize_document(user_document, exclude=PRIVATE_USER_FIELDS)
    serialized["fullName"] = " ".join(
        part
        for part in (user_document.get("firstName"), user_document.get("lastName"))
        if part
    )
    return serialized


def normalize_nested(payload, fields, label: str, required: bool = False) -> Dict[str, str]:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError(f"{label} must be an object.")
    normalized = {}
    for field in fields:
        value = payload.get(field)
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            normalized[field] = trimmed
    if required:
        missing = [field for field in fields if field not in normalized]
        if missing:
            raise ValidationError(f"{label} is missing: {', '.join(missing)}.")
    return normalized


def build_vendor_profile(payload) -> Dict[str, object]:
    if not isinstance(payload, dict):
        raise ValidationError("Vendor profile must be an object.")
    business_name = clean_text(payload.get("businessName"))
    business_description = str(payload.get("businessDescription") or "").strip()
    tax_id = clean_text(payload.get("taxId"))
    if not business_name or not business_description or not tax_id:
        raise ValidationError(
            "Vendor profile requires a business name, description, and tax ID."
        )
    return {
        "businessName": business_name,
        "businessDescription": business_description,
        "businessAddress": normalize_nested(
            payload.get("businessAddress"), ADDRESS_FIELDS, "Business address", required=True
        ),
        "taxId": tax_id,
        "bankAccount": normalize_nested(
            payload.get("bankAccount"), BANK_ACCOUNT_FIELDS, "Bank account", required=True
        ),
        "commissionRate": DEFAULT_COMMISSION_RATE,
        "isApproved": False,
        "rating": 0,
        "totalSales": 0,
        "joinedDate": datetime.utcnow(),
    }


def register_user(db, payload: Dict, rounds: int = 12):
    email = normalize_email(payload.get("email"))
    password = str(payload.get("password") or "")
    first_name = clean_text(payload.get("firstName"))
    last_name = clean_text(payload.get("lastName"))
    role = str(payload.get("role") or "customer").strip().lower()
    phone = str(payload.get("phone") or "").strip()

    if not is_valid_email(email):
        raise ValidationError("Please provide a valid email address.")
    if not password:
        raise ValidationError("Password is required.")
    validate_password(password)
    if not first_name or not last_name:
        raise ValidationError("First name and last name are required.")
    if role not in SELF_REGISTER_ROLES:
        raise ValidationError("Role must be either customer or vendor.")

    if db.users.find_one({"email": email}, {"_id": 1}):
        raise ConflictError("User with this email already exists.")

    now = datetime.utcnow()
    user_document = {
        "email": email,
        "password": hash_password(password, rounds),
        "firstName": first_name,
        "lastName": last_name,
        "role": role,
        "isEmailVerified": False,
        "isActive": True,
        "createdAt": now,
        "updatedAt": now,
    }
    if phone:
        user_document["phone"] = phone
    if payload.get("vendorProfile") is not None:
        if role != "vendor":
            raise ValidationError("Only vendor accounts can carry a vendor profile.")
        user_document["vendorProfile"] = build_vendor_profile(payload["vendorProfile"])

    try:
        result = db.users.insert_one(user_document)
    except DuplicateKeyError:
        raise ConflictError("User with this email already exists.")
    user_document["_id"] = result.inserted_id
    logger.info("Registered %s account %s", role, email)
    return user_document


def authenticate_user(db, email: Optional[str], password: Optional[str]):
    normalized_email = normalize_email(email)
    password = str(password or "")
    if not normalized_email or not password:
        raise ValidationError("Email and password are required.")

    user = db.users.find_one({"email": normalized_email})
    if not user:
        raise UnauthorizedError("Invalid credentials")
    if not user.get("isActive", True):
        raise UnauthorizedError("Account is deactivated")
    if not verify_password(password, user.get("password")):
        raise UnauthorizedError("Invalid credentials")
    return user


def issue_tokens(db, user) -> Dict[str, str]:
    identity = str(user["_id"])
    claims = {"email": user.get("email"), "role": user.get("role", "customer")}
    access_token = create_access_token(identity=identity, additional_claims=claims)
    refresh_token = create_refresh_token(identity=identity, additional_claims=claims)
    refresh_jti = decode_token(refresh_token)["jti"]
    db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"refreshTokenJti": refresh_jti, "lastLoginAt": datetime.utcnow()}},
    )
    return {"accessToken": access_token, "refreshToken": refresh_token}


def load_active_user(db, identity):
    if not identity or not ObjectId.is_valid(str(identity)):
        return None
    user = db.users.find_one({"_id": ObjectId(str(identity))})
    if not user or not user.get("isActive", True):
        return None
    return user


def require_role(*roles: str):
    """Return the current user when their role is allowed; admins always pass."""
    user_role = current_user.get("role", "customer")
    if user_role == "admin" or user_role in roles:
        return current_user
    raise ForbiddenError("You need additional permissions to perform this action.")


def is_admin(user) -> bool:
    return bool(user) and user.get("role") == "admin"


def register_jwt_callbacks(jwt, db):
    @jwt.user_lookup_loader
    def user_lookup_callback(_jwt_header, jwt_data):
        return load_active_user(db, jwt_data.get("sub"))

    @jwt.user_lookup_error_loader
    def user_lookup_error_callback(_jwt_header, _jwt_data):
        return jsonify({"message": "User not found or inactive."}), 401

    @jwt.unauthorized_loader
    def missing_token_callback(reason):
        return jsonify({"message": "Authentication required."}), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(reason):
        return jsonify({"message": "Invalid token."}), 401

    @jwt.expired_token_loader
    def expired_token_callback(_jwt_header, _jwt_payload):
        return jsonify({"message": "Token has expired."}), 401

    @jwt.revoked_token_loader
    def revoked_token_callback(_jwt_header, _jwt_payload):
        return jsonify({"message": "Token has been revoked."}), 401


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    @app.route(f"{prefix}/auth/register", methods=["POST"])
    @limiter.limit("10 per minute")
    def register():
        payload = request.get_json(silent=True) or {}
        user = register_user(db, payload, rounds=app.config["BCRYPT_ROUNDS"])
        tokens = issue_tokens(db, user)
        return jsonify({"user": serialize_user(user), **tokens}), 201

    @app.route(f"{prefix}/auth/login", methods=["POST"])
    @limiter.limit("10 per minute")
    def login():
        payload = request.get_json(silent=True) or {}
        user = authenticate_user(db, payload.get("email"), payload.get("password"))
        tokens = issue_tokens(db, user)
        app.logger.info(
            "User %s signed in from %s",
            user.get("email"),
            request.headers.get("X-Forwarded-For", request.remote_addr),
        )
        user = db.users.find_one({"_id": user["_id"]})
        return jsonify({"user": serialize_user(user), **tokens})

    @app.route(f"{prefix}/auth/refresh", methods=["POST"])
    @jwt_required(refresh=True)
    def refresh_tokens():
        stored_jti = current_user.get("refreshTokenJti")
        if not stored_jti or stored_jti != get_jwt().get("jti"):
            raise UnauthorizedError("Invalid refresh token")
        return jsonify(issue_tokens(db, current_user))

    @app.route(f"{prefix}/auth/logout", methods=["POST"])
    @jwt_required()
    def logout():
        db.users.update_one(
            {"_id": current_user["_id"]}, {"$unset": {"refreshTokenJti": ""}}
        )
        return jsonify({"message": "Logged out successfully"})

    @app.route(f"{prefix}/auth/me", methods=["GET"])
    @jwt_required()
    def current_profile():
        return jsonify({"user": serialize_user(current_user)})
