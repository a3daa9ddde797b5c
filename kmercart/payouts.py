import logging
from datetime import datetime
from typing import Dict, Optional

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from pymongo import ReturnDocument

from kmercart.auth import DEFAULT_COMMISSION_RATE, require_role
from kmercart.errors import NotFoundError, ValidationError
from kmercart.helpers import (
    build_pagination,
    clean_text,
    parse_iso_date,
    parse_object_id,
    parse_pagination,
    serialize_document,
)
from kmercart.notifications import create_notification

logger = logging.getLogger(__name__)

PAYOUT_STATUSES = ("pending", "processing", "completed", "failed")


def serialize_payout(payout_document):
    return serialize_document(payout_document)


def _paid_order_ids(db, vendor_id):
    paid = set()
    for payout in db.payouts.find(
        {"vendorId": vendor_id, "status": {"$ne": "failed"}}, {"orders": 1}
    ):
        paid.update(payout.get("orders") or [])
    return list(paid)


def calculate_vendor_earnings(db, vendor_id, start_date, end_date) -> Dict[str, object]:
    """Sum the vendor's lines on delivered orders in the period.

    Orders that already belong to a payout that has not failed are left out.
    """
    match = {
        "items.vendorId": vendor_id,
        "status": "delivered",
        "deliveredAt": {"$gte": start_date, "$lt": end_date},
        "_id": {"$nin": _paid_order_ids(db, vendor_id)},
    }
    rows = list(
        db.orders.aggregate(
            [
                {"$match": match},
                {"$unwind": "$items"},
                {"$match": {"items.vendorId": vendor_id}},
                {
                    "$group": {
                        "_id": None,
                        "gross": {"$sum": "$items.total"},
                        "orders": {"$addToSet": "$_id"},
                    }
                },
            ]
        )
    )
    if not rows:
        return {"gross": 0.0, "orders": []}
    return {"gross": round(rows[0]["gross"], 2), "orders": rows[0]["orders"]}


def create_payout(db, payload: Dict, currency: str):
    vendor_id = parse_object_id(payload.get("vendorId"), "vendor identifier")
    vendor = db.users.find_one({"_id": vendor_id, "role": "vendor"})
    if not vendor:
        raise NotFoundError("Vendor not found")
    profile = vendor.get("vendorProfile") or {}
    bank_account = profile.get("bankAccount") or {}
    if not bank_account.get("accountNumber") or not bank_account.get("accountHolderName"):
        raise ValidationError("Vendor has no bank account on file.")

    start_date = parse_iso_date(payload.get("startDate"))
    end_date = parse_iso_date(payload.get("endDate"), end_of_day=True)
    if start_date is None or end_date is None:
        raise ValidationError("startDate and endDate must be ISO-8601 dates.")
    if end_date <= start_date:
        raise ValidationError("endDate must be after startDate.")

    earnings = calculate_vendor_earnings(db, vendor_id, start_date, end_date)
    commission_rate = profile.get("commissionRate", DEFAULT_COMMISSION_RATE)
    amount = round(earnings["gross"] * (1 - commission_rate), 2)
    if amount <= 0:
        raise ValidationError("There is nothing to pay out for this period.")

    now = datetime.utcnow()
    payout = {
        "vendorId": vendor_id,
        "amount": amount,
        "currency": currency,
        "status": "pending",
        "paymentMethod": clean_text(payload.get("paymentMethod")) or "bank_transfer",
        "orders": earnings["orders"],
        "period": {"startDate": start_date, "endDate": end_date},
        "bankAccount": {
            "accountNumber": bank_account["accountNumber"],
            "accountHolderName": bank_account["accountHolderName"],
        },
        "notes": str(payload.get("notes") or "").strip(),
        "createdAt": now,
        "updatedAt": now,
    }
    payout["_id"] = db.payouts.insert_one(payout).inserted_id
    logger.info(
        "Payout of %.2f %s created for %s covering %d order(s)",
        amount,
        currency,
        vendor.get("email"),
        len(payout["orders"]),
    )
    return payout


def list_payouts(db, page: int, limit: int, vendor_id=None, status: Optional[str] = None):
    query: Dict[str, object] = {}
    if vendor_id is not None:
        query["vendorId"] = vendor_id
    if status:
        if status not in PAYOUT_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(PAYOUT_STATUSES)}.")
        query["status"] = status
    cursor = (
        db.payouts.find(query)
        .sort([("createdAt", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return list(cursor), db.payouts.count_documents(query)


def update_payout_status(db, payout_id, status, transaction_id=None):
    status = str(status or "").strip().lower()
    if status not in PAYOUT_STATUSES:
        raise ValidationError(f"Status must be one of: {', '.join(PAYOUT_STATUSES)}.")

    now = datetime.utcnow()
    updates: Dict[str, object] = {"status": status, "updatedAt": now}
    transaction_id = clean_text(transaction_id)
    if transaction_id:
        updates["transactionId"] = transaction_id
    if status == "completed":
        updates["processedAt"] = now

    payout = db.payouts.find_one_and_update(
        {"_id": parse_object_id(payout_id, "payout identifier")},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if not payout:
        raise NotFoundError("Payout not found")

    logger.info("Payout %s marked %s", payout["_id"], status)
    if status == "completed":
        create_notification(
            db,
            payout["vendorId"],
            "payout_processed",
            "Payout processed",
            f"A payout of {payout['amount']:.2f} {payout.get('currency', '')} has been sent.",
            data={"payoutId": str(payout["_id"]), "amount": payout["amount"]},
            link="/vendor/payouts",
        )
    return payout


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    @app.route(f"{prefix}/payouts", methods=["POST"])
    @jwt_required()
    def create_payout_route():
        require_role("admin")
        payload = request.get_json(silent=True) or {}
        payout = create_payout(db, payload, app.config["DEFAULT_CURRENCY"])
        return (
            jsonify({"message": "Payout created.", "payout": serialize_payout(payout)}),
            201,
        )

    @app.route(f"{prefix}/payouts", methods=["GET"])
    @jwt_required()
    def list_payouts_route():
        require_role("admin")
        page, limit = parse_pagination(request.args)
        vendor_id = None
        if request.args.get("vendorId"):
            vendor_id = parse_object_id(request.args.get("vendorId"), "vendor identifier")
        status = (request.args.get("status") or "").strip().lower() or None
        payouts, total = list_payouts(db, page, limit, vendor_id=vendor_id, status=status)
        return jsonify(
            {
                "payouts": [serialize_payout(payout) for payout in payouts],
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route(f"{prefix}/payouts/<payout_id>/status", methods=["PATCH"])
    @jwt_required()
    def update_payout_status_route(payout_id: str):
        require_role("admin")
        payload = request.get_json(silent=True) or {}
        payout = update_payout_status(
            db, payout_id, payload.get("status"), payload.get("transactionId")
        )
        return jsonify({"message": "Payout updated.", "payout": serialize_payout(payout)})
