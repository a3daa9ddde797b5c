from datetime import datetime

import pytest

from support import API, place_order, set_order_status


def _today():
    return datetime.utcnow().strftime("%Y-%m-%d")


def _delivered_order(client, customer, vendor, product_id, quantity=2):
    order = place_order(client, customer["headers"], product_id, quantity=quantity)
    set_order_status(client, vendor["headers"], order["id"], "delivered")
    return order


def _create_payout(client, admin, vendor, **extra):
    payload = {"vendorId": vendor["id"], "startDate": _today(), "endDate": _today(), **extra}
    return client.post(f"{API}/payouts", json=payload, headers=admin["headers"])


def test_payout_pays_delivered_lines_minus_commission(client, admin, customer, vendor, product):
    order = _delivered_order(client, customer, vendor, product["id"])
    place_order(client, customer["headers"], product["id"])

    response = _create_payout(client, admin, vendor, notes="Weekly run")

    assert response.status_code == 201
    payout = response.get_json()["payout"]
    assert payout["amount"] == pytest.approx(42.5)
    assert payout["orders"] == [order["id"]]
    assert payout["status"] == "pending"
    assert payout["currency"] == "CFA"
    assert payout["bankAccount"] == {
        "accountNumber": "000111222",
        "accountHolderName": "Mboa Crafts SARL",
    }


def test_orders_are_paid_out_only_once(client, admin, customer, vendor, product):
    _delivered_order(client, customer, vendor, product["id"])
    assert _create_payout(client, admin, vendor).status_code == 201

    again = _create_payout(client, admin, vendor)

    assert again.status_code == 400


def test_payout_requires_admin_and_valid_period(client, admin, customer, vendor, product):
    _delivered_order(client, customer, vendor, product["id"])

    by_vendor = _create_payout(client, vendor, vendor)
    bad_dates = _create_payout(client, admin, vendor, startDate="soon")
    reversed_period = _create_payout(
        client, admin, vendor, startDate="2030-01-02", endDate="2030-01-01"
    )

    assert by_vendor.status_code == 403
    assert bad_dates.status_code == 400
    assert reversed_period.status_code == 400


def test_payout_requires_bank_account(client, admin, register):
    bare_vendor = register("bare@example.com", role="vendor")

    response = _create_payout(client, admin, bare_vendor)

    assert response.status_code == 400


def test_completing_payout_notifies_vendor(client, admin, customer, vendor, product):
    _delivered_order(client, customer, vendor, product["id"])
    payout = _create_payout(client, admin, vendor).get_json()["payout"]

    response = client.patch(
        f"{API}/payouts/{payout['id']}/status",
        json={"status": "completed", "transactionId": "TX-778"},
        headers=admin["headers"],
    )

    assert response.status_code == 200
    completed = response.get_json()["payout"]
    assert completed["processedAt"]
    assert completed["transactionId"] == "TX-778"
    notifications = client.get(f"{API}/notifications", headers=vendor["headers"]).get_json()
    assert "payout_processed" in [n["type"] for n in notifications["notifications"]]


def test_unknown_payout_status_is_rejected(client, admin, customer, vendor, product):
    _delivered_order(client, customer, vendor, product["id"])
    payout = _create_payout(client, admin, vendor).get_json()["payout"]

    response = client.patch(
        f"{API}/payouts/{payout['id']}/status", json={"status": "lost"}, headers=admin["headers"]
    )

    assert response.status_code == 400


def test_payout_listings(client, admin, customer, vendor, make_vendor, product):
    _delivered_order(client, customer, vendor, product["id"])
    payout = _create_payout(client, admin, vendor).get_json()["payout"]
    other_vendor = make_vendor("second@example.com")

    all_payouts = client.get(f"{API}/payouts?status=pending", headers=admin["headers"]).get_json()
    own = client.get(f"{API}/vendors/payouts", headers=vendor["headers"]).get_json()
    none = client.get(f"{API}/vendors/payouts", headers=other_vendor["headers"]).get_json()
    forbidden = client.get(f"{API}/payouts", headers=vendor["headers"])

    assert [listed["id"] for listed in all_payouts["payouts"]] == [payout["id"]]
    assert [listed["id"] for listed in own["payouts"]] == [payout["id"]]
    assert none["payouts"] == []
    assert forbidden.status_code == 403
