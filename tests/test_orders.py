import re

import pytest
from bson import ObjectId

from kmercart.errors import ValidationError
from kmercart.orders import calculate_totals, reserve_stock
from support import API, SHIPPING_ADDRESS, add_to_cart, checkout, place_order, set_order_status


def _stock(db, product_id):
    return db.products.find_one({"_id": ObjectId(product_id)})["stock"]


def test_checkout_creates_pending_order_with_consistent_totals(client, customer, product, db):
    add_to_cart(client, customer["headers"], product["id"], 2)

    response = checkout(client, customer["headers"], shippingCost=5, discount=3, notes="Ring twice")

    assert response.status_code == 201
    order = response.get_json()["order"]
    assert re.fullmatch(r"KMC-\d{8}-[0-9A-F]{8}", order["orderNumber"])
    assert order["subtotal"] == 50.0
    assert order["tax"] == 4.0
    assert order["total"] == pytest.approx(
        order["subtotal"] + order["tax"] + order["shippingCost"] - order["discount"]
    )
    assert order["total"] == 56.0
    assert order["status"] == "pending"
    assert order["paymentStatus"] == "pending"
    assert order["currency"] == "CFA"
    assert [entry["status"] for entry in order["statusHistory"]] == ["pending"]
    assert order["items"][0]["vendorId"] == product["vendorId"]
    assert order["items"][0]["total"] == 50.0
    assert order["shippingAddress"] == SHIPPING_ADDRESS


def test_checkout_decrements_stock_and_clears_cart(client, customer, product, db):
    place_order(client, customer["headers"], product["id"], quantity=3)

    stored = db.products.find_one({"_id": ObjectId(product["id"])})
    assert stored["stock"] == 17
    assert stored["totalSales"] == 3
    cart = client.get(f"{API}/cart", headers=customer["headers"]).get_json()["cart"]
    assert cart["items"] == []


def test_checkout_requires_a_cart_with_items(client, customer):
    no_cart = checkout(client, customer["headers"])
    client.get(f"{API}/cart", headers=customer["headers"])
    empty_cart = checkout(client, customer["headers"])

    assert no_cart.status_code == 404
    assert empty_cart.status_code == 400
    assert empty_cart.get_json()["message"] == "Your cart is empty."


def test_checkout_names_missing_address_fields(client, customer, product):
    add_to_cart(client, customer["headers"], product["id"])
    address = {key: value for key, value in SHIPPING_ADDRESS.items() if key not in ("city", "phone")}

    response = checkout(client, customer["headers"], shippingAddress=address)

    assert response.status_code == 400
    message = response.get_json()["message"]
    assert "city" in message and "phone" in message


def test_checkout_rejects_negative_amounts_and_oversized_discount(client, customer, product):
    add_to_cart(client, customer["headers"], product["id"])

    negative = checkout(client, customer["headers"], shippingCost=-1)
    oversized = checkout(client, customer["headers"], discount=1000)

    assert negative.status_code == 400
    assert oversized.status_code == 400


def test_checkout_fails_when_stock_ran_out(client, customer, product, db):
    add_to_cart(client, customer["headers"], product["id"], 5)
    db.products.update_one({"_id": ObjectId(product["id"])}, {"$set": {"stock": 2}})

    response = checkout(client, customer["headers"])

    assert response.status_code == 400
    assert "Penja Pepper" in response.get_json()["message"]
    assert _stock(db, product["id"]) == 2
    assert db.orders.count_documents({}) == 0


def test_checkout_fails_for_deactivated_product(client, customer, product, db):
    add_to_cart(client, customer["headers"], product["id"])
    db.products.update_one({"_id": ObjectId(product["id"])}, {"$set": {"isActive": False}})

    response = checkout(client, customer["headers"])

    assert response.status_code == 400


def test_reserve_stock_releases_earlier_lines_on_failure(db, make_product, vendor):
    plenty = make_product(vendor, name="Plenty", stock=10)
    scarce = make_product(vendor, name="Scarce", stock=1)
    items = [
        {"productId": ObjectId(plenty["id"]), "name": "Plenty", "quantity": 4},
        {"productId": ObjectId(scarce["id"]), "name": "Scarce", "quantity": 2},
    ]

    with pytest.raises(ValidationError):
        reserve_stock(db, items)

    assert _stock(db, plenty["id"]) == 10
    assert _stock(db, scarce["id"]) == 1
    assert db.products.find_one({"_id": ObjectId(plenty["id"])})["totalSales"] == 0


def test_calculate_totals_rounds_money():
    totals = calculate_totals(
        [{"price": 19.99, "quantity": 3}], shipping_cost=2.5, discount=1, tax_rate=0.08
    )

    assert totals["subtotal"] == 59.97
    assert totals["tax"] == 4.8
    assert totals["total"] == 66.27


def test_customers_only_see_their_own_orders(client, customer, register, product):
    order = place_order(client, customer["headers"], product["id"])
    stranger = register("stranger@example.com")

    mine = client.get(f"{API}/orders", headers=customer["headers"]).get_json()
    theirs = client.get(f"{API}/orders", headers=stranger["headers"]).get_json()
    peek = client.get(f"{API}/orders/{order['id']}", headers=stranger["headers"])

    assert [listed["id"] for listed in mine["orders"]] == [order["id"]]
    assert mine["pagination"]["total"] == 1
    assert theirs["orders"] == []
    assert peek.status_code == 404


def test_vendor_views_only_their_own_lines(client, customer, make_product, make_vendor, vendor):
    second_vendor = make_vendor("second@example.com")
    mine = make_product(vendor, name="Mine")
    theirs = make_product(second_vendor, name="Theirs")
    add_to_cart(client, customer["headers"], mine["id"])
    add_to_cart(client, customer["headers"], theirs["id"], 2)
    order = checkout(client, customer["headers"]).get_json()["order"]
    assert len(order["items"]) == 2

    listed = client.get(f"{API}/orders", headers=vendor["headers"]).get_json()["orders"]
    detail = client.get(f"{API}/orders/{order['id']}", headers=vendor["headers"]).get_json()["order"]
    vendor_detail = client.get(
        f"{API}/vendors/orders/{order['id']}", headers=second_vendor["headers"]
    ).get_json()["order"]

    assert [item["name"] for item in listed[0]["items"]] == ["Mine"]
    assert [item["name"] for item in detail["items"]] == ["Mine"]
    assert [item["name"] for item in vendor_detail["items"]] == ["Theirs"]
    assert vendor_detail["customer"]["email"] == customer["email"]


def test_admin_sees_every_order(client, customer, admin, product):
    order = place_order(client, customer["headers"], product["id"])

    listing = client.get(f"{API}/orders?status=pending", headers=admin["headers"]).get_json()
    detail = client.get(f"{API}/orders/{order['id']}", headers=admin["headers"])

    assert [listed["id"] for listed in listing["orders"]] == [order["id"]]
    assert detail.status_code == 200


def test_cancel_pending_order_restores_stock(client, customer, product, db):
    order = place_order(client, customer["headers"], product["id"], quantity=4)
    assert _stock(db, product["id"]) == 16

    response = client.patch(
        f"{API}/orders/{order['id']}/cancel",
        json={"reason": "Changed my mind"},
        headers=customer["headers"],
    )

    assert response.status_code == 200
    cancelled = response.get_json()["order"]
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancelledAt"]
    assert [entry["status"] for entry in cancelled["statusHistory"]] == ["pending", "cancelled"]
    assert cancelled["statusHistory"][-1]["note"] == "Changed my mind"
    assert _stock(db, product["id"]) == 20


def test_cannot_cancel_shipped_or_foreign_order(client, customer, register, vendor, product):
    order = place_order(client, customer["headers"], product["id"])
    stranger = register("stranger@example.com")
    set_order_status(client, vendor["headers"], order["id"], "shipped")

    shipped = client.patch(f"{API}/orders/{order['id']}/cancel", headers=customer["headers"])
    foreign = client.patch(f"{API}/orders/{order['id']}/cancel", headers=stranger["headers"])

    assert shipped.status_code == 400
    assert foreign.status_code == 404


def test_status_updates_append_history(client, customer, vendor, product):
    order = place_order(client, customer["headers"], product["id"])

    for status in ("confirmed", "processing", "shipped", "delivered"):
        response = client.patch(
            f"{API}/orders/{order['id']}/status",
            json={"status": status, "trackingNumber": "TRK-42", "note": f"now {status}"},
            headers=vendor["headers"],
        )
        assert response.status_code == 200
        updated = response.get_json()["order"]
        assert updated["status"] == status
        assert updated["statusHistory"][-1]["status"] == updated["status"]

    history = [entry["status"] for entry in updated["statusHistory"]]
    assert history == ["pending", "confirmed", "processing", "shipped", "delivered"]
    assert updated["trackingNumber"] == "TRK-42"
    assert updated["deliveredAt"]


def test_status_update_is_not_a_state_machine(client, customer, vendor, product):
    order = place_order(client, customer["headers"], product["id"])
    set_order_status(client, vendor["headers"], order["id"], "delivered")

    response = set_order_status(client, vendor["headers"], order["id"], "processing")

    assert response.status_code == 200
    assert response.get_json()["order"]["status"] == "processing"


def test_status_update_validation_and_scoping(client, customer, make_vendor, vendor, product):
    order = place_order(client, customer["headers"], product["id"])
    outsider = make_vendor("outsider@example.com")

    unknown = set_order_status(client, vendor["headers"], order["id"], "teleported")
    foreign = set_order_status(client, outsider["headers"], order["id"], "shipped")
    by_customer = client.patch(
        f"{API}/orders/{order['id']}/status", json={"status": "shipped"}, headers=customer["headers"]
    )

    assert unknown.status_code == 400
    assert foreign.status_code == 404
    assert by_customer.status_code == 403


def test_vendor_order_stats(client, customer, vendor, make_product):
    first = make_product(vendor, name="First")
    second = make_product(vendor, name="Second")
    shipped = place_order(client, customer["headers"], first["id"])
    place_order(client, customer["headers"], second["id"])
    set_order_status(client, vendor["headers"], shipped["id"], "shipped")

    response = client.get(f"{API}/orders/stats", headers=vendor["headers"])

    assert response.get_json()["orders"] == {
        "total": 2,
        "pending": 1,
        "processing": 0,
        "shipped": 1,
        "delivered": 0,
    }


def test_recancelled_order_restores_stock_once(client, customer, vendor, product, db):
    order = place_order(client, customer["headers"], product["id"], quantity=5)
    first = client.patch(f"{API}/orders/{order['id']}/cancel", headers=customer["headers"])
    set_order_status(client, vendor["headers"], order["id"], "pending")

    second = client.patch(f"{API}/orders/{order['id']}/cancel", headers=customer["headers"])

    assert first.status_code == 200
    assert second.status_code == 200
    assert _stock(db, product["id"]) == 20
    stored = db.products.find_one({"_id": ObjectId(product["id"])})
    assert stored["totalSales"] == 0


def test_admin_order_stats_cover_every_vendor(client, customer, admin, vendor, make_vendor, make_product):
    second_vendor = make_vendor("second@example.com")
    place_order(client, customer["headers"], make_product(vendor)["id"])
    place_order(client, customer["headers"], make_product(second_vendor, name="Cloth")["id"])

    response = client.get(f"{API}/orders/stats", headers=admin["headers"])

    assert response.status_code == 200
    assert response.get_json()["orders"]["total"] == 2
    assert response.get_json()["orders"]["pending"] == 2
