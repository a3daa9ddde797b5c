from bson import ObjectId

from support import API, add_to_cart


def test_empty_cart_is_created_on_first_read(client, customer, db):
    response = client.get(f"{API}/cart", headers=customer["headers"])

    assert response.status_code == 200
    cart = response.get_json()["cart"]
    assert cart["items"] == []
    assert cart["subtotal"] == 0
    assert db.carts.count_documents({}) == 1


def test_adding_same_product_twice_increments_quantity(client, customer, product):
    add_to_cart(client, customer["headers"], product["id"], 2)
    cart = add_to_cart(client, customer["headers"], product["id"], 3)

    assert len(cart["items"]) == 1
    line = cart["items"][0]
    assert line["quantity"] == 5
    assert line["price"] == 25.0
    assert line["product"]["name"] == "Penja Pepper"
    assert cart["subtotal"] == 125.0
    assert cart["totalItems"] == 5


def test_cannot_add_more_than_stock(client, customer, product):
    add_to_cart(client, customer["headers"], product["id"], 15)

    response = client.post(
        f"{API}/cart/items",
        json={"productId": product["id"], "quantity": 6},
        headers=customer["headers"],
    )

    assert response.status_code == 400
    assert "Only 20 unit(s)" in response.get_json()["message"]


def test_adding_unknown_or_inactive_products_fails(client, customer, db, product):
    db.products.update_one({"_id": ObjectId(product["id"])}, {"$set": {"isActive": False}})

    inactive = client.post(
        f"{API}/cart/items", json={"productId": product["id"]}, headers=customer["headers"]
    )
    unknown = client.post(
        f"{API}/cart/items", json={"productId": str(ObjectId())}, headers=customer["headers"]
    )
    bad_quantity = client.post(
        f"{API}/cart/items",
        json={"productId": product["id"], "quantity": 0},
        headers=customer["headers"],
    )

    assert inactive.status_code == 404
    assert unknown.status_code == 404
    assert bad_quantity.status_code == 400


def test_update_quantity_and_remove_line(client, customer, product):
    add_to_cart(client, customer["headers"], product["id"], 2)

    updated = client.put(
        f"{API}/cart/items/{product['id']}", json={"quantity": 4}, headers=customer["headers"]
    )
    assert updated.get_json()["cart"]["items"][0]["quantity"] == 4

    zeroed = client.put(
        f"{API}/cart/items/{product['id']}", json={"quantity": 0}, headers=customer["headers"]
    )
    assert zeroed.get_json()["cart"]["items"] == []

    missing = client.delete(f"{API}/cart/items/{product['id']}", headers=customer["headers"])
    assert missing.status_code == 404


def test_clear_cart(client, customer, product):
    add_to_cart(client, customer["headers"], product["id"], 2)

    response = client.delete(f"{API}/cart", headers=customer["headers"])

    assert response.status_code == 200
    total = client.get(f"{API}/cart/total", headers=customer["headers"]).get_json()
    assert total == {"subtotal": 0, "totalItems": 0, "items": 0}


def test_sync_merges_guest_cart_and_caps_at_stock(client, customer, make_product, vendor):
    pepper = make_product(vendor, name="Penja Pepper", stock=5)
    beans = make_product(vendor, name="Cocoa Beans", price=10)
    add_to_cart(client, customer["headers"], pepper["id"], 3)

    response = client.post(
        f"{API}/cart/sync",
        json={
            "items": [
                {"productId": pepper["id"], "quantity": 4},
                {"productId": beans["id"], "quantity": 2},
                {"productId": str(ObjectId()), "quantity": 1},
                {"productId": "garbage", "quantity": 1},
            ]
        },
        headers=customer["headers"],
    )

    assert response.status_code == 200
    quantities = {line["productId"]: line["quantity"] for line in response.get_json()["cart"]["items"]}
    assert quantities == {pepper["id"]: 5, beans["id"]: 2}


def test_cart_total(client, customer, make_product, vendor):
    pepper = make_product(vendor, price=12.5)
    beans = make_product(vendor, name="Cocoa Beans", price=3)
    add_to_cart(client, customer["headers"], pepper["id"], 2)
    add_to_cart(client, customer["headers"], beans["id"], 3)

    total = client.get(f"{API}/cart/total", headers=customer["headers"]).get_json()

    assert total == {"subtotal": 34.0, "totalItems": 5, "items": 2}


def test_cart_requires_authentication(client):
    assert client.get(f"{API}/cart").status_code == 401


def test_non_finite_quantities_are_rejected(client, customer, product):
    for quantity in (float("inf"), "1e999", "nan"):
        response = client.post(
            f"{API}/cart/items",
            json={"productId": product["id"], "quantity": quantity},
            headers=customer["headers"],
        )
        assert response.status_code == 400
