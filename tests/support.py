from uuid import uuid4

API = "/api/v1"
PASSWORD = "Password123!"

VENDOR_PROFILE = {
    "businessName": "Mboa Crafts",
    "businessDescription": "Hand-made goods from Bamenda",
    "businessAddress": {
        "street": "12 Commercial Avenue",
        "city": "Bamenda",
        "state": "North-West",
        "zipCode": "00237",
        "country": "Cameroon",
    },
    "taxId": "TAX-998877",
    "bankAccount": {
        "accountNumber": "000111222",
        "routingNumber": "333444",
        "accountHolderName": "Mboa Crafts SARL",
    },
}

SHIPPING_ADDRESS = {
    "fullName": "Amina Ndzi",
    "street": "4 Rue de la Joie",
    "city": "Douala",
    "state": "Littoral",
    "zipCode": "12345",
    "country": "Cameroon",
    "phone": "+237600000000",
}


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def product_payload(category_id, **overrides):
    payload = {
        "name": "Penja Pepper",
        "description": "Sourced from local producers.",
        "categoryId": category_id,
        "price": 25.0,
        "sku": f"SKU-{uuid4().hex[:8].upper()}",
        "stock": 20,
    }
    payload.update(overrides)
    return payload


def add_to_cart(client, headers, product_id, quantity=1):
    response = client.post(
        f"{API}/cart/items",
        json={"productId": product_id, "quantity": quantity},
        headers=headers,
    )
    assert response.status_code == 200, response.get_json()
    return response.get_json()["cart"]


def checkout(client, headers, **overrides):
    payload = {"paymentMethod": "cash_on_delivery", "shippingAddress": SHIPPING_ADDRESS}
    payload.update(overrides)
    return client.post(f"{API}/orders", json=payload, headers=headers)


def place_order(client, headers, product_id, quantity=1):
    add_to_cart(client, headers, product_id, quantity)
    response = checkout(client, headers)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["order"]


def set_order_status(client, headers, order_id, status, **extra):
    return client.patch(
        f"{API}/vendors/orders/{order_id}/status",
        json={"status": status, **extra},
        headers=headers,
    )
