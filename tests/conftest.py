from datetime import datetime

import mongomock
import pytest

from kmercart import create_app
from kmercart.auth import hash_password
from support import API, PASSWORD, VENDOR_PROFILE, auth_headers, product_payload


@pytest.fixture
def db():
    return mongomock.MongoClient().kmercart_test


@pytest.fixture
def app(db, tmp_path):
    return create_app(
        {
            "TESTING": True,
            "RATELIMIT_ENABLED": False,
            "BCRYPT_ROUNDS": 4,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "PUBLIC_API_URL": "",
            "LOG_LEVEL": "WARNING",
        },
        db=db,
    )


@pytest.fixture
def client(app):
    return app.test_client()


def _account(body, email):
    return {
        "id": body["user"]["id"],
        "email": email,
        "user": body["user"],
        "headers": auth_headers(body["accessToken"]),
        "refreshToken": body["refreshToken"],
    }


@pytest.fixture
def register(client):
    def _register(email, role="customer", **extra):
        payload = {
            "email": email,
            "password": PASSWORD,
            "firstName": "Test",
            "lastName": role.capitalize(),
            "role": role,
            **extra,
        }
        response = client.post(f"{API}/auth/register", json=payload)
        assert response.status_code == 201, response.get_json()
        return _account(response.get_json(), email)

    return _register


@pytest.fixture
def make_vendor(register):
    def _make_vendor(email="vendor@example.com"):
        return register(email, role="vendor", vendorProfile=VENDOR_PROFILE)

    return _make_vendor


@pytest.fixture
def customer(register):
    return register("customer@example.com")


@pytest.fixture
def vendor(make_vendor):
    return make_vendor()


@pytest.fixture
def admin(client, db):
    now = datetime.utcnow()
    db.users.insert_one(
        {
            "email": "admin@example.com",
            "password": hash_password(PASSWORD, 4),
            "firstName": "Site",
            "lastName": "Admin",
            "role": "admin",
            "isEmailVerified": True,
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
        }
    )
    response = client.post(
        f"{API}/auth/login", json={"email": "admin@example.com", "password": PASSWORD}
    )
    assert response.status_code == 200, response.get_json()
    return _account(response.get_json(), "admin@example.com")


@pytest.fixture
def make_category(client, admin):
    def _make_category(name="Spices", **extra):
        response = client.post(
            f"{API}/categories", json={"name": name, **extra}, headers=admin["headers"]
        )
        assert response.status_code == 201, response.get_json()
        return response.get_json()["category"]

    return _make_category


@pytest.fixture
def category(make_category):
    return make_category()


@pytest.fixture
def make_product(client, category):
    def _make_product(owner, **overrides):
        response = client.post(
            f"{API}/vendors/products",
            json=product_payload(category["id"], **overrides),
            headers=owner["headers"],
        )
        assert response.status_code == 201, response.get_json()
        return response.get_json()["product"]

    return _make_product


@pytest.fixture
def product(make_product, vendor):
    return make_product(vendor)
