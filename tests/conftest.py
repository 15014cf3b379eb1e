import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import ensure_indexes
from main import create_app

SHIPPING_ADDRESS = {
    "name": "Jane Buyer",
    "address": "12 Market Street",
    "city": "Pune",
    "state": "MH",
    "pincode": "411001",
    "phone": "9876543210",
}


@pytest.fixture()
def settings():
    return Settings(secret_key="test-secret-key", environment="test")


@pytest.fixture()
def db():
    database = mongomock.MongoClient(tz_aware=True)["stockflow_test"]
    ensure_indexes(database)
    return database


@pytest.fixture()
def client(settings, db):
    return TestClient(create_app(settings, db))


@pytest.fixture()
def register(client):
    """Register a user and return (user, auth headers)."""

    def _register(name="Jane Buyer", email="jane@stockflow.io", role="customer", password="secret123"):
        response = client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": password, "role": role},
        )
        assert response.status_code == 201, response.text
        data = response.json()
        return data["user"], {"Authorization": f"Bearer {data['token']}"}

    return _register


@pytest.fixture()
def admin(register):
    return register(name="Alice Admin", email="alice@stockflow.io", role="admin")[1]


@pytest.fixture()
def other_admin(register):
    return register(name="Bob Admin", email="bob@stockflow.io", role="admin")[1]


@pytest.fixture()
def customer(register):
    return register(name="Carl Customer", email="carl@stockflow.io")[1]


@pytest.fixture()
def create_item(client):
    def _create_item(headers, **overrides):
        payload = {
            "name": "Laptop",
            "description": "Gaming Laptop 16GB RAM",
            "category": "Electronics",
            "quantity": 15,
            "price": 999.99,
            "min_stock": 5,
        }
        payload.update(overrides)
        response = client.post("/api/items", json=payload, headers=headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _create_item


@pytest.fixture()
def place_order(client):
    def _place_order(headers, lines, address=None):
        return client.post(
            "/api/orders",
            json={
                "items": [{"item": item_id, "quantity": qty} for item_id, qty in lines],
                "shipping_address": address or SHIPPING_ADDRESS,
            },
            headers=headers,
        )

    return _place_order
