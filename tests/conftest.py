"""Pytest fixtures for shop API tests."""

from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import carts
from database import ensure_indexes

ADDRESS = {
    "label": "Home",
    "address_line1": "12 Lake Road",
    "city": "Dhaka",
    "postal_code": "1207",
    "country": "BD",
    "phone": "+8801700000000",
}


@pytest.fixture
def db():
    """A fresh in-memory database with the production indexes."""
    database = mongomock.MongoClient()["shop_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def make_user(db):
    def _make(name="Alice", email=None, role="customer", addresses=None):
        doc = {
            "name": name,
            "email": email or f"{name.lower()}@example.com",
            "hashed_password": "not-a-real-hash",
            "role": role,
            "is_active": True,
            "addresses": addresses or [],
            "total_orders": 0,
            "total_purchases": 0.0,
            "cancelled_orders": 0,
        }
        db["user"].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def customer(make_user):
    return make_user("Alice", addresses=[{"id": "addr-1", **ADDRESS}])


@pytest.fixture
def admin(make_user):
    return make_user("Root", role="admin")


@pytest.fixture
def make_product(db):
    def _make(name="Widget", base_price=100.0, quantity=10, variations=None, discount=None):
        doc = {
            "name": name,
            "slug": name.lower().replace(" ", "-"),
            "base_price": base_price,
            "quantity": quantity,
            "variations": variations or [],
            "discount": discount,
            "is_active": True,
        }
        return str(db["product"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def delivery_rule(db):
    rule = {"name": "Inside City", "region": "City", "price": 20.0, "estimated_days": 2}
    return str(db["delivery_pricing"].insert_one(rule).inserted_id)


@pytest.fixture
def card_method(db):
    method = {"name": "Card", "type": "online", "details": {"provider": "stripe"}, "is_active": True}
    return str(db["payment_method"].insert_one(method).inserted_id)


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE10", discount_type="percentage", discount_amount=10, min_order_amount=0,
              max_discount_amount=None, usage_limit=100, used_count=0, expires_at=None):
        doc = {
            "code": code,
            "discount_type": discount_type,
            "discount_amount": discount_amount,
            "min_order_amount": min_order_amount,
            "max_discount_amount": max_discount_amount,
            "usage_limit": usage_limit,
            "used_count": used_count,
            "expires_at": expires_at or datetime.utcnow() + timedelta(days=30),
        }
        db["coupon"].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def fill_cart(db):
    def _fill(user, product_id, quantity=1, variations=None):
        return carts.add_item(db, str(user["_id"]), product_id, variations, quantity)

    return _fill


@pytest.fixture
def client(db):
    """Test client whose routes talk to the in-memory database."""
    from main import app, get_db

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    from main import create_token

    def _headers(user):
        return {"Authorization": f"Bearer {create_token(user)}"}

    return _headers
