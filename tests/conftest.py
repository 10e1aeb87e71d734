"""
Shared fixtures: an in-memory store, fast test settings, catalog helpers and
authenticated users.
"""
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from auth import AuthService
from config import Settings
from main import create_app
from schemas import ShippingAddress
from store import MemoryStore

PASSWORD = "Secret123"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-access-secret",
        jwt_refresh_secret="test-refresh-secret",
        payment_callback_secret="test-callback-secret",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def auth(store, settings):
    return AuthService(store, settings)


@pytest.fixture
def category(store):
    return store.insert_category({"name": "Electronics", "description": "Gadgets"})


@pytest.fixture
def make_product(store, category):
    def _make(name="Widget", price="10.00", stock=10, discount=0):
        return store.insert_product({
            "name": name,
            "description": "",
            "price": Decimal(price),
            "stock": stock,
            "discount": discount,
            "category_id": category["_id"],
            "images": [],
        })
    return _make


@pytest.fixture
def make_user(store, auth):
    counter = {"n": 0}

    def _make(email=None, admin=False):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        if admin:
            user_id = auth.create_admin(email, PASSWORD, "Admin User")["id"]
        else:
            user_id = auth.register(email, PASSWORD, "Test User")["user"]["id"]
        return store.get_user(user_id)
    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(admin=True)


@pytest.fixture
def shipping():
    return ShippingAddress(
        first_name="Ada",
        last_name="Lovelace",
        email="ada@example.com",
        phone="5551234567",
        address="12 Analytical Engine Way",
        city="London",
        postal_code="N1 9GU",
    )


@pytest.fixture
def client(store, settings):
    return TestClient(create_app(store=store, settings=settings))


@pytest.fixture
def headers_for(auth):
    def _headers(user_doc):
        token = auth.tokens.pair(user_doc)["access_token"]
        return {"Authorization": f"Bearer {token}"}
    return _headers
