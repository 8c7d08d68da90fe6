import os

os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ["RATE_LIMIT_MAX"] = "0"
os.environ["AUTH_RATE_LIMIT_MAX"] = "0"

from datetime import datetime

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from main import app
from security import create_access_token, hash_password


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_user(db, email="jane@example.com", is_admin=False, password="secret123"):
    now = datetime.utcnow()
    user = {
        "name": "Jane Doe",
        "email": email,
        "hashed_password": hash_password(password),
        "is_admin": is_admin,
        "token_version": 0,
        "created_at": now,
        "updated_at": now,
    }
    user["_id"] = db["user"].insert_one(user).inserted_id
    return user


@pytest.fixture
def admin_headers(db):
    admin = make_user(db, email="admin@luxora.com", is_admin=True)
    return {"Authorization": f"Bearer {create_access_token(admin)}"}


@pytest.fixture
def customer(db):
    return make_user(db)


@pytest.fixture
def customer_headers(customer):
    return {"Authorization": f"Bearer {create_access_token(customer)}"}


@pytest.fixture
def category(db):
    now = datetime.utcnow()
    doc = {"name": "Men", "slug": "men", "description": "Menswear", "is_active": True, "sort_order": 2,
           "created_at": now, "updated_at": now}
    doc["_id"] = db["category"].insert_one(doc).inserted_id
    return doc


def make_product(db, category_id, **overrides):
    now = datetime.utcnow()
    doc = {
        "title": "Italian Wool Suit",
        "slug": "wool-suit",
        "description": "Handtailored Italian wool suit with peak lapels",
        "price": 2899.0,
        "images": ["https://images.example.com/suit.jpg"],
        "category": category_id,
        "sizes": ["38", "40", "42"],
        "colors": [{"name": "Midnight Black", "hex": "#0D0D0D"}, {"name": "Champagne Gold", "hex": "#C5A880"}],
        "in_stock": 6,
        "sku": "LUX-MEN-001",
        "featured": False,
        "is_active": True,
        "tags": ["luxury", "men"],
        "created_at": now,
        "updated_at": now,
    }
    doc.update(overrides)
    doc["_id"] = db["product"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def suit(db, category):
    return make_product(db, category["_id"])


@pytest.fixture
def tie(db, category):
    return make_product(db, category["_id"], title="Silk Tie Collection", slug="silk-tie", price=199.0,
                        description="Set of three premium silk ties",
                        in_stock=20, sku="LUX-MEN-005", sizes=["One Size"], featured=True)


SHIPPING_ADDRESS = {
    "first_name": "Jane",
    "last_name": "Doe",
    "email": "Jane@Example.com",
    "phone": "555-0100",
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
}


def order_payload(*items, **extra):
    body = {
        "items": [dict(i) for i in items],
        "shipping_address": dict(SHIPPING_ADDRESS),
        "payment_method": "card",
    }
    body.update(extra)
    return body


def line(product, quantity=1, size=None, color="Midnight Black"):
    return {
        "product": str(product["_id"]),
        "quantity": quantity,
        "size": size or product["sizes"][0],
        "color": color,
    }
