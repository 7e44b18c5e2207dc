import mongomock
import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext

import auth
import main
import services
from database import ensure_indexes, get_db
from storage import BlobStore, get_blob_store


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(auth, "pwd_context", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))


@pytest.fixture
def db():
    database = mongomock.MongoClient()["haatbazar_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(str(tmp_path / "uploads"), 1024 * 1024)


@pytest.fixture
def client(db, blobs):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_blob_store] = lambda: blobs
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_buyer(db):
    def _make(email="rahim@haatbazar.com.bd", name="Rahim", phone="01711000000", password="secret123"):
        return services.register_account(
            db, "buyer",
            {"name": name, "email": email, "phone": phone, "shipping_address": "Dhaka"},
            password,
        )
    return _make


@pytest.fixture
def make_seller(db):
    def _make(email="karim@haatbazar.com.bd", business_name="Karim Traders", password="secret123"):
        return services.register_account(
            db, "seller",
            {"email": email, "business_name": business_name, "division": "Dhaka", "phone": "01811000000"},
            password,
        )
    return _make


@pytest.fixture
def make_product(db):
    def _make(seller_id, name="Miniket Rice", stock=5, price=10):
        return services.create_product(db, {
            "name": name,
            "category": "Grocery",
            "subcategory": "Rice",
            "seller_id": seller_id,
            "division": "Dhaka",
            "unit": "kg",
            "price_per_unit": price,
            "image": "https://cdn.haatbazar.com.bd/rice.png",
            "stock": stock,
            "description": "Fresh rice",
        })
    return _make


def order_payload(buyer_id, seller_id, lines):
    """lines: [(product_id, quantity, subtotal)]"""
    return {
        "buyer_id": buyer_id,
        "seller_id": seller_id,
        "total_price": sum(line[2] for line in lines),
        "shipping_address": "House 1, Road 2, Dhaka",
        "billing_address": "House 1, Road 2, Dhaka",
        "ordered_products": [
            {"product_id": pid, "quantity": qty, "subtotal": subtotal} for pid, qty, subtotal in lines
        ],
    }


def admin_headers(client, db):
    services.register_account(db, "admin", {"email": "admin@haatbazar.com.bd"}, "adminpass")
    res = client.post("/api/auth/admin/login", json={"email": "admin@haatbazar.com.bd", "password": "adminpass"})
    return {"Authorization": f"Bearer {res.json()['access_token']}"}
