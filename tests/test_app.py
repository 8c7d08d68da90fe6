import base64

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from database import get_db, serialize_doc
from errors import AppError
from main import app
from security import RateLimiter, hash_password, verify_password

PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "Welcome to Luxora Boutique API"
    health = client.get("/api/v1/health").json()
    assert health["success"] is True
    assert health["message"] == "Luxora API is running"


def test_unknown_route_uses_envelope(client):
    res = client.get("/api/v1/nowhere")
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Can't find /api/v1/nowhere on this server!"}


def test_unexpected_errors_are_hidden(db):
    @app.get("/api/v1/_boom")
    def boom():
        raise RuntimeError("secret detail")

    app.dependency_overrides[get_db] = lambda: db
    try:
        with TestClient(app, raise_server_exceptions=False) as c:
            res = c.get("/api/v1/_boom")
    finally:
        app.dependency_overrides.clear()
        app.router.routes = [r for r in app.router.routes if getattr(r, "path", "") != "/api/v1/_boom"]
    assert res.status_code == 500
    assert res.json() == {"success": False, "message": "Something went wrong!"}


def test_database_not_configured():
    with TestClient(app) as c:
        res = c.get("/api/v1/products")
    assert res.status_code == 500
    assert res.json()["message"] == "Database not configured"


def test_serialize_doc_converts_ids():
    from bson import ObjectId
    oid, ref = ObjectId(), ObjectId()
    out = serialize_doc({"_id": oid, "items": [{"product": ref}], "n": 1})
    assert out == {"id": str(oid), "items": [{"product": str(ref)}], "n": 1}


def test_passwords():
    hashed = hash_password("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("other", hashed)
    assert not verify_password("secret123", "")


def test_rate_limiter_fixed_window():
    limiter = RateLimiter(2, 60, "slow down")
    assert limiter.hit("1.2.3.4", now=0)
    assert limiter.hit("1.2.3.4", now=1)
    assert not limiter.hit("1.2.3.4", now=2)
    assert limiter.hit("5.6.7.8", now=2)
    assert limiter.hit("1.2.3.4", now=61)


def test_rate_limiter_forgets_expired_clients():
    limiter = RateLimiter(5, 10, "slow down")
    for i in range(1000):
        limiter.hit(f"10.0.{i // 256}.{i % 256}", now=0)
    assert len(limiter._hits) == 1000

    assert limiter.hit("10.9.9.9", now=10000)
    assert list(limiter._hits) == ["10.9.9.9"]


def test_rate_limiter_disabled():
    limiter = RateLimiter(0, 60, "slow down")
    assert all(limiter.hit("1.2.3.4") for _ in range(50))


def test_rate_limiter_as_dependency(client):
    limiter = RateLimiter(1, 60, "Too many requests")

    @app.get("/api/v1/_limited", dependencies=[Depends(limiter)])
    def limited():
        return {"success": True}

    try:
        assert client.get("/api/v1/_limited").status_code == 200
        res = client.get("/api/v1/_limited")
    finally:
        app.router.routes = [r for r in app.router.routes if getattr(r, "path", "") != "/api/v1/_limited"]
    assert res.status_code == 429
    assert res.json()["message"] == "Too many requests"


def test_upload_roundtrip(client, customer_headers):
    res = client.post("/api/v1/upload", files={"image": ("dot.png", PNG, "image/png")}, headers=customer_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["url"] == f"/api/v1/upload/{body['public_id']}"

    image = client.get(body["url"])
    assert image.status_code == 200
    assert image.headers["content-type"] == "image/png"
    assert image.content == PNG

    assert client.delete(body["url"], headers=customer_headers).status_code == 200
    assert client.get(body["url"]).status_code == 404


def test_upload_rejects_non_images(client, customer_headers):
    res = client.post("/api/v1/upload", files={"image": ("notes.txt", b"hello", "text/plain")},
                      headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Only image files (jpeg, jpg, png, webp) are allowed!"


def test_upload_requires_session(client):
    res = client.post("/api/v1/upload", files={"image": ("dot.png", PNG, "image/png")})
    assert res.status_code == 401


def test_admin_seed(client, db, admin_headers):
    res = client.post("/api/v1/admin/seed", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"] == {"categories": 3, "products": 15, "seeded": True}
    assert db["product"].count_documents({"featured": True}) == 6
    suit = db["product"].find_one({"slug": "italian-wool-suit"})
    assert suit["price"] == 2899
    assert suit["sku"] == "LUX-MEN-001"

    again = client.post("/api/v1/admin/seed", headers=admin_headers).json()
    assert again["data"] == {"seeded": False}


def test_app_error_defaults():
    err = AppError("nope")
    assert err.status_code == 400
    assert err.is_operational is True


@pytest.mark.parametrize("path", ["/api/v1/orders", "/api/v1/orders/stats"])
def test_admin_routes_reject_anonymous(client, path):
    assert client.get(path).status_code == 401
