import json
from typing import Callable, List

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

from gateway import XenditClient
from main import create_app
from settings import Settings


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_name="storefront_test",
        xendit_secret_key="xnd_development_test",
        public_url="https://shop.example.com",
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def catalog_data(db):
    db["users"].insert_many([
        {
            "_id": "m1",
            "role": "merchant",
            "status": "active",
            "profile": {"name": "Warung Harits", "slug": "warung-harits", "phoneNumber": "0812-3456-789"},
            "settings": {"business": {
                "name": "Warung Harits",
                "phone": "0812-3456-789",
                "category": "Makanan",
                "tags": ["halal", "spicy"],
                "marketplaceOptIn": True,
                "address": "Depok",
            }},
        },
        {
            "_id": "m2",
            "role": "merchant",
            "status": "active",
            "profile": {"name": "Kopi Seeowrens"},
            "settings": {"business": {"name": "Kopi Seeowrens", "category": "Kopi", "marketplaceOptIn": True}},
        },
        {
            "_id": "m3",
            "role": "merchant",
            "status": "suspended",
            "settings": {"business": {"name": "Closed Shop", "phone": "08111111111", "marketplaceOptIn": True}},
        },
        {"_id": "u1", "role": "customer", "status": "active", "profile": {"name": "Budi"}},
    ])
    db["products"].insert_many([
        {"_id": "p1", "merchant_id": "m1", "merchantName": "Warung Harits", "name": "Ayam Bakar",
         "price": 15000, "stock": 10, "marketplaceVisible": True, "isActive": True},
        {"_id": "p3", "merchant_id": "m1", "merchantName": "Warung Harits", "name": "Es Teh",
         "price": 5000, "stock": 0, "marketplaceVisible": True, "isActive": True},
        {"_id": "p4", "merchant_id": "m1", "merchantName": "Warung Harits", "name": "Bakso",
         "price": 12000, "stock": 3, "marketplaceVisible": True, "isActive": True},
        {"_id": "p5", "merchant_id": "m1", "name": "Secret Menu",
         "price": 99000, "marketplaceVisible": False, "isActive": True},
        {"_id": "p2", "merchantId": "m2", "merchantName": "Kopi Seeowrens", "name": "Kopi Susu",
         "price": 18000, "marketplaceVisible": True, "isActive": True},
    ])
    return db


class FakeXendit:
    """Records gateway requests and answers like the Xendit sandbox."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.fail_with: Callable[[httpx.Request], httpx.Response] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return self.fail_with(request)
        body = json.loads(request.content or b"{}")
        if request.url.path == "/qr_codes":
            return httpx.Response(200, json={
                "id": f"qr_{body['reference_id']}",
                "reference_id": body["reference_id"],
                "status": "ACTIVE",
                "qr_string": "00020101021226660014ID.LINKAJA.WWW",
                "amount": body["amount"],
                "currency": body["currency"],
                "expires_at": "2026-10-20T10:00:00Z",
            })
        if request.url.path == "/callback_virtual_accounts":
            return httpx.Response(200, json={
                "id": f"va_{body['external_id']}",
                "external_id": body["external_id"],
                "status": "PENDING",
                "bank_code": body["bank_code"],
                "account_number": "381659999912345",
                "expected_amount": body["expected_amount"],
                "currency": body["currency"],
                "expiration_date": "2026-10-20T10:00:00Z",
            })
        return httpx.Response(404, json={"error_code": "NOT_FOUND"})


@pytest.fixture
def fake_xendit() -> FakeXendit:
    return FakeXendit()


@pytest.fixture
def gateway(settings, fake_xendit) -> XenditClient:
    client = XenditClient.from_settings(settings, transport=httpx.MockTransport(fake_xendit))
    yield client
    client.close()


@pytest.fixture
def app(settings, catalog_data, gateway):
    return create_app(settings, db=catalog_data, gateway=gateway)


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
