from typing import Any, Dict, List, Optional

import bcrypt
import mongomock
import pytest

import app as app_module

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
    "FRONTEND_URL": "https://loja.example.com",
    "BACKEND_URL": "https://api.example.com",
    "MP_ACCESS_TOKEN": "TEST-access-token",
    "MP_WEBHOOK_SECRET": "",
    "EMAIL_FROM": "loja@example.com",
    "EMAIL_API_KEY": "re_test_key",
    "COOKIE_SECURE": False,
    "AUTH_RATE_LIMIT": 100,
    "BCRYPT_ROUNDS": 4,
}


class FakeResponse:
    def __init__(self, status_code: int, payload: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(self._payload)

    def json(self):
        return self._payload


@pytest.fixture
def mongo_db(monkeypatch):
    client = mongomock.MongoClient()
    database = client["mceletrobike_test"]

    class _FakePyMongo:
        def __init__(self, app):
            self.cx = client
            self.db = database

    monkeypatch.setattr(app_module, "PyMongo", _FakePyMongo)
    return database


@pytest.fixture
def sent_emails(monkeypatch) -> List[Dict[str, Any]]:
    outbox: List[Dict[str, Any]] = []

    def _send(payload):
        outbox.append(payload)
        return {"id": f"email-{len(outbox)}"}

    monkeypatch.setattr(app_module.resend.Emails, "send", _send)
    return outbox


@pytest.fixture
def app_factory(mongo_db, sent_emails):
    def _make(**overrides):
        return app_module.create_app({**TEST_CONFIG, **overrides})

    return _make


@pytest.fixture
def app(app_factory):
    return app_factory()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers(client, mongo_db):
    mongo_db.users.insert_one(
        {
            "email": "admin@example.com",
            "password": bcrypt.hashpw(b"admin-pass", bcrypt.gensalt(4)),
            "confirmed": True,
        }
    )
    resp = client.post(
        "/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass"}
    )
    assert resp.status_code == 200, resp.get_data(as_text=True)
    return {"Authorization": f"Bearer {resp.get_json()['token']}"}


@pytest.fixture
def customer(mongo_db):
    """A verified customer with one item already in the stored cart."""
    result = mongo_db.customers.insert_one(
        {
            "name": "Maria Silva",
            "email": "maria@example.com",
            "passwordHash": bcrypt.hashpw(b"segredo123", bcrypt.gensalt(4)),
            "emailVerified": True,
            "marketingOptIn": True,
            "unsubscribeToken": "unsub-token",
            "cart": [
                {"productId": "bike-1", "title": "Bike Urbana", "price": 4999.9, "quantity": 2}
            ],
        }
    )
    return mongo_db.customers.find_one({"_id": result.inserted_id})


@pytest.fixture
def logged_in_client(client, customer):
    resp = client.post(
        "/api/customers/login",
        json={"email": "maria@example.com", "password": "segredo123"},
    )
    assert resp.status_code == 200, resp.get_data(as_text=True)
    return client
