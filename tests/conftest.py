import os
from types import SimpleNamespace

os.environ["ADMIN_EMAILS"] = "admin@example.com"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_storefront"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_storefront"
os.environ["ALLOW_DIRECT_CHECKOUT"] = "true"

import mongomock  # noqa: E402
import mongomock.gridfs  # noqa: E402
import pytest  # noqa: E402
import stripe  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import admin  # noqa: E402
import auth  # noqa: E402
import cart  # noqa: E402
import database  # noqa: E402
import main  # noqa: E402
import payments  # noqa: E402
import products  # noqa: E402

# GridFS only accepts pymongo databases until this is enabled
mongomock.gridfs.enable_gridfs_integration()

DB_MODULES = [database, auth, products, cart, payments, admin, main]

ADMIN_EMAIL = "admin@example.com"
PASSWORD = "secret123"


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient()["storefront_test"]
    for module in DB_MODULES:
        monkeypatch.setattr(module, "db", mock_db)
    return mock_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


def register(client, email, password=PASSWORD, **extra):
    res = client.post("/auth/register", json={"email": email, "password": password, **extra})
    assert res.status_code == 200, res.text
    body = res.json()
    return {"Authorization": f"Bearer {body['access_token']}"}, body["user"]


@pytest.fixture
def admin_headers(client):
    headers, _ = register(client, ADMIN_EMAIL, first_name="Ada")
    return headers


@pytest.fixture
def user_headers(client):
    headers, _ = register(client, "shopper@example.com", first_name="Sam")
    return headers


@pytest.fixture
def make_product(client, admin_headers):
    def _make(**fields):
        data = {
            "title": "Trail Runner",
            "description": "Lightweight running shoe",
            "price": 100.0,
            "category": "Running",
            "brand": "Nike",
            "size": ["8", "9", "10"],
            "color": ["black"],
            "stock": 10,
        }
        data.update(fields)
        res = client.post("/products", json=data, headers=admin_headers)
        assert res.status_code == 201, res.text
        return res.json()
    return _make


@pytest.fixture
def fake_stripe(monkeypatch):
    """Replace the Stripe SDK calls the service makes with in-memory fakes."""
    state = SimpleNamespace(created=[], statuses={}, errors={}, counter=0)

    def create(**kwargs):
        state.counter += 1
        intent_id = f"pi_test_{state.counter}"
        state.created.append({"id": intent_id, **kwargs})
        # Stripe intents wait for a card until the client confirms them
        state.statuses[intent_id] = "requires_payment_method"
        return SimpleNamespace(id=intent_id, client_secret=f"{intent_id}_secret")

    def retrieve(intent_id):
        return SimpleNamespace(
            id=intent_id,
            status=state.statuses[intent_id],
            latest_charge=f"ch_{intent_id}",
            last_payment_error=state.errors.get(intent_id),
        )

    def construct_event(payload, signature, secret):
        if signature != "valid" or secret != payments.STRIPE_WEBHOOK_SECRET:
            raise stripe.SignatureVerificationError("No signatures found", signature)
        return state.next_event

    monkeypatch.setattr(payments, "STRIPE_SECRET_KEY", "sk_test_storefront")
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", "whsec_storefront")
    monkeypatch.setattr(stripe.PaymentIntent, "create", create)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", retrieve)
    monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)
    return state


def stripe_event(event_type, **obj):
    return SimpleNamespace(type=event_type, data=SimpleNamespace(object=SimpleNamespace(**obj)))


@pytest.fixture
def register_user(client):
    def _register(email, **extra):
        return register(client, email, **extra)
    return _register


@pytest.fixture
def webhook(client, fake_stripe):
    """Post a webhook carrying ``event_type`` with a payload object built from ``obj``."""
    def _send(event_type, signature="valid", **obj):
        fake_stripe.next_event = stripe_event(event_type, **obj)
        return client.post("/payments/webhook", content=b"{}", headers={"Stripe-Signature": signature})
    return _send
