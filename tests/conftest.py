import json

import mongomock
import pytest
import requests
from fastapi.testclient import TestClient

from payments import PaymentError, PaymentIntent


class FakeGateway:
    def __init__(self):
        self.intents = {}
        self.decline = False

    def create_payment_intent(self, amount, currency="aed", metadata=None):
        intent = PaymentIntent(
            id=f"pi_test_{len(self.intents) + 1}",
            client_secret=f"pi_test_{len(self.intents) + 1}_secret",
            amount=amount,
            currency=currency,
            status="requires_payment_method",
            metadata=metadata or {},
        )
        self.intents[intent.id] = intent
        return intent

    def confirm_payment(self, payment_intent_id, payment_method):
        if self.decline:
            raise PaymentError("Your card was declined.", code="card_declined")
        intent = self.intents[payment_intent_id].model_copy(update={"status": "succeeded"})
        self.intents[payment_intent_id] = intent
        return intent

    def retrieve(self, payment_intent_id):
        if payment_intent_id not in self.intents:
            raise PaymentError("Payment could not be verified", code="resource_missing")
        return self.intents[payment_intent_id]

    def construct_event(self, payload, signature):
        """Accepts `{"type": ..., "intent": ...}` bodies signed with "whsec_test"."""
        if signature != "whsec_test":
            raise PaymentError("Webhook signature verification failed", code="invalid_signature")
        event = json.loads(payload)
        intent_id = event.get("intent")
        return event["type"], self.intents.get(intent_id) if intent_id else None


class OfflineLookup:
    def lookup(self, order_total, items, city=None):
        raise requests.ConnectionError("shipping service unreachable")


class FakeNotifier:
    def __init__(self):
        self.welcome = []
        self.thank_you = []

    def send_welcome_email(self, customer_name, email, password, order_id):
        self.welcome.append({"name": customer_name, "email": email, "password": password, "order_id": order_id})
        return True

    def send_thank_you_email(self, customer_name, email, order_id, order_total, items):
        self.thank_you.append({"name": customer_name, "email": email, "order_id": order_id, "total": order_total})
        return True


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def catalog(db):
    """A category, one product with two 250g variations and one plain product."""
    category_id = db["category"].insert_one({"name": "Coffee", "slug": "coffee", "is_active": True}).inserted_id
    size_id = str(db["variationsize"].insert_one(
        {"name": "250g", "display_name": "250g", "value": 250, "is_active": True}).inserted_id)
    large_id = str(db["variationsize"].insert_one(
        {"name": "1kg", "display_name": "1kg", "value": 1000, "is_active": True}).inserted_id)
    type_id = str(db["variationtype"].insert_one(
        {"name": "Cardamom", "name_ar": "هيل", "is_active": True}).inserted_id)
    product_id = str(db["product"].insert_one({
        "name": "Colombia Arabica",
        "name_ar": "كولومبيا أرابيكا",
        "slug": "colombia-arabica-beans",
        "price": 60.0,
        "discount": None,
        "category_id": str(category_id),
        "sku": "COL-001",
        "in_stock": True,
    }).inserted_id)
    plain_id = str(db["product"].insert_one({
        "name": "Pour Over Filter Papers",
        "slug": "filter-papers",
        "price": 15.0,
        "in_stock": True,
    }).inserted_id)
    plain_variation = str(db["productvariation"].insert_one({
        "product_id": product_id, "size_id": size_id, "type_id": None, "beans_id": None,
        "price": 60.0, "discount": None, "stock_quantity": 10, "sku": "COL-COF-250", "is_active": True,
    }).inserted_id)
    cardamom_variation = str(db["productvariation"].insert_one({
        "product_id": product_id, "size_id": size_id, "type_id": type_id, "beans_id": None,
        "price": 65.0, "discount": None, "stock_quantity": 2, "sku": "COL-COF-250-CA", "is_active": True,
    }).inserted_id)
    return {
        "category_id": str(category_id),
        "product_id": product_id,
        "plain_id": plain_id,
        "size_id": size_id,
        "large_id": large_id,
        "type_id": type_id,
        "plain_variation": plain_variation,
        "cardamom_variation": cardamom_variation,
    }


@pytest.fixture
def client(db, gateway, notifier):
    from main import app, get_db, get_gateway, get_notifier, get_shipping_lookup

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_shipping_lookup] = lambda: OfflineLookup()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(client):
    from main import ADMIN_USERNAME, ADMIN_PASSWORD

    res = client.post("/api/admin/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD})
    assert res.status_code == 200
    return {"X-Admin-Token": res.json()["token"]}
