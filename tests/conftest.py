"""Pytest fixtures for pet tag tests."""

import hashlib
import hmac
import json
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import create_document, ensure_indexes, to_object_id
from inventory import QRInventory
from lifecycle import TagLifecycle
from notifications import Notifier
from orders import OrderService
from payments import MockPaymentProcessor
from schemas import Pet, Product, User

ADDRESS = {
    "street": "1 Kennel Road",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
    "country": "USA",
}


WEBHOOK_SECRET = "whsec_test"


def signed_event(event, secret=WEBHOOK_SECRET, timestamp=None):
    """JSON body and Stripe-Signature header for a payment webhook."""
    body = json.dumps(event)
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


class RecordingSms:
    def __init__(self):
        self.sent = []

    def send(self, to, body):
        self.sent.append((to, body))


class RecordingEmail:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append((to, subject, html))


class FailingSender:
    def send(self, *args):
        raise RuntimeError("gateway down")


def fetch(db, collection, doc_id):
    """Load a raw document by id string."""
    return db[collection].find_one({"_id": to_object_id(doc_id)})


@pytest.fixture
def db():
    database = mongomock.MongoClient()["pettag_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(
        frontend_url="https://pettag.test",
        qr_base_url="https://pettag.test/found/",
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def notifier(db, sms, email):
    return Notifier(db, sms, email)


@pytest.fixture
def lifecycle(db, notifier, settings):
    return TagLifecycle(db, notifier, settings)


@pytest.fixture
def payments():
    return MockPaymentProcessor()


@pytest.fixture
def orders(db, lifecycle, payments, notifier, settings):
    return OrderService(db, lifecycle, payments, notifier, settings)


@pytest.fixture
def make_user(db):
    def _make(external_id, email, role="customer", phone="+15555550100"):
        user = User(external_id=external_id, email=email, name=email.split("@")[0], phone=phone, role=role)
        return create_document("user", user, db)

    return _make


@pytest.fixture
def owner(make_user):
    return make_user("ext-owner", "owner@example.com")


@pytest.fixture
def stranger(make_user):
    return make_user("ext-stranger", "stranger@example.com")


@pytest.fixture
def make_pet(db, owner):
    def _make(name="Max", owner_id=None, **fields):
        pet = Pet(owner_id=owner_id or owner, name=name, breed="Beagle", **fields)
        return create_document("pet", pet, db)

    return _make


@pytest.fixture
def pet(make_pet):
    return make_pet()


@pytest.fixture
def seed_qrcodes(db):
    def _seed(count, start=0):
        rows = [
            {
                "tag_code": f"QR{i:06d}",
                "qr_code_data": f"https://pettag.test/found/QR{i:06d}",
                "website_url": "https://pettag.test",
            }
            for i in range(start, start + count)
        ]
        return QRInventory(db).import_codes(rows)

    return _seed


@pytest.fixture
def pending_tag(lifecycle, owner, pet):
    """Id of a freshly purchased tag linked to `pet`."""
    return lifecycle.purchase_tag(owner, pet, ADDRESS)["tag_id"]


@pytest.fixture
def active_tag(lifecycle, owner, pending_tag, seed_qrcodes):
    seed_qrcodes(1)
    lifecycle.activate_tag(owner, pending_tag)
    return pending_tag


@pytest.fixture
def product(db):
    def _make(name="Collar", price=20.0, stock=10, **fields):
        return create_document("product", Product(name=name, price=price, stock=stock, **fields), db)

    return _make


@pytest.fixture
def client(db, notifier, payments, settings):
    import main

    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    main.app.dependency_overrides[main.get_payments] = lambda: payments
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(owner):
    import main

    return {"Authorization": f"Bearer {main._identity.create_token('ext-owner')}"}


@pytest.fixture
def admin_headers(make_user):
    import main

    make_user("ext-admin", "admin@example.com", role="admin")
    return {"Authorization": f"Bearer {main._identity.create_token('ext-admin')}"}
