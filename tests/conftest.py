import copy
import json
import os

# Point the app at the test database before anything imports it
os.environ["DATABASE_URL"] = "sqlite:///./test_marketplace.db"
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.auth import verify_token
from marketplace.database import Base, get_db
from marketplace.dependencies import get_notifier, get_processor
from marketplace.errors import InvalidSignatureError
from marketplace.main import app as fastapi_app
from marketplace.models import Customer

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_marketplace.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

VALID_SIGNATURE = "t=1,v1=valid"


class FakeProcessor:
    """In-memory stand-in for StripeProcessor."""

    def __init__(self):
        self.customers = {}
        self.intents = {}
        self.refunds = []
        self.calls = []
        self.failures = {}
        self.confirm_status = "succeeded"

    def _call(self, method, **kwargs):
        self.calls.append((method, kwargs))
        if method in self.failures:
            raise self.failures[method]

    def called(self, name):
        return [kw for n, kw in self.calls if n == name]

    def create_customer(self, name, email, phone=None, metadata=None):
        self._call("create_customer", name=name, email=email)
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers[customer_id] = {"id": customer_id, "name": name, "email": email,
                                       "phone": phone, "metadata": metadata or {}}
        return dict(self.customers[customer_id])

    def retrieve_customer(self, stripe_customer_id):
        self._call("retrieve_customer", stripe_customer_id=stripe_customer_id)
        return dict(self.customers[stripe_customer_id])

    def update_customer(self, stripe_customer_id, **fields):
        self._call("update_customer", stripe_customer_id=stripe_customer_id, **fields)
        self.customers[stripe_customer_id].update(fields)
        return dict(self.customers[stripe_customer_id])

    def delete_customer(self, stripe_customer_id):
        self._call("delete_customer", stripe_customer_id=stripe_customer_id)
        self.customers.pop(stripe_customer_id, None)
        return {"id": stripe_customer_id, "deleted": True}

    def list_payment_methods(self, stripe_customer_id, type="card"):
        self._call("list_payment_methods", stripe_customer_id=stripe_customer_id)
        return {"data": [{"id": "pm_card_visa", "type": "card",
                          "card": {"brand": "visa", "last4": "4242"}}]}

    def create_payment_intent(self, amount, currency, stripe_customer_id, description=None, metadata=None):
        self._call("create_payment_intent", amount=amount, currency=currency,
                   stripe_customer_id=stripe_customer_id)
        intent_id = f"pi_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_abc",
            "amount": amount,
            "currency": currency,
            "customer": stripe_customer_id,
            "description": description,
            "metadata": metadata or {},
            "status": "requires_payment_method",
        }
        return copy.deepcopy(self.intents[intent_id])

    def confirm_payment_intent(self, intent_id, payment_method_id):
        self._call("confirm_payment_intent", intent_id=intent_id, payment_method_id=payment_method_id)
        intent = self.intents[intent_id]
        intent["status"] = self.confirm_status
        intent["payment_method"] = payment_method_id
        if self.confirm_status == "succeeded":
            intent["amount_received"] = intent["amount"]
            intent["latest_charge"] = {
                "id": f"ch_{intent_id}",
                "receipt_url": f"https://pay.stripe.com/receipts/{intent_id}",
                "payment_method_details": {
                    "type": "card",
                    "card": {"brand": "visa", "last4": "4242", "exp_month": 12,
                             "exp_year": 2030, "country": "US", "fingerprint": "x"},
                },
            }
        return copy.deepcopy(intent)

    def retrieve_payment_intent(self, intent_id):
        self._call("retrieve_payment_intent", intent_id=intent_id)
        return copy.deepcopy(self.intents[intent_id])

    def cancel_payment_intent(self, intent_id, reason=None):
        self._call("cancel_payment_intent", intent_id=intent_id, reason=reason)
        self.intents[intent_id]["status"] = "canceled"
        return copy.deepcopy(self.intents[intent_id])

    def create_setup_intent(self, stripe_customer_id):
        self._call("create_setup_intent", stripe_customer_id=stripe_customer_id)
        return {"id": "seti_1", "client_secret": "seti_1_secret", "customer": stripe_customer_id}

    def create_refund(self, intent_id, amount=None, reason=None):
        self._call("create_refund", intent_id=intent_id, amount=amount, reason=reason)
        refund = {"id": f"re_{len(self.refunds) + 1}", "status": "succeeded",
                  "payment_intent": intent_id, "amount": amount, "reason": reason}
        self.refunds.append(refund)
        return dict(refund)

    def construct_event(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise InvalidSignatureError("Invalid signature")
        return json.loads(payload)

    def succeed_intent(self, intent_id, with_charge=False):
        """Mark an intent succeeded processor-side, the way a webhook would report it."""
        intent = self.intents[intent_id]
        intent["status"] = "succeeded"
        intent["amount_received"] = intent["amount"]
        if with_charge:
            intent["latest_charge"] = {"id": f"ch_{intent_id}",
                                       "receipt_url": f"https://pay.stripe.com/receipts/{intent_id}",
                                       "payment_method_details": {"type": "card"}}
        return copy.deepcopy(intent)


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def _send(self, kind, customer, *args):
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.sent.append((kind, customer.email) + args)

    def payment_confirmation(self, customer, payment):
        self._send("payment_confirmation", customer, payment.stripe_payment_intent_id)

    def payment_failed(self, customer, amount, currency, reason):
        self._send("payment_failed", customer, amount, currency, reason)

    def customer_welcome(self, customer):
        self._send("customer_welcome", customer)

    def kinds(self):
        return [s[0] for s in self.sent]


def make_event(event_type, obj, event_id="evt_1"):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def customer(db):
    c = Customer(name="Ada Driver", email="ada@example.com",
                 phone="+15550100", address="1 Main St")
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


@pytest.fixture
def client(processor, notifier):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_processor] = lambda: processor
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[verify_token] = lambda: True

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
