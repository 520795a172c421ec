import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import datetime as dt
import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from streak.accounts import AccountLifecycleManager
from streak.config import Settings
from streak.db import init_db, make_engine, make_session_factory
from streak.errors import BillingGatewayError
from streak.gateway import Customer, PaymentSource, StripeGateway, Subscription
from streak.mail import Mailer
from streak.main import create_app
from streak.security import PasswordHasher, SessionTokens
from streak.store import AccountStore
from streak.subscriptions import AccountLocks, SubscriptionManager

WEBHOOK_SECRET = "whsec_test"


class FakeClock:
    def __init__(self, start=dt.datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += dt.timedelta(**kwargs)


class FakeGateway:
    """Records every processor call; ``fail_on`` names operations that should fail."""

    def __init__(self):
        self.calls = []
        self.fail_on = set()
        self.deleted_customers = set()
        self.idempotency_keys = []
        self.subscription_status = "active"
        self._ids = 0

    def count(self, operation):
        return sum(1 for name, _ in self.calls if name == operation)

    def _record(self, operation, *args):
        self.calls.append((operation, args))
        if operation in self.fail_on:
            raise BillingGatewayError(f"{operation} failed")
        self._ids += 1
        return self._ids

    async def create_customer(self, email, source_token, idempotency_key=None):
        self.idempotency_keys.append(idempotency_key)
        n = self._record("create_customer", email, source_token)
        return Customer(id=f"cus_{n}")

    async def retrieve_customer(self, customer_id):
        self._record("retrieve_customer", customer_id)
        return Customer(id=customer_id, deleted=customer_id in self.deleted_customers)

    async def create_subscription(self, customer_id, plan_id, idempotency_key=None):
        self.idempotency_keys.append(idempotency_key)
        n = self._record("create_subscription", customer_id, plan_id)
        return Subscription(id=f"sub_{n}", status=self.subscription_status)

    async def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id)
        return Subscription(id=subscription_id, status="canceled")

    async def attach_source(self, customer_id, token):
        n = self._record("attach_source", customer_id, token)
        return PaymentSource(id=f"card_{n}", last4="4444", brand="Mastercard")

    async def set_default_source(self, customer_id, source_id):
        self._record("set_default_source", customer_id, source_id)
        return Customer(id=customer_id)

    def verify_webhook(self, raw_body, signature, secret):
        return StripeGateway(None).verify_webhook(raw_body, signature, secret)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_payload(event_id: str, event_type: str, obj: dict = None) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj or {}},
    }).encode()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id="price_premium",
        admin_email="admin@example.com",
        contact_email="hello@example.com",
        public_url="https://streak.test",
        log_level="WARNING",
    )


@pytest.fixture
def db():
    engine = make_engine("sqlite://")
    init_db(engine)
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def store(db):
    return AccountStore(db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    mailer = AsyncMock(spec=Mailer)
    mailer.send.return_value = True
    return mailer


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def hasher():
    return PasswordHasher()


@pytest.fixture
def tokens():
    return SessionTokens("test-secret")


@pytest.fixture
def lifecycle(store, hasher, tokens, mailer, settings, clock):
    return AccountLifecycleManager(store, hasher, tokens, mailer, settings, clock=clock)


@pytest.fixture
def subscriptions(store, gateway, mailer, settings, clock):
    return SubscriptionManager(store, gateway, mailer, settings, locks=AccountLocks(), clock=clock)


@pytest.fixture
def app(settings, gateway, mailer):
    return create_app(settings, billing_gateway=gateway, mailer=mailer)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
