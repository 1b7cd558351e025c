import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from checkout_service.authenticator import PaymentEvent, PaymentStatus
from checkout_service.config import Settings
from checkout_service.database import Base, make_engine, make_session_factory
from checkout_service.main import create_app
from checkout_service.models import PendingCheckout
from checkout_service.pricing import CartItem
from checkout_service.stripe_service import StripeGateway

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        client_url="http://localhost:3000",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
    )


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def gateway(mocker):
    return mocker.Mock(spec=StripeGateway)


@pytest.fixture
def client(settings, gateway, session_factory):
    app = create_app(settings, gateway=gateway, session_factory=session_factory)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def cart():
    return [
        CartItem(item_id="bag-1", name="Leather Bag", quantity=1, unit_price=Decimal("50.00"), currency="usd"),
        CartItem(item_id="shirt-2", name="Cotton Shirt", quantity=2, unit_price=Decimal("25.00"), currency="usd"),
    ]


@pytest.fixture
def sign():
    """Build a Stripe-Signature header for raw payload bytes."""
    def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"
    return _sign


@pytest.fixture
def event_payload():
    def _payload(event_id="evt_1", event_type="checkout.session.completed", session_id="cs_test_1",
                 customer="cus_1", payment_intent="pi_1", amount_total=10000, payment_status="paid"):
        return json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "customer": customer,
                    "payment_intent": payment_intent,
                    "payment_status": payment_status,
                    "amount_total": amount_total,
                    "currency": "usd",
                }
            },
        }).encode()
    return _payload


@pytest.fixture
def payment_event():
    def _event(event_id="evt_1", event_type="checkout.session.completed", session_id="cs_test_1",
               customer="cus_1", payment_intent="pi_1", amount_total=10000):
        return PaymentEvent(
            event_id=event_id,
            type=event_type,
            customer_ref=customer,
            checkout_session_ref=session_id,
            payment_status=PaymentStatus.PAID,
            payment_intent_ref=payment_intent,
            amount_total=amount_total,
            currency="usd",
            raw_payload=b"{}",
            signature_header="t=0,v1=test",
        )
    return _event


@pytest.fixture
def seed_pending(session_factory, cart):
    def _seed(session_id="cs_test_1", customer="cus_1", user_ref="user-1"):
        db = session_factory()
        db.add(PendingCheckout(
            session_id=session_id,
            customer_ref=customer,
            user_ref=user_ref,
            cart=[item.model_dump(mode="json", by_alias=True) for item in cart],
            amount_total_cents=10000,
            currency="usd",
        ))
        db.commit()
        db.close()
    return _seed
