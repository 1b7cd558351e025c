from datetime import timedelta
from decimal import Decimal

import pytest
import stripe
from sqlalchemy.exc import OperationalError

from checkout_service.checkout import create_checkout_session, purge_abandoned_checkouts
from checkout_service.errors import InvalidInput, SessionCreationFailed
from checkout_service.models import PendingCheckout, utcnow
from checkout_service.pricing import CartItem


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def stripe_responses(gateway):
    gateway.create_customer.return_value = "cus_1"
    gateway.create_checkout_session.return_value = ("cs_test_1", "https://checkout.stripe.com/c/pay/cs_test_1")


def test_creates_customer_session_and_pending_checkout(db, gateway, settings, cart):
    session = create_checkout_session(db, gateway, settings, cart, user_ref="user-1")

    assert session.redirect_url == "https://checkout.stripe.com/c/pay/cs_test_1"
    assert session.customer_ref == "cus_1"
    assert session.cart_snapshot == cart
    gateway.create_customer.assert_called_once_with(cart, "user-1")
    gateway.create_checkout_session.assert_called_once_with(
        customer_ref="cus_1",
        cart_items=cart,
        currency="usd",
        client_url="http://localhost:3000",
        user_ref="user-1",
    )

    pending = db.get(PendingCheckout, "cs_test_1")
    assert pending.customer_ref == "cus_1"
    assert pending.user_ref == "user-1"
    assert pending.amount_total_cents == 10000
    assert [item["name"] for item in pending.cart] == ["Leather Bag", "Cotton Shirt"]


def test_empty_cart_is_rejected(db, gateway, settings):
    with pytest.raises(InvalidInput):
        create_checkout_session(db, gateway, settings, [])
    gateway.create_customer.assert_not_called()


def test_invalid_line_is_rejected_before_calling_stripe(db, gateway, settings, cart):
    bad = CartItem(item_id="bad", name="Bad", quantity=-2, unit_price=Decimal("5"))

    with pytest.raises(InvalidInput):
        create_checkout_session(db, gateway, settings, cart + [bad])
    gateway.create_customer.assert_not_called()


def test_mixed_currency_cart_is_rejected(db, gateway, settings, cart):
    euro = CartItem(item_id="mug", name="Mug", quantity=1, unit_price=Decimal("8"), currency="eur")

    with pytest.raises(InvalidInput):
        create_checkout_session(db, gateway, settings, cart + [euro])


def test_stripe_failure_raises_session_creation_failed(db, gateway, settings, cart):
    gateway.create_checkout_session.side_effect = stripe.APIConnectionError("Stripe Service Unavailable")

    with pytest.raises(SessionCreationFailed) as exc:
        create_checkout_session(db, gateway, settings, cart)

    assert isinstance(exc.value.__cause__, stripe.APIConnectionError)
    assert db.query(PendingCheckout).count() == 0


def test_pending_checkout_failure_still_returns_session(mocker, gateway, settings, cart):
    db = mocker.Mock()
    db.commit.side_effect = OperationalError("INSERT INTO pending_checkouts", {}, Exception("disk full"))

    session = create_checkout_session(db, gateway, settings, cart)

    assert session.session_id == "cs_test_1"
    db.rollback.assert_called_once()


def test_purge_abandoned_checkouts_keeps_fresh_ones(db, cart):
    for session_id, age in [("cs_stale", timedelta(hours=30)), ("cs_fresh", timedelta(minutes=5))]:
        db.add(PendingCheckout(
            session_id=session_id,
            customer_ref="cus_1",
            cart=[item.model_dump(mode="json", by_alias=True) for item in cart],
            amount_total_cents=10000,
            currency="usd",
            created_at=utcnow() - age,
        ))
    db.commit()

    removed = purge_abandoned_checkouts(db)

    assert removed == 1
    assert [p.session_id for p in db.query(PendingCheckout).all()] == ["cs_fresh"]
