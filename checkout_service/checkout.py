import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence

import stripe
from sqlalchemy.exc import SQLAlchemyError

from checkout_service.errors import InvalidInput, SessionCreationFailed
from checkout_service.models import PendingCheckout, utcnow
from checkout_service.pricing import CartItem, ensure_single_currency, to_minor_units, total_price

logger = logging.getLogger(__name__)

# Stripe expires unpaid Checkout Sessions after 24 hours by default
STRIPE_SESSION_LIFETIME = timedelta(hours=24)


@dataclass(frozen=True)
class CheckoutSession:
    customer_ref: str
    session_id: str
    redirect_url: str
    cart_snapshot: List[CartItem]


def create_checkout_session(db, gateway, settings, cart_items: Sequence[CartItem],
                            user_ref: Optional[str] = None) -> CheckoutSession:
    """Open a hosted Stripe checkout for the cart and remember the cart locally.

    The cart travels twice: in a PendingCheckout row keyed by the session id,
    and in the Stripe customer's metadata, which the reconciler falls back to
    when the row is missing.
    """
    if not cart_items:
        raise InvalidInput("Cart is empty")
    snapshot = list(cart_items)
    total = total_price(snapshot)
    currency = ensure_single_currency(snapshot, settings.currency)

    try:
        customer_ref = gateway.create_customer(snapshot, user_ref)
        session_id, url = gateway.create_checkout_session(
            customer_ref=customer_ref,
            cart_items=snapshot,
            currency=currency,
            client_url=settings.client_url,
            user_ref=user_ref,
        )
    except stripe.StripeError as e:
        logger.exception("checkout.create_session failed items=%s", len(snapshot))
        raise SessionCreationFailed("Stripe checkout session could not be created") from e

    pending = PendingCheckout(
        session_id=session_id,
        customer_ref=customer_ref,
        user_ref=user_ref,
        cart=[item.model_dump(mode="json", by_alias=True) for item in snapshot],
        amount_total_cents=to_minor_units(total),
        currency=currency,
    )
    try:
        db.add(pending)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("checkout.pending_checkout not stored session_id=%s customer=%s; "
                         "webhook will read the cart from customer metadata", session_id, customer_ref)

    logger.info("checkout.session created session_id=%s customer=%s total=%s %s",
                session_id, customer_ref, total, currency)
    return CheckoutSession(
        customer_ref=customer_ref,
        session_id=session_id,
        redirect_url=url,
        cart_snapshot=snapshot,
    )


def purge_abandoned_checkouts(db, older_than: timedelta = STRIPE_SESSION_LIFETIME) -> int:
    """Delete pending checkouts whose Stripe session can no longer complete."""
    cutoff = utcnow() - older_than
    removed = db.query(PendingCheckout).filter(PendingCheckout.created_at < cutoff).delete(synchronize_session=False)
    db.commit()
    logger.info("checkout.pending_checkout purged=%s older_than=%s", removed, older_than)
    return removed
