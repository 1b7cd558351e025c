import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import stripe

from checkout_service.errors import AuthenticationError

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class PaymentStatus(str, Enum):
    PAID = "paid"
    UNPAID = "unpaid"
    NO_PAYMENT_REQUIRED = "no_payment_required"


@dataclass(frozen=True)
class PaymentEvent:
    event_id: str
    type: str
    customer_ref: Optional[str]
    checkout_session_ref: Optional[str]
    payment_status: Optional[PaymentStatus]
    payment_intent_ref: Optional[str]
    amount_total: Optional[int]
    currency: Optional[str]
    raw_payload: bytes = field(repr=False)
    signature_header: str = field(repr=False)

    @property
    def is_checkout_completed(self) -> bool:
        return self.type == CHECKOUT_COMPLETED


def _payment_status(value) -> Optional[PaymentStatus]:
    try:
        return PaymentStatus(value)
    except ValueError:
        return None


def _plain(stripe_object) -> dict:
    if hasattr(stripe_object, "to_dict"):
        return stripe_object.to_dict()
    if isinstance(stripe_object, dict):
        return stripe_object
    raise TypeError("event data.object is not an object")


def _ref(value) -> Optional[str]:
    # expanded objects arrive as {"id": ...}
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


class WebhookAuthenticator:
    """Checks Stripe-Signature headers against the raw request body."""

    def __init__(self, secret: str, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, raw_payload: bytes, signature_header: Optional[str]) -> PaymentEvent:
        if not signature_header:
            raise AuthenticationError("Missing signature")

        # construct_event checks the HMAC over the raw bytes before parsing them
        try:
            event = stripe.Webhook.construct_event(
                raw_payload,
                signature_header,
                self.secret,
                self.tolerance,
            )
        except ValueError:
            raise AuthenticationError("Invalid payload")
        except stripe.SignatureVerificationError:
            logger.warning("webhook.signature rejected")
            raise AuthenticationError("Invalid signature")

        try:
            event_id = event["id"]
            event_type = event["type"]
            obj = _plain(event["data"]["object"])
        except (KeyError, TypeError):
            raise AuthenticationError("Invalid payload")
        if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str):
            raise AuthenticationError("Invalid payload")

        is_session = obj.get("object") == "checkout.session" or event_type.startswith("checkout.session.")
        amount_total = obj.get("amount_total")
        return PaymentEvent(
            event_id=event_id,
            type=event_type,
            customer_ref=_ref(obj.get("customer")),
            checkout_session_ref=obj.get("id") if is_session else None,
            payment_status=_payment_status(obj.get("payment_status")),
            payment_intent_ref=_ref(obj.get("payment_intent")),
            amount_total=int(amount_total) if isinstance(amount_total, int) else None,
            currency=obj.get("currency"),
            raw_payload=raw_payload,
            signature_header=signature_header,
        )
