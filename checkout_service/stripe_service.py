import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import stripe
from pydantic import ValidationError

from checkout_service.errors import CustomerLookupFailed, InvalidInput
from checkout_service.pricing import CartItem, to_minor_units

logger = logging.getLogger(__name__)

# Stripe caps metadata values at 500 characters and objects at 50 keys
METADATA_VALUE_LIMIT = 500
MAX_CART_CHUNKS = 45

RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


@dataclass(frozen=True)
class CartMetadata:
    user_ref: Optional[str]
    items: List[CartItem]


def encode_cart_metadata(cart_items: Sequence[CartItem], user_ref: Optional[str] = None) -> dict:
    """Serialize a cart into Stripe metadata, split over ``cart_<n>`` keys."""
    payload = json.dumps(
        [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in cart_items],
        separators=(",", ":"),
    )
    chunks = [payload[i:i + METADATA_VALUE_LIMIT] for i in range(0, len(payload), METADATA_VALUE_LIMIT)]
    if len(chunks) > MAX_CART_CHUNKS:
        raise InvalidInput("Cart is too large to check out in one session")

    metadata = {"cart_chunks": str(len(chunks))}
    metadata.update({f"cart_{i}": chunk for i, chunk in enumerate(chunks)})
    if user_ref:
        metadata["user_id"] = user_ref
    return metadata


def decode_cart_metadata(metadata: dict) -> CartMetadata:
    """Inverse of encode_cart_metadata. Also reads a single legacy ``cart`` key.

    Raises ValueError when the metadata carries no decodable cart.
    """
    if "cart_chunks" not in metadata and "cart" not in metadata:
        raise ValueError("no cart in customer metadata")

    try:
        if "cart_chunks" in metadata:
            count = int(metadata["cart_chunks"])
            payload = "".join(metadata[f"cart_{i}"] for i in range(count))
        else:
            payload = metadata["cart"]
        items = [CartItem.model_validate(raw) for raw in json.loads(payload)]
    except (KeyError, TypeError, ValidationError) as e:
        raise ValueError(f"malformed cart metadata: {e}") from e
    return CartMetadata(user_ref=metadata.get("user_id") or metadata.get("userId"), items=items)


def _line_item(item: CartItem, currency: str) -> dict:
    product_data = {"name": item.name}
    if item.description:
        product_data["description"] = item.description
    if item.image_ref and item.image_ref.startswith(("http://", "https://")):
        product_data["images"] = [item.image_ref]
    return {
        "price_data": {
            "currency": currency,
            "unit_amount": to_minor_units(item.unit_price),
            "product_data": product_data,
        },
        "quantity": item.quantity,
    }


def _to_dict(stripe_object) -> dict:
    if stripe_object is None:
        return {}
    if hasattr(stripe_object, "to_dict"):
        return stripe_object.to_dict()
    return dict(stripe_object)


class StripeGateway:
    """Customer and Checkout Session calls against one configured StripeClient."""

    def __init__(self, client: stripe.StripeClient):
        self.client = client

    @classmethod
    def from_settings(cls, settings) -> "StripeGateway":
        client = stripe.StripeClient(
            settings.stripe_secret_key,
            http_client=stripe.RequestsClient(timeout=settings.stripe_timeout),
            max_network_retries=settings.stripe_max_retries,
        )
        return cls(client)

    def create_customer(self, cart_items: Sequence[CartItem], user_ref: Optional[str] = None) -> str:
        customer = self.client.customers.create(
            params={"metadata": encode_cart_metadata(cart_items, user_ref)}
        )
        logger.info("stripe.customer created id=%s items=%s", customer.id, len(cart_items))
        return customer.id

    def create_checkout_session(
        self,
        *,
        customer_ref: str,
        cart_items: Sequence[CartItem],
        currency: str,
        client_url: str,
        user_ref: Optional[str] = None,
    ) -> Tuple[str, str]:
        params = {
            "mode": "payment",
            "customer": customer_ref,
            "line_items": [_line_item(item, currency) for item in cart_items],
            "success_url": f"{client_url}/checkout-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{client_url}/cart",
        }
        if user_ref:
            params["client_reference_id"] = user_ref
        session = self.client.checkout.sessions.create(params=params)
        return session.id, session.url

    def retrieve_cart(self, customer_ref: str, event_id: Optional[str] = None) -> CartMetadata:
        try:
            customer = self.client.customers.retrieve(customer_ref)
        except RETRYABLE_ERRORS as e:
            raise CustomerLookupFailed(
                f"Stripe unreachable while retrieving customer {customer_ref}",
                event_id=event_id, retryable=True,
            ) from e
        except stripe.StripeError as e:
            raise CustomerLookupFailed(
                f"Stripe rejected customer lookup for {customer_ref}", event_id=event_id,
            ) from e

        if getattr(customer, "deleted", False):
            raise CustomerLookupFailed(f"Customer {customer_ref} was deleted", event_id=event_id)

        try:
            return decode_cart_metadata(_to_dict(getattr(customer, "metadata", None)))
        except ValueError as e:
            raise CustomerLookupFailed(
                f"Customer {customer_ref} has no usable cart: {e}", event_id=event_id,
            ) from e
