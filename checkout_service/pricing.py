from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from checkout_service.errors import InvalidInput

CENT = Decimal("0.01")


class CartItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    item_id: str
    name: str
    quantity: int
    unit_price: Decimal
    currency: Optional[str] = None
    description: Optional[str] = None
    image_ref: Optional[str] = None


def total_price(items: Sequence[CartItem]) -> Decimal:
    """Sum unit_price * quantity over the cart. An empty cart costs 0.

    Prices must be whole cents so the total matches what Stripe charges
    line by line.
    """
    total = Decimal("0")
    for item in items:
        if item.quantity <= 0:
            raise InvalidInput(f"Invalid quantity for item {item.item_id}")
        if not item.unit_price.is_finite() or item.unit_price < 0:
            raise InvalidInput(f"Invalid price for item {item.item_id}")
        if item.unit_price != item.unit_price.quantize(CENT):
            raise InvalidInput(f"Price for item {item.item_id} is not a whole number of cents")
        total += item.unit_price * item.quantity
    return total


def ensure_single_currency(items: Iterable[CartItem], default: str) -> str:
    currencies = {(item.currency or default).lower() for item in items}
    if len(currencies) > 1:
        raise InvalidInput("Cart mixes several currencies")
    return currencies.pop() if currencies else default.lower()


def to_minor_units(amount: Decimal) -> int:
    return int(amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(CENT)
