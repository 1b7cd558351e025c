from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from checkout_service.database import Base
from checkout_service.pricing import CartItem, from_minor_units

ORDER_PROCESSING = "PROCESSING"


def utcnow():
    return datetime.now(timezone.utc)


class PendingCheckout(Base):
    """Cart awaiting payment. Removed when its order is created or by purge_abandoned_checkouts."""

    __tablename__ = "pending_checkouts"

    session_id = Column(String, primary_key=True)      # Stripe Checkout Session ID
    customer_ref = Column(String, nullable=False, index=True)
    user_ref = Column(String)
    cart = Column(JSON, nullable=False)
    amount_total_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("customer_ref", "payment_intent_ref", name="uq_orders_customer_payment_intent"),
    )

    id = Column(String, primary_key=True)
    customer_ref = Column(String, nullable=False, index=True)
    payment_intent_ref = Column(String)                  # null when no payment was required
    checkout_session_ref = Column(String, unique=True, nullable=False)
    event_id = Column(String, nullable=False)
    user_ref = Column(String)
    cart = Column(JSON, nullable=False)
    payment_status = Column(String)                      # paid | unpaid | no_payment_required
    amount_total_cents = Column(Integer, nullable=False)
    currency = Column(String)
    status = Column(String, nullable=False, default=ORDER_PROCESSING)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def total_amount(self):
        return from_minor_units(self.amount_total_cents)

    @property
    def cart_items(self):
        return [CartItem.model_validate(item) for item in self.cart]


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_ref = Column(String)
    order_id = Column(String, ForeignKey("orders.id"), unique=True, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
