"""
Turns authenticated ``checkout.session.completed`` events into orders.

Stripe delivers webhooks at least once, possibly concurrently. The pre-check
below avoids needless work on redelivery, while the unique constraints on
``orders`` decide the winner when two deliveries race past it.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from checkout_service.authenticator import PaymentEvent
from checkout_service.errors import CustomerLookupFailed, NotificationPersistFailed, ReconciliationError
from checkout_service.models import ORDER_PROCESSING, Notification, Order, PendingCheckout, utcnow
from checkout_service.pricing import CartItem

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    CREATED = "created"
    EXISTING = "existing"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Reconciliation:
    outcome: Outcome
    order: Optional[Order] = None


@dataclass(frozen=True)
class ResolvedCart:
    customer_ref: str
    user_ref: Optional[str]
    items: List[CartItem]


def notification_message(order: Order) -> str:
    return f"Your order {order.id} has been received and is being processed."


def _find_existing(db, event: PaymentEvent) -> Optional[Order]:
    conditions = [Order.checkout_session_ref == event.checkout_session_ref]
    if event.customer_ref and event.payment_intent_ref:
        conditions.append(and_(
            Order.customer_ref == event.customer_ref,
            Order.payment_intent_ref == event.payment_intent_ref,
        ))
    return db.query(Order).filter(or_(*conditions)).first()


class OrderReconciler:
    def __init__(self, session_factory, gateway):
        self.session_factory = session_factory
        self.gateway = gateway

    def reconcile(self, event: PaymentEvent) -> Reconciliation:
        if not event.is_checkout_completed:
            logger.info("reconcile.ignored event_id=%s type=%s", event.event_id, event.type)
            return Reconciliation(Outcome.IGNORED)

        if not event.checkout_session_ref:
            raise ReconciliationError("Event carries no checkout session id", event_id=event.event_id)
        if event.amount_total is None:
            raise ReconciliationError("Event carries no amount_total", event_id=event.event_id)

        existing = self._lookup_existing(event)
        if existing is not None:
            logger.info("reconcile.duplicate event_id=%s order_id=%s", event.event_id, existing.id)
            self._notify(existing, event)
            return Reconciliation(Outcome.EXISTING, existing)

        cart = self._resolve_cart(event)
        order, created = self._create_order(event, cart)
        if not created:
            logger.info("reconcile.race_lost event_id=%s order_id=%s", event.event_id, order.id)
            self._notify(order, event)
            return Reconciliation(Outcome.EXISTING, order)

        logger.info("reconcile.created event_id=%s order_id=%s customer=%s total=%s",
                    event.event_id, order.id, order.customer_ref, order.total_amount)
        self._notify(order, event)
        return Reconciliation(Outcome.CREATED, order)

    def _lookup_existing(self, event: PaymentEvent) -> Optional[Order]:
        db = self.session_factory()
        try:
            return _find_existing(db, event)
        except SQLAlchemyError as e:
            raise ReconciliationError("Order lookup failed", event_id=event.event_id, retryable=True) from e
        finally:
            db.close()

    def _resolve_cart(self, event: PaymentEvent) -> ResolvedCart:
        """Read the cart from the local PendingCheckout, else from Stripe customer metadata."""
        db = self.session_factory()
        try:
            pending = db.get(PendingCheckout, event.checkout_session_ref)
        except SQLAlchemyError as e:
            raise ReconciliationError("Pending checkout lookup failed",
                                      event_id=event.event_id, retryable=True) from e
        finally:
            db.close()

        if pending is not None:
            try:
                items = [CartItem.model_validate(raw) for raw in pending.cart]
            except (TypeError, ValidationError) as e:
                raise ReconciliationError("Pending checkout holds a malformed cart",
                                          event_id=event.event_id) from e
            return ResolvedCart(
                customer_ref=event.customer_ref or pending.customer_ref,
                user_ref=pending.user_ref,
                items=items,
            )

        if not event.customer_ref:
            raise CustomerLookupFailed("Event carries no customer and no pending checkout",
                                       event_id=event.event_id)
        logger.info("reconcile.metadata_fallback event_id=%s customer=%s", event.event_id, event.customer_ref)
        metadata = self.gateway.retrieve_cart(event.customer_ref, event_id=event.event_id)
        return ResolvedCart(customer_ref=event.customer_ref, user_ref=metadata.user_ref, items=metadata.items)

    def _create_order(self, event: PaymentEvent, cart: ResolvedCart):
        """Insert the order. Returns (order, created); created is False when a racing delivery won."""
        order = Order(
            id=uuid4().hex,
            customer_ref=cart.customer_ref,
            payment_intent_ref=event.payment_intent_ref,
            checkout_session_ref=event.checkout_session_ref,
            event_id=event.event_id,
            user_ref=cart.user_ref,
            cart=[item.model_dump(mode="json", by_alias=True) for item in cart.items],
            payment_status=event.payment_status.value if event.payment_status else None,
            amount_total_cents=event.amount_total,
            currency=event.currency,
            status=ORDER_PROCESSING,
            created_at=utcnow(),
        )
        db = self.session_factory()
        try:
            db.add(order)
            # the order now owns the cart; the pending row goes in the same transaction
            db.query(PendingCheckout).filter_by(session_id=event.checkout_session_ref).delete()
            db.commit()
            return order, True
        except IntegrityError as e:
            db.rollback()
            winner = _find_existing(db, event)
            if winner is None:
                raise ReconciliationError("Order insert conflicted with no matching order",
                                          event_id=event.event_id) from e
            return winner, False
        except SQLAlchemyError as e:
            db.rollback()
            raise ReconciliationError("Order could not be persisted",
                                      event_id=event.event_id, retryable=True) from e
        finally:
            db.close()

    def _notify(self, order: Order, event: PaymentEvent) -> None:
        try:
            self.ensure_notification(order)
        except NotificationPersistFailed:
            # the order stands; repair_missing_notifications backfills later
            logger.exception("reconcile.notification_failed event_id=%s order_id=%s",
                             event.event_id, order.id)

    def ensure_notification(self, order: Order) -> Notification:
        """Create the order's notification unless it already exists."""
        db = self.session_factory()
        try:
            existing = db.query(Notification).filter_by(order_id=order.id).first()
            if existing is not None:
                return existing
            notification = Notification(
                user_ref=order.user_ref or order.customer_ref,
                order_id=order.id,
                message=notification_message(order),
                created_at=utcnow(),
            )
            db.add(notification)
            db.commit()
            return notification
        except IntegrityError:
            db.rollback()
            existing = db.query(Notification).filter_by(order_id=order.id).first()
            if existing is None:
                raise NotificationPersistFailed("Notification insert conflicted", order_id=order.id)
            return existing
        except SQLAlchemyError as e:
            db.rollback()
            raise NotificationPersistFailed("Notification could not be persisted", order_id=order.id) from e
        finally:
            db.close()

    def repair_missing_notifications(self) -> int:
        """Backfill notifications for orders left without one. Returns how many were created."""
        db = self.session_factory()
        try:
            orphans = (
                db.query(Order)
                .outerjoin(Notification, Notification.order_id == Order.id)
                .filter(Notification.id.is_(None))
                .all()
            )
        finally:
            db.close()

        repaired = 0
        for order in orphans:
            try:
                self.ensure_notification(order)
                repaired += 1
            except NotificationPersistFailed:
                logger.exception("repair.notification_failed order_id=%s", order.id)
        logger.info("repair.notifications repaired=%s pending=%s", repaired, len(orphans))
        return repaired
