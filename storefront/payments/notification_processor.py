"""
notification_processor.py - Idempotent Payment Notification Handling

The provider delivers notifications at least once, in any order, possibly
concurrently. PaymentNotificationProcessor turns each delivery into exactly
one observable effect:

    1. validate the body and its signature          -> ProviderValidationFailed
    2. map provider vocabulary to an outcome
           settlement, capture (fraud accept)          Settled
           capture (fraud challenge), pending          PendingHold
           cancel, deny, expire, failure               Rejected
    3. resolve the correlation id
           existing order   -> duplicate delivery: refresh payment details and
                               apply the mapped status only if the status table
                               allows it; stock is never decremented twice
           live session     -> first delivery
           neither          -> orphaned, acknowledged without side effects
    4. first delivery
           Settled      decrement every line, create the PAID order, commit,
                        discard the session
           PendingHold  create a PENDING order, keep the session
           Rejected     discard the session

A shortfall on Settled rolls everything back, keeps the session for manual
reconciliation and raises payment.settled_out_of_stock at CRITICAL.

Concurrent first deliveries race on the unique orders.correlation_id; the
loser rolls back its whole transaction, decrement included, and is handled
again as a duplicate. At sellout the loser fails its decrement before it
reaches the insert, so a shortfall is only alerted when no order exists for
the correlation id after the rollback.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.checkout.session_store import CheckoutSession, CheckoutSessionStore
from storefront.orders.models import Order
from storefront.orders.service import OrderService
from storefront.orders.state_machine import OrderStatus, can_transition
from storefront.payments.provider import PaymentProvider
from storefront.payments.schemas import PaymentNotification
from storefront.shared.config import settings
from storefront.shared.errors import InsufficientStock, ProviderValidationFailed
from storefront.shared.events import (
    InventoryDepletedEvent,
    PaymentNotificationReceivedEvent,
    PaymentSettledOutOfStockEvent,
)
from storefront.shared.logging_config import log_event
from storefront.shared.outbox import record_event

logger = logging.getLogger(__name__)


class ProviderOutcome(str, enum.Enum):
    SETTLED = "settled"
    PENDING_HOLD = "pending_hold"
    REJECTED = "rejected"


class NotificationOutcome(str, enum.Enum):
    CREATED = "created"
    PENDING_CREATED = "pending_created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    ORPHANED = "orphaned"


@dataclass
class NotificationResult:
    outcome: NotificationOutcome
    correlation_id: str
    order_id: Optional[str] = None
    status: Optional[str] = None


REJECTED_STATUSES = frozenset({"cancel", "deny", "expire", "failure"})

# Order status a duplicate delivery may move to; PendingHold never moves an order
OUTCOME_TARGETS = {
    ProviderOutcome.SETTLED: OrderStatus.PAID,
    ProviderOutcome.REJECTED: OrderStatus.CANCELLED,
}


def map_provider_status(notification: PaymentNotification) -> ProviderOutcome:
    status = notification.transaction_status.lower()
    fraud = (notification.fraud_status or "").lower()
    if status == "settlement":
        return ProviderOutcome.SETTLED
    if status == "capture":
        if fraud == "challenge":
            return ProviderOutcome.PENDING_HOLD
        if fraud in ("", "accept"):
            return ProviderOutcome.SETTLED
        return ProviderOutcome.REJECTED
    if status == "pending":
        return ProviderOutcome.PENDING_HOLD
    if status in REJECTED_STATUSES:
        return ProviderOutcome.REJECTED
    raise ProviderValidationFailed(
        f"Unknown transaction status {notification.transaction_status}",
        {"correlation_id": notification.order_id},
    )


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class PaymentNotificationProcessor:
    """Applies provider notifications to checkout sessions and orders."""

    def __init__(
        self,
        db: Session,
        session_store: CheckoutSessionStore,
        provider: PaymentProvider,
        enforce_ordering: Optional[bool] = None,
    ):
        self.db = db
        self.session_store = session_store
        self.provider = provider
        self.orders = OrderService(db)
        self.enforce_ordering = (
            settings.enforce_notification_ordering if enforce_ordering is None else enforce_ordering
        )

    def parse(self, payload: Union[PaymentNotification, Dict[str, Any]]) -> PaymentNotification:
        """Validate the body and its signature."""
        if isinstance(payload, PaymentNotification):
            notification = payload
        else:
            try:
                notification = PaymentNotification.model_validate(payload)
            except ValidationError as e:
                errors = e.errors(include_url=False, include_context=False, include_input=False)
                raise ProviderValidationFailed("Malformed payment notification", {"errors": errors}) from e

        if not self.provider.verify_signature(
            notification.order_id,
            notification.status_code,
            notification.gross_amount,
            notification.signature_key,
        ):
            raise ProviderValidationFailed(
                "Invalid notification signature", {"correlation_id": notification.order_id}
            )
        return notification

    def handle(self, payload: Union[PaymentNotification, Dict[str, Any]]) -> NotificationResult:
        notification = self.parse(payload)
        outcome = map_provider_status(notification)
        correlation_id = notification.order_id

        order = self.orders.repo.get_by_correlation_id(correlation_id, for_update=True)
        if order is not None:
            return self._apply_to_order(order, notification, outcome)

        session = self.session_store.get(correlation_id)
        if session is None:
            log_event(
                logger,
                "payment.notification_orphaned",
                f"No order or live checkout session for {correlation_id}",
                level=logging.WARNING,
                correlation_id=correlation_id,
                transaction_id=notification.transaction_id,
                status=notification.transaction_status,
                outcome=NotificationOutcome.ORPHANED.value,
            )
            return NotificationResult(NotificationOutcome.ORPHANED, correlation_id)

        if outcome == ProviderOutcome.REJECTED:
            self.session_store.discard(correlation_id)
            self._record_received(notification, NotificationOutcome.REJECTED, None)
            self.db.commit()
            return NotificationResult(NotificationOutcome.REJECTED, correlation_id)

        return self._promote(session, notification, outcome)

    # ------------------------------------------------------------------
    # First delivery
    # ------------------------------------------------------------------

    def _promote(
        self, session: CheckoutSession, notification: PaymentNotification, outcome: ProviderOutcome
    ) -> NotificationResult:
        correlation_id = session.correlation_id
        status = OrderStatus.PAID if outcome == ProviderOutcome.SETTLED else OrderStatus.PENDING
        self._check_amount(session.total_amount, notification)

        try:
            order = self.orders.create_order_from_session(session, status)
            order.provider_status_at = _naive_utc(notification.transaction_time)
            self._upsert_payment(order, notification)
            result_outcome = (
                NotificationOutcome.CREATED if status == OrderStatus.PAID else NotificationOutcome.PENDING_CREATED
            )
            self._record_received(notification, result_outcome, order.id)
            self.db.commit()
        except InsufficientStock as e:
            self.db.rollback()
            # A concurrent delivery may have taken the last units for this same checkout
            order = self.orders.repo.get_by_correlation_id(correlation_id, for_update=True)
            if order is not None:
                logger.warning(
                    f"Concurrent promotion of {correlation_id} took the stock first; handling as duplicate",
                    extra={"correlation_id": correlation_id},
                )
                return self._apply_to_order(order, notification, outcome)
            self._alert_out_of_stock(
                correlation_id, session.user_id, session.total_amount, notification, e.items
            )
            raise
        except IntegrityError:
            # Another delivery promoted this checkout first
            self.db.rollback()
            logger.warning(
                f"Concurrent promotion of {correlation_id}; handling as duplicate",
                extra={"correlation_id": correlation_id},
            )
            order = self.orders.repo.get_by_correlation_id(correlation_id, for_update=True)
            if order is None:
                raise
            return self._apply_to_order(order, notification, outcome)

        if status == OrderStatus.PAID:
            self.session_store.discard(correlation_id)
        return NotificationResult(result_outcome, correlation_id, order.id, order.status)

    # ------------------------------------------------------------------
    # Duplicate delivery
    # ------------------------------------------------------------------

    def _apply_to_order(
        self, order: Order, notification: PaymentNotification, outcome: ProviderOutcome
    ) -> NotificationResult:
        correlation_id = order.correlation_id
        received_at = _naive_utc(notification.transaction_time)

        if (
            self.enforce_ordering
            and received_at is not None
            and order.provider_status_at is not None
            and received_at < order.provider_status_at
        ):
            log_event(
                logger,
                "payment.notification_stale",
                f"Ignoring notification older than the last applied one for {correlation_id}",
                correlation_id=correlation_id,
                order_id=order.id,
                transaction_id=notification.transaction_id,
                status=notification.transaction_status,
                outcome=NotificationOutcome.DUPLICATE.value,
            )
            self.db.commit()
            return NotificationResult(NotificationOutcome.DUPLICATE, correlation_id, order.id, order.status)

        current = OrderStatus(order.status)
        target = OUTCOME_TARGETS.get(outcome)
        result_outcome = NotificationOutcome.DUPLICATE

        try:
            self._upsert_payment(order, notification)
            if target is not None and can_transition(current, target):
                self.orders.apply_transition(order, target)
                result_outcome = NotificationOutcome.UPDATED
            if received_at is not None and (order.provider_status_at is None or received_at > order.provider_status_at):
                order.provider_status_at = received_at
            self._record_received(notification, result_outcome, order.id)
            self.db.commit()
        except InsufficientStock as e:
            self.db.rollback()
            self._alert_out_of_stock(correlation_id, order.user_id, order.total_amount, notification, e.items)
            raise

        if result_outcome == NotificationOutcome.DUPLICATE:
            log_event(
                logger,
                "payment.notification_duplicate",
                f"Duplicate notification for {correlation_id}; order stays {order.status}",
                correlation_id=correlation_id,
                order_id=order.id,
                transaction_id=notification.transaction_id,
                status=order.status,
                outcome=result_outcome.value,
            )
        if OrderStatus(order.status) != OrderStatus.PENDING:
            self.session_store.discard(correlation_id)
        return NotificationResult(result_outcome, correlation_id, order.id, order.status)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _upsert_payment(self, order: Order, notification: PaymentNotification) -> None:
        try:
            amount = Decimal(notification.gross_amount)
        except InvalidOperation:
            amount = order.total_amount
        self.orders.repo.upsert_payment_details(
            order,
            provider=self.provider.name,
            transaction_id=notification.transaction_id,
            provider_status=notification.transaction_status,
            amount=amount,
            payment_type=notification.payment_type,
            raw_payload=notification.model_dump(mode="json"),
        )

    def _check_amount(self, expected: Decimal, notification: PaymentNotification) -> None:
        try:
            received = Decimal(notification.gross_amount)
        except InvalidOperation:
            received = None
        if received != expected:
            logger.warning(
                f"Gross amount {notification.gross_amount} differs from staged total {expected}",
                extra={"correlation_id": notification.order_id},
            )

    def _record_received(
        self, notification: PaymentNotification, outcome: NotificationOutcome, order_id: Optional[str]
    ) -> None:
        record_event(
            self.db,
            PaymentNotificationReceivedEvent(
                correlation_id=notification.order_id,
                transaction_id=notification.transaction_id or "",
                provider_status=notification.transaction_status,
                outcome=outcome.value,
                order_id=order_id,
            ),
            aggregate_id=order_id or notification.order_id,
        )

    def _alert_out_of_stock(
        self,
        correlation_id: str,
        user_id: str,
        gross_amount: Decimal,
        notification: PaymentNotification,
        shortages: List[Dict[str, Any]],
    ) -> None:
        """Customer paid for stock that is gone; needs a human."""
        try:
            record_event(
                self.db,
                PaymentSettledOutOfStockEvent(
                    correlation_id=correlation_id,
                    transaction_id=notification.transaction_id or "",
                    user_id=user_id,
                    gross_amount=gross_amount,
                    shortages=shortages,
                ),
                aggregate_id=correlation_id,
                level=logging.CRITICAL,
            )
            for shortage in shortages:
                record_event(
                    self.db,
                    InventoryDepletedEvent(
                        correlation_id=correlation_id,
                        product_id=shortage["product_id"],
                        variant_id=shortage.get("variant_id"),
                        requested=shortage["requested"],
                        available=shortage["available"],
                    ),
                    aggregate_id=shortage["product_id"],
                    level=logging.WARNING,
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record out-of-stock alert for {correlation_id}: {e}")
