"""
refunds.py - Refund Request and Resolution

A customer asks, an admin decides:

    request_refund   PAID | PROCESSING -> REFUND_REQUESTED
                     remembers the status it came from and writes a zero-delta
                     REFUND marker per line; stock does not move yet
    resolve_refund   approve: REFUND_REQUESTED -> REFUNDED, stock returned (REFUND)
                     reject:  REFUND_REQUESTED -> the remembered status, no stock change

Refunds are full-quantity only.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from storefront.inventory.ledger import StockChangeContext, StockLedger
from storefront.inventory.models import StockChangeType
from storefront.orders.models import Order
from storefront.orders.service import OrderService
from storefront.orders.state_machine import (
    REFUNDABLE_STATUSES,
    OrderStatus,
    validate_refund_reversal,
    validate_transition,
)
from storefront.shared.database import utcnow
from storefront.shared.errors import AlreadyRequested, InvalidRequest, InvalidTransition, NotEligible, OrderNotFound
from storefront.shared.events import OrderRefundRequestedEvent, OrderRefundResolvedEvent
from storefront.shared.outbox import record_event

logger = logging.getLogger(__name__)


class RefundWorkflow:
    """Customer refund requests and their admin resolution."""

    def __init__(self, db: Session, order_service: Optional[OrderService] = None):
        self.db = db
        self.ledger = order_service.ledger if order_service else StockLedger(db)
        self.orders = order_service or OrderService(db, self.ledger)

    def _load(self, order_id: str) -> Order:
        order = self.orders.repo.get_order_for_update(order_id)
        if not order:
            raise OrderNotFound(order_id)
        return order

    def request_refund(self, order_id: str, requester_id: str, reason: str) -> Order:
        if not reason or not reason.strip():
            raise InvalidRequest("Refund reason is required", {"order_id": order_id})
        reason = reason.strip()

        order = self._load(order_id)
        if order.user_id != requester_id:
            raise NotEligible(order_id, "Order not found or you don't have permission to refund this order")

        current = OrderStatus(order.status)
        if current in (OrderStatus.REFUND_REQUESTED, OrderStatus.REFUNDED):
            raise AlreadyRequested(order_id, current.value)
        if current not in REFUNDABLE_STATUSES:
            raise NotEligible(
                order_id,
                f'Orders with status "{current.value}" cannot be refunded. '
                f'Only orders with status "PAID" or "PROCESSING" can be refunded.',
            )

        validate_transition(order.id, current, OrderStatus.REFUND_REQUESTED)
        order.status_before_refund = current.value
        order.refund_reason = reason
        order.refund_requested_at = utcnow()

        context = StockChangeContext(
            change_type=StockChangeType.REFUND,
            reason=f"Refund requested - {reason}",
            order_id=order.id,
            actor_id=requester_id,
            correlation_id=order.correlation_id,
        )
        for item in order.items:
            self.ledger.record_marker(item.product_id, item.variant_id, context)

        self.orders.set_status(order, current, OrderStatus.REFUND_REQUESTED, actor_id=requester_id)
        record_event(
            self.db,
            OrderRefundRequestedEvent(
                correlation_id=order.correlation_id,
                order_id=order.id,
                user_id=order.user_id,
                reason=reason,
                total_amount=order.total_amount,
            ),
            aggregate_id=order.id,
        )
        return order

    def resolve_refund(self, order_id: str, approve: bool, actor_id: Optional[str] = None) -> Order:
        order = self._load(order_id)
        current = OrderStatus(order.status)
        if current != OrderStatus.REFUND_REQUESTED:
            target = OrderStatus.REFUNDED if approve else order.status_before_refund or "UNKNOWN"
            raise InvalidTransition(order_id, current.value, getattr(target, "value", target))

        if approve:
            self.orders.apply_transition(order, OrderStatus.REFUNDED, actor_id)
        else:
            restore_to = validate_refund_reversal(
                order.id,
                current,
                OrderStatus(order.status_before_refund) if order.status_before_refund else None,
            )
            self.orders.set_status(order, current, restore_to, actor_id=actor_id)

        record_event(
            self.db,
            OrderRefundResolvedEvent(
                correlation_id=order.correlation_id,
                order_id=order.id,
                user_id=order.user_id,
                approved=approve,
                new_status=order.status,
                actor_id=actor_id,
            ),
            aggregate_id=order.id,
        )
        return order
