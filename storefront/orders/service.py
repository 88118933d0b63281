"""
service.py - Order Aggregate

OrderService is the only writer of ``orders.status``. Each mutation:

    1. validates the edge with the status table (state_machine.py)
    2. applies the stock effect the edge implies, in the same transaction
       - PENDING -> PAID on an order that never took stock: decrement every line
       - entering CANCELLED / REFUNDED while holding stock: put every line back
         (RESTOCK for a cancellation, REFUND for a refund), at most once per
         (order, status) via order_compensations
    3. records order.status_changed in the outbox

The service flushes but never commits; the caller owns the transaction, so a
failed decrement leaves the order exactly as it was.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from storefront.checkout.session_store import CheckoutSession
from storefront.inventory.ledger import StockChangeContext, StockLedger
from storefront.inventory.models import StockChangeType
from storefront.orders.models import Order
from storefront.orders.repository import OrderRepository
from storefront.orders.state_machine import COMPENSATING_STATUSES, OrderStatus, validate_transition
from storefront.shared.errors import OrderNotFound
from storefront.shared.events import OrderCreatedEvent, OrderStatusChangedEvent
from storefront.shared.outbox import record_event

logger = logging.getLogger(__name__)


class OrderService:
    """Order creation and status transitions."""

    def __init__(self, db: Session, ledger: Optional[StockLedger] = None):
        self.db = db
        self.repo = OrderRepository(db)
        self.ledger = ledger or StockLedger(db)

    def get_order(self, order_id: str) -> Order:
        order = self.repo.get_order(order_id)
        if not order:
            raise OrderNotFound(order_id)
        return order

    def list_orders(self, user_id: str) -> List[Order]:
        return self.repo.list_for_user(user_id)

    def create_order_from_session(
        self,
        session: CheckoutSession,
        status: OrderStatus,
        order_id: Optional[str] = None,
    ) -> Order:
        """
        Promote a checkout session into an order.

        A PAID order takes its stock here; the order id is generated first so
        the SALE history rows point at it. A PENDING order takes no stock.
        """
        status = OrderStatus(status)
        order_id = order_id or self.repo.new_order_id()
        stock_committed = False
        if status == OrderStatus.PAID:
            self.ledger.apply_order_items(
                session.items,
                StockChangeContext(
                    change_type=StockChangeType.SALE,
                    reason=f"Order {order_id}",
                    order_id=order_id,
                    correlation_id=session.correlation_id,
                ),
            )
            stock_committed = True

        order = self.repo.create_order(order_id, session, status, stock_committed)
        record_event(
            self.db,
            OrderCreatedEvent(
                correlation_id=session.correlation_id,
                order_id=order.id,
                user_id=order.user_id,
                status=order.status,
                items=[
                    {
                        "product_id": item.product_id,
                        "variant_id": item.variant_id,
                        "quantity": item.quantity,
                        "unit_price": str(item.unit_price),
                    }
                    for item in session.items
                ],
                total_amount=session.total_amount,
            ),
            aggregate_id=order.id,
        )
        return order

    def transition(self, order_id: str, target: OrderStatus, actor_id: Optional[str] = None) -> Order:
        """Lock the order and move it to ``target``."""
        order = self.repo.get_order_for_update(order_id)
        if not order:
            raise OrderNotFound(order_id)
        return self.apply_transition(order, target, actor_id)

    def apply_transition(self, order: Order, target: OrderStatus, actor_id: Optional[str] = None) -> Order:
        """Move an already loaded order to ``target`` with its stock effects."""
        current = OrderStatus(order.status)
        target = validate_transition(order.id, current, target)

        if current == OrderStatus.PENDING and target == OrderStatus.PAID and not order.stock_committed:
            self.ledger.apply_order_items(
                order.items,
                StockChangeContext(
                    change_type=StockChangeType.SALE,
                    reason=f"Order {order.id}",
                    order_id=order.id,
                    actor_id=actor_id,
                    correlation_id=order.correlation_id,
                ),
            )
            order.stock_committed = True

        compensated = False
        if target in COMPENSATING_STATUSES and order.stock_committed:
            compensated = self._compensate(order, target, actor_id)

        self.set_status(order, current, target, actor_id, compensated)
        return order

    def set_status(
        self,
        order: Order,
        current: OrderStatus,
        target: OrderStatus,
        actor_id: Optional[str] = None,
        compensated: bool = False,
    ) -> None:
        """Write a status already checked against the table and record the change."""
        order.status = OrderStatus(target).value
        self.db.flush()
        record_event(
            self.db,
            OrderStatusChangedEvent(
                correlation_id=order.correlation_id,
                order_id=order.id,
                user_id=order.user_id,
                previous_status=OrderStatus(current).value,
                new_status=order.status,
                compensated=compensated,
            ),
            aggregate_id=order.id,
        )
        logger.info(
            f"Order {order.id} moved from {OrderStatus(current).value} to {order.status}",
            extra={"order_id": order.id, "status": order.status, "user_id": actor_id or order.user_id},
        )

    def _compensate(self, order: Order, target: OrderStatus, actor_id: Optional[str]) -> bool:
        if self.repo.has_compensation(order.id, target.value):
            logger.info(f"Compensation for order {order.id} entering {target.value} already applied")
            return False

        if target == OrderStatus.CANCELLED:
            change_type = StockChangeType.RESTOCK
            reason = f"Order {order.id} cancelled"
        else:
            change_type = StockChangeType.REFUND
            reason = f"Refund approved for order {order.id}"

        self.ledger.return_order_items(
            order.items,
            StockChangeContext(
                change_type=change_type,
                reason=reason,
                order_id=order.id,
                actor_id=actor_id,
                correlation_id=order.correlation_id,
            ),
        )
        self.repo.add_compensation(order.id, target.value)
        order.stock_committed = False
        return True
