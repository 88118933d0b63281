"""
state_machine.py - Order Status Table

Every status change, whichever endpoint or handler asks for it, is checked
against ALLOWED_TRANSITIONS by validate_transition(). There are no other
forward edges.

    PENDING          -> PAID, CANCELLED
    PAID             -> PROCESSING, CANCELLED, REFUND_REQUESTED
    PROCESSING       -> SHIPPED, REFUND_REQUESTED
    SHIPPED          -> DELIVERED
    REFUND_REQUESTED -> REFUNDED

CANCELLED and REFUNDED are terminal. The single reverse edge,
REFUND_REQUESTED back to the status held before the request, exists only for
a rejected refund and is checked by validate_refund_reversal().
"""

import enum
from typing import Dict, FrozenSet, Optional

from storefront.shared.errors import InvalidTransition


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    REFUNDED = "REFUNDED"


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUND_REQUESTED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.REFUND_REQUESTED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUND_REQUESTED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})

# Statuses a refund may be requested from, and so the only ones a rejection may restore
REFUNDABLE_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.PROCESSING})

# Entering these while the order holds decremented stock puts the stock back
COMPENSATING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def validate_transition(order_id: str, current: OrderStatus, target: OrderStatus) -> OrderStatus:
    """Return the target status, or raise InvalidTransition."""
    current = OrderStatus(current)
    target = OrderStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(order_id, current.value, target.value)
    return target


def validate_refund_reversal(
    order_id: str, current: OrderStatus, restore_to: Optional[OrderStatus]
) -> OrderStatus:
    """Check the rejected-refund edge back to the pre-request status."""
    current = OrderStatus(current)
    if current != OrderStatus.REFUND_REQUESTED or restore_to is None:
        raise InvalidTransition(order_id, current.value, restore_to.value if restore_to else "UNKNOWN")
    restore_to = OrderStatus(restore_to)
    if restore_to not in REFUNDABLE_STATUSES:
        raise InvalidTransition(order_id, current.value, restore_to.value)
    return restore_to
