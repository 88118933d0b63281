"""
events.py - Kafka Event Schema Definitions

PURPOSE:
    Defines every event the storefront engine records in its transactional
    outbox and relays to Kafka. Uses Pydantic for validation and serialization.

EVENT CATEGORIES:
    1. Checkout Events
       - checkout.session_staged
    2. Order Events
       - order.created
       - order.status_changed
       - order.refund_requested
       - order.refund_resolved
    3. Inventory Events
       - inventory.decremented
       - inventory.incremented
       - inventory.low
       - inventory.depleted
    4. Payment Events
       - payment.notification_received
       - payment.settled_out_of_stock (operational alert)

COMMON FIELDS (BaseEvent):
    - event_id: Unique identifier (UUID)
    - event_type: Event category and action (also the Kafka topic)
    - timestamp: UTC timestamp of event creation
    - correlation_id: checkout correlation id, or the order id when no checkout exists

SERIALIZATION:
    - event.model_dump_json() for the outbox payload
    - Decimal amounts serialize as strings, never floats

EVENT TYPE MAPPING:
    EVENT_TYPE_MAP maps event_type strings to their classes for consumers that
    deserialize relayed events.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class BaseEvent(BaseModel):
    """
    Base event model for all outbox events.

    All events inherit from this class and include:
    - Unique event ID
    - Event type identifier
    - UTC timestamp
    - Correlation ID joining the event to a checkout or order
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str


# ============================================================================
# CHECKOUT EVENTS
# ============================================================================

class CheckoutSessionStagedEvent(BaseEvent):
    """
    A checkout session was staged and the customer redirected to the provider.
    Consumers: Analytics (checkout funnel, abandoned checkouts)
    """

    event_type: str = "checkout.session_staged"
    user_id: str
    total_amount: Decimal
    payment_method: str
    item_count: int
    expires_at: datetime


# ============================================================================
# ORDER EVENTS
# ============================================================================

class OrderCreatedEvent(BaseEvent):
    """
    An order was promoted from a checkout session.
    Consumers: Notification Service (confirmation email), Analytics (conversion)
    """

    event_type: str = "order.created"
    order_id: str
    user_id: str
    status: str
    items: List[Dict[str, Any]]
    total_amount: Decimal


class OrderStatusChangedEvent(BaseEvent):
    """
    An order moved along the status table.
    Consumers: Notification Service, fulfilment tooling
    """

    event_type: str = "order.status_changed"
    order_id: str
    user_id: str
    previous_status: str
    new_status: str
    compensated: bool = False


class OrderRefundRequestedEvent(BaseEvent):
    """
    Customer asked for a refund; awaits admin resolution.
    Consumers: Admin notifications
    """

    event_type: str = "order.refund_requested"
    order_id: str
    user_id: str
    reason: str
    total_amount: Decimal


class OrderRefundResolvedEvent(BaseEvent):
    """
    Admin approved or rejected a refund request.
    Consumers: Notification Service (refund outcome email), payment ops
    """

    event_type: str = "order.refund_resolved"
    order_id: str
    user_id: str
    approved: bool
    new_status: str
    actor_id: Optional[str] = None


# ============================================================================
# INVENTORY EVENTS
# ============================================================================

class InventoryDecrementedEvent(BaseEvent):
    """Stock left the shelf (sale, damage, negative adjustment)."""

    event_type: str = "inventory.decremented"
    product_id: str
    variant_id: Optional[str] = None
    order_id: Optional[str] = None
    quantity: int
    previous_stock: int
    new_stock: int
    change_type: str


class InventoryIncrementedEvent(BaseEvent):
    """Stock came back (restock, refund, positive adjustment)."""

    event_type: str = "inventory.incremented"
    product_id: str
    variant_id: Optional[str] = None
    order_id: Optional[str] = None
    quantity: int
    previous_stock: int
    new_stock: int
    change_type: str


class InventoryLowEvent(BaseEvent):
    """
    Stock fell below the alert threshold after a decrement.
    Consumers: Notification Service (restock alert)
    """

    event_type: str = "inventory.low"
    product_id: str
    variant_id: Optional[str] = None
    current_stock: int
    threshold: int


class InventoryDepletedEvent(BaseEvent):
    """
    A decrement was refused because stock could not cover it.
    Consumers: Notification Service (out-of-stock alert)
    """

    event_type: str = "inventory.depleted"
    product_id: str
    variant_id: Optional[str] = None
    requested: int
    available: int


# ============================================================================
# PAYMENT EVENTS
# ============================================================================

class PaymentNotificationReceivedEvent(BaseEvent):
    """
    A provider notification was handled; ``outcome`` says how.
    Outcomes: created, pending_created, updated, duplicate, rejected, orphaned
    """

    event_type: str = "payment.notification_received"
    transaction_id: str
    provider_status: str
    outcome: str
    order_id: Optional[str] = None


class PaymentSettledOutOfStockEvent(BaseEvent):
    """
    Operational alert: the customer paid but stock sold out in the meantime.
    The checkout session is kept for manual reconciliation.
    Consumers: On-call alerting, payment ops (manual refund or backorder)
    """

    event_type: str = "payment.settled_out_of_stock"
    transaction_id: str
    user_id: str
    gross_amount: Decimal
    shortages: List[Dict[str, Any]]


# Event mapping for deserialization
EVENT_TYPE_MAP = {
    "checkout.session_staged": CheckoutSessionStagedEvent,
    "order.created": OrderCreatedEvent,
    "order.status_changed": OrderStatusChangedEvent,
    "order.refund_requested": OrderRefundRequestedEvent,
    "order.refund_resolved": OrderRefundResolvedEvent,
    "inventory.decremented": InventoryDecrementedEvent,
    "inventory.incremented": InventoryIncrementedEvent,
    "inventory.low": InventoryLowEvent,
    "inventory.depleted": InventoryDepletedEvent,
    "payment.notification_received": PaymentNotificationReceivedEvent,
    "payment.settled_out_of_stock": PaymentSettledOutOfStockEvent,
}

ALL_TOPICS = list(EVENT_TYPE_MAP.keys())
