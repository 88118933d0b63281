from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from storefront.orders.state_machine import OrderStatus
from storefront.shared.database import Base, utcnow


class Order(Base):
    """Order model."""

    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    # Provider order reference; unique so concurrent deliveries cannot promote a checkout twice
    correlation_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    status = Column(String(50), default=OrderStatus.PENDING.value, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(50), nullable=False)
    payment_token = Column(String(255), nullable=True)
    stock_committed = Column(Boolean, default=False, nullable=False)
    status_before_refund = Column(String(50), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refund_requested_at = Column(DateTime, nullable=True)
    provider_status_at = Column(DateTime, nullable=True)  # transaction time of the last applied notification
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id", cascade="all, delete-orphan")
    shipping = relationship("ShippingDetails", back_populates="order", uselist=False, cascade="all, delete-orphan")
    payment = relationship("PaymentDetails", back_populates="order", uselist=False, cascade="all, delete-orphan")


class OrderItem(Base):
    """Immutable snapshot of one purchased line."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    variant_id = Column(String(64), ForeignKey("variants.id"), nullable=True)
    product_name = Column(String(255), nullable=False)
    variant_name = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class ShippingDetails(Base):
    __tablename__ = "shipping_details"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), unique=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=False)
    address = Column(Text, nullable=False)
    city = Column(String(255), nullable=False)
    postal_code = Column(String(20), nullable=False)
    notes = Column(Text, nullable=True)

    order = relationship("Order", back_populates="shipping")


class PaymentDetails(Base):
    """Provider-side view of the payment, upserted as notifications arrive."""

    __tablename__ = "payment_details"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), unique=True, nullable=False)
    provider = Column(String(50), nullable=False)
    transaction_id = Column(String(255), nullable=True, index=True)
    provider_status = Column(String(50), nullable=False)
    payment_type = Column(String(50), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    raw_payload = Column(Text, nullable=True)  # JSON string
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="payment")


class OrderCompensation(Base):
    """Track applied compensating restocks for idempotency."""

    __tablename__ = "order_compensations"
    __table_args__ = (UniqueConstraint("order_id", "transition", name="uq_order_compensation"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    transition = Column(String(50), nullable=False)  # status entered
    created_at = Column(DateTime, default=utcnow, nullable=False)
