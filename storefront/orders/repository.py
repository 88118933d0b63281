import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from storefront.checkout.session_store import CheckoutSession
from storefront.orders.models import Order, OrderCompensation, OrderItem, PaymentDetails, ShippingDetails
from storefront.orders.state_machine import OrderStatus

logger = logging.getLogger(__name__)


class OrderRepository:
    """Repository for order operations."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    @staticmethod
    def new_order_id() -> str:
        return f"ORD-{uuid4().hex[:12].upper()}"

    def create_order(
        self,
        order_id: str,
        session: CheckoutSession,
        status: OrderStatus,
        stock_committed: bool,
    ) -> Order:
        """Persist an order with its items and shipping details from a checkout session."""
        order = Order(
            id=order_id,
            correlation_id=session.correlation_id,
            user_id=session.user_id,
            status=OrderStatus(status).value,
            total_amount=session.total_amount,
            payment_method=session.payment_method.value,
            payment_token=session.payment_token,
            stock_committed=stock_committed,
        )
        order.items = [
            OrderItem(
                product_id=item.product_id,
                variant_id=item.variant_id,
                product_name=item.product_name,
                variant_name=item.variant_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in session.items
        ]
        shipping = session.shipping
        order.shipping = ShippingDetails(
            full_name=shipping.full_name,
            email=shipping.email,
            phone=shipping.phone,
            address=shipping.address,
            city=shipping.city,
            postal_code=shipping.postal_code,
            notes=shipping.notes,
        )
        self.db.add(order)
        self.db.flush()
        logger.info(
            f"Created order {order_id} for user {session.user_id}",
            extra={"order_id": order_id, "correlation_id": session.correlation_id, "status": order.status},
        )
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        """Get order by order_id."""
        return self.db.query(Order).filter(Order.id == order_id).first()

    def get_order_for_update(self, order_id: str) -> Optional[Order]:
        """Get order with a row lock held until the transaction ends."""
        return self.db.query(Order).filter(Order.id == order_id).with_for_update().populate_existing().first()

    def get_by_correlation_id(self, correlation_id: str, for_update: bool = False) -> Optional[Order]:
        query = self.db.query(Order).filter(Order.correlation_id == correlation_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def list_for_user(self, user_id: str) -> List[Order]:
        return self.db.query(Order).filter(Order.user_id == user_id).order_by(Order.created_at.desc()).all()

    def upsert_payment_details(
        self,
        order: Order,
        provider: str,
        transaction_id: Optional[str],
        provider_status: str,
        amount: Decimal,
        payment_type: Optional[str] = None,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> PaymentDetails:
        """Insert or refresh the provider view of an order's payment."""
        details = self.db.query(PaymentDetails).filter(PaymentDetails.order_id == order.id).first()
        if details is None:
            details = PaymentDetails(order_id=order.id, provider=provider, amount=amount)
            self.db.add(details)
        details.provider = provider
        details.transaction_id = transaction_id or details.transaction_id
        details.provider_status = provider_status
        details.payment_type = payment_type or details.payment_type
        details.amount = amount
        if raw_payload is not None:
            details.raw_payload = json.dumps(raw_payload, default=str)
        self.db.flush()
        return details

    def has_compensation(self, order_id: str, transition: str) -> bool:
        """Check if a compensating restock was already applied."""
        return (
            self.db.query(OrderCompensation)
            .filter(OrderCompensation.order_id == order_id, OrderCompensation.transition == transition)
            .first()
            is not None
        )

    def add_compensation(self, order_id: str, transition: str) -> OrderCompensation:
        compensation = OrderCompensation(order_id=order_id, transition=transition)
        self.db.add(compensation)
        self.db.flush()
        return compensation
