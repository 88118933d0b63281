from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from storefront.orders.state_machine import OrderStatus


class OrderItemSchema(BaseModel):
    """Order item schema."""

    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    quantity: int
    unit_price: Decimal


class PaymentDetailsSchema(BaseModel):
    provider: str
    transaction_id: Optional[str] = None
    provider_status: str
    payment_type: Optional[str] = None
    amount: Decimal


class OrderResponse(BaseModel):
    """Response model for order."""

    order_id: str
    correlation_id: str
    user_id: str
    status: OrderStatus
    total_amount: Decimal
    payment_method: str
    items: List[OrderItemSchema]
    payment: Optional[PaymentDetailsSchema] = None
    refund_reason: Optional[str] = None
    refund_requested_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order) -> "OrderResponse":
        payment = order.payment
        return cls(
            order_id=order.id,
            correlation_id=order.correlation_id,
            user_id=order.user_id,
            status=order.status,
            total_amount=order.total_amount,
            payment_method=order.payment_method,
            items=[
                OrderItemSchema(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_name=item.product_name,
                    variant_name=item.variant_name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in order.items
            ],
            payment=(
                PaymentDetailsSchema(
                    provider=payment.provider,
                    transaction_id=payment.transaction_id,
                    provider_status=payment.provider_status,
                    payment_type=payment.payment_type,
                    amount=payment.amount,
                )
                if payment
                else None
            ),
            refund_reason=order.refund_reason,
            refund_requested_at=order.refund_requested_at,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class RefundRequest(BaseModel):
    reason: str = Field(max_length=1000)


class RefundResolution(BaseModel):
    approve: bool


class StatusUpdateRequest(BaseModel):
    """Admin status change."""

    status: OrderStatus
