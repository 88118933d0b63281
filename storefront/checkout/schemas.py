from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from storefront.checkout.session_store import PaymentMethod, SessionItem, ShippingInfo


class CheckoutLine(BaseModel):
    """Cart line as sent by the client; prices come from the catalog."""

    product_id: str
    variant_id: Optional[str] = None
    quantity: int


class CheckoutRequest(BaseModel):
    """Request to start a checkout."""

    items: List[CheckoutLine]
    shipping: ShippingInfo
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER


class CheckoutResponse(BaseModel):
    """Response model for a staged checkout."""

    correlation_id: str
    redirect_url: Optional[str] = None
    token: Optional[str] = None
    total_amount: Decimal
    payment_method: PaymentMethod
    expires_at: datetime


class CheckoutSessionResponse(BaseModel):
    correlation_id: str
    items: List[SessionItem]
    total_amount: Decimal
    payment_method: PaymentMethod
    redirect_url: Optional[str] = None
    expires_at: datetime
