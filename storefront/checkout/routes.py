from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from storefront.checkout.schemas import CheckoutRequest, CheckoutResponse, CheckoutSessionResponse
from storefront.checkout.service import CheckoutService
from storefront.checkout.session_store import CheckoutSessionStore
from storefront.dependencies import get_current_user_id, get_payment_provider, get_session_store
from storefront.orders.schemas import OrderResponse
from storefront.payments.provider import PaymentProvider
from storefront.shared.database import get_db

router = APIRouter(prefix="/checkout", tags=["checkout"])


def get_checkout_service(
    db: Session = Depends(get_db),
    store: CheckoutSessionStore = Depends(get_session_store),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutService:
    return CheckoutService(db, store, provider)


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def start_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """Validate the cart, get a payment redirect and stage the checkout session."""
    session = service.start_checkout(user_id, request.items, request.shipping, request.payment_method)
    return CheckoutResponse(
        correlation_id=session.correlation_id,
        redirect_url=session.redirect_url,
        token=session.payment_token,
        total_amount=session.total_amount,
        payment_method=session.payment_method,
        expires_at=session.expires_at,
    )


@router.get("/{correlation_id}", response_model=CheckoutSessionResponse)
def get_checkout(
    correlation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutSessionResponse:
    session = service.get_session(correlation_id, user_id)
    return CheckoutSessionResponse(**session.model_dump(include=set(CheckoutSessionResponse.model_fields)))


@router.post("/{correlation_id}/confirm", response_model=OrderResponse)
def confirm_cash_on_delivery(
    correlation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: CheckoutService = Depends(get_checkout_service),
) -> OrderResponse:
    """Place a cash-on-delivery order from its checkout session."""
    order = service.confirm_cash_on_delivery(correlation_id, user_id)
    return OrderResponse.from_order(order)
