from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storefront.dependencies import get_current_user_id, require_admin
from storefront.orders.refunds import RefundWorkflow
from storefront.orders.schemas import OrderResponse, RefundRequest, RefundResolution, StatusUpdateRequest
from storefront.orders.service import OrderService
from storefront.orders.state_machine import OrderStatus
from storefront.shared.database import get_db
from storefront.shared.errors import InvalidRequest, NotEligible, OrderNotFound, StorefrontError

router = APIRouter(tags=["orders"])


def _commit_or_rollback(db: Session, action):
    try:
        result = action()
        db.commit()
        return result
    except StorefrontError:
        db.rollback()
        raise


@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> OrderResponse:
    order = OrderService(db).get_order(order_id)
    if order.user_id != user_id:
        raise OrderNotFound(order_id)
    return OrderResponse.from_order(order)


@router.get("/orders/user/{owner_id}", response_model=List[OrderResponse])
def list_user_orders(
    owner_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> List[OrderResponse]:
    if owner_id != user_id:
        raise NotEligible(owner_id, "You can only list your own orders")
    return [OrderResponse.from_order(order) for order in OrderService(db).list_orders(owner_id)]


@router.post("/orders/{order_id}/refund", response_model=OrderResponse)
def request_refund(
    order_id: str,
    request: RefundRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> OrderResponse:
    """Ask for a refund; an admin reviews it before stock or money moves."""
    workflow = RefundWorkflow(db)
    order = _commit_or_rollback(db, lambda: workflow.request_refund(order_id, user_id, request.reason))
    return OrderResponse.from_order(order)


@router.post("/admin/orders/{order_id}/refund/resolve", response_model=OrderResponse)
def resolve_refund(
    order_id: str,
    resolution: RefundResolution,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OrderResponse:
    workflow = RefundWorkflow(db)
    order = _commit_or_rollback(db, lambda: workflow.resolve_refund(order_id, resolution.approve, admin_id))
    return OrderResponse.from_order(order)


@router.patch("/admin/orders/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: str,
    request: StatusUpdateRequest,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OrderResponse:
    """Drive fulfilment edges (PROCESSING, SHIPPED, DELIVERED) or cancel."""
    if request.status in (OrderStatus.REFUND_REQUESTED, OrderStatus.REFUNDED):
        raise InvalidRequest("Refunds go through the refund request and resolution endpoints", {"order_id": order_id})
    service = OrderService(db)
    order = _commit_or_rollback(db, lambda: service.transition(order_id, request.status, admin_id))
    return OrderResponse.from_order(order)
