"""
service.py - Checkout Intake

start_checkout() turns a validated cart into a staged CheckoutSession:

    1. reject an empty cart, quantities below 1 and variant-less lines for
       products sold by variant; lines for the same product or variant are
       merged into one
    2. advisory availability check (no hold is taken)
    3. price each line from the catalog: variant override, else product price
    4. generate the correlation id ORDER-<epoch ms>-<hex>
    5. ask the payment provider for a redirect token (skipped for cod)
    6. stage the session with its frozen total

Cash on delivery has no provider notification. confirm_cash_on_delivery()
promotes the session the same way a settled notification does: stock is
decremented and the PAID order created in one transaction.
"""

import logging
import time
from typing import Iterable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.checkout.session_store import (
    CheckoutSession,
    CheckoutSessionStore,
    PaymentMethod,
    SessionItem,
    ShippingInfo,
)
from storefront.inventory.ledger import StockLedger, merge_lines
from storefront.orders.models import Order
from storefront.orders.service import OrderService
from storefront.orders.state_machine import OrderStatus
from storefront.payments.provider import PaymentProvider
from storefront.shared.errors import InsufficientStock, InvalidRequest, SessionNotFound
from storefront.shared.events import CheckoutSessionStagedEvent
from storefront.shared.outbox import record_event

logger = logging.getLogger(__name__)


def new_correlation_id() -> str:
    return f"ORDER-{int(time.time() * 1000)}-{uuid4().hex[:6].upper()}"


class CheckoutService:
    """Stages checkout sessions and confirms cash-on-delivery orders."""

    def __init__(self, db: Session, session_store: CheckoutSessionStore, provider: PaymentProvider):
        self.db = db
        self.session_store = session_store
        self.provider = provider
        self.ledger = StockLedger(db)

    def start_checkout(
        self,
        user_id: str,
        items: Iterable,
        shipping: ShippingInfo,
        payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
    ) -> CheckoutSession:
        items = list(items)
        if not items:
            raise InvalidRequest("Cart is empty")
        items = merge_lines(items)

        availability = self.ledger.ensure_available(items)

        lines = []
        for line, available in zip(items, availability):
            product, variant = self.ledger.resolve(line.product_id, line.variant_id)
            lines.append(
                SessionItem(
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    product_name=available.product_name,
                    variant_name=available.variant_name,
                    quantity=line.quantity,
                    unit_price=variant.effective_price if variant else product.price,
                )
            )

        payment_method = PaymentMethod(payment_method)
        draft = CheckoutSession(
            correlation_id=new_correlation_id(),
            user_id=user_id,
            items=lines,
            shipping=shipping,
            payment_method=payment_method,
        )
        draft.total_amount = draft.compute_total()

        if payment_method != PaymentMethod.COD:
            transaction = self.provider.create_transaction(draft.correlation_id, draft.total_amount, shipping)
            draft.payment_token = transaction.token
            draft.redirect_url = transaction.redirect_url

        session = self.session_store.stage(draft)
        record_event(
            self.db,
            CheckoutSessionStagedEvent(
                correlation_id=session.correlation_id,
                user_id=user_id,
                total_amount=session.total_amount,
                payment_method=payment_method.value,
                item_count=len(session.items),
                expires_at=session.expires_at,
            ),
            aggregate_id=session.correlation_id,
        )
        self.db.commit()
        return session

    def get_session(self, correlation_id: str, user_id: str) -> CheckoutSession:
        """Live session owned by ``user_id``."""
        return self.session_store.require(correlation_id, user_id)

    def confirm_cash_on_delivery(self, correlation_id: str, user_id: str) -> Order:
        orders = OrderService(self.db, self.ledger)
        existing = orders.repo.get_by_correlation_id(correlation_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise SessionNotFound(correlation_id)
            return existing

        session = self.get_session(correlation_id, user_id)
        if session.payment_method != PaymentMethod.COD:
            raise InvalidRequest(
                "Only cash-on-delivery checkouts are confirmed directly",
                {"correlation_id": correlation_id},
            )

        try:
            order = orders.create_order_from_session(session, OrderStatus.PAID)
            orders.repo.upsert_payment_details(
                order,
                provider=PaymentMethod.COD.value,
                transaction_id=None,
                provider_status="cod_confirmed",
                amount=session.total_amount,
                payment_type=PaymentMethod.COD.value,
            )
            self.db.commit()
        except InsufficientStock:
            self.db.rollback()
            # A double-submitted confirm may have taken the last units already
            existing = orders.repo.get_by_correlation_id(correlation_id)
            if existing is None:
                raise
            return existing
        except IntegrityError:
            self.db.rollback()
            existing = orders.repo.get_by_correlation_id(correlation_id)
            if existing is None:
                raise
            return existing

        self.session_store.discard(correlation_id)
        logger.info(
            f"Confirmed cash-on-delivery order {order.id}",
            extra={"order_id": order.id, "correlation_id": correlation_id, "user_id": user_id},
        )
        return order

