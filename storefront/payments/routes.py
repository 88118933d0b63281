import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from storefront.checkout.session_store import CheckoutSessionStore
from storefront.dependencies import get_payment_provider, get_session_store
from storefront.payments.notification_processor import PaymentNotificationProcessor
from storefront.payments.provider import PaymentProvider
from storefront.payments.schemas import NotificationAck
from storefront.shared.database import get_db
from storefront.shared.errors import InsufficientStock, StorefrontError
from storefront.shared.logging_config import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/notification", response_model=NotificationAck)
async def payment_notification(
    request: Request,
    db: Session = Depends(get_db),
    store: CheckoutSessionStore = Depends(get_session_store),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> NotificationAck:
    """
    Provider webhook. Always answers 200; ``success`` is false when the
    notification was refused or could not be applied.
    """
    try:
        payload = json.loads(await request.body())
    except ValueError as e:
        logger.warning(f"Unreadable payment notification body: {e}")
        return NotificationAck(success=False)

    processor = PaymentNotificationProcessor(db, store, provider)
    try:
        result = await run_in_threadpool(processor.handle, payload)
    except InsufficientStock as e:
        # Already alerted at CRITICAL by the processor
        logger.error(f"Settled notification could not be fulfilled: {e.message}")
        return NotificationAck(success=False)
    except StorefrontError as e:
        log_event(
            logger,
            "payment.notification_refused",
            e.message,
            level=logging.WARNING,
            correlation_id=payload.get("order_id") if isinstance(payload, dict) else None,
            error=e.code,
        )
        return NotificationAck(success=False)
    except Exception as e:
        logger.error(f"Error processing payment notification: {e}", exc_info=True)
        return NotificationAck(success=False)

    logger.info(
        f"Notification for {result.correlation_id} handled: {result.outcome.value}",
        extra={"correlation_id": result.correlation_id, "order_id": result.order_id, "outcome": result.outcome.value},
    )
    return NotificationAck(success=True)
