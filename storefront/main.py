"""
main.py - Storefront Order & Inventory Engine

PURPOSE:
    Sells a bounded inventory of physical goods and keeps three promises:
    paid orders never oversell stock, provider payment notifications are
    applied exactly once despite at-least-once delivery, and every order
    moves along one auditable status table.

REQUEST FLOW:
    1. POST /checkout validates the cart, asks the payment provider for a
       redirect token and stages a CheckoutSession (Redis, one hour TTL)
    2. The customer pays at the provider
    3. POST /payments/notification promotes the session: stock decrement,
       order creation and outbox events commit together, then the session is
       discarded
    4. Refunds: customer requests, admin approves (stock returned) or rejects

API ENDPOINTS:
    POST   /checkout                                   Start checkout
    GET    /checkout/{correlation_id}                  Live checkout session
    POST   /checkout/{correlation_id}/confirm          Cash-on-delivery confirmation
    POST   /payments/notification                      Provider webhook (always 200)
    GET    /orders/{order_id}                          Order details
    GET    /orders/user/{user_id}                      Orders of a user
    POST   /orders/{order_id}/refund                   Refund request
    POST   /admin/orders/{order_id}/refund/resolve     Approve or reject a refund
    PATCH  /admin/orders/{order_id}/status             Fulfilment transitions
    POST   /admin/inventory/adjust                     Admin stock adjustment
    GET    /admin/inventory/{product_id}/history       Stock audit trail
    GET    /admin/inventory/reconciliation             SALE rows without an order
    POST   /admin/products                             Create product (dev catalog)
    GET    /products                                   Catalog listing
    GET    /products/{product_id}                      Product with variant stock
    GET    /health                                     Health check

BACKGROUND THREADS:
    - Outbox publisher: relays outbox_events to Kafka (when KAFKA_ENABLED)
    - Session sweeper: evicts expired checkout sessions

USAGE:
    uvicorn storefront.main:app --port 8000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request  # Web framework
from fastapi.responses import JSONResponse

from storefront import dependencies
from storefront.checkout.routes import router as checkout_router
from storefront.checkout.session_store import SessionSweeper, build_session_store
from storefront.inventory.routes import router as inventory_router
from storefront.orders.routes import router as order_router
from storefront.payments.provider import build_payment_provider
from storefront.payments.routes import router as payment_router
from storefront.shared.config import settings
from storefront.shared.database import SessionLocal, init_db
from storefront.shared.errors import StorefrontError
from storefront.shared.kafka_client import BaseKafkaProducer
from storefront.shared.logging_config import setup_logging
from storefront.shared.outbox import OutboxPublisher
from storefront.shared.topic_initializer import create_topics

# Setup logging
setup_logging(settings.service_name, settings.log_level)
logger = logging.getLogger(__name__)

# Global instances
producer: BaseKafkaProducer = None
outbox_publisher: OutboxPublisher = None
session_sweeper: SessionSweeper = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage app lifecycle."""
    global producer, outbox_publisher, session_sweeper

    logger.info(f"Starting {settings.service_name}...")

    # Initialize database
    try:
        init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    if settings.seed_catalog:
        try:
            from storefront.inventory.seed_data import seed_products

            db = SessionLocal()
            try:
                seed_products(db)
            finally:
                db.close()
            logger.info("Products seeded")
        except Exception as e:
            logger.error(f"Failed to seed products: {e}")

    # Checkout sessions and payment provider
    if dependencies.session_store is None:
        dependencies.session_store = build_session_store()
    if dependencies.payment_provider is None:
        dependencies.payment_provider = build_payment_provider()

    session_sweeper = SessionSweeper(dependencies.session_store)
    session_sweeper.start()

    if settings.kafka_enabled:
        # Initialize Kafka topics
        try:
            create_topics(settings.kafka_bootstrap_servers)
            logger.info("Kafka topics initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Kafka topics: {e}")
            raise

        # Initialize Kafka producer
        try:
            producer = BaseKafkaProducer(settings.kafka_bootstrap_servers, client_id="storefront-outbox")
            logger.info("Kafka producer initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Kafka producer: {e}")
            raise

        outbox_publisher = OutboxPublisher(SessionLocal, producer, settings.outbox_poll_interval_seconds)
        outbox_publisher.start()
    else:
        logger.info("Kafka disabled; events stay in the outbox table")

    yield

    logger.info(f"Shutting down {settings.service_name}...")
    if session_sweeper:
        session_sweeper.stop()
    if outbox_publisher:
        outbox_publisher.stop()
    if producer:
        producer.flush()


app = FastAPI(title="Storefront Order Engine", version="1.0.0", lifespan=lifespan)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    level = logging.ERROR if exc.http_status >= 500 else logging.INFO
    logger.log(level, f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


app.include_router(checkout_router)
app.include_router(payment_router)
app.include_router(order_router)
app.include_router(inventory_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": settings.service_name,
        "version": "1.0.0",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
