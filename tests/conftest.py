import os
from datetime import datetime, timedelta
from decimal import Decimal

# Configure before any storefront module reads settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./storefront-test.db")
os.environ.setdefault("SESSION_STORE_BACKEND", "memory")
os.environ.setdefault("KAFKA_ENABLED", "false")
os.environ.setdefault("PAYMENT_PROVIDER_NAME", "fake")
os.environ.setdefault("PAYMENT_PROVIDER_SERVER_KEY", "test-server-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from storefront.checkout.session_store import CheckoutSession, InMemoryCheckoutSessionStore, SessionItem, ShippingInfo
from storefront.dependencies import get_payment_provider, get_session_store
from storefront.inventory.repository import InventoryRepository
from storefront.main import app
from storefront.payments.provider import FakePaymentProvider
from storefront.shared.database import build_engine, get_db, init_db

SERVER_KEY = "test-server-key"

SHIPPING = {
    "full_name": "Siti Rahma",
    "email": "siti@example.com",
    "phone": "081234567890",
    "address": "Jl. Melati No. 12, Kebayoran",
    "city": "Jakarta",
    "postal_code": "12160",
}


class FakeClock:
    """Controllable clock for TTL tests."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so several threads can share one database."""
    eng = build_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryCheckoutSessionStore(ttl_seconds=3600, clock=clock)


@pytest.fixture
def provider():
    return FakePaymentProvider(server_key=SERVER_KEY)


@pytest.fixture
def client(session_factory, store, provider):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_store] = lambda: store
    app.dependency_overrides[get_payment_provider] = lambda: provider
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    """Create a committed product, optionally with variants: {name: stock}."""

    def _make(name="Tote Bag", price="100000", stock=0, variants=None):
        repo = InventoryRepository(db)
        product = repo.create_product(name, Decimal(price), stock=0 if variants else stock)
        for variant_name, variant_stock in (variants or {}).items():
            repo.create_variant(product.id, variant_name, stock=variant_stock)
        db.commit()
        return product

    return _make


@pytest.fixture
def stage_session(store):
    """Stage a checkout session for [(product, quantity, variant_or_None), ...]."""

    def _stage(correlation_id, lines, user_id="user-1", payment_method="bank_transfer"):
        items = [
            SessionItem(
                product_id=product.id,
                variant_id=variant.id if variant else None,
                product_name=product.name,
                variant_name=variant.name if variant else None,
                quantity=quantity,
                unit_price=(variant.effective_price if variant else product.price),
            )
            for product, quantity, variant in lines
        ]
        session = CheckoutSession(
            correlation_id=correlation_id,
            user_id=user_id,
            items=items,
            shipping=ShippingInfo(**SHIPPING),
            payment_method=payment_method,
        )
        return store.stage(session)

    return _stage


@pytest.fixture
def notification(provider):
    """Build a signed provider notification body."""

    def _build(
        correlation_id,
        transaction_status="settlement",
        gross_amount="200000.00",
        status_code="200",
        transaction_id="TX-0001",
        fraud_status=None,
        transaction_time=None,
    ):
        body = {
            "order_id": correlation_id,
            "transaction_id": transaction_id,
            "transaction_status": transaction_status,
            "status_code": status_code,
            "gross_amount": gross_amount,
            "payment_type": "bank_transfer",
            "signature_key": provider.sign(correlation_id, status_code, gross_amount),
        }
        if fraud_status is not None:
            body["fraud_status"] = fraud_status
        if transaction_time is not None:
            body["transaction_time"] = transaction_time
        return body

    return _build
