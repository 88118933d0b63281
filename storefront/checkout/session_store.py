"""
session_store.py - Checkout Session Staging Area

A checkout session holds everything needed to create an order between the
moment the customer is redirected to the payment provider and the moment the
provider's notification arrives. Sessions live in Redis, never in the
relational store, and expire after a TTL (default one hour).

Key pattern:
    checkout_session:{correlation_id} -> CheckoutSession JSON, EX ttl

Expiry is enforced twice: Redis drops the key when its TTL runs out, and
get() compares the embedded ``expires_at`` against the store clock so an
expired session is treated as absent even before Redis evicts it. sweep()
evicts whatever is left; SessionSweeper calls it periodically.

Staging never validates stock or payment. It freezes the total from the line
prices captured at checkout.
"""

import enum
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import redis
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront.shared.config import settings
from storefront.shared.database import utcnow
from storefront.shared.errors import SessionExpired, SessionNotFound
from storefront.shared.logging_config import log_event

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class PaymentMethod(str, enum.Enum):
    BANK_TRANSFER = "bank_transfer"
    EWALLET = "ewallet"
    COD = "cod"


class ShippingInfo(BaseModel):
    """Delivery address captured at checkout."""

    full_name: str = Field(min_length=3, max_length=255)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    phone: str = Field(pattern=r"^(\+62|62|0)8[1-9][0-9]{6,9}$")
    address: str = Field(min_length=10)
    city: str = Field(min_length=1, max_length=255)
    postal_code: str = Field(pattern=r"^\d{5}$")
    notes: Optional[str] = None


class SessionItem(BaseModel):
    """One cart line with its unit price frozen at staging."""

    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class CheckoutSession(BaseModel):
    correlation_id: str
    user_id: str
    items: List[SessionItem] = Field(min_length=1)
    shipping: ShippingInfo
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    total_amount: Decimal = Decimal("0")
    payment_token: Optional[str] = None
    redirect_url: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def compute_total(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CheckoutSessionStore(ABC):
    """TTL-bounded staging area keyed by correlation id."""

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Optional[Clock] = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.checkout_session_ttl_seconds
        self.clock = clock or utcnow

    def stage(self, session: CheckoutSession) -> CheckoutSession:
        """Freeze the total, stamp the expiry and store the session."""
        now = self.clock()
        staged = session.model_copy(
            update={
                "total_amount": session.compute_total(),
                "created_at": now,
                "expires_at": now + timedelta(seconds=self.ttl_seconds),
            }
        )
        self._put(staged)
        log_event(
            logger,
            "checkout.session_staged",
            f"Staged checkout session {staged.correlation_id}",
            correlation_id=staged.correlation_id,
            user_id=staged.user_id,
            total_amount=str(staged.total_amount),
            expires_at=staged.expires_at.isoformat(),
        )
        return staged

    def get(self, correlation_id: str) -> Optional[CheckoutSession]:
        """Return the live session, or None if absent or expired."""
        session = self._load(correlation_id)
        if session is None:
            return None
        if session.is_expired(self.clock()):
            self._evict_expired(session)
            return None
        return session

    def require(self, correlation_id: str, user_id: Optional[str] = None) -> CheckoutSession:
        """Like get(), but raises SessionNotFound or SessionExpired; scoped to ``user_id`` when given."""
        session = self._load(correlation_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFound(correlation_id)
        if session.is_expired(self.clock()):
            self._evict_expired(session)
            raise SessionExpired(correlation_id)
        return session

    def _evict_expired(self, session: CheckoutSession) -> None:
        self._delete(session.correlation_id)
        log_event(
            logger,
            "checkout.session_expired",
            f"Checkout session {session.correlation_id} expired",
            correlation_id=session.correlation_id,
            user_id=session.user_id,
        )

    def discard(self, correlation_id: str) -> bool:
        """Remove a session. Discarding an absent id is a no-op."""
        removed = self._delete(correlation_id)
        if removed:
            logger.info(f"Discarded checkout session {correlation_id}", extra={"correlation_id": correlation_id})
        return removed

    def sweep(self) -> int:
        """Evict every expired session. Returns the number evicted."""
        now = self.clock()
        evicted = 0
        for session in self._all():
            if session.is_expired(now) and self._delete(session.correlation_id):
                evicted += 1
        if evicted:
            logger.info(f"Swept {evicted} expired checkout session(s)")
        return evicted

    def active_count(self) -> int:
        now = self.clock()
        return sum(1 for session in self._all() if not session.is_expired(now))

    @abstractmethod
    def _put(self, session: CheckoutSession) -> None:
        ...

    @abstractmethod
    def _load(self, correlation_id: str) -> Optional[CheckoutSession]:
        ...

    @abstractmethod
    def _delete(self, correlation_id: str) -> bool:
        ...

    @abstractmethod
    def _all(self) -> List[CheckoutSession]:
        ...


def redis_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(RedisError),
    )


class RedisCheckoutSessionStore(CheckoutSessionStore):
    """Checkout sessions in Redis with native key expiry."""

    KEY_PREFIX = "checkout_session:"

    def __init__(self, redis_client: redis.Redis, ttl_seconds: Optional[int] = None, clock: Optional[Clock] = None):
        super().__init__(ttl_seconds, clock)
        self.redis = redis_client

    def _key(self, correlation_id: str) -> str:
        return f"{self.KEY_PREFIX}{correlation_id}"

    @redis_retry()
    def _put(self, session: CheckoutSession) -> None:
        self.redis.set(self._key(session.correlation_id), session.model_dump_json(), ex=self.ttl_seconds)

    @redis_retry()
    def _load(self, correlation_id: str) -> Optional[CheckoutSession]:
        raw = self.redis.get(self._key(correlation_id))
        if raw is None:
            return None
        return CheckoutSession.model_validate_json(raw)

    @redis_retry()
    def _delete(self, correlation_id: str) -> bool:
        return bool(self.redis.delete(self._key(correlation_id)))

    @redis_retry()
    def _all(self) -> List[CheckoutSession]:
        sessions = []
        for key in self.redis.scan_iter(match=f"{self.KEY_PREFIX}*"):
            raw = self.redis.get(key)
            if raw is not None:
                sessions.append(CheckoutSession.model_validate_json(raw))
        return sessions


class InMemoryCheckoutSessionStore(CheckoutSessionStore):
    """Process-local store for development and tests."""

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Optional[Clock] = None):
        super().__init__(ttl_seconds, clock)
        self._sessions: Dict[str, CheckoutSession] = {}
        self._lock = threading.Lock()

    def _put(self, session: CheckoutSession) -> None:
        with self._lock:
            self._sessions[session.correlation_id] = session

    def _load(self, correlation_id: str) -> Optional[CheckoutSession]:
        with self._lock:
            return self._sessions.get(correlation_id)

    def _delete(self, correlation_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(correlation_id, None) is not None

    def _all(self) -> List[CheckoutSession]:
        with self._lock:
            return list(self._sessions.values())


def build_session_store() -> CheckoutSessionStore:
    """Create the store selected by SESSION_STORE_BACKEND."""
    if settings.session_store_backend == "memory":
        logger.info("Using in-memory checkout session store")
        return InMemoryCheckoutSessionStore()
    client = redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
    )
    logger.info(f"Using Redis checkout session store at {settings.redis_host}:{settings.redis_port}")
    return RedisCheckoutSessionStore(client)


class SessionSweeper:
    """Background thread evicting expired checkout sessions."""

    def __init__(self, store: CheckoutSessionStore, interval_seconds: Optional[float] = None):
        self.store = store
        self.interval_seconds = interval_seconds or settings.session_sweep_interval_seconds
        self._stop = threading.Event()

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self._sweep_loop, daemon=True)
        thread.start()
        logger.info("Checkout session sweeper started")
        return thread

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.store.sweep()
            except Exception as e:
                logger.error(f"Error sweeping checkout sessions: {e}")

    def stop(self) -> None:
        self._stop.set()
        logger.info("Checkout session sweeper stopped")
