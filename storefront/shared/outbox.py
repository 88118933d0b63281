"""
outbox.py - Transactional Outbox

Events are written to ``outbox_events`` in the same database transaction as
the state change they describe, so a rolled-back decrement never leaves a
published "inventory.decremented" behind. OutboxPublisher relays unpublished
rows to Kafka from a daemon thread and marks them published only after the
producer confirms.
"""

import json
import logging
import threading
import time
from typing import Callable, List

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import Session

from storefront.shared.database import Base, utcnow
from storefront.shared.events import BaseEvent
from storefront.shared.logging_config import log_event

logger = logging.getLogger(__name__)


class OutboxEvent(Base):
    """Outbox pattern for reliable Kafka publishing."""

    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), unique=True, nullable=False)
    aggregate_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    event_data = Column(Text, nullable=False)  # JSON string
    published = Column(String(1), default="N", nullable=False)  # Y or N
    created_at = Column(DateTime, default=utcnow, nullable=False)
    published_at = Column(DateTime, nullable=True)


def record_event(db: Session, event: BaseEvent, aggregate_id: str, level: int = logging.INFO) -> OutboxEvent:
    """Log a structured event and stage it in the outbox (caller commits)."""
    payload = event.model_dump(mode="json")
    outbox_event = OutboxEvent(
        event_id=event.event_id,
        aggregate_id=aggregate_id,
        event_type=event.event_type,
        event_data=json.dumps(payload),
        published="N",
    )
    db.add(outbox_event)
    fields = {k: v for k, v in payload.items() if k not in ("event_type", "timestamp")}
    log_event(logger, event.event_type, f"{event.event_type} for {aggregate_id}", level=level, **fields)
    return outbox_event


def get_unpublished_events(db: Session, limit: int = 100) -> List[OutboxEvent]:
    """Get unpublished outbox events, oldest first."""
    return (
        db.query(OutboxEvent)
        .filter(OutboxEvent.published == "N")
        .order_by(OutboxEvent.id)
        .limit(limit)
        .all()
    )


def mark_event_published(db: Session, outbox_id: int) -> None:
    """Mark outbox event as published."""
    event = db.query(OutboxEvent).filter(OutboxEvent.id == outbox_id).first()
    if event:
        event.published = "Y"
        event.published_at = utcnow()
        db.flush()


class OutboxPublisher:
    """Background thread to publish outbox events."""

    def __init__(self, session_factory: Callable[[], Session], producer, poll_interval: int = 2):
        """Initialize publisher."""
        self.session_factory = session_factory
        self.producer = producer
        self.poll_interval = poll_interval
        self.running = True

    def start(self) -> threading.Thread:
        """Start publisher thread."""
        thread = threading.Thread(target=self._publish_loop, daemon=True)
        thread.start()
        logger.info("Outbox publisher started")
        return thread

    def publish_pending(self) -> int:
        """Relay one batch of unpublished events. Returns the number published."""
        published = 0
        db = self.session_factory()
        try:
            for event in get_unpublished_events(db):
                try:
                    self.producer.publish(event.event_type, json.loads(event.event_data))
                except Exception as e:
                    # Leave the row unpublished; the next poll retries it
                    logger.error(f"Error publishing outbox event {event.event_id}: {e}")
                    continue
                mark_event_published(db, event.id)
                db.commit()
                published += 1
        finally:
            db.close()
        return published

    def _publish_loop(self) -> None:
        """Poll and publish outbox events."""
        while self.running:
            try:
                self.publish_pending()
            except Exception as e:
                logger.error(f"Error in outbox publisher: {e}")
            time.sleep(self.poll_interval)

    def stop(self) -> None:
        """Stop publisher thread."""
        self.running = False
        logger.info("Outbox publisher stopped")
