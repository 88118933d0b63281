"""
kafka_client.py - Kafka Producer Wrapper

PURPOSE:
    Publishes outbox events to Kafka with delivery acknowledgments, retries and
    compression. The engine never consumes from Kafka itself; its inbound
    traffic is HTTP (checkout intake, provider webhooks, admin calls).

PRODUCER FEATURES:
    - JSON serialization of events (BaseEvent objects or already-decoded dicts)
    - All replicas acknowledgment (acks=all)
    - Idempotent producer so broker-side retries do not duplicate messages
    - Message key = correlation id, keeping one checkout's events on one partition
    - Snappy compression

USAGE:
    producer = BaseKafkaProducer("localhost:9092", client_id="storefront-outbox")
    producer.publish("order.created", event)
    producer.flush()
"""

import json
import logging
from typing import Any, Dict, Optional, Union

from confluent_kafka import Producer
from confluent_kafka.error import KafkaError

from storefront.shared.events import BaseEvent

logger = logging.getLogger(__name__)


class BaseKafkaProducer:
    """
    Base Kafka producer with JSON serialization and delivery callbacks.
    """

    def __init__(self, bootstrap_servers: str, client_id: str = "producer"):
        """
        Initialize Kafka producer.

        Args:
            bootstrap_servers: Comma-separated Kafka broker addresses
            client_id: Unique identifier for this producer instance
        """
        self.config = {
            "bootstrap.servers": bootstrap_servers,
            "client.id": client_id,
            "acks": "all",
            "enable.idempotence": True,
            "retries": 3,
            "compression.type": "snappy",
        }
        self.producer = Producer(self.config)

    def _delivery_report(self, err: Optional[KafkaError], msg) -> None:
        """Delivery report handler called by producer on message delivery."""
        if err is not None:
            logger.error(f"Message delivery failed: {err}")
        else:
            logger.debug(
                f"Message delivered to topic={msg.topic()}, "
                f"partition={msg.partition()}, offset={msg.offset()}"
            )

    def publish(self, topic: str, event: Union[BaseEvent, Dict[str, Any]]) -> None:
        """Publish event to Kafka topic and wait for delivery."""
        try:
            if isinstance(event, dict):
                message = json.dumps(event)
                event_id = event.get("event_id", "unknown")
                correlation_id = event.get("correlation_id", "unknown")
            else:
                message = event.model_dump_json()
                event_id = event.event_id
                correlation_id = event.correlation_id

            self.producer.produce(
                topic=topic,
                key=str(correlation_id).encode("utf-8"),
                value=message.encode("utf-8"),
                callback=self._delivery_report,
            )
            # Outbox rows are marked published only after this returns
            remaining = self.producer.flush(10)
            if remaining:
                raise RuntimeError(f"{remaining} message(s) still queued for {topic}")
            logger.info(
                f"Published event to {topic}",
                extra={"event_type": topic, "event_id": event_id, "correlation_id": correlation_id},
            )
        except Exception as e:
            logger.error(f"Error publishing event to {topic}: {e}")
            raise

    def flush(self) -> None:
        """Flush any pending messages."""
        self.producer.flush()
