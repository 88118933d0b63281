"""
logging_config.py - Centralized JSON Logging Configuration

PURPOSE:
    Structured JSON logging for the storefront engine. Every record becomes one
    JSON object per line so operational alerting can match on fields instead of
    parsing free text.

JSON LOG FIELDS:
    - timestamp: ISO 8601, UTC
    - level: INFO, WARNING, ERROR, CRITICAL, DEBUG
    - logger: module that emitted the record
    - message: rendered log message
    - service_name: injected by setup_logging()
    - any CONTEXT_FIELDS passed through ``extra=`` (correlation_id, event_type,
      order_id, product_id, variant_id, quantity, outcome, ...)
    - exception: stack trace when exc_info is set

STRUCTURED EVENTS:
    log_event() is the single entry point for the engine's operational events
    (inventory.decremented, inventory.depleted, payment.notification_duplicate,
    payment.settled_out_of_stock, ...). The event type lands in ``event_type``
    and the remaining keyword arguments become top-level JSON fields.

USAGE:
    from storefront.shared.logging_config import setup_logging, log_event
    setup_logging("storefront-engine", level="INFO")

    logger = logging.getLogger(__name__)
    log_event(logger, "inventory.decremented", "Stock decremented",
              product_id="PROD-1", quantity=2, new_stock=0)

EXAMPLE JSON OUTPUT:
    {
        "timestamp": "2026-02-23T22:48:51.001014+00:00",
        "level": "INFO",
        "logger": "storefront.inventory.ledger",
        "message": "Stock decremented",
        "service_name": "storefront-engine",
        "event_type": "inventory.decremented",
        "product_id": "PROD-1",
        "quantity": 2,
        "new_stock": 0
    }
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

CONTEXT_FIELDS = (
    "service_name",
    "correlation_id",
    "event_type",
    "event_id",
    "order_id",
    "user_id",
    "product_id",
    "variant_id",
    "quantity",
    "previous_stock",
    "new_stock",
    "change_type",
    "outcome",
    "status",
    "transaction_id",
    "details",
)


class JsonFormatter(logging.Formatter):
    """Custom formatter that outputs JSON logs with correlation context."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ServiceFilter(logging.Filter):
    """Stamp every record with the service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        return True


def setup_logging(service_name: str, level: str = "INFO") -> None:
    """Setup JSON logging for a service."""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Re-running setup (uvicorn reload, tests) must not stack handlers
    for handler in list(logger.handlers):
        if isinstance(handler.formatter, JsonFormatter):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(ServiceFilter(service_name))
    logger.addHandler(handler)


def log_event(logger: logging.Logger, event_type: str, message: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit a structured operational event."""
    extra = {"event_type": event_type}
    for key, value in fields.items():
        if key in CONTEXT_FIELDS:
            extra[key] = value
        else:
            extra.setdefault("details", {})[key] = value
    logger.log(level, message, extra=extra)
