"""
errors.py - Error Taxonomy

Every business failure raised by the engine derives from StorefrontError and
carries a stable ``code`` plus the HTTP status the API layer maps it to.
Details are limited to what the calling UI already owns (product ids and
names, order ids, quantities).

    InsufficientStock        409  stock cannot satisfy a line (item-level detail)
    StockConflict            409  optimistic retries exhausted on a hot row
    InvalidTransition        409  order status edge not in the state table
    SessionNotFound          404  correlation id has no live checkout session
    SessionExpired           404  checkout session TTL elapsed
    NotEligible              400  refund not allowed for this order/requester
    AlreadyRequested         409  refund already requested or completed
    ProviderValidationFailed 400  malformed or unsigned provider notification
    PaymentProviderError     502  provider refused or failed to create a transaction
    AuthenticationRequired   401  no user identity forwarded by the auth layer
    Forbidden                403  caller lacks the admin role
"""

from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    """Base class for engine errors."""

    code = "storefront_error"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequest(StorefrontError):
    code = "invalid_request"


class InvalidQuantity(InvalidRequest):
    code = "invalid_quantity"


class VariantRequired(InvalidRequest):
    code = "variant_required"

    def __init__(self, product_id: str, product_name: str):
        super().__init__(
            f"Product {product_name} is sold by variant; choose a variant",
            {"product_id": product_id, "product_name": product_name},
        )


class AuthenticationRequired(StorefrontError):
    code = "authentication_required"
    http_status = 401


class Forbidden(StorefrontError):
    code = "forbidden"
    http_status = 403


class ProductNotFound(StorefrontError):
    code = "product_not_found"
    http_status = 404

    def __init__(self, product_id: str, variant_id: Optional[str] = None):
        target = f"variant {variant_id} of product {product_id}" if variant_id else f"product {product_id}"
        super().__init__(f"Unknown {target}", {"product_id": product_id, "variant_id": variant_id})


class OrderNotFound(StorefrontError):
    code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})


class InsufficientStock(StorefrontError):
    """One or more lines cannot be satisfied by current stock."""

    code = "insufficient_stock"
    http_status = 409

    def __init__(self, items: List[Dict[str, Any]]):
        self.items = items
        summary = ", ".join(
            f"{item['product_name']}"
            + (f" ({item['variant_name']})" if item.get("variant_name") else "")
            + f": requested {item['requested']}, available {item['available']}"
            for item in items
        )
        super().__init__(f"Insufficient stock for items: {summary}", {"items": items})

    @property
    def available(self) -> int:
        """Available quantity of the first short line."""
        return self.items[0]["available"]

    @property
    def requested(self) -> int:
        return self.items[0]["requested"]


class StockConflict(StorefrontError):
    code = "stock_conflict"
    http_status = 409


class InvalidTransition(StorefrontError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, order_id: str, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(
            f"Order {order_id} cannot move from {current} to {target}",
            {"order_id": order_id, "current_status": current, "target_status": target},
        )


class SessionNotFound(StorefrontError):
    code = "session_not_found"
    http_status = 404

    def __init__(self, correlation_id: str):
        super().__init__(f"No checkout session for {correlation_id}", {"correlation_id": correlation_id})


class SessionExpired(SessionNotFound):
    code = "session_expired"

    def __init__(self, correlation_id: str):
        StorefrontError.__init__(
            self, f"Checkout session {correlation_id} has expired", {"correlation_id": correlation_id}
        )


class NotEligible(StorefrontError):
    code = "not_eligible"

    def __init__(self, order_id: str, message: str):
        super().__init__(message, {"order_id": order_id})


class AlreadyRequested(StorefrontError):
    code = "already_requested"
    http_status = 409

    def __init__(self, order_id: str, status: str):
        super().__init__(
            "A refund has already been requested or processed for this order",
            {"order_id": order_id, "status": status},
        )


class ProviderValidationFailed(StorefrontError):
    code = "provider_validation_failed"


class PaymentProviderError(StorefrontError):
    code = "payment_provider_error"
    http_status = 502
