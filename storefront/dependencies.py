"""FastAPI dependencies shared by the routers.

Identity is issued by the external auth layer and forwarded as headers:
X-User-Id carries the user, X-User-Role the role (ADMIN for admin routes).
"""

from typing import Optional

from fastapi import Header

from storefront.checkout.session_store import CheckoutSessionStore
from storefront.payments.provider import PaymentProvider
from storefront.shared.errors import AuthenticationRequired, Forbidden

# Will be injected by main.py
session_store: CheckoutSessionStore = None
payment_provider: PaymentProvider = None


def get_session_store() -> CheckoutSessionStore:
    return session_store


def get_payment_provider() -> PaymentProvider:
    return payment_provider


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise AuthenticationRequired("Authentication required")
    return x_user_id


def require_admin(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> str:
    """Return the admin's user id."""
    if not x_user_id:
        raise AuthenticationRequired("Authentication required")
    if (x_user_role or "").upper() != "ADMIN":
        raise Forbidden("Admin access required")
    return x_user_id
