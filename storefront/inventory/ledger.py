"""
ledger.py - Stock Ledger

Every change to a product or variant stock counter goes through StockLedger.
A change is one read-modify-append step inside the caller's transaction:

    1. re-read the counter row with SELECT ... FOR UPDATE
    2. refuse the change if it would drive the counter below zero
    3. write the new value guarded by the optimistic ``version`` column,
       retrying up to MAX_RETRIES times when another writer won the race
    4. append one StockHistory row and stage the matching outbox event

The ledger never commits. The caller decides whether the decrement, the order
row and the outbox events land together or not at all.

Checkout-time availability checks are advisory: they take no hold, and the
only authoritative check is the one inside decrement().
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from storefront.inventory.models import ADMIN_CHANGE_TYPES, Product, StockChangeType, Variant
from storefront.inventory.repository import InventoryRepository
from storefront.shared.config import settings
from storefront.shared.errors import (
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
    ProductNotFound,
    StockConflict,
    VariantRequired,
)
from storefront.shared.events import InventoryDecrementedEvent, InventoryIncrementedEvent, InventoryLowEvent
from storefront.shared.logging_config import log_event
from storefront.shared.outbox import record_event

logger = logging.getLogger(__name__)


@dataclass
class StockChangeContext:
    """Why a counter moved, copied onto the history row."""

    change_type: StockChangeType
    reason: str
    order_id: Optional[str] = None
    actor_id: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class StockLine:
    product_id: str
    quantity: int
    variant_id: Optional[str] = None


def merge_lines(items: Iterable) -> List[StockLine]:
    """Sum the quantities of lines that draw on the same counter, keeping first-seen order."""
    merged: Dict[Tuple[str, Optional[str]], StockLine] = {}
    for item in items:
        if item.quantity < 1:
            raise InvalidQuantity(
                f"Quantity must be at least 1, got {item.quantity}",
                {"product_id": item.product_id, "variant_id": item.variant_id},
            )
        key = (item.product_id, item.variant_id or None)
        if key in merged:
            merged[key].quantity += item.quantity
        else:
            merged[key] = StockLine(item.product_id, item.quantity, item.variant_id or None)
    return list(merged.values())


@dataclass
class StockAvailability:
    """Result of an advisory availability check for one line."""

    product_id: str
    variant_id: Optional[str]
    product_name: str
    variant_name: Optional[str]
    requested: int
    available: int

    @property
    def sufficient(self) -> bool:
        return self.available >= self.requested

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "requested": self.requested,
            "available": self.available,
        }


class StockLedger:
    """Stock counter mutations with row locks, optimistic versioning and audit rows."""

    MAX_RETRIES = 3

    def __init__(self, db: Session, low_stock_threshold: Optional[int] = None):
        self.db = db
        self.repository = InventoryRepository(db)
        self.low_stock_threshold = (
            low_stock_threshold if low_stock_threshold is not None else settings.low_stock_threshold
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def resolve(self, product_id: str, variant_id: Optional[str] = None) -> Tuple[Product, Optional[Variant]]:
        """Find the counter a line refers to."""
        product = self.repository.get_product(product_id)
        if not product:
            raise ProductNotFound(product_id)
        if variant_id:
            variant = self.repository.get_variant(product_id, variant_id)
            if not variant:
                raise ProductNotFound(product_id, variant_id)
            return product, variant
        if product.has_variants:
            raise VariantRequired(product.id, product.name)
        return product, None

    def _lock_row(self, model, row_id: str):
        # populate_existing refreshes an identity-map copy loaded earlier in this session
        return (
            self.db.query(model)
            .filter(model.id == row_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def check_availability(self, items: Iterable) -> List[StockAvailability]:
        """Compare each counter's total demand against current stock without taking any hold."""
        results = []
        for item in merge_lines(items):
            product, variant = self.resolve(item.product_id, item.variant_id)
            results.append(
                StockAvailability(
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    product_name=product.name,
                    variant_name=variant.name if variant else None,
                    requested=item.quantity,
                    available=variant.stock if variant else product.stock,
                )
            )
        return results

    def ensure_available(self, items: Iterable) -> List[StockAvailability]:
        """Advisory check that raises InsufficientStock listing every short line."""
        results = self.check_availability(items)
        shortages = [result.to_dict() for result in results if not result.sufficient]
        if shortages:
            logger.warning(f"Availability check failed for {len(shortages)} line(s)")
            raise InsufficientStock(shortages)
        return results

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def decrement(
        self,
        product_id: str,
        variant_id: Optional[str],
        quantity: int,
        context: StockChangeContext,
    ) -> int:
        """Take ``quantity`` units off a counter. Returns the new stock."""
        if quantity < 1:
            raise InvalidQuantity(f"Quantity must be at least 1, got {quantity}", {"product_id": product_id})
        product, variant = self.resolve(product_id, variant_id)
        model = Variant if variant else Product
        row_id = variant.id if variant else product.id

        for attempt in range(self.MAX_RETRIES):
            row = self._lock_row(model, row_id)
            current_stock = row.stock
            current_version = row.version

            if current_stock < quantity:
                log_event(
                    logger,
                    "inventory.depleted",
                    f"Insufficient stock for {product_id}: need {quantity}, have {current_stock}",
                    level=logging.WARNING,
                    product_id=product_id,
                    variant_id=variant_id,
                    order_id=context.order_id,
                    correlation_id=context.correlation_id,
                    quantity=quantity,
                    previous_stock=current_stock,
                )
                raise InsufficientStock(
                    [
                        {
                            "product_id": product.id,
                            "variant_id": variant.id if variant else None,
                            "product_name": product.name,
                            "variant_name": variant.name if variant else None,
                            "requested": quantity,
                            "available": current_stock,
                        }
                    ]
                )

            new_stock = current_stock - quantity
            if not self._compare_and_set(model, row_id, current_version, new_stock):
                if attempt < self.MAX_RETRIES - 1:
                    logger.warning(
                        f"Concurrent conflict for {row_id}, retry {attempt + 1}/{self.MAX_RETRIES}",
                        extra={"product_id": product_id, "variant_id": variant_id},
                    )
                    continue
                break

            self.repository.add_history(
                product.id,
                variant.id if variant else None,
                context.order_id,
                context.change_type,
                -quantity,
                current_stock,
                new_stock,
                context.reason,
                context.actor_id,
            )
            record_event(
                self.db,
                InventoryDecrementedEvent(
                    correlation_id=context.correlation_id or context.order_id or product.id,
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    order_id=context.order_id,
                    quantity=quantity,
                    previous_stock=current_stock,
                    new_stock=new_stock,
                    change_type=StockChangeType(context.change_type).value,
                ),
                aggregate_id=product.id,
            )
            if new_stock < self.low_stock_threshold:
                record_event(
                    self.db,
                    InventoryLowEvent(
                        correlation_id=context.correlation_id or context.order_id or product.id,
                        product_id=product.id,
                        variant_id=variant.id if variant else None,
                        current_stock=new_stock,
                        threshold=self.low_stock_threshold,
                    ),
                    aggregate_id=product.id,
                    level=logging.WARNING,
                )
            self.db.flush()
            return new_stock

        logger.error(f"Failed to decrement stock of {row_id} after {self.MAX_RETRIES} retries")
        raise StockConflict(
            f"Stock for {product.name} is changing too quickly; try again",
            {"product_id": product.id, "variant_id": variant.id if variant else None},
        )

    def increment(
        self,
        product_id: str,
        variant_id: Optional[str],
        quantity: int,
        context: StockChangeContext,
    ) -> int:
        """Put ``quantity`` units back on a counter. Returns the new stock."""
        if quantity < 1:
            raise InvalidQuantity(f"Quantity must be at least 1, got {quantity}", {"product_id": product_id})
        product, variant = self.resolve(product_id, variant_id)
        model = Variant if variant else Product
        row_id = variant.id if variant else product.id

        for attempt in range(self.MAX_RETRIES):
            row = self._lock_row(model, row_id)
            current_stock = row.stock
            new_stock = current_stock + quantity

            if not self._compare_and_set(model, row_id, row.version, new_stock):
                if attempt < self.MAX_RETRIES - 1:
                    logger.warning(f"Concurrent conflict for {row_id}, retry {attempt + 1}/{self.MAX_RETRIES}")
                    continue
                break

            self.repository.add_history(
                product.id,
                variant.id if variant else None,
                context.order_id,
                context.change_type,
                quantity,
                current_stock,
                new_stock,
                context.reason,
                context.actor_id,
            )
            record_event(
                self.db,
                InventoryIncrementedEvent(
                    correlation_id=context.correlation_id or context.order_id or product.id,
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    order_id=context.order_id,
                    quantity=quantity,
                    previous_stock=current_stock,
                    new_stock=new_stock,
                    change_type=StockChangeType(context.change_type).value,
                ),
                aggregate_id=product.id,
            )
            self.db.flush()
            return new_stock

        logger.error(f"Failed to increment stock of {row_id} after {self.MAX_RETRIES} retries")
        raise StockConflict(
            f"Stock for {product.name} is changing too quickly; try again",
            {"product_id": product.id, "variant_id": variant.id if variant else None},
        )

    def _compare_and_set(self, model, row_id: str, expected_version: int, new_stock: int) -> bool:
        updated = (
            self.db.query(model)
            .filter(model.id == row_id, model.version == expected_version)
            .update({model.stock: new_stock, model.version: expected_version + 1}, synchronize_session="evaluate")
        )
        return updated == 1

    def adjust(
        self,
        product_id: str,
        variant_id: Optional[str],
        delta: int,
        change_type: StockChangeType,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> int:
        """Admin adjustment: a signed delta routed to increment or decrement."""
        try:
            change_type = StockChangeType(change_type)
        except ValueError:
            raise InvalidRequest(f"Unknown change type {change_type}")
        if change_type not in ADMIN_CHANGE_TYPES:
            raise InvalidRequest(
                f"Change type {change_type.value} is not an admin adjustment",
                {"allowed": [t.value for t in ADMIN_CHANGE_TYPES]},
            )
        if delta == 0:
            raise InvalidQuantity("Adjustment quantity cannot be zero", {"product_id": product_id})
        if not reason or not reason.strip():
            raise InvalidRequest("Adjustment reason is required", {"product_id": product_id})

        context = StockChangeContext(
            change_type=change_type,
            reason=f"Admin adjustment: {reason.strip()}",
            actor_id=actor_id,
        )
        if delta > 0:
            return self.increment(product_id, variant_id, delta, context)
        return self.decrement(product_id, variant_id, -delta, context)

    def record_marker(
        self,
        product_id: str,
        variant_id: Optional[str],
        context: StockChangeContext,
    ):
        """Append a zero-delta audit row, e.g. a refund request awaiting review."""
        product, variant = self.resolve(product_id, variant_id)
        current_stock = variant.stock if variant else product.stock
        return self.repository.add_history(
            product.id,
            variant.id if variant else None,
            context.order_id,
            context.change_type,
            0,
            current_stock,
            current_stock,
            context.reason,
            context.actor_id,
        )

    def apply_order_items(self, items: Iterable, context: StockChangeContext) -> Dict[str, int]:
        """
        Decrement every line of an order inside the caller's transaction.

        All lines are attempted so the error lists every shortfall at once;
        the caller rolls back when InsufficientStock is raised.
        """
        shortages: List[Dict[str, Any]] = []
        new_levels: Dict[str, int] = {}
        for item in items:
            try:
                new_levels[item.variant_id or item.product_id] = self.decrement(
                    item.product_id, item.variant_id, item.quantity, context
                )
            except InsufficientStock as e:
                shortages.extend(e.items)
        if shortages:
            raise InsufficientStock(shortages)
        return new_levels

    def return_order_items(self, items: Iterable, context: StockChangeContext) -> Dict[str, int]:
        """Compensating increment for every line of an order."""
        new_levels: Dict[str, int] = {}
        for item in items:
            new_levels[item.variant_id or item.product_id] = self.increment(
                item.product_id, item.variant_id, item.quantity, context
            )
        return new_levels
