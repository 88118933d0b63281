import logging
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront.inventory.models import Product, StockChangeType, StockHistory, Variant
from storefront.orders.models import Order

logger = logging.getLogger(__name__)


class InventoryRepository:
    """Repository for catalog rows and the stock audit trail."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def create_product(
        self,
        name: str,
        price: Decimal,
        stock: int = 0,
        description: Optional[str] = None,
        product_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Product:
        """Create a new product, recording its opening stock in the history."""
        product = Product(
            id=product_id or f"PROD-{uuid4().hex[:12].upper()}",
            name=name,
            description=description,
            price=Decimal(price),
            stock=stock,
        )
        self.db.add(product)
        self.db.flush()
        if stock:
            self.add_history(product.id, None, None, StockChangeType.RESTOCK, stock, 0, stock, "Initial stock", actor_id)
        logger.info(f"Created product {product.id}: {name}, stock: {stock}")
        return product

    def create_variant(
        self,
        product_id: str,
        name: str,
        stock: int = 0,
        price: Optional[Decimal] = None,
        variant_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Variant:
        """Create a variant under an existing product."""
        variant = Variant(
            id=variant_id or f"VAR-{uuid4().hex[:12].upper()}",
            product_id=product_id,
            name=name,
            price=Decimal(price) if price is not None else None,
            stock=stock,
        )
        self.db.add(variant)
        self.db.flush()
        if stock:
            self.add_history(product_id, variant.id, None, StockChangeType.RESTOCK, stock, 0, stock, "Initial stock", actor_id)
        logger.info(f"Created variant {variant.id} of {product_id}: {name}, stock: {stock}")
        return variant

    def get_product(self, product_id: str) -> Optional[Product]:
        """Get product by ID."""
        return self.db.query(Product).filter(Product.id == product_id).first()

    def get_variant(self, product_id: str, variant_id: str) -> Optional[Variant]:
        """Get a variant, only if it belongs to the given product."""
        return (
            self.db.query(Variant)
            .filter(Variant.id == variant_id, Variant.product_id == product_id)
            .first()
        )

    def list_products(self, offset: int = 0, limit: int = 50) -> List[Product]:
        return self.db.query(Product).order_by(Product.created_at).offset(offset).limit(limit).all()

    def get_stock_level(self, product_id: str, variant_id: Optional[str] = None) -> Optional[int]:
        """Get current stock level for a product or variant."""
        if variant_id:
            variant = self.get_variant(product_id, variant_id)
            return variant.stock if variant else None
        product = self.get_product(product_id)
        return product.stock if product else None

    def add_history(
        self,
        product_id: str,
        variant_id: Optional[str],
        order_id: Optional[str],
        change_type: StockChangeType,
        quantity: int,
        previous_stock: int,
        new_stock: int,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> StockHistory:
        """Append one audit row. History rows are never updated or deleted."""
        record = StockHistory(
            product_id=product_id,
            variant_id=variant_id,
            order_id=order_id,
            change_type=StockChangeType(change_type).value,
            quantity=quantity,
            previous_stock=previous_stock,
            new_stock=new_stock,
            reason=reason,
            actor_id=actor_id,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def get_history(
        self,
        product_id: str,
        variant_id: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[StockHistory]:
        """History for a product's own counter (or one variant), oldest first."""
        query = self.db.query(StockHistory).filter(StockHistory.product_id == product_id)
        if variant_id:
            query = query.filter(StockHistory.variant_id == variant_id)
        else:
            query = query.filter(StockHistory.variant_id.is_(None))
        if order_id:
            query = query.filter(StockHistory.order_id == order_id)
        query = query.order_by(StockHistory.created_at, StockHistory.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    def get_order_history(self, order_id: str) -> List[StockHistory]:
        return (
            self.db.query(StockHistory)
            .filter(StockHistory.order_id == order_id)
            .order_by(StockHistory.created_at, StockHistory.id)
            .all()
        )

    def replay_stock(self, product_id: str, variant_id: Optional[str] = None) -> int:
        """Recompute a counter by summing its audit deltas."""
        query = self.db.query(func.coalesce(func.sum(StockHistory.quantity), 0)).filter(
            StockHistory.product_id == product_id
        )
        if variant_id:
            query = query.filter(StockHistory.variant_id == variant_id)
        else:
            query = query.filter(StockHistory.variant_id.is_(None))
        return int(query.scalar())

    def verify_history(self, product_id: str, variant_id: Optional[str] = None) -> bool:
        """True when the audit trail reproduces the stored counter."""
        current = self.get_stock_level(product_id, variant_id)
        replayed = self.replay_stock(product_id, variant_id)
        if current != replayed:
            logger.error(
                f"Stock history mismatch for {product_id}/{variant_id}: stored {current}, replayed {replayed}",
                extra={"product_id": product_id, "variant_id": variant_id},
            )
            return False
        return True

    def find_unassigned_sales(self) -> List[StockHistory]:
        """SALE rows whose order id has no matching order (reconciliation signal)."""
        return (
            self.db.query(StockHistory)
            .outerjoin(Order, Order.id == StockHistory.order_id)
            .filter(StockHistory.change_type == StockChangeType.SALE.value, Order.id.is_(None))
            .order_by(StockHistory.created_at, StockHistory.id)
            .all()
        )
