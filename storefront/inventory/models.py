import enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from storefront.shared.database import Base, utcnow


class StockChangeType(str, enum.Enum):
    SALE = "SALE"
    RESTOCK = "RESTOCK"
    ADJUSTMENT = "ADJUSTMENT"
    DAMAGE = "DAMAGE"
    REFUND = "REFUND"


ADMIN_CHANGE_TYPES = (StockChangeType.ADJUSTMENT, StockChangeType.RESTOCK, StockChangeType.DAMAGE)


class Product(Base):
    """Product model with optimistic locking for stock management."""

    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(String(1000), nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)  # unused for sale once variants exist
    version = Column(Integer, default=0, nullable=False)  # Optimistic lock
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    variants = relationship("Variant", back_populates="product", order_by="Variant.created_at")

    @property
    def has_variants(self) -> bool:
        return len(self.variants) > 0

    @property
    def effective_stock(self) -> int:
        """Sellable units: the variant total for variant-bearing products."""
        if self.has_variants:
            return sum(variant.stock for variant in self.variants)
        return self.stock


class Variant(Base):
    """Sellable variant of a product (size, colour, ...)."""

    __tablename__ = "variants"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_variants_stock_non_negative"),)

    id = Column(String(64), primary_key=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=True)  # falls back to the product price
    stock = Column(Integer, nullable=False, default=0)
    version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    product = relationship("Product", back_populates="variants")

    @property
    def effective_price(self):
        return self.price if self.price is not None else self.product.price


class StockHistory(Base):
    """Append-only audit record of one stock change."""

    __tablename__ = "stock_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False, index=True)
    variant_id = Column(String(64), ForeignKey("variants.id"), nullable=True, index=True)
    order_id = Column(String(64), nullable=True, index=True)
    change_type = Column(String(20), nullable=False)
    quantity = Column(Integer, nullable=False)  # signed delta
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    actor_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
