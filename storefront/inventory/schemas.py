from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront.inventory.models import StockChangeType


class VariantSchema(BaseModel):
    """Variant schema."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price: Decimal
    stock: int


class ProductSchema(BaseModel):
    """Product schema."""

    id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    stock: int
    variants: List[VariantSchema] = []

    @classmethod
    def from_product(cls, product) -> "ProductSchema":
        return cls(
            id=product.id,
            name=product.name,
            description=product.description,
            price=product.price,
            stock=product.effective_stock,
            variants=[
                VariantSchema(id=v.id, name=v.name, price=v.effective_price, stock=v.stock)
                for v in product.variants
            ],
        )


class CreateVariantRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    price: Optional[Decimal] = Field(default=None, gt=0)
    stock: int = Field(default=0, ge=0)


class CreateProductRequest(BaseModel):
    """Request to create a product (development catalog)."""

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    price: Decimal = Field(gt=0)
    stock: int = Field(default=0, ge=0)
    variants: List[CreateVariantRequest] = []


class StockAdjustmentRequest(BaseModel):
    """Admin stock adjustment; positive quantity adds stock, negative removes it."""

    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    change_type: StockChangeType = StockChangeType.ADJUSTMENT
    reason: str = Field(min_length=1, max_length=500)


class StockAdjustmentResponse(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    new_stock: int


class StockHistorySchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: str
    variant_id: Optional[str] = None
    order_id: Optional[str] = None
    change_type: str
    quantity: int
    previous_stock: int
    new_stock: int
    reason: str
    actor_id: Optional[str] = None
    created_at: datetime


class StockHistoryResponse(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    current_stock: int
    replayed_stock: int
    history: List[StockHistorySchema]


class ReconciliationResponse(BaseModel):
    """SALE rows that reference no order."""

    unassigned_sales: List[StockHistorySchema]
