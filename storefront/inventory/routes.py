import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from storefront.dependencies import require_admin
from storefront.inventory.ledger import StockLedger
from storefront.inventory.repository import InventoryRepository
from storefront.inventory.schemas import (
    CreateProductRequest,
    ProductSchema,
    ReconciliationResponse,
    StockAdjustmentRequest,
    StockAdjustmentResponse,
    StockHistoryResponse,
    StockHistorySchema,
)
from storefront.shared.database import get_db
from storefront.shared.errors import ProductNotFound, StorefrontError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["inventory"])


@router.get("/products", response_model=List[ProductSchema])
def list_products(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
) -> List[ProductSchema]:
    products = InventoryRepository(db).list_products(offset=offset, limit=limit)
    return [ProductSchema.from_product(product) for product in products]


@router.get("/products/{product_id}", response_model=ProductSchema)
def get_product(product_id: str, db: Session = Depends(get_db)) -> ProductSchema:
    product = InventoryRepository(db).get_product(product_id)
    if not product:
        raise ProductNotFound(product_id)
    return ProductSchema.from_product(product)


@router.post("/admin/products", response_model=ProductSchema, status_code=status.HTTP_201_CREATED)
def create_product(
    request: CreateProductRequest,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProductSchema:
    """Create a product (and its variants) for development catalogs."""
    repo = InventoryRepository(db)
    product = repo.create_product(
        request.name,
        request.price,
        stock=0 if request.variants else request.stock,
        description=request.description,
        actor_id=admin_id,
    )
    for variant in request.variants:
        repo.create_variant(product.id, variant.name, stock=variant.stock, price=variant.price, actor_id=admin_id)
    db.commit()
    db.refresh(product)
    return ProductSchema.from_product(product)


@router.post("/admin/inventory/adjust", response_model=StockAdjustmentResponse)
def adjust_stock(
    request: StockAdjustmentRequest,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
) -> StockAdjustmentResponse:
    """Apply a signed admin adjustment (ADJUSTMENT, RESTOCK or DAMAGE)."""
    ledger = StockLedger(db)
    try:
        new_stock = ledger.adjust(
            request.product_id,
            request.variant_id,
            request.quantity,
            request.change_type,
            request.reason,
            actor_id=admin_id,
        )
        db.commit()
    except StorefrontError:
        db.rollback()
        raise
    logger.info(
        f"Admin {admin_id} adjusted {request.product_id} by {request.quantity}",
        extra={"product_id": request.product_id, "variant_id": request.variant_id, "new_stock": new_stock},
    )
    return StockAdjustmentResponse(product_id=request.product_id, variant_id=request.variant_id, new_stock=new_stock)


@router.get("/admin/inventory/reconciliation", response_model=ReconciliationResponse)
def reconciliation(admin_id: str = Depends(require_admin), db: Session = Depends(get_db)) -> ReconciliationResponse:
    """SALE rows that point at no order; non-empty means a crash between decrement and order creation."""
    rows = InventoryRepository(db).find_unassigned_sales()
    return ReconciliationResponse(unassigned_sales=[StockHistorySchema.model_validate(row) for row in rows])


@router.get("/admin/inventory/{product_id}/history", response_model=StockHistoryResponse)
def stock_history(
    product_id: str,
    variant_id: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
) -> StockHistoryResponse:
    repo = InventoryRepository(db)
    current = repo.get_stock_level(product_id, variant_id)
    if current is None:
        raise ProductNotFound(product_id, variant_id)
    rows = repo.get_history(product_id, variant_id, limit=limit)
    return StockHistoryResponse(
        product_id=product_id,
        variant_id=variant_id,
        current_stock=current,
        replayed_stock=repo.replay_stock(product_id, variant_id),
        history=[StockHistorySchema.model_validate(row) for row in rows],
    )
