import logging
import random
from decimal import Decimal

from sqlalchemy.orm import Session

from storefront.inventory.models import Product
from storefront.inventory.repository import InventoryRepository

logger = logging.getLogger(__name__)

# (name, description, price, variant names)
SAMPLE_PRODUCTS = [
    ("Batik Shirt", "Hand-stamped cotton batik shirt", Decimal("249000"), ["S", "M", "L", "XL"]),
    ("Tote Bag", "Canvas tote bag with inner pocket", Decimal("89000"), []),
    ("Linen Scarf", "Lightweight woven linen scarf", Decimal("129000"), ["Indigo", "Sand"]),
    ("Leather Wallet", "Bifold wallet in vegetable-tanned leather", Decimal("199000"), []),
    ("Sarong", "Rayon sarong, one size", Decimal("159000"), []),
    ("Bucket Hat", "Reversible cotton bucket hat", Decimal("99000"), ["Black", "Olive"]),
    ("Rattan Coaster Set", "Set of six handwoven coasters", Decimal("59000"), []),
    ("Kebaya Top", "Embroidered kebaya top", Decimal("349000"), ["S", "M", "L"]),
]


def seed_products(db: Session) -> None:
    """Seed database with sample products."""
    logger.info("Seeding products...")
    repo = InventoryRepository(db)

    created = 0
    for name, description, price, variant_names in SAMPLE_PRODUCTS:
        existing = db.query(Product).filter(Product.name == name).first()
        if existing:
            logger.info(f"Product {name} already exists, skipping")
            continue

        if variant_names:
            product = repo.create_product(name, price, stock=0, description=description, actor_id="seed")
            for variant_name in variant_names:
                repo.create_variant(product.id, variant_name, stock=random.randint(5, 50), actor_id="seed")
        else:
            repo.create_product(name, price, stock=random.randint(10, 100), description=description, actor_id="seed")
        created += 1

    db.commit()
    logger.info(f"Seeded {created} products")
