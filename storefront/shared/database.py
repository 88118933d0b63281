import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from storefront.shared.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """Create an engine for the given URL."""
    if database_url.startswith("sqlite"):
        # SQLite is only used for local runs and tests
        return create_engine(database_url, echo=False, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(database_url, echo=False, pool_pre_ping=True)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None) -> None:
    """Initialize database tables."""
    # Model modules register their tables on Base.metadata when imported
    from storefront.inventory import models as inventory_models  # noqa: F401
    from storefront.orders import models as order_models  # noqa: F401
    from storefront.shared import outbox  # noqa: F401

    logger.info("Initializing database...")
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database initialized")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
