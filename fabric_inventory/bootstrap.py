"""
Startup wiring for the inventory core.

``build_inventory()`` reads the environment once and builds the shared,
long-lived pieces: database engine and session factory, ledger, blob
storage and the optional cloud vision comparator. Per-request services
(stock, search, analytics) are then created inside ``unit_of_work()``,
one SQLAlchemy session each.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from .analytics import InventoryAnalytics
from .database import create_db_engine, create_session_factory, init_db, session_scope
from .ledger import StockLedger
from .search import ImageSearchEngine
from .stock import StockService
from .storage import BlobStorage, build_blob_storage
from .vision import CloudVisionComparator

logger = logging.getLogger(__name__)


class UnitOfWork:
    """Services bound to a single session."""

    def __init__(self, stock: StockService, search: ImageSearchEngine, analytics: InventoryAnalytics):
        self.stock = stock
        self.search = search
        self.analytics = analytics


class Inventory:
    """
    Long-lived inventory components.

    Args:
        engine: SQLAlchemy engine.
        session_factory: Session factory bound to ``engine``.
        ledger: Stock ledger (writes through its own sessions).
        storage: Blob storage for product images.
        vision: Cloud vision comparator; may have no detector.
    """

    def __init__(self, engine, session_factory, ledger: StockLedger,
                 storage: BlobStorage, vision: CloudVisionComparator):
        self.engine = engine
        self.session_factory = session_factory
        self.ledger = ledger
        self.storage = storage
        self.vision = vision

    @contextmanager
    def unit_of_work(self):
        """Yield a UnitOfWork whose services share one session."""
        with session_scope(self.session_factory) as db:
            stock = StockService(db, self.ledger, self.storage)
            yield UnitOfWork(
                stock=stock,
                search=ImageSearchEngine(stock, storage=self.storage, vision=self.vision),
                analytics=InventoryAnalytics(stock, self.ledger),
            )


def build_inventory(database_url: Optional[str] = None,
                    upload_dir: Optional[str] = None,
                    vision: Optional[CloudVisionComparator] = None) -> Inventory:
    """
    Build the inventory from environment configuration.

    Args:
        database_url: Overrides DATABASE_URL.
        upload_dir: Overrides UPLOAD_DIR for local blob storage.
        vision: Overrides the Rekognition-backed comparator.

    Returns:
        Ready-to-use Inventory with tables created.
    """
    engine = create_db_engine(database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    storage = build_blob_storage(upload_dir)
    if vision is None:
        vision = CloudVisionComparator.from_env()

    logger.info(
        f"Inventory ready: storage={type(storage).__name__}, "
        f"vision={'enabled' if vision.is_available() else 'disabled'}"
    )
    return Inventory(
        engine=engine,
        session_factory=session_factory,
        ledger=StockLedger(session_factory),
        storage=storage,
        vision=vision,
    )
