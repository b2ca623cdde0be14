import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text,
    event, func,
)
from sqlalchemy.orm import relationship

from .database import Base
from .errors import LedgerImmutableError


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo anyway)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StockAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ADJUST = "ADJUST"
    IMAGE_UPLOAD = "IMAGE_UPLOAD"


class StockItem(Base):
    __tablename__ = "stock_items"

    id = Column(Integer, primary_key=True, index=True)
    stock_id = Column(String(32), unique=True, nullable=False, index=True)  # e.g. FH001
    product = Column(String(255), nullable=False)
    category = Column(String(255), nullable=False, default="")
    quantity = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
    price = Column(Float, nullable=False, default=0.0)
    image_path = Column(String(512), nullable=True)  # blob storage URL
    image_hash = Column(String(64), nullable=True)  # '0'/'1' fingerprint
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    shades = relationship(
        "Shade",
        back_populates="stock_item",
        cascade="all, delete-orphan",
        order_by="Shade.id",
    )

    def __repr__(self):
        return f"<StockItem {self.stock_id} {self.product!r} qty={self.quantity}>"


# Product names are unique regardless of case.
Index("uq_stock_items_product_lower", func.lower(StockItem.__table__.c.product), unique=True)


class Shade(Base):
    __tablename__ = "shades"

    id = Column(Integer, primary_key=True, index=True)
    stock_item_id = Column(
        Integer, ForeignKey("stock_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    color_name = Column(String(255), nullable=False)
    color = Column(String(32), nullable=False, default="#000000")  # hex
    quantity = Column(Integer, nullable=False, default=0)
    unit = Column(String(32), nullable=False, default="pcs")  # Rolls, Pieces, Boxes
    length = Column(Float, nullable=False, default=0.0)
    length_unit = Column(String(32), nullable=False, default="meters")  # Yards, Meters, Inches
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    stock_item = relationship("StockItem", back_populates="shades")

    def __repr__(self):
        return f"<Shade {self.color_name!r} qty={self.quantity}>"


class LedgerEntry(Base):
    """
    One append-only record of an action against a stock item.

    ``stock_id`` is deliberately not a foreign key: the history of an
    item must outlive the item itself. ``stock_code`` and ``product`` are
    copied at write time for the same reason.
    """

    __tablename__ = "stock_ledger"

    id = Column(Integer, primary_key=True, index=True)
    stock_id = Column(Integer, nullable=False, index=True)
    stock_code = Column(String(32), nullable=True)
    product = Column(String(255), nullable=True)
    action = Column(Enum(StockAction, name="stock_action"), nullable=False, default=StockAction.CREATE)
    description = Column(Text, nullable=True)
    old_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)
    performed_by = Column(String(255), nullable=False)
    performed_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_id": self.stock_id,
            "stock_code": self.stock_code,
            "product": self.product,
            "action": self.action.value,
            "description": self.description,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "performed_by": self.performed_by,
            "performed_at": self.performed_at.isoformat() if self.performed_at else None,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }

    def __repr__(self):
        return f"<LedgerEntry {self.action.value} stock={self.stock_id} by={self.performed_by}>"


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} cannot be modified")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} cannot be deleted")
