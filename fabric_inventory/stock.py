"""
Stock items and their shades, mutated as one aggregate.

Every mutation follows the same unit of work: validate, write, commit,
then append one ledger entry with before/after snapshots. Validation
(missing items, duplicate names, unknown shade ids, undecodable images)
happens before anything is written, so a rejected mutation leaves no
partial rows and no ledger entry.
"""

import os
import re
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .errors import DuplicateNameError, NotFoundError
from .fingerprint import compute_fingerprint
from .ledger import StockLedger
from .models import Shade, StockAction, StockItem
from .storage import BlobStorage

logger = logging.getLogger(__name__)

STOCK_ID_PREFIX = os.environ.get("STOCK_ID_PREFIX", "FH")

TRACKED_FIELDS = ("product", "category", "quantity", "cost", "price")
SHADE_FIELDS = ("color_name", "color", "quantity", "unit", "length", "length_unit")

SHADE_DEFAULTS = {"color": "#000000", "unit": "pcs", "length_unit": "meters"}


def _to_int(value, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _to_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce(field: str, value):
    if field == "quantity":
        return _to_int(value)
    if field in ("cost", "price", "length"):
        return _to_float(value)
    return value


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _describe(field: str, old, new) -> str:
    if field == "quantity":
        return f"{field}: {old} → {new} ({new - old:+d})"
    return f"{field}: {old} → {new}"


def shade_snapshot(shade: Shade) -> Dict[str, Any]:
    return {
        "id": shade.id,
        "stock_item_id": shade.stock_item_id,
        "color_name": shade.color_name,
        "color": shade.color,
        "quantity": shade.quantity,
        "unit": shade.unit,
        "length": shade.length,
        "length_unit": shade.length_unit,
        "created_at": _iso(shade.created_at),
        "updated_at": _iso(shade.updated_at),
    }


def stock_snapshot(item: StockItem) -> Dict[str, Any]:
    """JSON-ready view of a stock item and its shades, as stored in the ledger."""
    return {
        "id": item.id,
        "stock_id": item.stock_id,
        "product": item.product,
        "category": item.category,
        "quantity": item.quantity,
        "cost": item.cost,
        "price": item.price,
        "image_path": item.image_path,
        "image_hash": item.image_hash,
        "created_at": _iso(item.created_at),
        "updated_at": _iso(item.updated_at),
        "shades": [shade_snapshot(shade) for shade in item.shades],
    }


class StockService:
    """
    Mutations and queries over the stock aggregate.

    Args:
        session: SQLAlchemy session for this unit of work.
        ledger: Ledger receiving one entry per mutation.
        storage: Blob storage for product images (required for uploads).
        id_prefix: Prefix for generated stock codes.
    """

    def __init__(self,
                 session: Session,
                 ledger: StockLedger,
                 storage: Optional[BlobStorage] = None,
                 id_prefix: str = None):
        self.db = session
        self.ledger = ledger
        self.storage = storage
        self.id_prefix = id_prefix or STOCK_ID_PREFIX

    # ---- queries ----

    def get(self, item_id: int) -> StockItem:
        item = self.db.get(StockItem, item_id)
        if item is None:
            raise NotFoundError("Stock", item_id)
        return item

    def get_shade(self, shade_id: int) -> Shade:
        shade = self.db.get(Shade, shade_id)
        if shade is None:
            raise NotFoundError("Shade", shade_id)
        return shade

    def _with_shades(self):
        return self.db.query(StockItem).options(selectinload(StockItem.shades))

    def list_all(self) -> List[StockItem]:
        return self._with_shades().order_by(StockItem.created_at.desc(), StockItem.id.desc()).all()

    def search(self, name: str = None, category: str = None, stock_code: str = None) -> List[StockItem]:
        """Case-insensitive substring search over product, category and stock code."""
        query = self._with_shades()
        if name:
            query = query.filter(StockItem.product.ilike(f"%{name}%"))
        if category:
            query = query.filter(StockItem.category.ilike(f"%{category}%"))
        if stock_code:
            query = query.filter(StockItem.stock_id.ilike(f"%{stock_code}%"))
        return query.order_by(StockItem.id).all()

    def low_stock(self, threshold: int = 10) -> List[StockItem]:
        return (
            self._with_shades()
            .filter(StockItem.quantity <= threshold)
            .order_by(StockItem.quantity.asc(), StockItem.id)
            .all()
        )

    def with_fingerprints(self) -> List[StockItem]:
        return self._with_shades().filter(StockItem.image_hash.isnot(None)).order_by(StockItem.id).all()

    def with_images(self) -> List[StockItem]:
        return self._with_shades().filter(StockItem.image_path.isnot(None)).order_by(StockItem.id).all()

    # ---- helpers ----

    def _commit(self):
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def _ensure_unique_product(self, product: str, exclude_id: int = None):
        query = self.db.query(StockItem.id).filter(func.lower(StockItem.product) == product.lower())
        if exclude_id is not None:
            query = query.filter(StockItem.id != exclude_id)
        if query.first() is not None:
            raise DuplicateNameError(product)

    def generate_stock_id(self) -> str:
        """Next sequential stock code, e.g. FH001, FH002, ..."""
        pattern = re.compile(rf"^{re.escape(self.id_prefix)}(\d+)$")
        codes = self.db.query(StockItem.stock_id).filter(
            StockItem.stock_id.like(f"{self.id_prefix}%")
        ).all()

        next_number = 1
        for (code,) in codes:
            match = pattern.match(code)
            if match:
                next_number = max(next_number, int(match.group(1)) + 1)
        return f"{self.id_prefix}{next_number:03d}"

    @staticmethod
    def _new_shade(data: Dict[str, Any]) -> Shade:
        color_name = data.get("color_name")
        if not color_name:
            raise ValueError("Shade color_name is required")
        return Shade(
            color_name=color_name,
            color=data.get("color") or SHADE_DEFAULTS["color"],
            quantity=_to_int(data.get("quantity")),
            unit=data.get("unit") or SHADE_DEFAULTS["unit"],
            length=_to_float(data.get("length")),
            length_unit=data.get("length_unit") or SHADE_DEFAULTS["length_unit"],
        )

    @staticmethod
    def _apply_fields(target, data: Dict[str, Any], fields) -> List[str]:
        changes = []
        for field in fields:
            if data.get(field) is None:
                continue
            new_value = _coerce(field, data[field])
            old_value = getattr(target, field)
            if new_value != old_value:
                setattr(target, field, new_value)
                changes.append(_describe(field, old_value, new_value))
        return changes

    def _sync_shades(self, item: StockItem, shades_data: List[Dict[str, Any]]) -> List[str]:
        """
        Diff a full shade list against the item's shades.

        Entries with a known id update that shade, entries without an id
        create one, and existing shades missing from the list are deleted.
        """
        existing = {shade.id: shade for shade in item.shades}
        seen = set()
        details = []

        for data in shades_data:
            shade_id = data.get("id")
            if shade_id is None:
                shade = self._new_shade(data)
                item.shades.append(shade)
                details.append(f"New shade: {shade.color_name} ({shade.quantity})")
                continue

            shade = existing[shade_id]
            changes = self._apply_fields(shade, data, SHADE_FIELDS)
            if changes:
                details.append(f"{shade.color_name}: {', '.join(changes)}")
            seen.add(shade_id)

        for shade_id, shade in existing.items():
            if shade_id not in seen:
                item.shades.remove(shade)
                details.append(f"Deleted shade: {shade.color_name}")

        return details

    # ---- mutations ----

    def create(self, data: Dict[str, Any], actor: str = "system") -> StockItem:
        """
        Create a stock item, optionally with shades.

        Raises:
            DuplicateNameError: If the product name is taken (any case).
            ValueError: If the product name or a shade color_name is missing.
        """
        product = (data.get("product") or "").strip()
        if not product:
            raise ValueError("Product name is required")

        self._ensure_unique_product(product)
        shades = [self._new_shade(shade_data) for shade_data in data.get("shades") or []]

        item = StockItem(
            stock_id=self.generate_stock_id(),
            product=product,
            category=data.get("category") or "",
            quantity=_to_int(data.get("quantity")),
            cost=_to_float(data.get("cost")),
            price=_to_float(data.get("price")),
            shades=shades,
        )
        self.db.add(item)
        self._commit()

        logger.info(f"Created stock {item.stock_id} ({item.product}) with {len(shades)} shades")
        self.ledger.record(
            item, StockAction.CREATE, actor,
            f"Created stock: {item.product} ({item.stock_id}) with {len(shades)} shades",
            None, stock_snapshot(item),
        )
        return item

    def update(self, item_id: int, data: Dict[str, Any], actor: str = "system") -> StockItem:
        """
        Update stock fields and, when ``data['shades']`` is a list, sync shades.

        Raises:
            NotFoundError: If the item or a referenced shade id does not exist.
            DuplicateNameError: If renaming onto another item's product name.
            ValueError: If the product name is blank or a new shade has no color_name.
        """
        item = self.get(item_id)
        old_data = stock_snapshot(item)
        data = dict(data)

        if data.get("product") is not None:
            new_product = str(data["product"]).strip()
            if not new_product:
                raise ValueError("Product name is required")
            data["product"] = new_product
            if new_product.lower() != item.product.lower():
                self._ensure_unique_product(new_product, exclude_id=item.id)

        shades_data = data.get("shades")
        if isinstance(shades_data, list):
            known = {shade.id for shade in item.shades}
            for shade_data in shades_data:
                if shade_data.get("id") is None:
                    if not shade_data.get("color_name"):
                        raise ValueError("Shade color_name is required")
                elif shade_data["id"] not in known:
                    raise NotFoundError("Shade", shade_data["id"])

        try:
            stock_changes = self._apply_fields(item, data, TRACKED_FIELDS)
            shade_changes = self._sync_shades(item, shades_data) if isinstance(shades_data, list) else []
        except Exception:
            # the session must not carry a half-applied update
            self.db.rollback()
            raise
        self._commit()

        parts = []
        if stock_changes:
            parts.append(f"Stock: {', '.join(stock_changes)}")
        if shade_changes:
            parts.append(f"Shades: {', '.join(shade_changes)}")
        if parts:
            description = f"Updated {item.product} ({item.stock_id}): {' | '.join(parts)}"
        else:
            description = f"Updated {item.product} (no changes detected)"

        logger.info(description)
        self.ledger.record(item, StockAction.UPDATE, actor, description, old_data, stock_snapshot(item))
        return item

    def adjust(self, item_id: int, delta: int, actor: str = "system", notes: str = None) -> StockItem:
        """
        Add ``delta`` (may be negative) to the item's quantity.

        Raises:
            ValueError: If ``delta`` is zero.
            NotFoundError: If the item does not exist.
        """
        if int(delta) == 0:
            raise ValueError("Adjustment delta must be non-zero")
        item = self.get(item_id)
        old_data = stock_snapshot(item)
        old_quantity = item.quantity

        item.quantity = old_quantity + int(delta)
        self._commit()

        direction = "INCREMENT" if delta > 0 else "DECREMENT"
        description = (
            f"Stock {direction}: {item.product} | {abs(int(delta))} units | "
            f"From: {old_quantity} → To: {item.quantity} | "
            f"Notes: {notes or 'No notes provided'}"
        )
        logger.info(description)
        self.ledger.record(item, StockAction.ADJUST, actor, description, old_data, stock_snapshot(item))
        return item

    def remove(self, item_id: int, actor: str = "system") -> None:
        """Delete an item, its shades and its image blob."""
        item = self.get(item_id)
        old_data = stock_snapshot(item)
        shade_count = len(item.shades)
        image_path = item.image_path

        self.db.delete(item)
        self._commit()

        if image_path and self.storage is not None:
            self.storage.delete(image_path)

        logger.info(f"Deleted stock {item.stock_id} ({item.product})")
        self.ledger.record(
            item, StockAction.DELETE, actor,
            f"DELETED: {item.product} ({item.stock_id}) and {shade_count} associated shades",
            old_data, None,
        )

    def upload_image(self, item_id: int, image_bytes: bytes, actor: str = "system",
                     suffix: str = ".png") -> StockItem:
        """
        Store a product image and index its fingerprint.

        The previous image blob is deleted after the new one is saved.
        Concurrent uploads to the same item are last-writer-wins; an
        interleaving can delete the blob of the upload that lost.

        Raises:
            NotFoundError: If the item does not exist.
            ImageDecodeError: If the image cannot be decoded; nothing is stored.
        """
        if self.storage is None:
            raise RuntimeError("No blob storage configured for image uploads")

        item = self.get(item_id)
        fingerprint = compute_fingerprint(image_bytes)
        old_data = {"image_path": item.image_path, "image_hash": item.image_hash}

        url = self.storage.store(image_bytes, folder="stock", suffix=suffix)
        item.image_path = url
        item.image_hash = fingerprint
        try:
            self._commit()
        except SQLAlchemyError:
            self.storage.delete(url)
            raise

        if old_data["image_path"] and old_data["image_path"] != url:
            self.storage.delete(old_data["image_path"])

        logger.info(f"Indexed image for {item.stock_id}: {url}")
        self.ledger.record(
            item, StockAction.IMAGE_UPLOAD, actor, "Image uploaded and indexed",
            old_data, {"image_path": url, "image_hash": fingerprint},
        )
        return item

    def set_fingerprint(self, item_id: int, fingerprint: str) -> StockItem:
        """Overwrite a stored fingerprint without touching the image (re-indexing)."""
        item = self.get(item_id)
        item.image_hash = fingerprint
        self._commit()
        return item

    # ---- shade mutations ----

    def add_shade(self, item_id: int, data: Dict[str, Any], actor: str = "system") -> Shade:
        item = self.get(item_id)
        shade = self._new_shade(data)
        item.shades.append(shade)
        self._commit()

        self.ledger.record(
            item, StockAction.CREATE, actor,
            f"Created shade {shade.color_name} for stock {item.product}",
            None, shade_snapshot(shade),
        )
        return shade

    def update_shade(self, shade_id: int, data: Dict[str, Any], actor: str = "system") -> Shade:
        shade = self.get_shade(shade_id)
        item = shade.stock_item
        old_data = shade_snapshot(shade)

        changes = self._apply_fields(shade, data, SHADE_FIELDS)
        self._commit()

        description = f"Updated shade {shade.color_name} for stock {item.product}"
        if changes:
            description += f": {', '.join(changes)}"
        self.ledger.record(item, StockAction.UPDATE, actor, description, old_data, shade_snapshot(shade))
        return shade

    def remove_shade(self, shade_id: int, actor: str = "system") -> None:
        shade = self.get_shade(shade_id)
        item = shade.stock_item
        old_data = shade_snapshot(shade)

        item.shades.remove(shade)
        self._commit()

        self.ledger.record(
            item, StockAction.DELETE, actor,
            f"Deleted shade {shade.color_name} from stock {item.product}",
            old_data, None,
        )
