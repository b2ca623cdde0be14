"""
Batch fingerprint indexing for stock images.

Two jobs that operate on the whole catalogue at once:
    - rebuild_fingerprints: re-read every stored product image and
      recompute its fingerprint (after a hashing change, or to repair
      items whose fingerprint is missing)
    - export_fingerprint_index: write a FAISS binary index of all stored
      fingerprints plus the stock-id mapping, for offline analysis

Per-item failures are logged and counted; they never abort the batch.
"""

import os
import math
import logging

import faiss
import numpy as np

from .fingerprint import FINGERPRINT_LENGTH, compute_fingerprint
from .matcher import pack_fingerprint
from .stock import StockService
from .storage import BlobStorage

logger = logging.getLogger(__name__)


def rebuild_fingerprints(stock_service: StockService, storage: BlobStorage) -> dict:
    """
    Recompute the fingerprint of every stock item that has an image.

    Args:
        stock_service: Service used to list and update stock items.
        storage: Blob storage holding the product images.

    Returns:
        Dict with 'success', 'processed', 'updated', 'skipped' and
        'errors' counts. 'skipped' counts items whose fingerprint was
        already current.
    """
    items = stock_service.with_images()
    processed = 0
    updated = 0
    skipped = 0
    errors = 0

    logger.info(f"Rebuilding fingerprints for {len(items)} stock images")

    for i, item in enumerate(items):
        try:
            image_bytes = storage.read(item.image_path)
            fingerprint = compute_fingerprint(image_bytes)
        except Exception as e:
            logger.warning(f"Failed to fingerprint {item.stock_id} ({item.image_path}): {e}")
            errors += 1
            continue

        processed += 1
        if fingerprint == item.image_hash:
            skipped += 1
        else:
            stock_service.set_fingerprint(item.id, fingerprint)
            updated += 1

        if (i + 1) % 500 == 0:
            logger.info(f"Processed {i + 1}/{len(items)} images")

    logger.info(
        f"Fingerprint rebuild done: {processed} processed, {updated} updated, "
        f"{skipped} unchanged, {errors} errors"
    )

    return {
        "success": errors == 0,
        "processed": processed,
        "updated": updated,
        "skipped": skipped,
        "errors": errors,
    }


def export_fingerprint_index(stock_service: StockService, output_dir: str) -> dict:
    """
    Write all stored fingerprints to a FAISS binary index.

    Creates in output_dir:
        - fingerprints.index: IndexBinaryFlat over packed fingerprints
        - fingerprint_ids.npy: stock item ids, aligned with index rows

    Only fingerprints of the standard length are exported.

    Returns:
        Dict with 'success', 'vectors', 'dimensions' and 'index_path'.
    """
    os.makedirs(output_dir, exist_ok=True)

    items = [
        item for item in stock_service.with_fingerprints()
        if len(item.image_hash) == FINGERPRINT_LENGTH
    ]
    if not items:
        return {"success": False, "error": "No fingerprints to export"}

    dim = int(math.ceil(FINGERPRINT_LENGTH / 8)) * 8
    index = faiss.IndexBinaryFlat(dim)
    index.add(np.vstack([pack_fingerprint(item.image_hash) for item in items]))

    index_path = os.path.join(output_dir, "fingerprints.index")
    faiss.write_index_binary(index, index_path)

    ids_path = os.path.join(output_dir, "fingerprint_ids.npy")
    np.save(ids_path, np.array([item.id for item in items], dtype=np.int64))

    logger.info(f"Exported {len(items)} fingerprints ({dim} bits) to {index_path}")

    return {
        "success": True,
        "vectors": len(items),
        "dimensions": dim,
        "index_path": index_path,
    }
