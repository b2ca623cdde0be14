"""
Tiered image search over the stock catalogue.

Orchestrates the two-tier search policy:
    1. Perceptual hash: fingerprint the query and rank every stock item
       with a stored fingerprint by Hamming similarity.
    2. Cloud vision: only if tier 1 found nothing and a label detector
       is configured, compare the query against every stock image.

Tier 1 is local and cheap; tier 2 costs one provider call per image pair,
so it runs sequentially and a failure on one item only skips that item.
"""

import os
import enum
import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .fingerprint import compute_fingerprint
from .matcher import HASH_MATCH_THRESHOLD, rank
from .models import StockItem
from .stock import StockService, stock_snapshot
from .storage import BlobStorage
from .vision import VISION_MATCH_THRESHOLD, CloudVisionComparator

logger = logging.getLogger(__name__)

# Directory for temporary query uploads; system temp dir when unset.
SEARCH_UPLOAD_DIR = os.environ.get("SEARCH_UPLOAD_DIR") or None


class SearchTier(str, enum.Enum):
    HASH = "hash"
    VISION = "vision"


@dataclass
class StockMatch:
    stock: StockItem
    similarity: int
    tier: SearchTier
    explanation: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = stock_snapshot(self.stock)
        result.update({
            "similarity": self.similarity,
            "search_method": self.tier.value,
        })
        if self.tier == SearchTier.VISION:
            result["vision_explanation"] = self.explanation
            result["vision_description"] = self.description
        return result


def discard_upload(path: str):
    """Remove a temporary upload, logging (not raising) if that fails."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Failed to cleanup search image {path}: {e}")


@contextmanager
def temporary_upload(data: bytes, suffix: str = ".png"):
    """
    Write query bytes to a temporary file for the duration of a block.

    The file is removed on every exit path, including exceptions and
    KeyboardInterrupt.
    """
    fd, path = tempfile.mkstemp(suffix=suffix, prefix="search-", dir=SEARCH_UPLOAD_DIR)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        yield path
    finally:
        discard_upload(path)


class ImageSearchEngine:
    """
    Finds stock items whose product image resembles a query image.

    Args:
        stock_service: Source of stock items and their fingerprints.
        storage: Blob storage used to read stock images for tier 2.
        vision: Optional label-detection comparator for tier 2.
        hash_threshold: Minimum similarity for tier 1 matches.
        vision_threshold: Minimum similarity for tier 2 matches.
    """

    def __init__(self,
                 stock_service: StockService,
                 storage: Optional[BlobStorage] = None,
                 vision: Optional[CloudVisionComparator] = None,
                 hash_threshold: float = None,
                 vision_threshold: float = None):
        self.stock_service = stock_service
        self.storage = storage
        self.vision = vision
        self.hash_threshold = HASH_MATCH_THRESHOLD if hash_threshold is None else hash_threshold
        self.vision_threshold = VISION_MATCH_THRESHOLD if vision_threshold is None else vision_threshold

    def search_by_image(self, query_bytes: bytes) -> List[StockMatch]:
        """
        Search for stock items matching a query image.

        Args:
            query_bytes: Encoded PNG, JPEG or WEBP query image.

        Returns:
            Matches sorted by similarity (highest first), all from the
            same tier. Empty if neither tier matched.

        Raises:
            ImageDecodeError: If the query image cannot be fingerprinted.
        """
        query_fingerprint = compute_fingerprint(query_bytes)

        matches = self._hash_tier(query_fingerprint)
        if matches:
            logger.info(f"Found {len(matches)} matches using hash search")
            return matches

        logger.info("No hash matches found, trying cloud vision fallback")
        if self.vision is None or not self.vision.is_available():
            logger.info("Cloud vision not available, returning empty results")
            return []

        return self._vision_tier(query_bytes)

    def search_by_photo(self, upload_path: str) -> List[StockMatch]:
        """
        Search with a query image already saved to disk by the upload layer.

        Takes ownership of ``upload_path``: the file is deleted on every
        exit path (results, no results, errors, cancellation).
        """
        try:
            with open(upload_path, "rb") as f:
                query_bytes = f.read()
            return self.search_by_image(query_bytes)
        finally:
            discard_upload(upload_path)

    def _hash_tier(self, query_fingerprint: str) -> List[StockMatch]:
        items = {
            item.id: item for item in self.stock_service.with_fingerprints()
            if len(item.image_hash) == len(query_fingerprint)
        }
        candidates = [(item_id, item.image_hash) for item_id, item in items.items()]

        ranked = rank(query_fingerprint, candidates, threshold=self.hash_threshold)
        logger.debug(f"Hash search: {len(candidates)} candidates → {len(ranked)} results")

        return [
            StockMatch(stock=items[item_id], similarity=similarity, tier=SearchTier.HASH)
            for item_id, similarity in ranked
        ]

    def _vision_tier(self, query_bytes: bytes) -> List[StockMatch]:
        if self.storage is None:
            logger.warning("No blob storage configured, cannot load stock images for vision search")
            return []

        items = self.stock_service.with_images()
        if not items:
            logger.info("No stocks with images found")
            return []

        results = []
        for item in items:
            try:
                stock_image = self.storage.read(item.image_path)
                comparison = self.vision.compare(query_bytes, stock_image)
            except Exception as e:
                logger.error(f"Error comparing with stock {item.id}: {e}")
                continue

            if comparison.similarity >= self.vision_threshold:
                results.append(StockMatch(
                    stock=item,
                    similarity=comparison.similarity,
                    tier=SearchTier.VISION,
                    explanation=comparison.explanation,
                ))

        results.sort(key=lambda m: -m.similarity)

        if results:
            description = self._describe_query(query_bytes)
            for match in results:
                match.description = description

        logger.info(
            f"Vision search complete: {len(items)} candidates → {len(results)} results"
        )
        return results

    def _describe_query(self, query_bytes: bytes) -> Optional[str]:
        try:
            return self.vision.analyze_image(query_bytes)
        except Exception as e:
            logger.warning(f"Query image analysis failed: {e}")
            return None
