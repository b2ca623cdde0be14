"""
Hamming-distance similarity ranking for perceptual fingerprints.

Fingerprints are packed into bytes and searched with a FAISS binary
index, which computes exact Hamming distances. Only fingerprints with the
same bit length as the query are compared; anything else is excluded
rather than padded or truncated.

The match threshold is configurable via HASH_MATCH_THRESHOLD.
"""

import os
import math
import logging
from typing import Any, List, Sequence, Tuple

import faiss
import numpy as np

from .fingerprint import is_valid_fingerprint

logger = logging.getLogger(__name__)

# Minimum similarity (percent) for a hash-tier match.
HASH_MATCH_THRESHOLD = float(os.environ.get("HASH_MATCH_THRESHOLD", "60"))


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def _to_bits(fingerprint: str) -> np.ndarray:
    return np.frombuffer(fingerprint.encode("ascii"), dtype=np.uint8) - ord("0")


def pack_fingerprint(fingerprint: str) -> np.ndarray:
    """
    Pack a '0'/'1' string into a uint8 vector for FAISS.

    Trailing bits are zero-padded to a whole byte; since query and
    candidates are padded identically, Hamming distance is unaffected.
    """
    return np.packbits(_to_bits(fingerprint))


def hamming_distance(a: str, b: str) -> int:
    """
    Count differing bit positions between two fingerprints.

    Raises:
        ValueError: If the fingerprints differ in length.
    """
    if len(a) != len(b):
        raise ValueError(
            f"Fingerprint length {len(a)} doesn't match length {len(b)}"
        )
    return int(np.count_nonzero(_to_bits(a) != _to_bits(b)))


def similarity_percent(a: str, b: str) -> int:
    """Similarity of two equal-length fingerprints as a rounded percentage."""
    if not a:
        raise ValueError("Cannot compare empty fingerprints")
    distance = hamming_distance(a, b)
    return round_half_up((1 - distance / len(a)) * 100)


def hamming_distances(query: str, fingerprints: Sequence[str]) -> np.ndarray:
    """
    Hamming distance from the query to each fingerprint, in input order.

    Args:
        query: Query fingerprint.
        fingerprints: Fingerprints with the same length as the query.

    Returns:
        int64 array of distances aligned with ``fingerprints``.
    """
    if not fingerprints:
        return np.array([], dtype=np.int64)

    dim = int(math.ceil(len(query) / 8)) * 8
    index = faiss.IndexBinaryFlat(dim)
    index.add(np.vstack([pack_fingerprint(fp) for fp in fingerprints]))

    query_codes = pack_fingerprint(query).reshape(1, -1)
    distances, labels = index.search(query_codes, len(fingerprints))

    # FAISS returns neighbours nearest-first; put them back in input order
    aligned = np.empty(len(fingerprints), dtype=np.int64)
    aligned[labels[0]] = distances[0]
    return aligned


def rank(query: str,
         candidates: Sequence[Tuple[Any, str]],
         threshold: float = None) -> List[Tuple[Any, int]]:
    """
    Rank stored fingerprints by similarity to a query fingerprint.

    Args:
        query: Query fingerprint ('0'/'1' string).
        candidates: (id, stored_fingerprint) pairs.
        threshold: Minimum similarity percent to keep a candidate.
            Defaults to HASH_MATCH_THRESHOLD.

    Returns:
        (id, similarity_percent) pairs, highest similarity first. Ties
        keep their input order.
    """
    threshold = HASH_MATCH_THRESHOLD if threshold is None else threshold

    if not is_valid_fingerprint(query):
        raise ValueError("Query fingerprint must be a non-empty '0'/'1' string")

    comparable = [
        (ident, fp) for ident, fp in candidates
        if fp is not None and len(fp) == len(query) and is_valid_fingerprint(fp)
    ]
    excluded = len(candidates) - len(comparable)
    if excluded:
        logger.debug(f"Excluded {excluded} candidates with incompatible fingerprints")

    distances = hamming_distances(query, [fp for _, fp in comparable])

    results = []
    for (ident, _), distance in zip(comparable, distances):
        similarity = (1 - int(distance) / len(query)) * 100
        if similarity >= threshold:
            results.append((ident, round_half_up(similarity)))

    # sorted() is stable, so equal scores stay in input order
    return sorted(results, key=lambda x: -x[1])
