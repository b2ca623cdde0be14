"""Tests for Hamming similarity ranking."""

import pytest

from fabric_inventory.matcher import (
    hamming_distance,
    hamming_distances,
    rank,
    round_half_up,
    similarity_percent,
)


def flip(fingerprint: str, count: int) -> str:
    """Flip the first ``count`` bits of a fingerprint."""
    flipped = "".join("1" if c == "0" else "0" for c in fingerprint[:count])
    return flipped + fingerprint[count:]


BASE = "0110" * 16  # 64 bits


class TestHammingDistance:
    """Tests for bitwise distance and similarity."""

    def test_identical(self):
        assert hamming_distance(BASE, BASE) == 0

    def test_counts_flipped_bits(self):
        assert hamming_distance(BASE, flip(BASE, 10)) == 10

    def test_symmetric(self):
        other = flip(BASE, 7)
        assert similarity_percent(BASE, other) == similarity_percent(other, BASE)

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            hamming_distance(BASE, BASE[:32])

    def test_self_similarity(self):
        assert similarity_percent(BASE, BASE) == 100

    def test_rounding_half_up(self):
        # 8 of 64 bits differ: 87.5% -> 88
        assert similarity_percent(BASE, flip(BASE, 8)) == 88

    def test_round_half_up(self):
        assert round_half_up(62.5) == 63
        assert round_half_up(62.4) == 62


class TestHammingDistances:
    """Tests for the FAISS-backed batch distance computation."""

    def test_aligned_with_input_order(self):
        fingerprints = [flip(BASE, 20), BASE, flip(BASE, 3)]
        distances = hamming_distances(BASE, fingerprints)
        assert list(distances) == [20, 0, 3]

    def test_non_byte_aligned_length(self):
        query = "1010101010"
        distances = hamming_distances(query, ["1010101011", query])
        assert list(distances) == [1, 0]

    def test_empty(self):
        assert len(hamming_distances(BASE, [])) == 0


class TestRank:
    """Tests for threshold filtering and ordering."""

    def test_sorted_descending(self):
        candidates = [(1, flip(BASE, 20)), (2, BASE), (3, flip(BASE, 5))]
        ranked = rank(BASE, candidates, threshold=0)
        assert [ident for ident, _ in ranked] == [2, 3, 1]
        assert ranked[0][1] == 100

    def test_ties_keep_input_order(self):
        candidates = [(7, BASE), (3, BASE), (5, BASE)]
        ranked = rank(BASE, candidates)
        assert ranked == [(7, 100), (3, 100), (5, 100)]

    def test_threshold_applies_to_raw_similarity(self):
        # 26 bits differ: 59.375% is below 60 even though it is close
        # 25 bits differ: 60.9375% passes and reports 61
        candidates = [(1, flip(BASE, 26)), (2, flip(BASE, 25))]
        ranked = rank(BASE, candidates, threshold=60)
        assert ranked == [(2, 61)]

    def test_different_lengths_never_matched(self):
        candidates = [(1, BASE[:32]), (2, BASE + "0"), (3, BASE)]
        ranked = rank(BASE, candidates, threshold=0)
        assert ranked == [(3, 100)]

    def test_invalid_candidates_excluded(self):
        candidates = [(1, None), (2, "x" * 64), (3, BASE)]
        assert rank(BASE, candidates, threshold=0) == [(3, 100)]

    def test_invalid_query_raises(self):
        with pytest.raises(ValueError):
            rank("", [(1, BASE)])

    def test_no_candidates(self):
        assert rank(BASE, []) == []
