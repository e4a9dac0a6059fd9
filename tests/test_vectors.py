"""Tests for vector normalization and cosine similarity."""

import numpy as np
import pytest

from visual_matcher.vectors import (
    EMBEDDING_PRECISION, cosine_similarity, is_valid_embedding, magnitude,
    normalize,
)


class TestNormalize:
    """Tests for L2 normalization."""

    def test_unit_length(self):
        v = normalize([3.0, 4.0])
        assert np.allclose(v, [0.6, 0.8])
        assert abs(np.linalg.norm(v) - 1.0) < 1e-6

    def test_idempotent(self):
        rng = np.random.RandomState(42)
        for _ in range(20):
            v = rng.randn(16)
            once = normalize(v)
            twice = normalize(once)
            assert np.allclose(once, twice, atol=1e-5)

    def test_rounded_to_precision(self):
        v = normalize([1.0, 2.0, 3.0])
        assert np.array_equal(v, np.round(v, EMBEDDING_PRECISION))

    def test_empty_stays_empty(self):
        v = normalize([])
        assert v.size == 0

    def test_zero_vector_returned_as_is(self):
        v = normalize([0.0, 0.0, 0.0])
        assert np.array_equal(v, [0.0, 0.0, 0.0])
        assert not np.any(np.isnan(v))

    def test_does_not_modify_input(self):
        original = np.array([3.0, 4.0])
        normalize(original)
        assert np.array_equal(original, [3.0, 4.0])

    def test_huge_components_do_not_overflow(self):
        v = normalize([1e200, 1e200])
        assert np.allclose(v, [0.707107, 0.707107])

    def test_tiny_components_do_not_underflow(self):
        v = normalize([3e-200, 4e-200])
        assert np.allclose(v, [0.6, 0.8])

    def test_non_finite_returned_as_is(self):
        v = normalize([np.inf, 1.0])
        assert v[0] == np.inf


class TestCosineSimilarity:
    """Tests for the defensive cosine similarity."""

    def test_self_similarity_is_one(self):
        v = [0.2, -1.5, 3.0, 0.7]
        assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_opposite_is_minus_one(self):
        v = np.array([0.2, -1.5, 3.0, 0.7])
        assert cosine_similarity(v, -v) == pytest.approx(-1.0)

    def test_orthogonal_is_zero(self):
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)

    def test_magnitude_independent(self):
        assert cosine_similarity([1, 1], [10, 10]) == pytest.approx(1.0)

    def test_length_mismatch_is_zero(self):
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0

    def test_empty_is_zero(self):
        assert cosine_similarity([], [1, 0]) == 0.0
        assert cosine_similarity([1, 0], []) == 0.0

    def test_zero_vector_is_zero(self):
        assert cosine_similarity([0, 0], [1, 0]) == 0.0
        assert cosine_similarity([1, 0], [0, 0]) == 0.0

    def test_non_finite_is_zero(self):
        assert cosine_similarity([np.nan, 1.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([np.inf, 1.0], [1.0, 1.0]) == 0.0

    def test_within_bounds(self):
        rng = np.random.RandomState(7)
        for _ in range(50):
            a, b = rng.randn(8), rng.randn(8)
            assert -1.0 <= cosine_similarity(a, b) <= 1.0

    def test_huge_parallel_vectors(self):
        assert cosine_similarity([1e200, 1e200], [2e200, 2e200]) == pytest.approx(1.0)
        assert cosine_similarity([1e200, 0.0], [0.0, 1e200]) == pytest.approx(0.0)


class TestValidity:
    """Tests for embedding integrity checks."""

    def test_valid(self):
        assert is_valid_embedding([0.6, 0.8])

    def test_dimension_checked(self):
        assert is_valid_embedding([0.6, 0.8], dim=2)
        assert not is_valid_embedding([0.6, 0.8], dim=3)

    def test_degenerate_vectors_invalid(self):
        assert not is_valid_embedding(None)
        assert not is_valid_embedding([])
        assert not is_valid_embedding([0.0, 0.0])
        assert not is_valid_embedding([np.nan, 1.0])

    def test_tiny_vector_is_valid(self):
        assert is_valid_embedding([1e-200, 1e-200])

    def test_magnitude(self):
        assert magnitude([3, 4]) == pytest.approx(5.0)
        assert magnitude([]) == 0.0
