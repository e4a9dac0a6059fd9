"""
Vector primitives for embedding storage and comparison.

Stored embeddings are L2-normalized and rounded to EMBEDDING_PRECISION
decimal places so persisted vectors stay small and reproducible across
runs. Cosine similarity never raises on bad input: a malformed catalog
entry scores 0 instead of aborting a whole search.
"""

import logging
from typing import Optional, Sequence, Union

import numpy as np

logger = logging.getLogger(__name__)

# Decimal places kept when persisting a normalized embedding
EMBEDDING_PRECISION = 6

VectorLike = Union[np.ndarray, Sequence[float]]


def as_vector(vector: Optional[VectorLike]) -> np.ndarray:
    """Coerce a sequence (or None) to a flat float64 array."""
    if vector is None:
        return np.zeros(0, dtype=np.float64)
    return np.asarray(vector, dtype=np.float64).ravel()


def magnitude(vector: VectorLike) -> float:
    """L2 norm of a vector (0.0 for an empty one)."""
    v = as_vector(vector)
    if v.size == 0:
        return 0.0
    return float(np.linalg.norm(v))


def _rescaled(v: np.ndarray) -> np.ndarray:
    # Divide by the largest component so the norm cannot overflow or
    # underflow for very large or very small finite values.
    peak = np.max(np.abs(v))
    if peak == 0 or not np.isfinite(peak):
        return v
    return v / peak


def normalize(vector: VectorLike,
              precision: int = EMBEDDING_PRECISION) -> np.ndarray:
    """
    Return a unit-length copy of a vector rounded to `precision` places.

    Empty, all-zero and non-finite vectors are returned unchanged (as
    float64) rather than producing NaNs. Very large or very small
    components are handled without overflow.

    Args:
        vector: Sequence of floats or 1-D array.
        precision: Decimal places to keep.

    Returns:
        Float64 array with the same number of components.
    """
    v = as_vector(vector)
    if v.size == 0 or not np.all(np.isfinite(v)):
        return v.copy()

    scaled = _rescaled(v)
    norm = np.linalg.norm(scaled)
    if norm == 0.0:
        return v.copy()
    return np.round(scaled / norm, precision)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """
    Cosine of the angle between two vectors, in [-1, 1].

    Returns 0.0 when either vector is empty, their lengths differ, either
    has zero magnitude, or either holds non-finite values.
    """
    va = as_vector(a)
    vb = as_vector(b)

    if va.size == 0 or vb.size == 0 or va.size != vb.size:
        return 0.0
    if not (np.all(np.isfinite(va)) and np.all(np.isfinite(vb))):
        return 0.0

    va = _rescaled(va)
    vb = _rescaled(vb)
    mag_a = np.linalg.norm(va)
    mag_b = np.linalg.norm(vb)
    if mag_a == 0 or mag_b == 0:
        return 0.0

    similarity = float(np.dot(va, vb) / (mag_a * mag_b))
    # Floating error can push parallel vectors just past 1
    return max(-1.0, min(1.0, similarity))


def is_valid_embedding(vector: Optional[VectorLike],
                       dim: Optional[int] = None) -> bool:
    """
    Check that a stored embedding can be scored meaningfully.

    Valid means non-empty, all components finite, non-zero magnitude, and
    exactly `dim` components when `dim` is given.
    """
    v = as_vector(vector)
    if v.size == 0:
        return False
    if dim is not None and v.size != dim:
        return False
    if not np.all(np.isfinite(v)):
        return False
    return bool(np.any(v != 0.0))
