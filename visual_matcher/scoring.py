"""
Per-entry similarity scoring and result ranking.

Stored embeddings are re-normalized before scoring so entries written
before normalization was enforced still compare correctly. Entries that
cannot be scored (wrong length, zero or non-finite vectors) get 0 rather
than failing the search.
"""

import logging
from dataclasses import dataclass, asdict
from typing import List

import numpy as np

from .catalog import CatalogEntry
from .vectors import cosine_similarity, is_valid_embedding, normalize

logger = logging.getLogger(__name__)

# Decimal places reported for similarity scores
SIMILARITY_DECIMALS = 4


@dataclass(frozen=True)
class SearchResult:
    id: str
    name: str
    category: str
    image: str
    similarity: float

    def to_dict(self) -> dict:
        return asdict(self)


def score_entry(query: np.ndarray, entry: CatalogEntry) -> float:
    """
    Cosine similarity between a query embedding and a catalog entry.

    Args:
        query: Normalized query embedding.
        entry: Catalog entry with a stored embedding.

    Returns:
        Similarity rounded to SIMILARITY_DECIMALS places; 0.0 for entries
        whose embedding is malformed.
    """
    if not is_valid_embedding(entry.embedding, len(query)):
        logger.debug(f"Malformed embedding for {entry.image_ref}, scoring 0")
        return 0.0

    similarity = cosine_similarity(query, normalize(entry.embedding))
    return round(similarity, SIMILARITY_DECIMALS)


def rank_results(results: List[SearchResult]) -> List[SearchResult]:
    """
    Sort results by similarity, highest first.

    The sort is stable: equal scores keep their input order, so repeated
    searches over unchanged data rank identically.
    """
    return sorted(results, key=lambda r: -r.similarity)
