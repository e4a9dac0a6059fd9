"""
Similarity search over the product catalog.

Every catalog entry with an embedding is scored against the query by
cosine similarity and the full list is returned ranked, with no
truncation; threshold filtering belongs to the presentation layer.

The catalog is scanned linearly. Each entry is a point-in-time snapshot,
so searches can run while a reconciliation pass is writing.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .catalog import CatalogStore
from .embedding import EmbeddingProvider
from .errors import ModelUnavailable
from .preprocessing import ImageSource, decode_image
from .scoring import SearchResult, rank_results, score_entry
from .vectors import VectorLike, as_vector, is_valid_embedding

logger = logging.getLogger(__name__)

# Prefix joined to each image_ref to build the display reference,
# e.g. "http://localhost:5000/db". Empty leaves the ref as-is.
IMAGE_BASE_URL = os.environ.get("IMAGE_BASE_URL", "")


@dataclass
class SearchResponse:
    """
    Ranked search results.

    `empty_catalog` is set when no entry has an embedding yet; that is a
    normal empty result, not an error.
    """
    results: List[SearchResult] = field(default_factory=list)
    empty_catalog: bool = False

    def __len__(self):
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    def to_dict(self) -> dict:
        return {
            "empty_catalog": self.empty_catalog,
            "results": [r.to_dict() for r in self.results],
        }


def resolve_image_url(image_ref: str, base_url: str = IMAGE_BASE_URL) -> str:
    """Join a catalog image_ref onto a display base URL."""
    if not base_url:
        return image_ref
    return f"{base_url.rstrip('/')}/{image_ref.lstrip('/')}"


class SearchEngine:
    """
    Ranks catalog products against query images.

    Args:
        store: Catalog to search (read-only).
        provider: Embedding provider for search_image(). Not needed when
            callers pass embeddings to search() directly.
        image_base_url: Prefix for result image references.
    """

    def __init__(self,
                 store: CatalogStore,
                 provider: Optional[EmbeddingProvider] = None,
                 image_base_url: str = IMAGE_BASE_URL):
        self.store = store
        self.provider = provider
        self.image_base_url = image_base_url

    def search(self, query_embedding: VectorLike) -> SearchResponse:
        """
        Rank every embedded catalog entry against a query embedding.

        Args:
            query_embedding: Normalized query vector.

        Returns:
            SearchResponse with all entries sorted by similarity.
        """
        query = as_vector(query_embedding)
        entries = self.store.find_all_with_embedding()

        if not entries:
            logger.info("No product embeddings in catalog")
            return SearchResponse(empty_catalog=True)

        if not is_valid_embedding(query):
            logger.warning("Query embedding is empty or degenerate; all scores will be 0")

        results = [
            SearchResult(
                id=entry.id,
                name=entry.name,
                category=entry.category,
                image=resolve_image_url(entry.image_ref, self.image_base_url),
                similarity=score_entry(query, entry),
            )
            for entry in entries
        ]
        results = rank_results(results)

        logger.info(f"Search complete: {len(results)} matches")
        return SearchResponse(results=results)

    def search_image(self, image: ImageSource) -> SearchResponse:
        """
        Embed a query image and search the catalog.

        Args:
            image: Path, encoded bytes, or decoded RGB array.

        Raises:
            ImageDecodeFailed: If the query image cannot be decoded.
            ModelUnavailable: If no provider is set or its model fails.
        """
        if self.provider is None:
            raise ModelUnavailable("SearchEngine has no embedding provider")

        decoded = decode_image(image)
        query = self.provider.embed_normalized(decoded)
        return self.search(query)
