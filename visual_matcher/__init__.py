"""
visual_matcher — Embedding-based visual product matching.

Keeps a catalog of product embeddings in sync with a folder of product
images and ranks the catalog against query images by cosine similarity.

Modules:
    vectors         Normalization and cosine similarity
    preprocessing   Image decoding to RGB pixel arrays
    embedding       Lazily-loaded embedding model provider
    catalog         Persisted catalog store
    reconcile       Directory/store reconciliation passes
    scoring         Per-entry scoring and stable ranking
    engine          Main SearchEngine class
    admin           Upload registration and catalog edits
    cleanup         Stale upload cleanup
    cli             Command-line entry point
"""

__version__ = "1.0.0"
