"""
Catalog store: product identity -> name, category, image, embedding.

Entries are keyed by a store-assigned id and joined to image files by
their unique image_ref. The store is either in-memory or backed by a JSON
document that is rewritten atomically after every mutation, or once per
batch() block for bulk writers. A failed write rolls memory back to the
last saved state. Readers get snapshot copies, so a search running
alongside a reconciliation pass sees each entry as it was when fetched.
"""

import os
import json
import uuid
import logging
import threading
import dataclasses
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from .errors import (CatalogUnreadable, DuplicateImageRef, EntryNotFound,
                     MalformedEmbedding)
from .vectors import VectorLike, as_vector, is_valid_embedding, normalize

logger = logging.getLogger(__name__)

CATALOG_STORE_PATH = os.environ.get("CATALOG_STORE_PATH", "db/catalog.json")

# Category given to entries nobody has labelled yet
UNCATEGORIZED = "Uncategorized"

STORE_FORMAT_VERSION = 1


@dataclass(frozen=True, eq=False)
class CatalogEntry:
    """
    One catalog product.

    `embedding` is None until reconciliation computes it; empty arrays are
    coerced to None so `has_embedding` is the single source of truth.
    """
    name: str
    image_ref: str
    category: str = UNCATEGORIZED
    embedding: Optional[np.ndarray] = None
    id: Optional[str] = None

    def __post_init__(self):
        if self.embedding is not None:
            vector = as_vector(self.embedding)
            object.__setattr__(self, "embedding", vector if vector.size else None)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def copy(self) -> "CatalogEntry":
        embedding = None if self.embedding is None else self.embedding.copy()
        return dataclasses.replace(self, embedding=embedding)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "image": self.image_ref,
            "embedding": [] if self.embedding is None else self.embedding.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CatalogEntry":
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            category=data.get("category") or UNCATEGORIZED,
            image_ref=data["image"],
            embedding=data.get("embedding") or None,
        )


class CatalogStore:
    """
    Thread-safe catalog of products.

    Args:
        path: JSON file to persist to. None keeps the catalog in memory.

    Raises:
        CatalogUnreadable: If `path` exists but cannot be parsed.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._entries: Dict[str, CatalogEntry] = {}
        self._ids_by_ref: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._batch_depth = 0
        self._dirty = False

        if path and os.path.exists(path):
            self._load()

        # Last state known to be on disk; restored when a save fails
        self._saved_entries = dict(self._entries)
        self._saved_ids_by_ref = dict(self._ids_by_ref)

    def _load(self):
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise CatalogUnreadable(self.path, str(e)) from e

        records = data.get("entries", []) if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise CatalogUnreadable(self.path, "entries is not a list")

        for record in records:
            try:
                entry = CatalogEntry.from_dict(record)
            except (KeyError, TypeError, AttributeError, ValueError) as e:
                raise CatalogUnreadable(self.path, f"bad record {record!r}: {e}") from e
            if entry.id is None:
                entry = dataclasses.replace(entry, id=uuid.uuid4().hex)
            if entry.image_ref in self._ids_by_ref:
                logger.warning(
                    f"Ignoring duplicate catalog record for {entry.image_ref} "
                    f"(id {entry.id})"
                )
                continue
            self._entries[entry.id] = entry
            self._ids_by_ref[entry.image_ref] = entry.id

        logger.info(f"Loaded {len(self._entries)} catalog entries from {self.path}")

    def _save(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        document = {
            "version": STORE_FORMAT_VERSION,
            "entries": [e.to_dict() for e in self._entries.values()],
        }
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(document, f)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _commit(self):
        """Persist a mutation now, or at flush time inside a batch."""
        self._dirty = True
        if self._batch_depth == 0:
            self.flush()

    def flush(self):
        """
        Write pending changes to disk.

        If the write fails, in-memory state rolls back to the last
        successful save before the error propagates.
        """
        with self._lock:
            if not self._dirty:
                return
            if self.path:
                try:
                    self._save()
                except Exception:
                    self._entries = dict(self._saved_entries)
                    self._ids_by_ref = dict(self._saved_ids_by_ref)
                    self._dirty = False
                    logger.error(f"Could not save catalog to {self.path}; "
                                 f"rolled back to last saved state")
                    raise
                self._saved_entries = dict(self._entries)
                self._saved_ids_by_ref = dict(self._ids_by_ref)
            self._dirty = False

    @contextmanager
    def batch(self):
        """
        Defer saves until the outermost batch exits.

        Call flush() inside the batch to checkpoint long runs.
        """
        with self._lock:
            self._batch_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._batch_depth -= 1
                outermost = self._batch_depth == 0
            if outermost:
                self.flush()

    def find_all_with_embedding(self) -> List[CatalogEntry]:
        """Snapshot of every entry whose embedding has been computed."""
        with self._lock:
            return [e.copy() for e in self._entries.values() if e.has_embedding]

    def find_by_image_ref(self, image_ref: str) -> Optional[CatalogEntry]:
        with self._lock:
            entry_id = self._ids_by_ref.get(image_ref)
            if entry_id is None:
                return None
            return self._entries[entry_id].copy()

    def find_by_id(self, entry_id: str) -> Optional[CatalogEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.copy() if entry is not None else None

    def all_entries(self) -> List[CatalogEntry]:
        with self._lock:
            return [e.copy() for e in self._entries.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def insert(self, entry: CatalogEntry) -> CatalogEntry:
        """
        Add a new entry, assigning an id if it has none.

        A provided embedding is normalized before it is stored.

        Returns:
            The stored entry (with its id).

        Raises:
            DuplicateImageRef: If another entry already uses the image_ref.
        """
        with self._lock:
            if entry.image_ref in self._ids_by_ref:
                raise DuplicateImageRef(entry.image_ref)

            entry_id = entry.id or uuid.uuid4().hex
            if entry_id in self._entries:
                raise ValueError(f"Catalog already has an entry with id {entry_id!r}")

            embedding = None
            if entry.has_embedding:
                embedding = normalize(entry.embedding)

            stored = dataclasses.replace(entry, id=entry_id, embedding=embedding)
            self._entries[entry_id] = stored
            self._ids_by_ref[stored.image_ref] = entry_id
            self._commit()

            logger.debug(f"Inserted {stored.image_ref} as {entry_id}")
            return stored.copy()

    def update_embedding(self, entry_id: str, vector: VectorLike) -> CatalogEntry:
        """
        Replace an entry's embedding with the normalized `vector`.

        Raises:
            EntryNotFound: If no entry has `entry_id`.
            MalformedEmbedding: If the vector is empty, zero or non-finite.
        """
        normalized = normalize(vector)
        if not is_valid_embedding(normalized):
            raise MalformedEmbedding(f"Refusing to store degenerate embedding for {entry_id}")

        with self._lock:
            entry = self._get(entry_id)
            updated = dataclasses.replace(entry, embedding=normalized)
            self._entries[entry_id] = updated
            self._commit()
            return updated.copy()

    def update_metadata(self,
                        entry_id: str,
                        name: Optional[str] = None,
                        category: Optional[str] = None) -> CatalogEntry:
        """Edit an entry's display name and/or category."""
        with self._lock:
            entry = self._get(entry_id)
            changes = {}
            if name is not None:
                changes["name"] = name
            if category is not None:
                changes["category"] = category or UNCATEGORIZED
            if not changes:
                return entry.copy()

            updated = dataclasses.replace(entry, **changes)
            self._entries[entry_id] = updated
            self._commit()
            return updated.copy()

    def delete_by_id(self, entry_id: str) -> CatalogEntry:
        """
        Remove an entry.

        Returns:
            The removed entry.

        Raises:
            EntryNotFound: If no entry has `entry_id`.
        """
        with self._lock:
            entry = self._get(entry_id)
            del self._entries[entry_id]
            self._ids_by_ref.pop(entry.image_ref, None)
            self._commit()

            logger.debug(f"Deleted {entry.image_ref} ({entry_id})")
            return entry

    def _get(self, entry_id: str) -> CatalogEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry
