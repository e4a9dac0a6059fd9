"""
Administrative catalog operations used by the upload and edit endpoints.

Uploaded product images are registered without an embedding; the next
reconciliation pass computes it. Names and categories can be edited at
any time.
"""

import os
import re
import time
import logging
from typing import Iterable, Optional

from .catalog import UNCATEGORIZED, CatalogEntry, CatalogStore
from .reconcile import IMAGE_EXTENSIONS, default_name

logger = logging.getLogger(__name__)


def is_allowed_image(filename: str,
                     extensions: Iterable[str] = IMAGE_EXTENSIONS) -> bool:
    return os.path.splitext(filename)[1].lower() in {e.lower() for e in extensions}


def safe_upload_name(original_name: str, now: Optional[float] = None) -> str:
    """
    Collision-resistant filename for an upload: "<millis>-<name>".

    Whitespace becomes "_" and the name is lower-cased; any directory part
    of `original_name` is dropped.
    """
    now = time.time() if now is None else now
    base = os.path.basename(original_name.replace("\\", "/"))
    cleaned = re.sub(r"\s+", "_", base).lower()
    return f"{int(round(now * 1000))}-{cleaned}"


def register_upload(store: CatalogStore,
                    image_ref: str,
                    name: Optional[str] = None,
                    category: str = UNCATEGORIZED) -> CatalogEntry:
    """
    Add an uploaded image to the catalog with no embedding yet.

    Raises:
        DuplicateImageRef: If the image is already catalogued.
        ValueError: If the file type is not an accepted image.
    """
    if not is_allowed_image(image_ref):
        raise ValueError(f"Only {', '.join(sorted(IMAGE_EXTENSIONS))} images are allowed")

    entry = store.insert(CatalogEntry(
        name=name or default_name(image_ref),
        image_ref=image_ref,
        category=category or UNCATEGORIZED,
    ))
    logger.info(f"Registered upload {image_ref}; embedding pending reconciliation")
    return entry


def edit_entry(store: CatalogStore,
               entry_id: str,
               name: Optional[str] = None,
               category: Optional[str] = None) -> CatalogEntry:
    entry = store.update_metadata(entry_id, name=name, category=category)
    logger.info(f"Updated catalog entry {entry_id}")
    return entry


def remove_entry(store: CatalogStore, entry_id: str) -> CatalogEntry:
    entry = store.delete_by_id(entry_id)
    logger.info(f"Deleted catalog entry {entry_id} ({entry.image_ref})")
    return entry
