"""
Cleanup of stale query uploads.

Query images uploaded for a search are kept for a while so result pages
can show them, then deleted. Files still referenced by a catalog entry
are never removed.
"""

import os
import time
import logging
from dataclasses import dataclass
from typing import Optional

from .catalog import CatalogStore

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.environ.get("UPLOAD_DIR", "uploads")
CLEANUP_MAX_AGE_SECONDS = float(os.environ.get("CLEANUP_MAX_AGE_SECONDS", str(24 * 60 * 60)))


@dataclass
class CleanupReport:
    checked: int = 0
    deleted: int = 0
    protected: int = 0
    errors: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "deleted": self.deleted,
            "protected": self.protected,
            "errors": self.errors,
            "skipped": self.skipped,
        }


def cleanup_uploads(upload_dir: str,
                    store: CatalogStore,
                    max_age_seconds: float = CLEANUP_MAX_AGE_SECONDS,
                    now: Optional[float] = None) -> CleanupReport:
    """
    Delete uploads older than `max_age_seconds` that no product references.

    Args:
        upload_dir: Folder holding query uploads.
        store: Catalog whose image refs protect files from deletion.
        max_age_seconds: Minimum age before a file may be deleted.
        now: Current time (seconds since epoch); defaults to time.time().

    Returns:
        CleanupReport with per-outcome counts. A missing folder is
        reported as skipped.
    """
    report = CleanupReport()

    if not os.path.isdir(upload_dir):
        logger.warning(f"Upload folder {upload_dir} not found, skipping cleanup")
        report.skipped = True
        return report

    cutoff = (time.time() if now is None else now) - max_age_seconds
    protected = {os.path.basename(e.image_ref) for e in store.all_entries()}

    for filename in sorted(os.listdir(upload_dir)):
        path = os.path.join(upload_dir, filename)
        if not os.path.isfile(path):
            continue
        report.checked += 1

        if filename in protected:
            report.protected += 1
            continue

        try:
            if os.path.getmtime(path) < cutoff:
                os.remove(path)
                logger.info(f"Deleted old upload: {filename}")
                report.deleted += 1
        except OSError as e:
            logger.error(f"Error processing {filename}: {e}")
            report.errors += 1

    logger.info(
        f"Cleanup complete: {report.checked} checked, {report.deleted} deleted, "
        f"{report.protected} still in catalog, {report.errors} errors"
    )
    return report
