"""
Catalog reconciliation: make the store match the image directory.

The canonical image directory decides which products exist; the catalog
store is a cache of their embeddings. A pass lists the directory, splits
the store into an explicit plan (add / fill in / keep / delete), embeds
what is missing, and deletes entries whose image is gone.

Passes are idempotent: an entry with a valid embedding is never
re-embedded. A missing directory is never read as "delete everything";
the pass is skipped with the store untouched.
"""

import os
import re
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .catalog import CatalogEntry, CatalogStore
from .embedding import EmbeddingProvider
from .errors import (DirectoryUnavailable, EntryNotFound, MalformedEmbedding,
                     ModelUnavailable, ReconciliationInProgress)
from .preprocessing import decode_image
from .vectors import is_valid_embedding

logger = logging.getLogger(__name__)

CATALOG_IMAGE_DIR = os.environ.get("CATALOG_IMAGE_DIR", "db/products")
CATALOG_REF_PREFIX = os.environ.get("CATALOG_REF_PREFIX", "products")
IMAGE_EXTENSIONS = frozenset(
    ext.strip().lower()
    for ext in os.environ.get("IMAGE_EXTENSIONS", ".jpg,.jpeg,.png").split(",")
    if ext.strip()
)
# Optional expected embedding length; stored vectors of another length
# are treated as corrupt and re-embedded.
EMBEDDING_DIM = int(os.environ["EMBEDDING_DIM"]) if os.environ.get("EMBEDDING_DIM") else None

STATUS_OK = "ok"
# A failed pass (model or catalog save failure) zeroes only the counts of
# changes that did not reach the store; `unchanged` and `removed` still
# report the directory-only steps that completed.
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"
STATUS_CANCELLED = "cancelled"

# Log progress every N embedded images
PROGRESS_INTERVAL = 50


def list_image_files(image_dir: str,
                     extensions: Iterable[str] = IMAGE_EXTENSIONS) -> List[str]:
    """
    List image filenames in a directory, sorted.

    Raises:
        DirectoryUnavailable: If the directory is missing or unreadable.
    """
    if not os.path.isdir(image_dir):
        raise DirectoryUnavailable(image_dir, "not a directory")

    try:
        names = os.listdir(image_dir)
    except OSError as e:
        raise DirectoryUnavailable(image_dir, str(e)) from e

    allowed = {ext.lower() for ext in extensions}
    return sorted(
        f for f in names
        if os.path.splitext(f)[1].lower() in allowed
        and os.path.isfile(os.path.join(image_dir, f))
    )


def image_ref_for(filename: str, prefix: str = "") -> str:
    """Catalog key for a file: "<prefix>/<filename>", or the bare filename."""
    prefix = prefix.strip("/")
    return f"{prefix}/{filename}" if prefix else filename


def default_name(filename: str) -> str:
    """Display name for a new product: the file stem with - and _ as spaces."""
    stem = os.path.splitext(os.path.basename(filename))[0]
    return re.sub(r"[-_]", " ", stem)


@dataclass
class ReconcilePlan:
    """Three-way partition of expected refs against stored entries."""
    to_add: List[str] = field(default_factory=list)
    to_fill: List[CatalogEntry] = field(default_factory=list)
    unchanged: List[CatalogEntry] = field(default_factory=list)
    orphaned: List[CatalogEntry] = field(default_factory=list)

    @property
    def needs_embedding(self) -> bool:
        return bool(self.to_add or self.to_fill)


def plan_reconciliation(expected_refs: Iterable[str],
                        entries: Iterable[CatalogEntry],
                        embedding_dim: Optional[int] = None) -> ReconcilePlan:
    """
    Diff expected image refs against the stored entries.

    Expected refs keep their given order in `to_add` / `to_fill` /
    `unchanged`. An entry counts as unchanged only if its embedding passes
    is_valid_embedding(); otherwise it is scheduled for re-embedding.
    """
    stored: Dict[str, CatalogEntry] = {e.image_ref: e for e in entries}
    expected = list(dict.fromkeys(expected_refs))
    expected_set = set(expected)
    plan = ReconcilePlan()

    for ref in expected:
        entry = stored.get(ref)
        if entry is None:
            plan.to_add.append(ref)
        elif entry.has_embedding and is_valid_embedding(entry.embedding, embedding_dim):
            plan.unchanged.append(entry)
        else:
            if entry.has_embedding:
                logger.warning(f"Stored embedding for {ref} is invalid, re-embedding")
            plan.to_fill.append(entry)

    plan.orphaned = [e for ref, e in stored.items() if ref not in expected_set]
    return plan


@dataclass
class ReconcileReport:
    """
    Outcome of one reconciliation pass.

    Counts describe changes that were persisted. With status "failed",
    added/updated hold only what was saved before the failure, while
    unchanged and removed still reflect the directory diff.
    """
    status: str = STATUS_OK
    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)
    error: Optional[str] = None
    total: int = 0

    @property
    def success(self) -> bool:
        return self.status == STATUS_OK

    @property
    def cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "failures": list(self.failures),
            "error": self.error,
            "total": self.total,
        }


class ReconcileTask:
    """Handle for a reconciliation pass running on a background thread."""

    def __init__(self, target: Callable[[threading.Event], ReconcileReport]):
        self.cancel_event = threading.Event()
        self._done = threading.Event()
        self._report: Optional[ReconcileReport] = None
        self._error: Optional[BaseException] = None
        self._thread = threading.Thread(
            target=self._run, args=(target,), name="catalog-reconcile", daemon=True
        )

    def _run(self, target):
        try:
            self._report = target(self.cancel_event)
        except Exception as e:
            logger.exception("Reconciliation task crashed")
            self._error = e
        finally:
            self._done.set()

    def start(self) -> "ReconcileTask":
        self._thread.start()
        return self

    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self):
        """Ask the pass to stop before its next image."""
        self.cancel_event.set()

    def result(self, timeout: Optional[float] = None) -> ReconcileReport:
        """
        Wait for the pass and return its report.

        Raises:
            TimeoutError: If the pass is still running after `timeout`.
        """
        if not self._done.wait(timeout):
            raise TimeoutError("Reconciliation still running")
        if self._error is not None:
            raise self._error
        return self._report


class Reconciler:
    """
    Drives a CatalogStore to match an image directory.

    Only one pass runs at a time per reconciler; a second trigger while a
    pass is in flight raises ReconciliationInProgress.
    """

    def __init__(self,
                 store: CatalogStore,
                 provider: EmbeddingProvider,
                 image_dir: str = CATALOG_IMAGE_DIR,
                 ref_prefix: str = CATALOG_REF_PREFIX,
                 extensions: Iterable[str] = IMAGE_EXTENSIONS,
                 embedding_dim: Optional[int] = EMBEDDING_DIM):
        self.store = store
        self.provider = provider
        self.image_dir = image_dir
        self.ref_prefix = ref_prefix
        self.extensions = frozenset(ext.lower() for ext in extensions)
        self.embedding_dim = embedding_dim
        self._run_lock = threading.Lock()
        self._saved_counts = (0, 0, 0)

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def _acquire(self):
        if not self._run_lock.acquire(blocking=False):
            raise ReconciliationInProgress("A reconciliation pass is already running")

    def run(self, cancel_event: Optional[threading.Event] = None) -> ReconcileReport:
        """
        Run one pass synchronously.

        Raises:
            ReconciliationInProgress: If another pass is running.
        """
        self._acquire()
        try:
            return self._reconcile(cancel_event)
        finally:
            self._run_lock.release()

    def start(self) -> ReconcileTask:
        """
        Run one pass on a background thread.

        The in-progress guard is taken before this returns, so a concurrent
        trigger is rejected immediately.

        Raises:
            ReconciliationInProgress: If another pass is running.
        """
        self._acquire()

        def target(cancel_event):
            try:
                return self._reconcile(cancel_event)
            finally:
                self._run_lock.release()

        try:
            return ReconcileTask(target).start()
        except RuntimeError:
            self._run_lock.release()
            raise

    def _reconcile(self, cancel_event: Optional[threading.Event]) -> ReconcileReport:
        report = ReconcileReport()

        try:
            filenames = list_image_files(self.image_dir, self.extensions)
        except DirectoryUnavailable as e:
            logger.error(f"{e}; skipping reconciliation")
            report.status = STATUS_SKIPPED
            report.error = str(e)
            report.total = self.store.count()
            return report

        files_by_ref = {image_ref_for(f, self.ref_prefix): f for f in filenames}
        plan = plan_reconciliation(files_by_ref, self.store.all_entries(), self.embedding_dim)
        report.unchanged = len(plan.unchanged)

        logger.info(
            f"Reconciling {len(files_by_ref)} images in {self.image_dir}: "
            f"{len(plan.to_add)} new, {len(plan.to_fill)} to embed, "
            f"{len(plan.unchanged)} unchanged, {len(plan.orphaned)} orphaned"
        )

        work: List[Tuple[str, Optional[CatalogEntry]]] = (
            [(ref, None) for ref in plan.to_add]
            + [(e.image_ref, e) for e in plan.to_fill]
        )

        if work:
            try:
                self.provider.load()
            except ModelUnavailable as e:
                logger.error(f"Cannot embed {len(work)} images: {e}")
                report.status = STATUS_FAILED
                report.error = str(e)
                work = []

        self._saved_counts = (0, 0, 0)
        try:
            with self.store.batch():
                self._embed_pending(work, files_by_ref, report, cancel_event)
                if report.status != STATUS_CANCELLED:
                    self._remove_orphans(plan.orphaned, report, cancel_event)
        except OSError as e:
            # The store rolled back to its last checkpoint; report only
            # the changes that reached disk.
            logger.error(f"Could not save catalog: {e}")
            report.added, report.updated, report.removed = self._saved_counts
            report.status = STATUS_FAILED
            report.error = f"Catalog save failed: {e}"

        report.total = self.store.count()
        logger.info(
            f"Reconciliation {report.status}: {report.added} added, "
            f"{report.updated} updated, {report.removed} removed, "
            f"{report.unchanged} unchanged, {report.failed} failed, "
            f"{report.total} in catalog"
        )
        return report

    def _checkpoint(self, report: ReconcileReport):
        self.store.flush()
        self._saved_counts = (report.added, report.updated, report.removed)

    def _embed_pending(self,
                       work: List[Tuple[str, Optional[CatalogEntry]]],
                       files_by_ref: Dict[str, str],
                       report: ReconcileReport,
                       cancel_event: Optional[threading.Event]):
        for i, (ref, existing) in enumerate(work):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Reconciliation cancelled after {i}/{len(work)} images")
                report.status = STATUS_CANCELLED
                break

            filename = files_by_ref[ref]
            try:
                self._embed_one(ref, filename, existing)
            except ModelUnavailable as e:
                logger.error(f"Embedding model lost during reconciliation: {e}")
                report.status = STATUS_FAILED
                report.error = str(e)
                break
            except Exception as e:
                logger.warning(f"Failed to process {filename}: {e}")
                report.failed += 1
                report.failures.append(f"{ref}: {e}")
                continue

            if existing is None:
                report.added += 1
            else:
                report.updated += 1

            if (i + 1) % PROGRESS_INTERVAL == 0:
                self._checkpoint(report)
                logger.info(f"Embedded {i + 1}/{len(work)} images")

        self._checkpoint(report)

    def _embed_one(self, ref: str, filename: str, existing: Optional[CatalogEntry]):
        image = decode_image(os.path.join(self.image_dir, filename))
        vector = self.provider.embed_normalized(image)
        if not is_valid_embedding(vector, self.embedding_dim):
            raise MalformedEmbedding(f"Invalid embedding ({vector.size} components)")

        if existing is not None:
            self.store.update_embedding(existing.id, vector)
        else:
            self.store.insert(CatalogEntry(
                name=default_name(filename),
                image_ref=ref,
                embedding=vector,
            ))
        logger.debug(f"Processed {filename}")

    def _remove_orphans(self,
                        orphaned: List[CatalogEntry],
                        report: ReconcileReport,
                        cancel_event: Optional[threading.Event]):
        for entry in orphaned:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Reconciliation cancelled with {report.removed} removals done")
                report.status = STATUS_CANCELLED
                return

            try:
                self.store.delete_by_id(entry.id)
            except EntryNotFound:
                logger.debug(f"{entry.image_ref} already removed")
                continue

            logger.info(f"Removed missing product: {entry.name} ({entry.image_ref})")
            report.removed += 1
