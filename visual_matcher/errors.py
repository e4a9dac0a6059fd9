"""
Error taxonomy for catalog reconciliation and similarity search.

Per-image problems (ImageDecodeFailed, MalformedEmbedding) are isolated by
callers; ModelUnavailable and DirectoryUnavailable end a reconciliation
pass. An empty catalog is a result state, not an exception.
"""


class VisualMatcherError(Exception):
    """Base class for all visual_matcher errors."""


class ModelUnavailable(VisualMatcherError):
    """The embedding backend failed to initialize."""


class ImageDecodeFailed(VisualMatcherError):
    """An image file or buffer could not be decoded to pixels."""

    def __init__(self, source, reason: str = ""):
        self.source = source
        self.reason = reason
        message = f"Could not decode image: {source}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class DirectoryUnavailable(VisualMatcherError):
    """The canonical image directory is missing or unreadable."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        message = f"Image directory unavailable: {path}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class MalformedEmbedding(VisualMatcherError, ValueError):
    """An embedding is empty, non-finite, zero-magnitude or the wrong length."""


class DuplicateImageRef(VisualMatcherError):
    """An insert would give two catalog entries the same image_ref."""

    def __init__(self, image_ref: str):
        self.image_ref = image_ref
        super().__init__(f"Catalog already has an entry for {image_ref!r}")


class EntryNotFound(VisualMatcherError, KeyError):
    """No catalog entry has the requested id."""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(entry_id)

    def __str__(self):
        return f"No catalog entry with id {self.entry_id!r}"


class ReconciliationInProgress(VisualMatcherError):
    """Another reconciliation pass is already running."""


class CatalogUnreadable(VisualMatcherError):
    """The persisted catalog file cannot be read or parsed."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        message = f"Catalog file unreadable: {path}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
