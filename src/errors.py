"""
Error taxonomy for the card lifecycle engine.

Every error carries a stable ``code`` so the API layer can render distinct
guidance for each failure category (corrupted export vs. unsupported format
vs. too many failed cards).
"""


class LifecycleError(Exception):
    """Base class for all card lifecycle errors."""

    code = 'LIFECYCLE_ERROR'
    status_code = 500


class ValidationError(LifecycleError):
    """
    Raised for malformed scheduler input (bad rating) or when a card fails the
    Card State Model invariants.

    Fatal for a single scheduler call. During import it is caught per card and
    counted as a failure.
    """

    code = 'INVALID_INPUT'
    status_code = 400


class InvalidArchiveError(LifecycleError):
    """
    Raised when an uploaded archive has no recognizable collection database.

    The list of archive entries is kept so the message shows what was found.
    """

    code = 'UNSUPPORTED_FORMAT'
    status_code = 400

    def __init__(self, message, entries=None):
        self.entries = list(entries or [])
        if self.entries:
            message = f"{message}. Files in archive: {', '.join(self.entries)}"
        super().__init__(message)


class CorruptDataError(LifecycleError):
    """
    Raised when collection metadata is unusable: invalid creation timestamp,
    unparsable deck hierarchy, or a cyclic deck parent chain.
    """

    code = 'CORRUPTED_EXPORT'
    status_code = 422


class ThresholdExceededError(LifecycleError):
    """
    Raised after all cards of an import were attempted and the share of
    failed cards is above the allowed threshold.
    """

    code = 'TOO_MANY_FAILURES'
    status_code = 400

    def __init__(self, failed, processed, threshold):
        self.failed = failed
        self.processed = processed
        self.threshold = threshold
        rate = failed / processed if processed else 0.0
        super().__init__(
            f"Import failed: {failed} out of {processed} cards failed validation or insertion "
            f"({rate * 100:.1f}%, limit {threshold * 100:.0f}%). "
            f"This indicates a systemic problem with the .apkg file rather than isolated bad cards."
        )


class ResourceError(LifecycleError):
    """
    Raised for temp storage or collaborator I/O failures unrelated to the data
    itself (S3 unreachable, temp file not writable, SQLite I/O errors).
    """

    code = 'STORAGE_UNAVAILABLE'
    status_code = 503


class ConflictError(LifecycleError):
    """
    Raised when an optimistic version check fails on card update.

    Another request modified the card since it was read. The caller should
    re-read the card and retry instead of overwriting the other review.
    """

    code = 'CONCURRENT_MODIFICATION'
    status_code = 409


class NotFoundError(LifecycleError):
    """Raised when a card or deck does not exist for the requesting user."""

    code = 'NOT_FOUND'
    status_code = 404
