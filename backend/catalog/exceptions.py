"""Exceptions raised by catalog services.

Every error carries a ``kind`` so callers can tell user-fixable input
errors apart from transient backend failures, plus the offending field or
entry id when one applies.
"""


class CatalogError(Exception):
    """Base class for all catalog errors."""

    kind = 'error'

    def __init__(self, message, *, field=None, entry_id=None):
        self.message = message
        self.field = field
        self.entry_id = str(entry_id) if entry_id is not None else None
        super().__init__(message)

    def as_dict(self) -> dict:
        return {
            'kind': self.kind,
            'message': self.message,
            'field': self.field,
            'entry_id': self.entry_id,
        }


class EntryNotFound(CatalogError):
    """Raised for unknown entry ids, content ids or public links."""

    kind = 'not_found'


class NotOwner(CatalogError):
    """Raised when someone other than the owner tries to mutate an entry."""

    kind = 'forbidden'

    def __init__(self, entry_id):
        super().__init__(
            'Only the owner may modify this file',
            entry_id=entry_id,
        )


class InvalidFilter(CatalogError):
    """Raised for malformed filter specs: bad dates, negative sizes,
    inverted ranges at the request boundary or unknown fields."""

    kind = 'invalid_filter'


class InvalidUpload(CatalogError):
    """Raised when an upload is rejected before anything is stored."""

    kind = 'invalid_upload'


class StorageBackendUnavailable(CatalogError):
    """Raised when the content store or the database fails.

    The original exception is kept as ``__cause__``; nothing here retries.
    """

    kind = 'storage_unavailable'


class Conflict(CatalogError):
    """Raised when a concurrent mutation invalidated the expected state."""

    kind = 'conflict'
