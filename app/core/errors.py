"""Error taxonomy shared by the data access, allocation and storage layers.

Every error carries a short ``message`` that is safe to show to a user.
Internal detail (raw store text, stack traces) goes to the log, never into
the exception.
"""

from typing import Optional


class ShortLinkError(Exception):
    """Base class for all errors raised by the core."""

    code = "internal"
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ShortLinkError):
    """Malformed input. Raised before anything reaches the store."""

    code = "validation"
    default_message = "Invalid input"


class NotFoundError(ShortLinkError):
    """Row absent or owned by another scope."""

    code = "not_found"
    default_message = "Not found"


class ConflictError(ShortLinkError):
    """A uniqueness constraint was violated (for example a slug collision)."""

    code = "conflict"
    default_message = "UNIQUE constraint failed"


class AllocationExhausted(ConflictError):
    """The slug allocator ran out of attempts without finding a free slug."""

    default_message = "Failed to allocate a unique slug"


class TransientError(ShortLinkError):
    """Network failure or timeout. Reads may be retried safely."""

    code = "transient"
    default_message = "Service temporarily unavailable"


class StoreError(ShortLinkError):
    """The SQL store answered with a non-success response."""

    code = "store"
    default_message = "Query failed"


class StorageError(ShortLinkError):
    """The object store rejected a request."""

    code = "storage"
    default_message = "Object storage request failed"


class ConfigurationError(ShortLinkError):
    """Required credentials are missing."""

    code = "configuration"
    default_message = "Service is not configured"
