"""Error taxonomy for the sync engine.

Transient errors are retried with backoff, permanent errors are dead-lettered
immediately, and conflicts are not errors at all (they go to the resolver).
"""

from typing import Optional


class SyncError(Exception):
    """Base error for storesync."""


class TransientSyncError(SyncError):
    """Retryable failure: remote unavailable, connection reset, 5xx-equivalent."""


class SyncTimeoutError(TransientSyncError):
    """Transport call exceeded its deadline."""


class PermanentSyncError(SyncError):
    """Failure that no amount of retrying will fix."""


class SchemaMismatchError(PermanentSyncError):
    """Envelope schema version is not supported by this node."""

    def __init__(self, received: object, supported: int):
        self.received = received
        self.supported = supported
        super().__init__(
            f"Unsupported envelope schema version {received!r} (supported: {supported})"
        )


class UnknownEntityTypeError(PermanentSyncError):
    """No rule or repository is registered for an entity type."""

    def __init__(self, entity_type: str, store_id: Optional[int] = None):
        self.entity_type = entity_type
        self.store_id = store_id
        where = f" for store {store_id}" if store_id is not None else ""
        super().__init__(f"Unknown entity type {entity_type!r}{where}")


class PayloadValidationError(PermanentSyncError):
    """Malformed envelope or record payload."""


class ConflictResolutionError(SyncError):
    """An operator resolution was rejected."""


class NotFoundError(SyncError):
    """Referenced configuration, batch, conflict or queue item does not exist."""


class InvalidTransitionError(SyncError):
    """Requested status change is not allowed from the current status."""


class SyncCancelledError(SyncError):
    """A sync cycle was cancelled between records."""


class ConfigurationError(SyncError):
    """The node is missing something it needs to run, such as a transport."""


def is_transient(exc: BaseException) -> bool:
    """Classify an exception raised by a collaborator.

    Built-in timeouts and connection errors count as transient alongside
    our own TransientSyncError.
    """
    return isinstance(exc, (TransientSyncError, TimeoutError, ConnectionError))
