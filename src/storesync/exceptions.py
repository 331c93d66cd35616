"""Custom exception hierarchy for storesync."""

from __future__ import annotations


class StoreSyncError(Exception):
    """Base exception for all storesync errors."""


class SyncConfigError(StoreSyncError):
    """Invalid or missing configuration."""


class RemoteStoreError(StoreSyncError):
    """A remote document-store call failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        path: str = "",
    ) -> None:
        self.status_code = status_code
        self.path = path
        super().__init__(message)


class RemoteUnavailableError(RemoteStoreError):
    """Network or backend failure (timeout, connection error, non-2xx, invalid JSON).

    Writes that fail with this error are not retried automatically.
    """


class MalformedSnapshotError(StoreSyncError):
    """A remote document failed shape validation.

    The engine treats the entity as empty when this is raised while
    decoding a snapshot.
    """

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(message)
