"""Error types raised by the device-side sync components.

None of these escape ``SyncEngine.sync_cards``: the engine catches them at
the cycle boundary and reports them through a ``sync_failed`` event, so a
device keeps working offline whatever the state of the server.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for device-side sync errors."""


class ValidationError(SyncError):
    """A card or request is malformed; rejected before any write or request."""


class StorageError(SyncError):
    """The local store failed to read or commit."""


class StorageUnavailable(StorageError):
    """The local store could not be opened or is not initialized."""


class NetworkError(SyncError):
    """The server could not be reached or answered with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
