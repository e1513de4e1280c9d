"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients.
  The global handler logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client.
- ``StorageError``: the record store could not complete a transaction. The
  transaction has been rolled back; the handler returns 503 so the caller
  retries the whole request later.
- ``ValueError``: for *business logic* validation errors that are safe to
  forward to clients (bad batch contents, negative cursors, etc.).  The global
  ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class StorageError(Exception):
    """Raised when a record store transaction fails and was rolled back."""
