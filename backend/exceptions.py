"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients
  (storage misconfiguration, corrupted metadata, etc.).  The global handler logs
  the full message at ERROR and returns a generic "Internal server error" (500).
- ``ProtocolError``: the backup protocol rejected a request (unknown session,
  unknown version id, malformed hash).  Returned as 400 with ``str(exc)``.
- ``HashMismatchError`` / ``OffsetConflictError`` / ``IncompleteCommitError``:
  upload and commit outcomes the client is expected to react to.
- ``ValueError``: for other validation errors that are safe to forward to
  clients.  The global ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class ProtocolError(Exception):
    """A backup protocol request referenced missing or invalid state."""


class HashMismatchError(Exception):
    """The bytes on disk do not hash to the key they were uploaded under."""

    def __init__(self, expected: str, computed: str) -> None:
        super().__init__(f"hash mismatch: expected {expected}, computed {computed}")
        self.expected = expected
        self.computed = computed


class OffsetConflictError(Exception):
    """The client sent bytes starting past the end of the stored partial blob."""

    def __init__(self, sha: str, stored_bytes: int, start_byte: int) -> None:
        super().__init__(
            f"offset conflict for {sha}: stored {stored_bytes} bytes, "
            f"client started at {start_byte}"
        )
        self.sha = sha
        self.stored_bytes = stored_bytes
        self.start_byte = start_byte


class IncompleteCommitError(Exception):
    """Strict commit refused a manifest that references hashes not in the store."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"{len(missing)} referenced hash(es) are not stored")
        self.missing = missing
