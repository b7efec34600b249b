# errors.py
"""
Error taxonomy for the blob store / ledger persistence core.

An empty ledger result is never an error: readers return an empty list.
"""

from __future__ import annotations

from typing import Any, Optional


class PersistenceError(Exception):
    """Base class for every failure raised by the persistence core."""


# -------------------- blob store --------------------
class StorageError(PersistenceError):
    pass


class StorageUnavailable(StorageError):
    """Transport or HTTP failure talking to the blob store."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BlobNotFound(StorageError):
    """The aggregator reported that no such blob exists."""

    def __init__(self, blob_id: str):
        super().__init__(f"blob not found: {blob_id}")
        self.blob_id = blob_id


class MalformedBlob(PersistenceError):
    """Blob bytes could not be decoded into a message."""


# -------------------- ledger --------------------
class LedgerError(PersistenceError):
    pass


class ReadUnavailable(LedgerError):
    """A contract view call could not complete (transport, RPC or decode failure)."""


class WriteRejected(LedgerError):
    """The signer declined the transaction or the contract reverted."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class WriteUnavailable(LedgerError):
    """The write could not be submitted because the signer was unreachable."""


class SignerUnavailable(PersistenceError):
    """Raised by signer backends on transport failure."""


# -------------------- orchestrator --------------------
class ContentWriteFailed(PersistenceError):
    """The blob write failed; nothing was indexed."""


class IndexWriteFailed(PersistenceError):
    """
    The blob was stored but the ledger record was not written.

    `blob_ref` and `record` are kept so the caller can retry indexing
    with the same blob id.
    """

    def __init__(self, message: str, blob_ref: Any = None, record: Any = None, rejected: bool = False):
        super().__init__(message)
        self.blob_ref = blob_ref
        self.record = record
        self.rejected = rejected


class ContentUnavailable(PersistenceError):
    def __init__(self, blob_id: str, reason: str = ""):
        msg = f"content unavailable for blob {blob_id}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.blob_id = blob_id
