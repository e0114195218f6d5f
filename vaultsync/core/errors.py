"""
Sync engine error taxonomy.

Library exceptions (web3, pymongo) are translated into these at the
client boundary so callers only ever handle SyncError subclasses.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync engine errors."""

    def __init__(
        self,
        message: str,
        *,
        domain_id: Optional[str] = None,
        kind: Optional[str] = None,
    ):
        super().__init__(message)
        self.domain_id = domain_id
        self.kind = kind


class ValidationError(SyncError):
    """Missing or malformed required field. No write was attempted."""
    pass


class LedgerRecordNotFound(SyncError):
    """Receipt or block absent for a supplied transaction hash."""
    pass


class LedgerCallFailure(SyncError):
    """RPC transport failure, timeout, or contract revert."""
    pass


class StoreWriteFailure(SyncError):
    """Persistence layer failure."""
    pass


class ConcurrencyError(StoreWriteFailure):
    """The entity changed between read and write (version mismatch)."""
    pass


class IdentityResolutionFailure(SyncError):
    """
    No wallet on file for an owner handle.

    Raised only inside restoration's ownership step, where it is logged
    and recorded as a skip rather than failing the entity.
    """
    pass
