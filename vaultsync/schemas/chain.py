"""
Values read from, or produced by, the ledger.

Plain frozen dataclasses: these are snapshots of ledger state handed
across the LedgerClient boundary, not persisted documents.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..serialization import from_block_timestamp


@dataclass(frozen=True)
class Receipt:
    """Receipt of a mined transaction."""
    tx_hash: str
    from_address: str
    to: Optional[str]
    block_number: int
    status: bool


@dataclass(frozen=True)
class Block:
    """The containing block (only what the sync engine needs)."""
    number: int
    timestamp: int  # unix seconds

    @property
    def observed_at(self) -> datetime:
        return from_block_timestamp(self.timestamp)


@dataclass(frozen=True)
class SentTransaction:
    """A state-changing transaction this process sent and saw mined."""
    tx_hash: str
    from_address: str
    to: Optional[str]
    block_number: Optional[int]
    identity: Optional[str] = None  # identity returned by the contract, if any


@dataclass(frozen=True)
class OnChainProperty:
    """Asset registry record."""
    identity: str
    domain_id: str
    name: str
    locality: str
    property_type: str
    owner: str
    verified: bool


@dataclass(frozen=True)
class OnChainDocument:
    """Document registry record."""
    lookup_key: str
    document_type: str
    owner: str
    expiry: int
    verified: bool
