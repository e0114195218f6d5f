# Canonical schemas for the ledger / off-chain reconciliation engine.

from .entity import (
    EntityKind,
    TransactionKind,
    TransactionRecord,
    IdentityEntry,
    PropertyEntity,
    DocumentVerificationEntity,
    SyncedEntity,
    parse_entity,
    same_identity,
    to_canonical,
    to_document,
)
from .requests import PropertySyncRequest, DocumentSyncRequest
from .chain import (
    Receipt,
    Block,
    SentTransaction,
    OnChainProperty,
    OnChainDocument,
)

__all__ = [
    # Entity
    "EntityKind",
    "TransactionKind",
    "TransactionRecord",
    "IdentityEntry",
    "PropertyEntity",
    "DocumentVerificationEntity",
    "SyncedEntity",
    "parse_entity",
    "same_identity",
    "to_canonical",
    "to_document",
    # Requests
    "PropertySyncRequest",
    "DocumentSyncRequest",
    # Chain
    "Receipt",
    "Block",
    "SentTransaction",
    "OnChainProperty",
    "OnChainDocument",
]
