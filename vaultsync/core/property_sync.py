"""
Property Sync

Mirrors a ledger-confirmed asset registration or update into the
off-chain store.

The ledger is authoritative for WHEN and BY WHOM: every chain field of the
appended transaction record (from, to, blockNumber, observedAt) comes from
the receipt and its block, never from the caller. The caller supplies
only the descriptive attributes and the transaction hash.

Validation and ledger lookups happen before any store access, so a
rejected request never writes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Union

from pydantic import ValidationError as PydanticValidationError

from ..observability import get_logger
from ..schemas import (
    EntityKind,
    IdentityEntry,
    PropertyEntity,
    PropertySyncRequest,
    TransactionKind,
    TransactionRecord,
)
from .errors import LedgerCallFailure, LedgerRecordNotFound, ValidationError
from .identity import IdentityDeriver

if TYPE_CHECKING:
    from ..db.store import EntityStore
    from .ledger_client import LedgerClient


logger = get_logger(__name__)


def coerce_property_request(data: Union[PropertySyncRequest, dict[str, Any]]) -> PropertySyncRequest:
    """Accept a request model or a plain (camelCase or snake_case) dict."""
    if isinstance(data, PropertySyncRequest):
        return data
    try:
        return PropertySyncRequest.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid property data: {e}") from e


class PropertySync:
    """
    Read-merge-write of one asset's off-chain record.

    Callers that may run concurrently for the same domainId must hold a
    per-domainId lock around sync(); the store's version check catches
    anything that slips past.
    """

    def __init__(
        self,
        ledger: "LedgerClient",
        store: "EntityStore",
        *,
        dedupe_transactions: bool = False,
    ):
        self._ledger = ledger
        self._store = store
        self._dedupe = dedupe_transactions

    def sync(
        self,
        data: Union[PropertySyncRequest, dict[str, Any]],
        tx_hash: str,
    ) -> PropertyEntity:
        request = coerce_property_request(data)

        # 1. Validate
        domain_id = (request.domain_id or "").strip()
        locality = (request.locality or "").strip()
        if not domain_id:
            raise ValidationError("domainId is required", kind=EntityKind.PROPERTY.value)
        if not locality:
            raise ValidationError(
                "locality is required", domain_id=domain_id, kind=EntityKind.PROPERTY.value
            )
        if not tx_hash or not str(tx_hash).strip():
            raise ValidationError(
                "txHash is required", domain_id=domain_id, kind=EntityKind.PROPERTY.value
            )
        tx_hash = str(tx_hash).strip()
        identity = IdentityDeriver.normalize_address(request.identity)

        # 2. Ledger facts
        receipt = self._ledger.get_transaction_receipt(tx_hash)
        if receipt is None:
            raise LedgerRecordNotFound(
                f"No receipt for transaction {tx_hash}",
                domain_id=domain_id,
                kind=EntityKind.PROPERTY.value,
            )
        if not receipt.status:
            raise LedgerCallFailure(
                f"Transaction {tx_hash} reverted in block {receipt.block_number}",
                domain_id=domain_id,
                kind=EntityKind.PROPERTY.value,
            )
        block = self._ledger.get_block(receipt.block_number)
        if block is None:
            raise LedgerRecordNotFound(
                f"No block {receipt.block_number} for transaction {tx_hash}",
                domain_id=domain_id,
                kind=EntityKind.PROPERTY.value,
            )
        observed_at = block.observed_at

        # 3. Existing record
        existing = self._store.find_by_domain_or_identity(
            EntityKind.PROPERTY, domain_id, identity
        )

        # 4. Identity history
        history = list(existing.identity_history) if existing else []
        if not any(entry.identity.lower() == identity.lower() for entry in history):
            history.append(
                IdentityEntry(identity=identity, tx_hash=tx_hash, observed_at=observed_at)
            )

        # 5. Transaction log
        transactions = list(existing.transactions) if existing else []
        if self._dedupe and existing is not None and existing.has_transaction(tx_hash):
            logger.info(
                "Transaction already recorded, skipping append",
                domain_id=domain_id,
                tx_hash=tx_hash,
            )
        else:
            transactions.append(
                TransactionRecord(
                    kind=TransactionKind.UPDATE if existing else TransactionKind.REGISTRATION,
                    from_address=receipt.from_address,
                    to=receipt.to,
                    tx_hash=tx_hash,
                    block_number=receipt.block_number,
                    observed_at=observed_at,
                    identity=identity,
                    locality=locality,
                )
            )

        # A record found only by identity lives under another domainId;
        # the merged record is written fresh under this one.
        same_key = existing is not None and existing.domain_id == domain_id
        expected_version = existing.version if same_key else 0

        merged = PropertyEntity(
            domain_id=domain_id,
            current_identity=identity,
            identity_history=history,
            owner=request.owner if request.owner is not None else (existing.owner if existing else None),
            verified=request.verified,
            transactions=transactions,
            registered_at=existing.registered_at if existing else observed_at,
            last_modified_at=observed_at,
            name=request.name or "Name not specified",
            locality=locality,
            property_type=request.property_type or "Type not specified",
            version=expected_version,
        )

        # 6. Persist
        stored = self._store.upsert(merged, expected_version=expected_version)

        logger.info(
            "Property synced",
            domain_id=domain_id,
            identity=identity,
            tx_hash=tx_hash,
            block_number=receipt.block_number,
            transaction_count=len(stored.transactions),
        )
        return stored
