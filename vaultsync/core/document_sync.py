"""
Document Sync

Records a new document verification request off-chain, before anything
reaches the ledger.

Each submission mints a FRESH identity (time-seeded): submitting the same
request twice yields two different identities. The record carries a single
pre-chain Submission entry (no txHash, no blockNumber); the on-chain
verification is issued later, by restoration or by a verifier.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..observability import get_logger
from ..schemas import (
    DocumentSyncRequest,
    DocumentVerificationEntity,
    EntityKind,
    IdentityEntry,
    TransactionKind,
    TransactionRecord,
)
from .errors import ValidationError
from .identity import Clock, IdentityDeriver, utc_now

if TYPE_CHECKING:
    from ..db.store import EntityStore
    from .ledger_client import LedgerClient


logger = get_logger(__name__)


def coerce_document_request(data: Union[DocumentSyncRequest, dict[str, Any]]) -> DocumentSyncRequest:
    if isinstance(data, DocumentSyncRequest):
        return data
    try:
        return DocumentSyncRequest.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid document data: {e}") from e


class DocumentSync:
    """Mint an identity for a document request and record its submission."""

    def __init__(
        self,
        ledger: "LedgerClient",
        store: "EntityStore",
        deriver: IdentityDeriver,
        clock: Optional[Clock] = None,
    ):
        self._ledger = ledger
        self._store = store
        self._deriver = deriver
        self._clock = clock or utc_now

    def resolve_owner(self, user_handle: str) -> str:
        """Registered wallet for the handle, else the handle itself."""
        wallet = self._store.find_wallet_address(user_handle)
        if wallet and self._ledger.is_address(wallet):
            return IdentityDeriver.normalize_address(wallet)
        if wallet:
            logger.warning(
                "Malformed wallet address on file, using handle",
                user_handle=user_handle,
                wallet=wallet,
            )
        return user_handle

    def sync(self, data: Union[DocumentSyncRequest, dict[str, Any]]) -> str:
        request = coerce_document_request(data)
        domain_id = (request.domain_id or "").strip()
        user_handle = (request.user_handle or "").strip()
        document_type = (request.document_type or "").strip()

        # Raises ValidationError on any empty field, before any write
        identity = self._deriver.derive_document_identity(domain_id, user_handle, document_type)
        owner = self.resolve_owner(user_handle)
        now = self._clock()

        if not self._store.update_document_request(domain_id, identity):
            logger.warning(
                "No document verification request to update",
                domain_id=domain_id,
                identity=identity,
            )

        submission = TransactionRecord(
            kind=TransactionKind.SUBMISSION,
            from_address=owner if self._ledger.is_address(owner) else None,
            observed_at=now,
            identity=identity,
        )
        entry = IdentityEntry(identity=identity, observed_at=now)

        existing = self._store.get(EntityKind.DOCUMENT_VERIFICATION, domain_id)
        if existing is None:
            entity = DocumentVerificationEntity(
                domain_id=domain_id,
                current_identity=identity,
                identity_history=[entry],
                owner=owner,
                verified=False,
                transactions=[submission],
                registered_at=now,
                last_modified_at=now,
                document_type=document_type,
                user_handle=user_handle,
            )
            self._store.insert(entity)
        else:
            # Resubmission: the new identity becomes current, history is kept
            entity = existing.model_copy(
                update={
                    "current_identity": identity,
                    "identity_history": [*existing.identity_history, entry],
                    "owner": owner,
                    "verified": False,
                    "transactions": [*existing.transactions, submission],
                    "last_modified_at": now,
                    "document_type": document_type,
                    "user_handle": user_handle,
                }
            )
            self._store.upsert(entity, expected_version=existing.version)

        self._store.ensure_indexes()

        logger.info(
            "Document submission recorded",
            domain_id=domain_id,
            identity=identity,
            resubmission=existing is not None,
        )
        return identity
