"""
Canonical Synced Entity Schema

One off-chain record per tracked entity. The record is the permanent
audit trail and the ground truth for restoration:

- It is never deleted.
- Its transaction log is append-only.
- Its identity history is an ordered set, unique by identity value.

Two kinds share the same envelope and are discriminated by `kind`:
    Property              - a registrable asset
    DocumentVerification  - a document verification request

Stored field names are camelCase (domainId, identityHistory, txHash, ...)
so existing documents in the store and its indexes keep working; Python
code uses the snake_case attribute names.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    model_validator,
)

from ..serialization import format_chain_int, format_timestamp


class EntityKind(str, Enum):
    """Kinds of tracked entity."""
    PROPERTY = "Property"
    DOCUMENT_VERIFICATION = "DocumentVerification"


class TransactionKind(str, Enum):
    """
    Kinds of transaction log entry.
    You can add more later, never remove.
    """
    REGISTRATION = "Registration"
    UPDATE = "Update"
    VERIFICATION = "Verification"
    TRANSFER = "Transfer"
    SUBMISSION = "Submission"      # pre-chain, no txHash / blockNumber
    RESTORATION = "Restoration"


def same_identity(a: Optional[str], b: Optional[str]) -> bool:
    """Chain identities compare case-insensitively (checksum casing is presentation)."""
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


class TransactionRecord(BaseModel):
    """
    One entry in an entity's transaction log.

    IMMUTABLE once appended. For ledger-observed transactions every chain
    field comes from the receipt and block, never from caller input.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, use_enum_values=True)

    kind: TransactionKind
    from_address: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    observed_at: datetime = Field(..., alias="observedAt")

    # Chain identity the transaction applied to
    identity: Optional[str] = None
    locality: Optional[str] = None

    @field_serializer("block_number", when_used="json")
    def _serialize_block_number(self, value: Optional[int]) -> Optional[str]:
        return format_chain_int(value)

    @field_serializer("observed_at", when_used="json")
    def _serialize_observed_at(self, value: datetime) -> str:
        return format_timestamp(value)

    @property
    def is_pre_chain(self) -> bool:
        """Logical event not (yet) observed on the ledger."""
        return self.tx_hash is None


class IdentityEntry(BaseModel):
    """A chain identity this entity has been known by."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    identity: str
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    observed_at: datetime = Field(..., alias="observedAt")

    @field_serializer("observed_at", when_used="json")
    def _serialize_observed_at(self, value: datetime) -> str:
        return format_timestamp(value)


class _SyncedEntityBase(BaseModel):
    """
    Fields shared by every tracked entity.

    `version` is the optimistic concurrency counter: 0 means "never
    written"; the store increments it on every successful write.
    """
    model_config = ConfigDict(populate_by_name=True)

    domain_id: str = Field(..., min_length=1, alias="domainId")
    current_identity: str = Field(..., alias="currentIdentity")
    identity_history: list[IdentityEntry] = Field(
        default_factory=list, alias="identityHistory"
    )
    owner: Optional[str] = Field(
        default=None,
        description="Chain address, or an email-like user handle pending resolution",
    )
    verified: bool = False
    transactions: list[TransactionRecord] = Field(default_factory=list)
    registered_at: datetime = Field(..., alias="registeredAt")
    last_modified_at: datetime = Field(..., alias="lastModifiedAt")
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _current_identity_in_history(self):
        if not self.has_identity(self.current_identity):
            raise ValueError(
                f"identityHistory must contain currentIdentity {self.current_identity}"
            )
        seen: set[str] = set()
        for entry in self.identity_history:
            key = entry.identity.lower()
            if key in seen:
                raise ValueError(f"Duplicate identity in identityHistory: {entry.identity}")
            seen.add(key)
        return self

    @field_serializer("registered_at", "last_modified_at", when_used="json")
    def _serialize_timestamps(self, value: datetime) -> str:
        return format_timestamp(value)

    def has_identity(self, identity: str) -> bool:
        return any(same_identity(e.identity, identity) for e in self.identity_history)

    def has_transaction(self, tx_hash: str) -> bool:
        return any(
            t.tx_hash is not None and t.tx_hash.lower() == tx_hash.lower()
            for t in self.transactions
        )

    @property
    def owner_is_handle(self) -> bool:
        """Owner is an off-chain user handle (email-like) rather than an address."""
        return bool(self.owner) and "@" in self.owner


class PropertyEntity(_SyncedEntityBase):
    """A registrable asset tracked on the asset registry."""
    kind: Literal["Property"] = "Property"

    name: str = "Name not specified"
    locality: str = Field(..., min_length=1)
    property_type: str = Field(default="Type not specified", alias="propertyType")


class DocumentVerificationEntity(_SyncedEntityBase):
    """A document verification request tracked on the document registry."""
    kind: Literal["DocumentVerification"] = "DocumentVerification"

    document_type: str = Field(..., min_length=1, alias="documentType")
    user_handle: str = Field(..., min_length=1, alias="userHandle")
    expiry: Optional[int] = Field(
        default=None,
        description="Unix seconds used when (re)issuing the on-chain verification",
    )

    @field_serializer("expiry", when_used="json")
    def _serialize_expiry(self, value: Optional[int]) -> Optional[str]:
        return format_chain_int(value)


SyncedEntity = Annotated[
    Union[PropertyEntity, DocumentVerificationEntity],
    Field(discriminator="kind"),
]

_ENTITY_ADAPTER: TypeAdapter = TypeAdapter(SyncedEntity)


def parse_entity(document: dict) -> Union[PropertyEntity, DocumentVerificationEntity]:
    """Build the right entity model from a stored document."""
    data = {k: v for k, v in document.items() if k != "_id"}
    return _ENTITY_ADAPTER.validate_python(data)


def to_document(entity: Union[PropertyEntity, DocumentVerificationEntity]) -> dict:
    """Storage form: camelCase keys, native datetimes and ints."""
    return entity.model_dump(by_alias=True)


def to_canonical(entity: Union[PropertyEntity, DocumentVerificationEntity]) -> dict:
    """Caller-facing form: camelCase keys, chain integers and timestamps as strings."""
    return entity.model_dump(mode="json", by_alias=True)
