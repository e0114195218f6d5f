"""
Entity Store Abstraction

This module defines the EntityStore interface and provides two
implementations:
- InMemoryEntityStore: For development and testing
- MongoEntityStore: For production, backed by MongoDB via pymongo

The EntityStore is responsible for:
- Keyed persistence of SyncedEntity documents by (kind, domainId)
- Optimistic concurrency: every write names the version it read
- Append-only updates used by restoration (push, never rewrite)
- Lookups into collaborator-owned collections (user wallets, document
  verification requests)

There is deliberately NO delete operation. An entity's record is the
permanent audit trail and the ground truth for restoration.

WRITE CONTRACT:
    entity = store.find_by_domain_or_identity(kind, domain_id, identity)
    merged = ...  # build new entity, version=entity.version
    store.upsert(merged, expected_version=entity.version)

A stale expected_version raises ConcurrencyError; nothing is written.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Any, Optional, Union

from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from web3 import Web3

from ..core.errors import ConcurrencyError, StoreWriteFailure
from ..observability import get_logger
from ..schemas import (
    DocumentVerificationEntity,
    EntityKind,
    IdentityEntry,
    PropertyEntity,
    TransactionRecord,
    parse_entity,
    same_identity,
    to_document,
)
from .config import StoreConfig
from .indexes import ensure_indexes


logger = get_logger(__name__)

Entity = Union[PropertyEntity, DocumentVerificationEntity]


def _kind_value(kind: Union[EntityKind, str]) -> str:
    return kind.value if isinstance(kind, EntityKind) else str(kind)


def _checksum(identity: str) -> str:
    return Web3.to_checksum_address(identity) if Web3.is_address(identity) else identity


def _identity_variants(identity: str) -> list[str]:
    """Stored spellings an identity may have (checksum, lowercase, as given)."""
    return sorted({identity, identity.lower(), _checksum(identity)})


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class EntityStore(ABC):
    """
    Abstract base class for the off-chain entity store.

    Implementations must ensure:
    1. At most one entity per (kind, domainId)
    2. Writes with a stale expected_version are rejected, not merged
    3. append_transaction never reorders or rewrites existing entries
    4. Every successful write increments the entity's version
    """

    @abstractmethod
    def get(self, kind: Union[EntityKind, str], domain_id: str) -> Optional[Entity]:
        pass

    @abstractmethod
    def find_by_domain_or_identity(
        self,
        kind: Union[EntityKind, str],
        domain_id: str,
        identity: str,
    ) -> Optional[Entity]:
        """
        Find the entity keyed by domain_id, else one that has ever been
        known by `identity`. A domain_id match wins.
        """
        pass

    @abstractmethod
    def upsert(self, entity: Entity, expected_version: int) -> Entity:
        """
        Replace (or create) the full document keyed by (kind, domainId).

        expected_version=0 means "must not exist yet".
        Returns the stored entity with its new version.
        """
        pass

    @abstractmethod
    def insert(self, entity: Entity) -> Entity:
        """Insert a new entity. StoreWriteFailure if the key already exists."""
        pass

    @abstractmethod
    def append_transaction(
        self,
        kind: Union[EntityKind, str],
        domain_id: str,
        record: TransactionRecord,
        *,
        identity_entry: Optional[IdentityEntry] = None,
        current_identity: Optional[str] = None,
        modified_at: Optional[datetime] = None,
    ) -> Entity:
        """
        Append one transaction record (and optionally a new identity).

        The identity entry is added only if its identity is not already in
        the history; current_identity must be in the history afterwards.
        """
        pass

    @abstractmethod
    def list_all(self) -> list[Entity]:
        """All entities, both kinds, in insertion order where supported."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def ensure_indexes(self) -> None:
        """Create lookup indexes. Safe to call repeatedly."""
        pass

    # ---------------- Collaborator-owned collections ----------------

    @abstractmethod
    def find_wallet_address(self, user_handle: str) -> Optional[str]:
        """Wallet address registered for a user handle, if any (unvalidated)."""
        pass

    @abstractmethod
    def update_document_request(self, domain_id: str, identity: str) -> bool:
        """
        Point the collaborator's document verification request at a new
        identity. Returns False if no such request exists.
        """
        pass

    def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryEntityStore(EntityStore):
    """
    In-memory implementation of EntityStore.

    Stores documents in their persisted (camelCase) shape and hands out
    freshly parsed copies, so callers can never mutate stored state.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._docs: dict[tuple[str, str], dict] = {}
        self._lock = Lock()
        self.wallets: dict[str, str] = {}
        self.document_requests: dict[str, dict] = {}
        self.index_builds = 0

    @staticmethod
    def _key(kind: Union[EntityKind, str], domain_id: str) -> tuple[str, str]:
        return (_kind_value(kind), domain_id)

    @staticmethod
    def _load(doc: dict) -> Entity:
        return parse_entity(copy.deepcopy(doc))

    def get(self, kind, domain_id):
        with self._lock:
            doc = self._docs.get(self._key(kind, domain_id))
            return self._load(doc) if doc else None

    def find_by_domain_or_identity(self, kind, domain_id, identity):
        with self._lock:
            doc = self._docs.get(self._key(kind, domain_id))
            if doc is not None:
                return self._load(doc)
            for (doc_kind, _), candidate in self._docs.items():
                if doc_kind != _kind_value(kind):
                    continue
                if any(
                    same_identity(entry["identity"], identity)
                    for entry in candidate.get("identityHistory", [])
                ):
                    return self._load(candidate)
            return None

    def upsert(self, entity, expected_version):
        key = self._key(entity.kind, entity.domain_id)
        with self._lock:
            current = self._docs.get(key)
            current_version = current.get("version", 0) if current else 0
            if current_version != expected_version:
                raise ConcurrencyError(
                    f"Version mismatch for {key[0]} {key[1]}: "
                    f"expected {expected_version}, found {current_version}",
                    domain_id=entity.domain_id,
                    kind=key[0],
                )
            doc = to_document(entity)
            doc["version"] = expected_version + 1
            self._docs[key] = doc
            return self._load(doc)

    def insert(self, entity):
        key = self._key(entity.kind, entity.domain_id)
        with self._lock:
            if key in self._docs:
                raise StoreWriteFailure(
                    f"{key[0]} {key[1]} already exists",
                    domain_id=entity.domain_id,
                    kind=key[0],
                )
            doc = to_document(entity)
            doc["version"] = 1
            self._docs[key] = doc
            return self._load(doc)

    def append_transaction(
        self,
        kind,
        domain_id,
        record,
        *,
        identity_entry=None,
        current_identity=None,
        modified_at=None,
    ):
        key = self._key(kind, domain_id)
        with self._lock:
            doc = self._docs.get(key)
            if doc is None:
                raise StoreWriteFailure(
                    f"{key[0]} {domain_id} not found", domain_id=domain_id, kind=key[0]
                )
            updated = copy.deepcopy(doc)
            history = updated.setdefault("identityHistory", [])
            if identity_entry is not None and not any(
                same_identity(e["identity"], identity_entry.identity) for e in history
            ):
                entry = identity_entry.model_dump(by_alias=True)
                entry["identity"] = _checksum(entry["identity"])
                history.append(entry)
            if current_identity is not None:
                updated["currentIdentity"] = _checksum(current_identity)
            updated.setdefault("transactions", []).append(record.model_dump(by_alias=True))
            if modified_at is not None:
                updated["lastModifiedAt"] = modified_at
            updated["version"] = updated.get("version", 0) + 1

            entity = self._load(updated)  # validates invariants before committing
            self._docs[key] = updated
            return entity

    def list_all(self):
        with self._lock:
            return [self._load(doc) for doc in self._docs.values()]

    def count(self):
        return len(self._docs)

    def ensure_indexes(self):
        self.index_builds += 1

    def find_wallet_address(self, user_handle):
        return self.wallets.get(user_handle)

    def update_document_request(self, domain_id, identity):
        request = self.document_requests.get(domain_id)
        if request is None:
            return False
        request["blockchainId"] = identity
        return True

    def clear(self) -> None:
        """Clear all entities (for testing only)."""
        with self._lock:
            self._docs.clear()


# ============================================================
# MONGODB IMPLEMENTATION
# ============================================================

class MongoEntityStore(EntityStore):
    """
    MongoDB implementation of EntityStore.

    Provides:
    - Durability and a shared store across instances
    - Optimistic concurrency via a version-filtered replace backed by
      the unique (kind, domainId) index
    - Server-selection/socket timeouts so a dead store fails fast

    The unique index must exist for concurrent first writes to be
    rejected; call ensure_indexes() at startup.

    Usage:
        store = MongoEntityStore.from_config(StoreConfig.from_env())
        store.ensure_indexes()
    """

    def __init__(self, client: MongoClient, config: StoreConfig):
        self._client = client
        self._config = config
        self._db = client[config.database]
        self._entities = self._db[config.entity_collection]
        self._users = self._db[config.users_collection]
        self._document_requests = self._db[config.document_requests_collection]

    @classmethod
    def from_config(cls, config: StoreConfig) -> "MongoEntityStore":
        client = MongoClient(
            config.url,
            tz_aware=True,
            serverSelectionTimeoutMS=config.timeout_ms,
            socketTimeoutMS=config.timeout_ms,
        )
        logger.info(
            "Mongo entity store configured",
            url=config.redacted_url(),
            database=config.database,
            collection=config.entity_collection,
        )
        return cls(client, config)

    def _run(self, action: str, fn, *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            raise StoreWriteFailure(f"{action} failed: {e}") from e

    def get(self, kind, domain_id):
        doc = self._run(
            "find",
            self._entities.find_one,
            {"kind": _kind_value(kind), "domainId": domain_id},
        )
        return parse_entity(doc) if doc else None

    def find_by_domain_or_identity(self, kind, domain_id, identity):
        found = self.get(kind, domain_id)
        if found is not None:
            return found
        doc = self._run(
            "find",
            self._entities.find_one,
            {
                "kind": _kind_value(kind),
                "identityHistory.identity": {"$in": _identity_variants(identity)},
            },
        )
        return parse_entity(doc) if doc else None

    def upsert(self, entity, expected_version):
        doc = to_document(entity)
        doc["version"] = expected_version + 1
        query: dict = {"kind": entity.kind, "domainId": entity.domain_id}
        if expected_version == 0:
            # Documents written before versioning have no version field
            query["version"] = {"$in": [0, None]}
        else:
            query["version"] = expected_version

        try:
            stored = self._run(
                "replace",
                self._entities.find_one_and_replace,
                query,
                doc,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as e:
            raise ConcurrencyError(
                f"Version mismatch for {entity.kind} {entity.domain_id}: "
                f"expected {expected_version}",
                domain_id=entity.domain_id,
                kind=entity.kind,
            ) from e
        return parse_entity(stored)

    def insert(self, entity):
        doc = to_document(entity)
        doc["version"] = 1
        try:
            self._run("insert", self._entities.insert_one, doc)
        except DuplicateKeyError as e:
            raise StoreWriteFailure(
                f"{entity.kind} {entity.domain_id} already exists",
                domain_id=entity.domain_id,
                kind=entity.kind,
            ) from e
        return parse_entity(doc)

    def append_transaction(
        self,
        kind,
        domain_id,
        record,
        *,
        identity_entry=None,
        current_identity=None,
        modified_at=None,
    ):
        key = {"kind": _kind_value(kind), "domainId": domain_id}

        # Single pipeline update: the identity push and the transaction push
        # land together or not at all
        fields: dict = {
            "transactions": {
                "$concatArrays": [
                    {"$ifNull": ["$transactions", []]},
                    [{"$literal": record.model_dump(by_alias=True)}],
                ]
            },
            "version": {"$add": [{"$ifNull": ["$version", 0]}, 1]},
        }
        if identity_entry is not None:
            entry = identity_entry.model_dump(by_alias=True)
            entry["identity"] = _checksum(entry["identity"])
            history = {"$ifNull": ["$identityHistory", []]}
            known = {
                "$in": [
                    entry["identity"].lower(),
                    {"$map": {"input": history, "as": "e", "in": {"$toLower": "$$e.identity"}}},
                ]
            }
            fields["identityHistory"] = {
                "$cond": [known, history, {"$concatArrays": [history, [{"$literal": entry}]]}]
            }
        if current_identity is not None:
            fields["currentIdentity"] = {"$literal": _checksum(current_identity)}
        if modified_at is not None:
            fields["lastModifiedAt"] = {"$literal": modified_at}

        stored = self._run(
            "append transaction",
            self._entities.find_one_and_update,
            key,
            [{"$set": fields}],
            return_document=ReturnDocument.AFTER,
        )
        if stored is None:
            raise StoreWriteFailure(
                f"{key['kind']} {domain_id} not found", domain_id=domain_id, kind=key["kind"]
            )
        return parse_entity(stored)

    def list_all(self):
        cursor = self._run("list", self._entities.find, {})
        try:
            return [parse_entity(doc) for doc in cursor]
        except PyMongoError as e:
            raise StoreWriteFailure(f"list failed: {e}") from e

    def count(self):
        return self._run("count", self._entities.count_documents, {})

    def ensure_indexes(self):
        ensure_indexes(self._db, self._config)

    def find_wallet_address(self, user_handle):
        user = self._run(
            "find user",
            self._users.find_one,
            {"email": user_handle},
            {"walletAddress": 1},
        )
        return user.get("walletAddress") if user else None

    def update_document_request(self, domain_id, identity):
        result = self._run(
            "update document request",
            self._document_requests.update_one,
            {"requestId": domain_id},
            {"$set": {"blockchainId": identity}},
        )
        return result.matched_count > 0

    def close(self) -> None:
        self._client.close()
