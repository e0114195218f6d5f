"""
MongoDB index definitions for the synced entity collection.

Run ``ensure_indexes(database, config)`` at startup; Document Sync also
calls it on every submission, which is safe because MongoDB treats an
identical index definition as a no-op.

Indexes:

  kind_domain_id_unique     - one entity per (kind, domainId); backs the
                              upsert key and optimistic version checks
  kind                      - restoration and reporting scans
  current_identity          - lookups by authoritative identity
  identity_history_identity - find-by-any-past-identity
  transactions_tx_hash      - duplicate txHash detection
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pymongo import ASCENDING, IndexModel
from pymongo.errors import OperationFailure, PyMongoError

from ..core.errors import StoreWriteFailure
from ..observability import get_logger

if TYPE_CHECKING:
    from pymongo.database import Database

    from .config import StoreConfig

logger = get_logger(__name__)


ENTITY_INDEXES: list[IndexModel] = [
    IndexModel(
        [("kind", ASCENDING), ("domainId", ASCENDING)],
        unique=True,
        name="kind_domain_id_unique",
    ),
    IndexModel([("kind", ASCENDING)], name="kind"),
    IndexModel([("currentIdentity", ASCENDING)], name="current_identity"),
    IndexModel([("identityHistory.identity", ASCENDING)], name="identity_history_identity"),
    IndexModel([("transactions.txHash", ASCENDING)], name="transactions_tx_hash", sparse=True),
]

DOCUMENT_REQUEST_INDEXES: list[IndexModel] = [
    IndexModel([("requestId", ASCENDING)], name="request_id"),
    IndexModel([("blockchainId", ASCENDING)], name="blockchain_id", sparse=True),
]


def index_blueprints(config: "StoreConfig") -> dict[str, list[IndexModel]]:
    return {
        config.entity_collection: ENTITY_INDEXES,
        config.document_requests_collection: DOCUMENT_REQUEST_INDEXES,
    }


def ensure_indexes(database: "Database", config: "StoreConfig") -> None:
    """
    Create all indexes defined above.

    An existing index with the same name but different options is an
    operator problem: it is logged, not raised. Connection failures raise
    StoreWriteFailure.
    """
    for collection_name, index_models in index_blueprints(config).items():
        try:
            database[collection_name].create_indexes(index_models)
            logger.debug("Indexes ensured", collection=collection_name)
        except OperationFailure as exc:
            logger.warning(
                "Index creation conflict",
                collection=collection_name,
                error=str(exc),
            )
        except PyMongoError as exc:
            raise StoreWriteFailure(
                f"Could not create indexes on {collection_name}: {exc}"
            ) from exc


def describe_indexes(config: "StoreConfig") -> dict:
    """Plain-dict description of the index blueprints (for docs and the CLI)."""
    out = {}
    for collection, models in index_blueprints(config).items():
        out[collection] = [
            {
                "keys": dict(m.document["key"]),
                "name": m.document.get("name"),
                "unique": m.document.get("unique", False),
                "sparse": m.document.get("sparse", False),
            }
            for m in models
        ]
    return out
