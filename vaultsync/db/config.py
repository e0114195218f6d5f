"""
Store Configuration

Handles connection settings and environment-based driver selection.

Environment Variables:
    MONGODB_URL / MONGO_URI: Full connection URL (either is accepted)
    VAULTSYNC_DATABASE_NAME: Database name (default trustvault)
    VAULTSYNC_ENTITY_COLLECTION: Synced entity collection (default blockchainTxns)
    VAULTSYNC_STORE_TIMEOUT_MS: Server selection / socket timeout (default 5000)

    VAULTSYNC_STORE_DRIVER: Which driver to use
        - "memory" (default if no database configured)
        - "mongo"
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class StoreDriver(str, Enum):
    """Supported EntityStore drivers."""
    MEMORY = "memory"
    MONGO = "mongo"


@dataclass
class StoreConfig:
    """Off-chain store connection configuration."""
    url: str = "mongodb://localhost:27017"
    database: str = "trustvault"
    entity_collection: str = "blockchainTxns"

    # Collaborator-owned collections
    users_collection: str = "users"
    document_requests_collection: str = "documentVerifications"

    timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Load configuration from environment variables."""
        return cls(
            url=get_store_url() or "mongodb://localhost:27017",
            database=os.getenv("VAULTSYNC_DATABASE_NAME", "trustvault"),
            entity_collection=os.getenv("VAULTSYNC_ENTITY_COLLECTION", "blockchainTxns"),
            timeout_ms=int(os.getenv("VAULTSYNC_STORE_TIMEOUT_MS", "5000")),
        )

    def redacted_url(self) -> str:
        """URL safe for logging (credentials removed)."""
        if "@" not in self.url:
            return self.url
        scheme, _, rest = self.url.partition("://")
        return f"{scheme}://***@{rest.split('@', 1)[1]}"


def get_store_url() -> Optional[str]:
    """
    Get the store URL from environment.

    Returns None if no database is configured (use in-memory mode).
    """
    return os.getenv("MONGODB_URL") or os.getenv("MONGO_URI") or None


def get_store_driver() -> StoreDriver:
    """
    Get the EntityStore driver to use.

    Checks VAULTSYNC_STORE_DRIVER, then falls back to:
    - mongo if a store URL is set
    - memory otherwise
    """
    explicit = os.getenv("VAULTSYNC_STORE_DRIVER", "").lower()

    if explicit:
        try:
            return StoreDriver(explicit)
        except ValueError:
            raise ValueError(
                f"Unknown VAULTSYNC_STORE_DRIVER: {explicit}. "
                f"Valid values: memory, mongo"
            ) from None

    if get_store_url() is not None:
        return StoreDriver.MONGO

    return StoreDriver.MEMORY
