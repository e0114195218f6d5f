"""
Persistence Layer for the vaultsync engine

Provides:
- EntityStore abstraction (InMemory for dev/tests, MongoDB for prod)
- Index blueprints for the synced entity collection
- Connection configuration
"""

from .store import (
    EntityStore,
    InMemoryEntityStore,
    MongoEntityStore,
)
from .config import StoreConfig, StoreDriver, get_store_url, get_store_driver
from .indexes import ensure_indexes, describe_indexes

__all__ = [
    "EntityStore",
    "InMemoryEntityStore",
    "MongoEntityStore",
    "StoreConfig",
    "StoreDriver",
    "get_store_url",
    "get_store_driver",
    "ensure_indexes",
    "describe_indexes",
]
