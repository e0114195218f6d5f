"""
Sync Service

The single entry point for the three public operations:

    sync_property(property_data, tx_hash) -> canonical entity dict
    sync_document(doc_data)               -> {"identity": ...}
    restore_ledger_state(on_progress)     -> RestorationSummary

Built once at startup (build_service_from_env) and passed to whoever
needs it: the HTTP adapter keeps it on app.state, the CLI builds its own.

CONCURRENCY GUARANTEES:
- Read-merge-write for one (kind, domainId) is serialized in-process by
  a keyed lock registry
- Across processes, the store's optimistic version check rejects a stale
  write with ConcurrencyError; there is no retry inside the core
"""

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING, Any, Iterator, Optional, Union

from ..observability import get_logger, get_metrics
from ..schemas import (
    DocumentSyncRequest,
    EntityKind,
    PropertySyncRequest,
    to_canonical,
)
from .document_sync import DocumentSync, coerce_document_request
from .errors import SyncError
from .identity import Clock, IdentityDeriver
from .property_sync import PropertySync, coerce_property_request
from .restoration import ProgressCallback, RestorationEngine, RestorationSummary

if TYPE_CHECKING:
    from ..db.store import EntityStore
    from .ledger_client import LedgerClient


logger = get_logger(__name__)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


@dataclass
class SyncConfig:
    """Sync engine behaviour switches."""
    dedupe_transactions: bool = False
    restore_read_workers: int = 4
    restore_read_timeout: Optional[float] = None  # seconds; None = ledger timeout only

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Load configuration from environment variables."""
        timeout = os.getenv("VAULTSYNC_RESTORE_READ_TIMEOUT")
        return cls(
            dedupe_transactions=_env_flag("VAULTSYNC_DEDUPE_TX_HASH"),
            restore_read_workers=int(os.getenv("VAULTSYNC_RESTORE_READ_WORKERS", "4")),
            restore_read_timeout=float(timeout) if timeout else None,
        )


class KeyedLocks:
    """One lock per key, held only while someone is using it."""

    def __init__(self):
        self._guard = Lock()
        self._locks: dict[Any, Lock] = {}
        self._users: dict[Any, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class SyncService:
    """
    Off-chain / ledger reconciliation service.

    Owns the ledger client and the store for its lifetime; close() releases
    both.
    """

    def __init__(
        self,
        ledger: "LedgerClient",
        store: Optional["EntityStore"] = None,
        deriver: Optional[IdentityDeriver] = None,
        config: Optional[SyncConfig] = None,
        clock: Optional[Clock] = None,
    ):
        # Import here to avoid circular imports
        if store is None:
            from ..db.store import InMemoryEntityStore
            store = InMemoryEntityStore()

        self._ledger = ledger
        self._store = store
        self._config = config or SyncConfig()
        self._deriver = deriver or IdentityDeriver(clock=clock)
        self._locks = KeyedLocks()

        self._property_sync = PropertySync(
            ledger, store, dedupe_transactions=self._config.dedupe_transactions
        )
        self._document_sync = DocumentSync(ledger, store, self._deriver, clock=clock)
        self._restoration = RestorationEngine(
            ledger,
            store,
            self._deriver,
            read_workers=self._config.restore_read_workers,
            read_timeout=self._config.restore_read_timeout,
            clock=clock,
        )
        # Restoration sends from one signer; runs must not overlap
        self._restore_lock = Lock()

    @property
    def ledger(self) -> "LedgerClient":
        return self._ledger

    @property
    def store(self) -> "EntityStore":
        return self._store

    @property
    def deriver(self) -> IdentityDeriver:
        return self._deriver

    @property
    def config(self) -> SyncConfig:
        return self._config

    # ================================================================
    # PUBLIC OPERATIONS
    # ================================================================

    def sync_property(
        self,
        property_data: Union[PropertySyncRequest, dict[str, Any]],
        tx_hash: str,
    ) -> dict[str, Any]:
        """
        Mirror a ledger-confirmed asset transaction into the store.

        Returns the merged entity in canonical form (chain integers as
        decimal strings, timestamps as ISO 8601 UTC with milliseconds).
        """
        start = time.perf_counter()
        success = False
        domain_id = None
        try:
            request = coerce_property_request(property_data)
            domain_id = (request.domain_id or "").strip()
            with self._locks.hold((EntityKind.PROPERTY.value, domain_id)):
                entity = self._property_sync.sync(request, tx_hash)
            success = True
            return to_canonical(entity)
        except SyncError as e:
            logger.warning(
                "Property sync failed",
                domain_id=domain_id,
                tx_hash=tx_hash,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        finally:
            get_metrics().record_property_sync((time.perf_counter() - start) * 1000, success)

    def sync_document(
        self, doc_data: Union[DocumentSyncRequest, dict[str, Any]]
    ) -> dict[str, str]:
        """Record a document verification request; returns the fresh identity."""
        start = time.perf_counter()
        success = False
        domain_id = None
        try:
            request = coerce_document_request(doc_data)
            domain_id = (request.domain_id or "").strip()
            with self._locks.hold((EntityKind.DOCUMENT_VERIFICATION.value, domain_id)):
                identity = self._document_sync.sync(request)
            success = True
            return {"identity": identity}
        except SyncError as e:
            logger.warning(
                "Document sync failed",
                domain_id=domain_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        finally:
            get_metrics().record_document_sync((time.perf_counter() - start) * 1000, success)

    def restore_ledger_state(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> RestorationSummary:
        """
        Re-register every stored entity on the ledger and reconcile owners.

        Per-entity failures are recorded on the summary; only a failure to
        enumerate the store raises.
        """
        with self._restore_lock:
            return self._restoration.run(on_progress=on_progress)

    def ensure_indexes(self) -> None:
        self._store.ensure_indexes()

    def close(self) -> None:
        self._store.close()
        self._ledger.close()


def build_service_from_env() -> SyncService:
    """
    Construct the service from environment configuration.

    Store driver: VAULTSYNC_STORE_DRIVER (memory | mongo), see db.config.
    Ledger: VAULTSYNC_RPC_URL and contract artifacts, see LedgerConfig.
    """
    from ..db.config import StoreConfig, StoreDriver, get_store_driver
    from ..db.store import InMemoryEntityStore, MongoEntityStore
    from .ledger_client import LedgerConfig, Web3LedgerClient

    driver = get_store_driver()
    if driver == StoreDriver.MONGO:
        store = MongoEntityStore.from_config(StoreConfig.from_env())
    else:
        logger.warning("Using in-memory entity store; records are lost on exit")
        store = InMemoryEntityStore()

    ledger = Web3LedgerClient(LedgerConfig.from_env())
    config = SyncConfig.from_env()

    logger.info(
        "Sync service configured",
        store_driver=driver.value,
        dedupe_transactions=config.dedupe_transactions,
        restore_read_workers=config.restore_read_workers,
    )
    return SyncService(ledger, store, config=config)
