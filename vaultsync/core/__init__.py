# Core sync services
from .errors import (
    SyncError,
    ValidationError,
    LedgerRecordNotFound,
    LedgerCallFailure,
    StoreWriteFailure,
    ConcurrencyError,
    IdentityResolutionFailure,
)
from .identity import IdentityDeriver
from .ledger_client import LedgerClient, LedgerConfig, Web3LedgerClient
from .property_sync import PropertySync
from .document_sync import DocumentSync
from .restoration import (
    RestorationEngine,
    RestorationSummary,
    EntityOutcome,
    RegistrationState,
    OwnershipState,
)
from .service import SyncService, SyncConfig, KeyedLocks, build_service_from_env

__all__ = [
    "SyncError",
    "ValidationError",
    "LedgerRecordNotFound",
    "LedgerCallFailure",
    "StoreWriteFailure",
    "ConcurrencyError",
    "IdentityResolutionFailure",
    "IdentityDeriver",
    "LedgerClient",
    "LedgerConfig",
    "Web3LedgerClient",
    "PropertySync",
    "DocumentSync",
    "RestorationEngine",
    "RestorationSummary",
    "EntityOutcome",
    "RegistrationState",
    "OwnershipState",
    "SyncService",
    "SyncConfig",
    "KeyedLocks",
    "build_service_from_env",
]
