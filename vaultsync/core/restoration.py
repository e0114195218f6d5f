"""
Restoration Engine

Rebuilds ledger state from the off-chain records after a ledger reset
(e.g. a local development chain restarted from genesis).

For every stored entity:

    Property:
        NotPresentOnChain -> Registering -> Registered
        then, independently,
        OwnerMismatch -> TransferringOwnership -> OwnerSynced
        (or SkippedNoWallet when an owner handle has no wallet on file)

    DocumentVerification:
        absent at its lookup key -> re-issue the verification -> Registered

EXECUTION MODEL:
- Ledger reads (probes, owner wallet lookups) run in a bounded thread pool.
- Every state-changing send goes through ONE writer, in entity order,
  from ONE signer. Nonces are per-account, so sends must not interleave.
- A failure for one entity is logged, recorded on its EntityOutcome and
  the run moves on. Only failure to enumerate the store propagates.

Every processed entity gets a Restoration entry appended to its log,
even when nothing was sent (the entry then has no txHash and
from = the restoring signer).
"""

from __future__ import annotations

import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from ..observability import get_logger, get_metrics, run_id_var
from ..schemas import (
    DocumentVerificationEntity,
    EntityKind,
    IdentityEntry,
    OnChainDocument,
    OnChainProperty,
    PropertyEntity,
    SentTransaction,
    TransactionKind,
    TransactionRecord,
    same_identity,
)
from .errors import IdentityResolutionFailure, LedgerCallFailure
from .identity import Clock, IdentityDeriver, utc_now

if TYPE_CHECKING:
    from datetime import datetime

    from ..db.store import EntityStore
    from .ledger_client import LedgerClient


logger = get_logger(__name__)

Entity = Union[PropertyEntity, DocumentVerificationEntity]

# Default validity of a re-issued document verification
DOCUMENT_VALIDITY = timedelta(days=365)


class RegistrationState(str, Enum):
    NOT_PRESENT = "NotPresentOnChain"
    REGISTERING = "Registering"
    REGISTERED = "Registered"
    FAILED = "Failed"


class OwnershipState(str, Enum):
    NOT_ATTEMPTED = "NotAttempted"
    OWNER_MISMATCH = "OwnerMismatch"
    TRANSFERRING = "TransferringOwnership"
    OWNER_SYNCED = "OwnerSynced"
    SKIPPED_NO_WALLET = "SkippedNoWallet"


@dataclass
class EntityOutcome:
    """What restoration did for one entity."""
    kind: str
    domain_id: str
    identity: Optional[str]
    registration: RegistrationState = RegistrationState.NOT_PRESENT
    ownership: OwnershipState = OwnershipState.NOT_ATTEMPTED
    sent: list[str] = field(default_factory=list)  # tx hashes, in send order
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "domainId": self.domain_id,
            "identity": self.identity,
            "registration": self.registration.value,
            "ownership": self.ownership.value,
            "sent": list(self.sent),
            "error": self.error,
        }


@dataclass
class RestorationSummary:
    """Outcome of one restoration run. Callers may ignore it."""
    run_id: str
    signer: Optional[str] = None
    outcomes: list[EntityOutcome] = field(default_factory=list)
    processed: int = 0
    registered: int = 0
    transferred: int = 0
    skipped_no_wallet: int = 0
    errors: int = 0
    duration_ms: float = 0.0

    def add(self, outcome: EntityOutcome) -> None:
        self.outcomes.append(outcome)
        self.processed += 1
        if outcome.error is not None:
            self.errors += 1
        if outcome.ownership == OwnershipState.SKIPPED_NO_WALLET:
            self.skipped_no_wallet += 1

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "signer": self.signer,
            "processed": self.processed,
            "registered": self.registered,
            "transferred": self.transferred,
            "skippedNoWallet": self.skipped_no_wallet,
            "errors": self.errors,
            "durationMs": self.duration_ms,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


ProgressCallback = Callable[[EntityOutcome], None]


@dataclass
class _Probe:
    """Read-phase result for one entity."""
    identity: Optional[str] = None
    on_chain: Optional[Union[OnChainProperty, OnChainDocument]] = None
    lookup_key: Optional[str] = None
    target_owner: Optional[str] = None
    owner_error: Optional[IdentityResolutionFailure] = None
    error: Optional[Exception] = None


class RestorationEngine:
    """
    Re-register stored entities on the ledger and reconcile their owners.

    Usage:
        engine = RestorationEngine(ledger, store, deriver)
        summary = engine.run()
        if not summary.ok:
            ...
    """

    def __init__(
        self,
        ledger: "LedgerClient",
        store: "EntityStore",
        deriver: IdentityDeriver,
        *,
        read_workers: int = 4,
        read_timeout: Optional[float] = None,
        clock: Optional[Clock] = None,
    ):
        self._ledger = ledger
        self._store = store
        self._deriver = deriver
        self._read_workers = max(1, read_workers)
        self._read_timeout = read_timeout
        self._clock = clock or utc_now

    # ================================================================
    # RUN
    # ================================================================

    def run(self, on_progress: Optional[ProgressCallback] = None) -> RestorationSummary:
        run_id = uuid.uuid4().hex[:12]
        token = run_id_var.set(run_id)
        start = time.perf_counter()
        summary = RestorationSummary(run_id=run_id)

        try:
            # Enumeration failure is the only failure that escapes a run
            entities = self._store.list_all()
            signer = self._ledger.default_account()
            summary.signer = signer
            logger.info("Restoration started", entity_count=len(entities), signer=signer)

            with ThreadPoolExecutor(
                max_workers=self._read_workers,
                thread_name_prefix="vaultsync-restore-read",
            ) as pool:
                probes: list[Future] = [pool.submit(self._probe, entity) for entity in entities]

                # Single writer: entity order, one signer
                for entity, future in zip(entities, probes):
                    outcome = self._restore_entity(entity, future, signer, summary)
                    summary.add(outcome)
                    if on_progress is not None:
                        on_progress(outcome)
        finally:
            summary.duration_ms = round((time.perf_counter() - start) * 1000, 2)
            get_metrics().record_restoration(summary.processed, summary.errors, summary.duration_ms)
            run_id_var.reset(token)

        logger.info(
            "Restoration finished",
            run_id=run_id,
            processed=summary.processed,
            registered=summary.registered,
            transferred=summary.transferred,
            skipped_no_wallet=summary.skipped_no_wallet,
            errors=summary.errors,
            duration_ms=summary.duration_ms,
        )
        return summary

    def _restore_entity(
        self,
        entity: Entity,
        future: Future,
        signer: str,
        summary: RestorationSummary,
    ) -> EntityOutcome:
        outcome = EntityOutcome(
            kind=entity.kind,
            domain_id=entity.domain_id,
            identity=entity.current_identity,
        )
        try:
            probe: _Probe = future.result(timeout=self._read_timeout)
            if probe.error is not None:
                raise probe.error
            outcome.identity = probe.identity

            if entity.kind == EntityKind.PROPERTY.value:
                self._restore_property(entity, probe, signer, outcome, summary)
            else:
                self._restore_document(entity, probe, signer, outcome, summary)

        except FuturesTimeout:
            outcome.error = "Ledger read timed out"
            self._fail(entity, outcome)
        except Exception as e:
            outcome.error = f"{type(e).__name__}: {e}"
            self._fail(entity, outcome)

        return outcome

    def _fail(self, entity: Entity, outcome: EntityOutcome) -> None:
        if outcome.registration in (RegistrationState.NOT_PRESENT, RegistrationState.REGISTERING):
            outcome.registration = RegistrationState.FAILED
        logger.error(
            "Entity restoration failed",
            kind=entity.kind,
            domain_id=entity.domain_id,
            identity=outcome.identity,
            registration=outcome.registration.value,
            ownership=outcome.ownership.value,
            error=outcome.error,
        )

    # ================================================================
    # READ PHASE (thread pool)
    # ================================================================

    def _probe(self, entity: Entity) -> _Probe:
        probe = _Probe()
        try:
            if isinstance(entity, PropertyEntity):
                probe.identity = entity.current_identity or self._deriver.derive_property_identity(
                    entity.domain_id, entity.name, entity.locality
                )
                try:
                    probe.on_chain = self._ledger.get_property(probe.identity)
                except LedgerCallFailure as e:
                    # The registry reverts for unknown identities
                    logger.debug(
                        "Property not on chain",
                        domain_id=entity.domain_id,
                        identity=probe.identity,
                        reason=str(e),
                    )
            else:
                probe.identity = entity.current_identity
                probe.lookup_key = self._ledger.document_lookup_key(
                    entity.current_identity, entity.domain_id
                )
                try:
                    probe.on_chain = self._ledger.get_document(probe.lookup_key)
                except LedgerCallFailure as e:
                    logger.debug(
                        "Document not on chain",
                        domain_id=entity.domain_id,
                        lookup_key=probe.lookup_key,
                        reason=str(e),
                    )

            try:
                probe.target_owner = self._resolve_owner(entity)
            except IdentityResolutionFailure as e:
                probe.owner_error = e
        except Exception as e:
            probe.error = e
        return probe

    def _resolve_owner(self, entity: Entity) -> Optional[str]:
        """Chain address the entity should be owned by; None when it has no owner."""
        owner = entity.owner
        if not owner:
            return None
        if self._ledger.is_address(owner):
            return IdentityDeriver.normalize_address(owner)
        if entity.owner_is_handle:
            wallet = self._store.find_wallet_address(owner)
            if wallet and self._ledger.is_address(wallet):
                return IdentityDeriver.normalize_address(wallet)
        raise IdentityResolutionFailure(
            f"No wallet address on file for {owner}",
            domain_id=entity.domain_id,
            kind=entity.kind,
        )

    # ================================================================
    # WRITE PHASE (single writer)
    # ================================================================

    def _observed_at(self, sent: Optional[SentTransaction]) -> "datetime":
        if sent is not None and sent.block_number is not None:
            block = self._ledger.get_block(sent.block_number)
            if block is not None:
                return block.observed_at
        return self._clock()

    def _append(
        self,
        entity: Entity,
        kind: TransactionKind,
        identity: str,
        signer: str,
        sent: Optional[SentTransaction],
        *,
        new_identity: bool = False,
    ) -> None:
        observed_at = self._observed_at(sent)
        record = TransactionRecord(
            kind=kind,
            from_address=sent.from_address if sent else signer,
            to=sent.to if sent else None,
            tx_hash=sent.tx_hash if sent else None,
            block_number=sent.block_number if sent else None,
            observed_at=observed_at,
            identity=identity,
            locality=getattr(entity, "locality", None),
        )
        entry = None
        if new_identity:
            entry = IdentityEntry(
                identity=identity,
                tx_hash=sent.tx_hash if sent else None,
                observed_at=observed_at,
            )
        self._store.append_transaction(
            entity.kind,
            entity.domain_id,
            record,
            identity_entry=entry,
            current_identity=identity if new_identity else None,
            modified_at=observed_at if sent else None,
        )

    def _restore_property(
        self,
        entity: PropertyEntity,
        probe: _Probe,
        signer: str,
        outcome: EntityOutcome,
        summary: RestorationSummary,
    ) -> None:
        identity = probe.identity
        sent = None

        if probe.on_chain is None:
            outcome.registration = RegistrationState.REGISTERING
            logger.info("Registering property", domain_id=entity.domain_id, identity=identity)
            sent = self._ledger.register_property(
                entity.domain_id,
                entity.name,
                entity.locality,
                entity.property_type,
                sender=signer,
            )
            outcome.sent.append(sent.tx_hash)
            outcome.registration = RegistrationState.REGISTERED
            summary.registered += 1
            identity = sent.identity or identity
            outcome.identity = identity
            chain_owner = signer
        else:
            outcome.registration = RegistrationState.REGISTERED
            chain_owner = probe.on_chain.owner

        # A fresh registration makes the returned identity current
        self._append(
            entity, TransactionKind.RESTORATION, identity, signer, sent, new_identity=sent is not None
        )

        # Ownership
        if probe.owner_error is not None:
            outcome.ownership = OwnershipState.SKIPPED_NO_WALLET
            logger.warning(
                "Owner has no wallet, leaving ownership with signer",
                domain_id=entity.domain_id,
                owner=entity.owner,
                signer=signer,
            )
            return
        if probe.target_owner is None:
            return
        if same_identity(probe.target_owner, chain_owner):
            outcome.ownership = OwnershipState.OWNER_SYNCED
            return

        outcome.ownership = OwnershipState.OWNER_MISMATCH
        logger.info(
            "Transferring ownership",
            domain_id=entity.domain_id,
            identity=identity,
            from_owner=chain_owner,
            to_owner=probe.target_owner,
        )
        outcome.ownership = OwnershipState.TRANSFERRING
        transfer = self._ledger.transfer_ownership(identity, probe.target_owner, sender=signer)
        outcome.sent.append(transfer.tx_hash)
        self._append(entity, TransactionKind.TRANSFER, identity, signer, transfer)
        outcome.ownership = OwnershipState.OWNER_SYNCED
        summary.transferred += 1

    def _restore_document(
        self,
        entity: DocumentVerificationEntity,
        probe: _Probe,
        signer: str,
        outcome: EntityOutcome,
        summary: RestorationSummary,
    ) -> None:
        identity = probe.identity
        issued_to = probe.target_owner or signer
        sent = None

        if probe.on_chain is None:
            outcome.registration = RegistrationState.REGISTERING
            expiry = entity.expiry or int((entity.registered_at + DOCUMENT_VALIDITY).timestamp())
            logger.info("Re-issuing document verification", domain_id=entity.domain_id, identity=identity)
            sent = self._ledger.verify_document(
                identity,
                entity.document_type,
                issued_to,
                expiry,
                entity.domain_id,
                sender=signer,
            )
            outcome.sent.append(sent.tx_hash)
            outcome.registration = RegistrationState.REGISTERED
            summary.registered += 1
            chain_owner = issued_to
        else:
            outcome.registration = RegistrationState.REGISTERED
            chain_owner = probe.on_chain.owner

        self._append(entity, TransactionKind.RESTORATION, identity, signer, sent)

        if probe.owner_error is not None:
            outcome.ownership = OwnershipState.SKIPPED_NO_WALLET
            logger.warning(
                "Owner has no wallet, verification issued to signer",
                domain_id=entity.domain_id,
                owner=entity.owner,
                signer=signer,
            )
        elif probe.target_owner is None:
            return
        elif same_identity(probe.target_owner, chain_owner):
            outcome.ownership = OwnershipState.OWNER_SYNCED
        else:
            # The document registry has no transfer; reported, not fixed
            outcome.ownership = OwnershipState.OWNER_MISMATCH
            logger.warning(
                "Document owner differs on chain",
                domain_id=entity.domain_id,
                chain_owner=chain_owner,
                expected_owner=probe.target_owner,
            )
