"""
Tests for the Restoration Engine.

Restoration must:
- never send for entities already on chain with the right owner
- keep going after a per-entity failure
- only raise when the store cannot be enumerated
"""

from datetime import timedelta
from threading import Event
from unittest.mock import MagicMock

import pytest

from vaultsync.core import (
    IdentityDeriver,
    LedgerClient,
    OwnershipState,
    RegistrationState,
    RestorationEngine,
    StoreWriteFailure,
)
from vaultsync.db import EntityStore
from vaultsync.schemas import EntityKind

from conftest import FIXED_NOW, IDENTITY, OTHER_OWNER, OWNER, SIGNER, FakeLedger, make_property


def _identity(n: int) -> str:
    return "0x" + format(n, "040x")


class TestRestorationNoOp:
    """Entities already on chain with matching owners."""

    @pytest.fixture
    def on_chain(self, ledger, store):
        for n in range(1, 4):
            identity = _identity(n)
            store.insert(make_property(f"P{n}", identity, OWNER))
            ledger.put_property(identity, f"P{n}", OWNER)

    def test_no_sends(self, service, ledger, on_chain):
        summary = service.restore_ledger_state()

        assert ledger.register_calls == []
        assert ledger.transfer_calls == []
        assert summary.processed == 3
        assert summary.registered == 0
        assert summary.transferred == 0
        assert summary.errors == 0
        assert summary.ok

    def test_outcomes(self, service, on_chain):
        summary = service.restore_ledger_state()
        for outcome in summary.outcomes:
            assert outcome.registration == RegistrationState.REGISTERED
            assert outcome.ownership == OwnershipState.OWNER_SYNCED
            assert outcome.sent == []

    def test_appends_restoration_record_on_no_op(self, service, store, on_chain):
        """Every run appends a Restoration record, even when nothing was sent."""
        service.restore_ledger_state()
        service.restore_ledger_state()

        entity = store.get(EntityKind.PROPERTY, "P1")
        assert [t.kind for t in entity.transactions] == ["Restoration", "Restoration"]
        record = entity.transactions[-1]
        assert record.tx_hash is None
        assert record.from_address == SIGNER
        assert record.observed_at == FIXED_NOW
        assert len(entity.identity_history) == 1

    def test_summary_signer_and_order(self, service, on_chain):
        summary = service.restore_ledger_state()
        assert summary.signer == SIGNER
        assert [o.domain_id for o in summary.outcomes] == ["P1", "P2", "P3"]


class TestRestorationRegister:
    """Entities missing from the ledger are re-registered."""

    def test_registers_from_stored_attributes(self, service, ledger, store):
        store.insert(make_property(owner=None))
        summary = service.restore_ledger_state()

        assert ledger.register_calls == [
            {
                "domain_id": "P1",
                "name": "Villa",
                "locality": "Whitefield",
                "property_type": "residential",
                "sender": SIGNER,
            }
        ]
        assert summary.registered == 1
        outcome = summary.outcomes[0]
        assert outcome.registration == RegistrationState.REGISTERED
        assert outcome.ownership == OwnershipState.NOT_ATTEMPTED

    def test_records_new_identity(self, service, ledger, store):
        store.insert(make_property(owner=None))
        service.restore_ledger_state()

        restored = IdentityDeriver.address_from_seed("P1VillaWhitefield")
        entity = store.get(EntityKind.PROPERTY, "P1")
        assert entity.current_identity == restored
        assert [e.identity for e in entity.identity_history] == [IDENTITY, restored]

        record = entity.transactions[-1]
        assert record.kind == "Restoration"
        assert record.tx_hash is not None
        assert record.block_number is not None
        assert record.from_address == SIGNER
        assert record.identity == restored

    def test_second_run_is_a_no_op(self, service, ledger, store):
        store.insert(make_property(owner=None))
        service.restore_ledger_state()
        summary = service.restore_ledger_state()

        assert len(ledger.register_calls) == 1
        assert summary.registered == 0

    def test_transfers_to_address_owner(self, service, ledger, store):
        store.insert(make_property(owner=OWNER))
        summary = service.restore_ledger_state()

        restored = IdentityDeriver.address_from_seed("P1VillaWhitefield")
        assert ledger.transfer_calls == [
            {"identity": restored, "new_owner": OWNER, "sender": SIGNER}
        ]
        assert summary.transferred == 1
        assert summary.outcomes[0].ownership == OwnershipState.OWNER_SYNCED
        assert len(summary.outcomes[0].sent) == 2

        kinds = [t.kind for t in store.get(EntityKind.PROPERTY, "P1").transactions]
        assert kinds == ["Restoration", "Transfer"]

    def test_transfer_when_on_chain_owner_differs(self, service, ledger, store):
        store.insert(make_property(owner=OWNER))
        ledger.put_property(IDENTITY, "P1", SIGNER)
        summary = service.restore_ledger_state()

        assert ledger.register_calls == []
        assert ledger.transfer_calls[0]["identity"] == IDENTITY
        assert summary.transferred == 1

    def test_handle_owner_resolved_to_wallet(self, service, ledger, store):
        store.insert(make_property(owner="alice@x.com"))
        store.wallets["alice@x.com"] = OTHER_OWNER
        service.restore_ledger_state()

        assert ledger.transfer_calls[0]["new_owner"] == OTHER_OWNER

    def test_handle_without_wallet_is_skipped(self, service, ledger, store):
        store.insert(make_property(owner="alice@x.com"))
        summary = service.restore_ledger_state()

        assert ledger.transfer_calls == []
        assert summary.skipped_no_wallet == 1
        assert summary.errors == 0
        outcome = summary.outcomes[0]
        assert outcome.registration == RegistrationState.REGISTERED
        assert outcome.ownership == OwnershipState.SKIPPED_NO_WALLET


class TestRestorationFailures:

    def test_continues_after_registration_revert(self, service, ledger, store):
        store.insert(make_property("P1", _identity(1), owner=None))
        store.insert(make_property("P2", _identity(2), owner=None, name="Cottage"))
        ledger.fail_register_for = {"P1"}

        summary = service.restore_ledger_state()

        assert summary.processed == 2
        assert summary.errors == 1
        assert summary.registered == 1
        assert not summary.ok

        failed, restored = summary.outcomes
        assert failed.domain_id == "P1"
        assert failed.registration == RegistrationState.FAILED
        assert "LedgerCallFailure" in failed.error
        assert restored.registration == RegistrationState.REGISTERED
        assert restored.error is None

        # Nothing appended for the failed entity
        assert store.get(EntityKind.PROPERTY, "P1").transactions == []

    def test_store_enumeration_failure_propagates(self, ledger):
        store = MagicMock(spec=EntityStore)
        store.list_all.side_effect = StoreWriteFailure("list failed: connection refused")
        engine = RestorationEngine(ledger, store, IdentityDeriver())

        with pytest.raises(StoreWriteFailure):
            engine.run()

    def test_read_failure_is_per_entity(self, store):
        ledger = MagicMock(spec=LedgerClient)
        ledger.default_account.return_value = SIGNER
        ledger.get_property.side_effect = RuntimeError("socket closed")
        store.insert(make_property(owner=None))
        engine = RestorationEngine(ledger, store, IdentityDeriver())

        summary = engine.run()

        assert summary.errors == 1
        assert "socket closed" in summary.outcomes[0].error
        ledger.register_property.assert_not_called()

    def test_read_timeout_is_per_entity(self, store):
        """A stalled ledger read fails that entity only; the loop continues."""
        release = Event()
        stalled = _identity(1)

        class StallingLedger(FakeLedger):
            def get_property(self, identity):
                if identity.lower() == stalled.lower():
                    release.wait(1.0)
                return super().get_property(identity)

        ledger = StallingLedger()
        store.insert(make_property("P1", stalled, owner=None))
        store.insert(make_property("P2", _identity(2), owner=None, name="Cottage"))
        engine = RestorationEngine(
            ledger, store, IdentityDeriver(), read_workers=2, read_timeout=0.2
        )

        try:
            summary = engine.run()
        finally:
            release.set()

        failed, restored = summary.outcomes
        assert failed.domain_id == "P1"
        assert failed.registration == RegistrationState.FAILED
        assert failed.error == "Ledger read timed out"
        assert restored.registration == RegistrationState.REGISTERED
        assert restored.error is None
        assert summary.errors == 1
        assert [c["domain_id"] for c in ledger.register_calls] == ["P2"]
        assert store.get(EntityKind.PROPERTY, "P1").transactions == []

    def test_on_progress_called_per_entity(self, service, store):
        store.insert(make_property("P1", _identity(1), owner=None))
        store.insert(make_property("P2", _identity(2), owner=None, name="Cottage"))
        seen = []

        service.restore_ledger_state(on_progress=lambda outcome: seen.append(outcome.domain_id))

        assert seen == ["P1", "P2"]

    def test_empty_store(self, service, ledger):
        summary = service.restore_ledger_state()
        assert summary.processed == 0
        assert summary.ok


class TestRestorationDocuments:

    @pytest.fixture
    def submitted(self, service, store):
        store.wallets["alice@x.com"] = OWNER
        return service.sync_document(
            {"domainId": "D1", "userHandle": "alice@x.com", "documentType": "passport"}
        )["identity"]

    def test_reissues_missing_verification(self, service, ledger, store, submitted):
        summary = service.restore_ledger_state()

        expected_expiry = int((FIXED_NOW + timedelta(days=365)).timestamp())
        assert ledger.verify_document_calls == [
            {
                "identity": submitted,
                "document_type": "passport",
                "owner": OWNER,
                "expiry": expected_expiry,
                "extra": "D1",
                "sender": SIGNER,
            }
        ]
        assert summary.registered == 1
        assert summary.outcomes[0].ownership == OwnershipState.OWNER_SYNCED

        kinds = [t.kind for t in store.get(EntityKind.DOCUMENT_VERIFICATION, "D1").transactions]
        assert kinds == ["Submission", "Restoration"]

    def test_present_document_not_reissued(self, service, ledger, submitted):
        service.restore_ledger_state()
        summary = service.restore_ledger_state()

        assert len(ledger.verify_document_calls) == 1
        assert summary.registered == 0

    def test_unresolved_handle_issued_to_signer(self, service, ledger, store):
        service.sync_document(
            {"domainId": "D2", "userHandle": "bob@x.com", "documentType": "deed"}
        )
        summary = service.restore_ledger_state()

        assert ledger.verify_document_calls[0]["owner"] == SIGNER
        assert summary.skipped_no_wallet == 1
        assert summary.errors == 0
