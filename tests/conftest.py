"""
Shared fixtures: an in-process fake ledger, an in-memory store and a
service wired to both with a pinned clock.
"""

import itertools
from datetime import datetime, timezone
from threading import Lock
from typing import Optional

import pytest
from web3 import Web3

from vaultsync.core import IdentityDeriver, LedgerCallFailure, LedgerClient, SyncConfig, SyncService
from vaultsync.db import InMemoryEntityStore
from vaultsync.schemas import (
    Block,
    IdentityEntry,
    OnChainDocument,
    OnChainProperty,
    PropertyEntity,
    Receipt,
    SentTransaction,
)


SIGNER = Web3.to_checksum_address("0x" + "5a" * 20)
OWNER = Web3.to_checksum_address("0x" + "ab" * 20)
OTHER_OWNER = Web3.to_checksum_address("0x" + "cd" * 20)
IDENTITY = Web3.to_checksum_address("0x" + "ef" * 20)

FIXED_NOW = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


class FakeLedger(LedgerClient):
    """
    Ledger double backed by dicts.

    Registry lookups raise LedgerCallFailure for unknown keys, as the real
    contracts revert. Every send is recorded in a *_calls list.
    """

    def __init__(self, signer: str = SIGNER):
        self.signer = signer
        self.receipts: dict[str, Receipt] = {}
        self.blocks: dict[int, Block] = {}
        self.properties: dict[str, OnChainProperty] = {}
        self.documents: dict[str, OnChainDocument] = {}

        self.register_calls: list[dict] = []
        self.transfer_calls: list[dict] = []
        self.verify_document_calls: list[dict] = []
        self.fail_register_for: set[str] = set()

        self._lock = Lock()
        self._tx_counter = itertools.count(1)
        self._block_number = 1000

    # ---------------- Test helpers ----------------

    def add_confirmed(
        self,
        tx_hash: str,
        *,
        from_address: str = OWNER,
        to: Optional[str] = None,
        block_number: int = 100,
        timestamp: int = 1700000000,
        status: bool = True,
    ) -> None:
        self.receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            from_address=from_address,
            to=to,
            block_number=block_number,
            status=status,
        )
        self.blocks[block_number] = Block(number=block_number, timestamp=timestamp)

    def put_property(self, identity: str, domain_id: str, owner: str) -> None:
        self.properties[identity.lower()] = OnChainProperty(
            identity=identity,
            domain_id=domain_id,
            name="Villa",
            locality="Whitefield",
            property_type="residential",
            owner=owner,
            verified=False,
        )

    def _mine(self, sender: str, identity: Optional[str] = None) -> SentTransaction:
        with self._lock:
            tx_hash = "0x" + format(next(self._tx_counter), "064x")
            self._block_number += 1
            number = self._block_number
        self.blocks[number] = Block(number=number, timestamp=1700000000 + number)
        return SentTransaction(
            tx_hash=tx_hash,
            from_address=sender,
            to="0x" + "99" * 20,
            block_number=number,
            identity=identity,
        )

    # ---------------- LedgerClient ----------------

    def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    def get_block(self, block_number):
        return self.blocks.get(block_number)

    def default_account(self):
        return self.signer

    def get_property(self, identity):
        found = self.properties.get(identity.lower())
        if found is None:
            raise LedgerCallFailure(f"getProperty reverted: unknown {identity}")
        return found

    def register_property(self, domain_id, name, locality, property_type, *, sender):
        self.register_calls.append(
            {
                "domain_id": domain_id,
                "name": name,
                "locality": locality,
                "property_type": property_type,
                "sender": sender,
            }
        )
        if domain_id in self.fail_register_for:
            raise LedgerCallFailure(f"registerProperty reverted for {domain_id}")
        identity = IdentityDeriver.address_from_seed(domain_id + name + locality)
        self.put_property(identity, domain_id, sender)
        return self._mine(sender, identity)

    def transfer_ownership(self, identity, new_owner, *, sender):
        self.transfer_calls.append({"identity": identity, "new_owner": new_owner, "sender": sender})
        current = self.get_property(identity)
        self.properties[identity.lower()] = OnChainProperty(
            identity=current.identity,
            domain_id=current.domain_id,
            name=current.name,
            locality=current.locality,
            property_type=current.property_type,
            owner=new_owner,
            verified=current.verified,
        )
        return self._mine(sender)

    def verify_property(self, identity, *, sender):
        return self._mine(sender)

    def get_document(self, lookup_key):
        found = self.documents.get(lookup_key)
        if found is None:
            raise LedgerCallFailure(f"getDocument reverted: unknown {lookup_key}")
        return found

    def verify_document(self, identity, document_type, owner, expiry, extra, *, sender):
        self.verify_document_calls.append(
            {
                "identity": identity,
                "document_type": document_type,
                "owner": owner,
                "expiry": expiry,
                "extra": extra,
                "sender": sender,
            }
        )
        key = self.document_lookup_key(identity, extra)
        self.documents[key] = OnChainDocument(
            lookup_key=key,
            document_type=document_type,
            owner=owner,
            expiry=expiry,
            verified=True,
        )
        return self._mine(sender, identity)


def make_property(
    domain_id: str = "P1",
    identity: str = IDENTITY,
    owner: Optional[str] = OWNER,
    **overrides,
) -> PropertyEntity:
    """A stored-looking Property entity with one identity and no transactions."""
    fields = dict(
        domain_id=domain_id,
        current_identity=identity,
        identity_history=[IdentityEntry(identity=identity, observed_at=FIXED_NOW)],
        owner=owner,
        transactions=[],
        registered_at=FIXED_NOW,
        last_modified_at=FIXED_NOW,
        name="Villa",
        locality="Whitefield",
        property_type="residential",
    )
    fields.update(overrides)
    return PropertyEntity(**fields)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store():
    store = InMemoryEntityStore()
    yield store
    store.clear()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def service(ledger, store, clock):
    return SyncService(ledger, store, config=SyncConfig(restore_read_workers=2), clock=clock)
