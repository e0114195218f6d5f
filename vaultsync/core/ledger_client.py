"""
Ledger Client

Thin binding to an EVM ledger's JSON-RPC surface and the two registry
contracts. The ledger itself is an opaque collaborator: this module only
translates calls and errors.

- LedgerClient: abstract interface used by the sync engine
- Web3LedgerClient: web3.py implementation against a JSON-RPC node

CONTRACT ARTIFACTS:
Hardhat writes artifacts under the configured contracts directory:

    <contracts_dir>/contract-address.json
        {"PropertyRegistry": "0x...", "DocumentRegistry": "0x..."}
    <contracts_dir>/contracts/PropertyRegistry.sol/PropertyRegistry.json
    <contracts_dir>/contracts/DocumentRegistry.sol/DocumentRegistry.json

TIMEOUTS:
Every RPC round-trip is bounded by LedgerConfig.request_timeout; waiting
for a sent transaction to be mined is bounded by receipt_timeout. A
timeout surfaces as LedgerCallFailure.

Environment Variables:
    VAULTSYNC_RPC_URL: JSON-RPC endpoint (default http://localhost:8545)
    VAULTSYNC_CONTRACTS_DIR: Hardhat artifacts directory (default public/contracts)
    VAULTSYNC_RPC_TIMEOUT: Per-request timeout in seconds (default 30)
    VAULTSYNC_RECEIPT_TIMEOUT: Seconds to wait for a sent tx to be mined (default 120)
    VAULTSYNC_SIGNER: Restoring signer address (default: first node account)
"""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from web3 import Web3
from web3.exceptions import (
    BlockNotFound,
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from ..observability import get_logger
from ..schemas import (
    Block,
    OnChainDocument,
    OnChainProperty,
    Receipt,
    SentTransaction,
)
from .errors import LedgerCallFailure
from .identity import IdentityDeriver


logger = get_logger(__name__)


# getProperty(address) returns the Property struct in this order
PROPERTY_FIELDS = ("propertyId", "propertyName", "locality", "propertyType", "owner", "isVerified")

# getDocument(bytes32) returns the Document struct in this order
DOCUMENT_FIELDS = ("documentType", "owner", "expiryDate", "isVerified")


@dataclass
class LedgerConfig:
    """Ledger connection configuration."""
    rpc_url: str = "http://localhost:8545"
    contracts_dir: str = "public/contracts"
    property_artifact: str = "contracts/PropertyRegistry.sol/PropertyRegistry.json"
    document_artifact: str = "contracts/DocumentRegistry.sol/DocumentRegistry.json"
    request_timeout: float = 30.0   # seconds
    receipt_timeout: float = 120.0  # seconds
    signer: Optional[str] = None

    # Gas limits for state-changing sends
    register_gas: int = 500_000
    transfer_gas: int = 200_000
    verify_gas: int = 300_000

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        return cls(
            rpc_url=os.getenv("VAULTSYNC_RPC_URL", "http://localhost:8545"),
            contracts_dir=os.getenv("VAULTSYNC_CONTRACTS_DIR", "public/contracts"),
            request_timeout=float(os.getenv("VAULTSYNC_RPC_TIMEOUT", "30")),
            receipt_timeout=float(os.getenv("VAULTSYNC_RECEIPT_TIMEOUT", "120")),
            signer=os.getenv("VAULTSYNC_SIGNER") or None,
        )


class LedgerClient(ABC):
    """
    Abstract ledger interface.

    Read methods return None for "not found" (receipt, block) and raise
    LedgerCallFailure for transport failures and contract reverts.
    Registry `get_*` lookups revert for absent records, so "absent" and
    "probe failed" are indistinguishable to callers by design of the
    contracts.
    """

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        pass

    @abstractmethod
    def get_block(self, block_number: int) -> Optional[Block]:
        pass

    @abstractmethod
    def default_account(self) -> str:
        """The restoring signer."""
        pass

    # ---------------- Asset registry ----------------

    @abstractmethod
    def get_property(self, identity: str) -> OnChainProperty:
        pass

    @abstractmethod
    def register_property(
        self,
        domain_id: str,
        name: str,
        locality: str,
        property_type: str,
        *,
        sender: str,
    ) -> SentTransaction:
        """Register an asset; the returned SentTransaction carries the new identity."""
        pass

    @abstractmethod
    def transfer_ownership(self, identity: str, new_owner: str, *, sender: str) -> SentTransaction:
        pass

    @abstractmethod
    def verify_property(self, identity: str, *, sender: str) -> SentTransaction:
        pass

    # ---------------- Document registry ----------------

    @abstractmethod
    def get_document(self, lookup_key: str) -> OnChainDocument:
        pass

    @abstractmethod
    def verify_document(
        self,
        identity: str,
        document_type: str,
        owner: str,
        expiry: int,
        extra: str,
        *,
        sender: str,
    ) -> SentTransaction:
        pass

    # ---------------- Helpers ----------------

    def is_address(self, value: Optional[str]) -> bool:
        return bool(value) and Web3.is_address(value)

    def document_lookup_key(self, identity: str, domain_id: str) -> str:
        """Document registry key for (identity, domainId)."""
        return IdentityDeriver.document_lookup_key(identity, domain_id)

    def close(self) -> None:
        """Release transport resources (no-op by default)."""
        pass


class Web3LedgerClient(LedgerClient):
    """
    web3.py implementation.

    Usage:
        client = Web3LedgerClient(LedgerConfig.from_env())
        receipt = client.get_transaction_receipt(tx_hash)
    """

    def __init__(self, config: LedgerConfig, web3: Optional[Web3] = None):
        self._config = config
        self._w3 = web3 or Web3(
            Web3.HTTPProvider(
                config.rpc_url,
                request_kwargs={"timeout": config.request_timeout},
            )
        )
        self._property_registry = self._load_contract("PropertyRegistry", config.property_artifact)
        self._document_registry = self._load_contract("DocumentRegistry", config.document_artifact)

        logger.info(
            "Ledger client initialized",
            rpc_url=config.rpc_url,
            property_registry=self._property_registry.address,
            document_registry=self._document_registry.address,
        )

    @property
    def config(self) -> LedgerConfig:
        return self._config

    def _load_contract(self, name: str, artifact: str):
        contracts_dir = Path(self._config.contracts_dir)
        address_path = contracts_dir / "contract-address.json"
        artifact_path = contracts_dir / artifact

        if not address_path.exists() or not artifact_path.exists():
            raise FileNotFoundError(
                f"Contract files for {name} not found under {contracts_dir}. "
                "Compile and deploy the contracts first."
            )

        addresses = json.loads(address_path.read_text())
        if name not in addresses:
            raise FileNotFoundError(f"No deployed address for {name} in {address_path}")

        abi = json.loads(artifact_path.read_text())["abi"]
        return self._w3.eth.contract(
            address=Web3.to_checksum_address(addresses[name]),
            abi=abi,
        )

    def _guard(self, action: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run an RPC call, translating library errors to LedgerCallFailure."""
        try:
            return fn(*args, **kwargs)
        except ContractLogicError as e:
            raise LedgerCallFailure(f"{action} reverted: {e}") from e
        except TimeExhausted as e:
            raise LedgerCallFailure(f"{action} timed out waiting for receipt") from e
        # requests' transport errors (including timeouts) are OSErrors;
        # web3 v6 reports JSON-RPC errors as ValueError
        except (Web3Exception, OSError, ValueError) as e:
            raise LedgerCallFailure(f"{action} failed: {e}") from e

    def _send(self, action: str, fn_call, sender: str, gas: int) -> SentTransaction:
        """Send a contract transaction from `sender` and wait for it to be mined."""
        def _transact():
            tx_hash = fn_call.transact({"from": sender, "gas": gas})
            return self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._config.receipt_timeout
            )

        receipt = self._guard(action, _transact)
        if not receipt["status"]:
            raise LedgerCallFailure(f"{action} reverted in block {receipt['blockNumber']}")

        return SentTransaction(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            from_address=receipt["from"],
            to=receipt.get("to"),
            block_number=int(receipt["blockNumber"]),
        )

    # ---------------- JSON-RPC ----------------

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            raw = self._guard(
                "eth_getTransactionReceipt",
                self._w3.eth.get_transaction_receipt,
                tx_hash,
            )
        except LedgerCallFailure as e:
            if isinstance(e.__cause__, TransactionNotFound):
                return None
            raise
        if raw is None:
            return None
        return Receipt(
            tx_hash=tx_hash,
            from_address=raw["from"],
            to=raw.get("to"),
            block_number=int(raw["blockNumber"]),
            status=bool(raw["status"]),
        )

    def get_block(self, block_number: int) -> Optional[Block]:
        try:
            raw = self._guard("eth_getBlockByNumber", self._w3.eth.get_block, block_number)
        except LedgerCallFailure as e:
            if isinstance(e.__cause__, BlockNotFound):
                return None
            raise
        if raw is None:
            return None
        return Block(number=int(raw["number"]), timestamp=int(raw["timestamp"]))

    def default_account(self) -> str:
        if self._config.signer:
            return Web3.to_checksum_address(self._config.signer)
        accounts = self._guard("eth_accounts", lambda: self._w3.eth.accounts)
        if not accounts:
            raise LedgerCallFailure("Ledger node exposes no unlocked accounts")
        return accounts[0]

    # ---------------- Asset registry ----------------

    def get_property(self, identity: str) -> OnChainProperty:
        result = self._guard(
            "getProperty",
            self._property_registry.functions.getProperty(Web3.to_checksum_address(identity)).call,
        )
        record = dict(zip(PROPERTY_FIELDS, result))
        return OnChainProperty(
            identity=identity,
            domain_id=record["propertyId"],
            name=record["propertyName"],
            locality=record["locality"],
            property_type=record["propertyType"],
            owner=record["owner"],
            verified=bool(record["isVerified"]),
        )

    def register_property(
        self,
        domain_id: str,
        name: str,
        locality: str,
        property_type: str,
        *,
        sender: str,
    ) -> SentTransaction:
        fn_call = self._property_registry.functions.registerProperty(
            domain_id, name, locality, property_type
        )
        # The contract returns the new identity; a transaction cannot, so
        # read it with a dry-run call from the same sender first.
        identity = self._guard("registerProperty (dry run)", fn_call.call, {"from": sender})
        sent = self._send("registerProperty", fn_call, sender, self._config.register_gas)
        return SentTransaction(
            tx_hash=sent.tx_hash,
            from_address=sent.from_address,
            to=sent.to,
            block_number=sent.block_number,
            identity=Web3.to_checksum_address(identity),
        )

    def transfer_ownership(self, identity: str, new_owner: str, *, sender: str) -> SentTransaction:
        fn_call = self._property_registry.functions.transferOwnership(
            Web3.to_checksum_address(identity), Web3.to_checksum_address(new_owner)
        )
        return self._send("transferOwnership", fn_call, sender, self._config.transfer_gas)

    def verify_property(self, identity: str, *, sender: str) -> SentTransaction:
        fn_call = self._property_registry.functions.verifyProperty(
            Web3.to_checksum_address(identity)
        )
        return self._send("verifyProperty", fn_call, sender, self._config.verify_gas)

    # ---------------- Document registry ----------------

    def get_document(self, lookup_key: str) -> OnChainDocument:
        result = self._guard(
            "getDocument",
            self._document_registry.functions.getDocument(Web3.to_bytes(hexstr=lookup_key)).call,
        )
        record = dict(zip(DOCUMENT_FIELDS, result))
        return OnChainDocument(
            lookup_key=lookup_key,
            document_type=record["documentType"],
            owner=record["owner"],
            expiry=int(record["expiryDate"]),
            verified=bool(record["isVerified"]),
        )

    def verify_document(
        self,
        identity: str,
        document_type: str,
        owner: str,
        expiry: int,
        extra: str,
        *,
        sender: str,
    ) -> SentTransaction:
        # The registry takes the document reference as a string (documentHash)
        fn_call = self._document_registry.functions.verifyDocument(
            identity,
            document_type,
            Web3.to_checksum_address(owner),
            int(expiry),
            extra,
        )
        sent = self._send("verifyDocument", fn_call, sender, self._config.verify_gas)
        return SentTransaction(
            tx_hash=sent.tx_hash,
            from_address=sent.from_address,
            to=sent.to,
            block_number=sent.block_number,
            identity=identity,
        )
