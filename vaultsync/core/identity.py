"""
Identity Deriver

Computes pseudo-address identities for ledger-tracked entities:

    keccak256(packed attributes) -> last 20 bytes -> EIP-55 checksum

Assets:    (domain_id, name, locality)            - deterministic
Documents: (domain_id, user_handle, document_type) + wall-clock seed
           - a fresh identity per call, even for identical input

The document derivation is intentionally NOT idempotent: every
verification request mints its own identity. Do not "fix" this without
a product decision; existing records depend on it.
"""

import itertools
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Optional

from web3 import Web3

from .errors import ValidationError


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IdentityDeriver:
    """
    Derives chain identities from entity attributes.

    The clock is injectable so document derivation can be pinned in tests;
    a per-deriver counter keeps document identities distinct even when two
    calls land in the same millisecond.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._counter = itertools.count()
        self._lock = Lock()

    @staticmethod
    def _require(**fields: Optional[str]) -> list[str]:
        values = []
        for name, value in fields.items():
            if value is None or not str(value).strip():
                raise ValidationError(f"{name} is required to derive an identity")
            values.append(str(value))
        return values

    @staticmethod
    def address_from_seed(seed: str) -> str:
        """keccak256 of the UTF-8 seed, truncated to 20 bytes, checksummed."""
        digest = Web3.keccak(text=seed).hex()
        return Web3.to_checksum_address("0x" + digest[-40:])

    def derive_property_identity(self, domain_id: str, name: str, locality: str) -> str:
        """Deterministic: equal inputs always yield the same identity."""
        parts = self._require(domain_id=domain_id, name=name, locality=locality)
        return self.address_from_seed("".join(parts))

    def derive_document_identity(
        self, domain_id: str, user_handle: str, document_type: str
    ) -> str:
        """Time-seeded: repeated calls yield different identities."""
        parts = self._require(
            domain_id=domain_id, user_handle=user_handle, document_type=document_type
        )
        with self._lock:
            sequence = next(self._counter)
        millis = int(self._clock().timestamp() * 1000)
        return self.address_from_seed("".join(parts) + f"{millis}:{sequence}")

    @staticmethod
    def document_lookup_key(identity: str, domain_id: str) -> str:
        """
        Document registry key: keccak256(abi.encodePacked(address, string)).

        Hex string, 0x-prefixed.
        """
        if not Web3.is_address(identity):
            raise ValidationError(f"Invalid identity for lookup key: {identity}")
        if not domain_id:
            raise ValidationError("domain_id is required for lookup key")
        digest = Web3.solidity_keccak(
            ["address", "string"],
            [Web3.to_checksum_address(identity), domain_id],
        )
        return Web3.to_hex(digest)

    @staticmethod
    def normalize_address(value: str) -> str:
        """Checksum a well-formed address; ValidationError otherwise."""
        if not value or not Web3.is_address(value):
            raise ValidationError(f"Invalid chain address: {value!r}")
        return Web3.to_checksum_address(value)
