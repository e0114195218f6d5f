"""vaultsync: keeps an off-chain document store and an EVM ledger reconciled."""

__version__ = "0.3.0"
