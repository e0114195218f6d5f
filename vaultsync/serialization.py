"""
Canonical Serialization Helpers

Ledger-derived values reach callers in one canonical shape:
- Timestamps: ISO 8601, UTC, millisecond precision, Z suffix
  (2023-11-14T22:13:20.000Z)
- Block numbers and other chain integers: decimal strings ("100")
- Byte strings (tx hashes, lookup keys): 0x-prefixed lowercase hex

Chain integers can exceed what a JSON consumer parses safely, so they
are never emitted as JSON numbers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def format_timestamp(value: datetime) -> str:
    """
    Format a datetime in canonical form.

    Naive datetimes are assumed to already be UTC (pymongo returns
    naive UTC datetimes unless the client is tz_aware).
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    millis = value.microsecond // 1000
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{millis:03d}Z"


def from_block_timestamp(timestamp: int) -> datetime:
    """Convert a block's unix timestamp (seconds) to an aware UTC datetime."""
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def format_chain_int(value: Optional[int]) -> Optional[str]:
    """Render a chain integer (block number, expiry) as a decimal string."""
    if value is None:
        return None
    return str(int(value))


def to_hex(value: Any) -> str:
    """Normalize bytes / HexBytes / str to 0x-prefixed lowercase hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    if not text.startswith("0x"):
        text = "0x" + text
    return text.lower()


def prepare_for_logging(data: Any) -> Any:
    """
    Make a value safe to attach to a structured log record.

    Datetimes become canonical timestamps, enums their value, bytes hex,
    and containers are converted recursively.
    """
    if data is None or isinstance(data, (bool, str)):
        return data
    if isinstance(data, int):
        return str(data) if abs(data) > 2**53 else data
    if isinstance(data, datetime):
        return format_timestamp(data)
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, (bytes, bytearray)):
        return to_hex(data)
    if isinstance(data, dict):
        return {str(k): prepare_for_logging(v) for k, v in data.items()}
    if isinstance(data, (list, tuple, set)):
        return [prepare_for_logging(v) for v in data]
    if isinstance(data, BaseException):
        return {"type": type(data).__name__, "message": str(data)}
    return str(data)
