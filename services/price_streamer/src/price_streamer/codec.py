"""
Wire codec for price records.

Records are ABI tuple encoded as (uint256 price, uint64 timestamp,
address updater). The upstream read API does not always hand back raw
bytes: records may arrive wrapped in one or two layers of
``{"value": ...}`` objects, and individual fields may themselves be
wrapped or be strings instead of integers. ``decode_price_record``
accepts all of those shapes and either returns a complete record or
raises ``MalformedRecord``.
"""

import logging
import operator
import string
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import is_address, to_checksum_address

from .errors import MalformedRecord
from .schema import PRICE_SCHEMA
from .types import PriceRecord

logger = logging.getLogger(__name__)

# Wrapper levels accepted before the input is treated as malformed
MAX_WRAPPER_DEPTH = 3

# Three 32-byte head slots
ENCODED_RECORD_SIZE = 96

_HEX_DIGITS = frozenset(string.hexdigits)


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def _is_hex_string(value: str) -> bool:
    if not value.startswith(("0x", "0X")):
        return False
    digits = value[2:]
    return len(digits) > 0 and all(c in _HEX_DIGITS for c in digits)


def _is_encoded_blob(value: Any) -> bool:
    """Bytes, or a hex string long enough to hold an encoded record."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return len(value) >= ENCODED_RECORD_SIZE
    if isinstance(value, str) and _is_hex_string(value):
        return len(value) - 2 >= ENCODED_RECORD_SIZE * 2
    return False


def encode_price_record(record: PriceRecord) -> bytes:
    """
    ABI encode a record.

    Deterministic: equal records always encode to identical bytes.
    """
    try:
        return encode(
            list(PRICE_SCHEMA.types),
            [record.price, record.timestamp, record.updater],
        )
    except EncodingError as e:
        raise ValueError(f"Cannot encode price record: {e}") from e


def encode_price_event_topics(price: int) -> list[str]:
    """Topics for PriceUpdated(uint256 indexed price, uint64 timestamp)."""
    return [to_hex(encode(["uint256"], [price]))]


def encode_price_event_data(timestamp: int) -> str:
    """Non-indexed payload for the PriceUpdated event."""
    return to_hex(encode(["uint64"], [timestamp]))


def _decode_abi(data: bytes) -> PriceRecord:
    try:
        price, timestamp, updater = decode(list(PRICE_SCHEMA.types), data)
    except DecodingError as e:
        raise MalformedRecord(f"Cannot ABI decode price record: {e}") from e
    return _build_record(price, timestamp, updater)


def _decode_blob(value: Any) -> PriceRecord:
    if isinstance(value, str):
        digits = value[2:]
        if len(digits) % 2:
            raise MalformedRecord("Hex record has an odd number of digits")
        return _decode_abi(bytes.fromhex(digits))
    return _decode_abi(bytes(value))


def _build_record(price: int, timestamp: int, updater: str) -> PriceRecord:
    try:
        return PriceRecord(price=price, timestamp=timestamp, updater=updater)
    except ValueError as e:
        raise MalformedRecord(str(e)) from e


def _to_int(value: Any, depth: int = 0) -> int:
    """Normalize an integer-like leaf to int."""
    if isinstance(value, bool):
        raise MalformedRecord("Boolean is not a valid integer field")
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        if value != value or value in (float("inf"), float("-inf")) or value != int(value):
            raise MalformedRecord(f"Non-integral numeric field: {value}")
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if _is_hex_string(text):
            return int(text, 16)
        if text.isascii() and text.isdigit():
            return int(text)
        raise MalformedRecord(f"Cannot convert string {value!r} to integer")
    if isinstance(value, (bytes, bytearray)):
        if not value:
            raise MalformedRecord("Empty bytes for integer field")
        return int.from_bytes(value, "big")
    if isinstance(value, Mapping):
        if depth >= MAX_WRAPPER_DEPTH:
            raise MalformedRecord("Integer field nested too deeply")
        if "value" in value:
            return _to_int(value["value"], depth + 1)
        if "_hex" in value:
            return _to_int(value["_hex"], depth + 1)
        raise MalformedRecord(f"Cannot convert object with keys {sorted(value)} to integer")
    try:
        # numpy ints and other integer-like objects
        return operator.index(value)
    except TypeError:
        raise MalformedRecord(f"Cannot convert {type(value).__name__} to integer") from None


def _to_address(value: Any, depth: int = 0) -> str:
    """Normalize an address leaf to a checksum string."""
    if isinstance(value, str):
        if not is_address(value):
            raise MalformedRecord(f"Invalid address: {value!r}")
        return to_checksum_address(value)
    if isinstance(value, (bytes, bytearray)) and len(value) == 20:
        return to_checksum_address(bytes(value))
    if isinstance(value, Mapping) and "value" in value:
        if depth >= MAX_WRAPPER_DEPTH:
            raise MalformedRecord("Address field nested too deeply")
        return _to_address(value["value"], depth + 1)
    raise MalformedRecord(f"Cannot convert {type(value).__name__} to address")


def _wraps_record(node: Any) -> bool:
    """Whether node is one stored record (as opposed to a single field)."""
    depth = 0
    while isinstance(node, Mapping) and "value" in node and depth < MAX_WRAPPER_DEPTH:
        node = node["value"]
        depth += 1
    if depth == 0:
        return _is_encoded_blob(node)
    return isinstance(node, (list, tuple)) or _is_encoded_blob(node)


def _unwrap(node: Any, depth: int) -> PriceRecord:
    if _is_encoded_blob(node):
        return _decode_blob(node)

    if isinstance(node, Mapping):
        if "value" not in node:
            raise MalformedRecord("Wrapper object has no 'value' field")
        if depth >= MAX_WRAPPER_DEPTH:
            raise MalformedRecord(f"Wrapper nesting exceeds {MAX_WRAPPER_DEPTH} levels")
        return _unwrap(node["value"], depth + 1)

    if isinstance(node, (list, tuple)):
        # A list of stored records: the first one is the latest
        if node and _wraps_record(node[0]):
            return _unwrap(node[0], depth)
        if len(node) < 3:
            raise MalformedRecord(f"Expected 3 fields, got {len(node)}")
        price, timestamp, updater = node[:3]
        return _build_record(_to_int(price), _to_int(timestamp), _to_address(updater))

    raise MalformedRecord(
        f"Unsupported data format: {type(node).__name__}"
    )


def decode_price_record(data: Any) -> PriceRecord:
    """
    Decode a stored record.

    Accepts raw ABI bytes, a 0x hex string of ABI bytes, a flat
    3-element sequence, or any of those wrapped (up to
    MAX_WRAPPER_DEPTH levels) in ``{"value": ...}`` objects, optionally
    inside a list of records.

    Raises:
        MalformedRecord: if a complete record cannot be recovered
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        return _decode_blob(data)
    if isinstance(data, str):
        if not _is_hex_string(data):
            raise MalformedRecord("String input is not hex encoded")
        return _decode_blob(data)
    if not isinstance(data, (Mapping, list, tuple)):
        raise MalformedRecord(f"Unsupported data format: {type(data).__name__}")
    return _unwrap(data, 0)


def format_price(cents: int) -> str:
    """Format cents for display, e.g. 10000000 -> '$100,000.00'."""
    dollars, remainder = divmod(cents, 100)
    return f"${dollars:,}.{remainder:02d}"


def format_timestamp(timestamp: int) -> str:
    """Format epoch seconds for display, e.g. 'Nov 14, 2023, 10:13:20 PM UTC'."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return f"{dt:%b} {dt.day}, {dt:%Y}, {dt:%I:%M:%S %p} UTC"
