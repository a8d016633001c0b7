from __future__ import annotations

from typing import Optional

from eth_utils import keccak


def selector(signature: str) -> str:
    return keccak(text=signature).hex()[:8]


def to_hex_prefixed(value: bytes) -> str:
    return "0x" + value.hex()


def input_selector(input_data: Optional[str]) -> Optional[str]:
    """Return the 4-byte selector of calldata as 8 lower-case hex chars."""
    if not input_data or not input_data.startswith("0x") or len(input_data) < 10:
        return None
    return input_data[2:10].lower()


def normalize_address(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        if value.startswith("0x"):
            return value.lower()
        return "0x" + value.lower()
    if isinstance(value, (bytes, bytearray)):
        return to_hex_prefixed(bytes(value)).lower()
    if isinstance(value, int):
        return "0x" + value.to_bytes(20, "big").hex()
    return str(value).lower()
