from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PendingTx:
    tx_hash: str
    from_addr: str
    to_addr: Optional[str]
    input: str
    value: int
    gas_price: Optional[int]
    max_fee_per_gas: Optional[int]
    max_priority_fee_per_gas: Optional[int]
    tx_type: Optional[int]
    nonce: Optional[int]
    seen_at_ms: int
    block_number: Optional[int] = None
    transaction_index: Optional[int] = None


@dataclass(frozen=True)
class DecodedCall:
    tx_hash: str
    function_name: str
    selector: str
    args: tuple


@dataclass(frozen=True)
class FeeSnapshot:
    gas_price: int
    max_priority_fee_per_gas: Optional[int]


@dataclass(frozen=True)
class SimulationResult:
    success: bool
    result: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ReceiptSummary:
    tx_hash: str
    status: Optional[int]
    block_number: Optional[int]
    gas_used: Optional[int]
    effective_gas_price: Optional[int]
    logs: int
