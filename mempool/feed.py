from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Protocol

from infra.gas import get_fee_snapshot
from mempool.decoders.utils import normalize_address
from mempool.confirm import fetch_receipt
from mempool.simulate import simulate_tx
from mempool.types import FeeSnapshot, PendingTx, ReceiptSummary, SimulationResult


class Feed(Protocol):
    """Chain access used by the detector. Subscription lives in MempoolListener."""

    async def resolve(self, tx_hash: str) -> Optional[PendingTx]:
        raise NotImplementedError

    async def current_fees(self) -> FeeSnapshot:
        raise NotImplementedError

    async def simulate(self, tx: PendingTx) -> SimulationResult:
        raise NotImplementedError

    async def get_mined_block(self, number: int) -> Optional[List[PendingTx]]:
        raise NotImplementedError

    async def get_receipt(self, tx_hash: str) -> Optional[ReceiptSummary]:
        raise NotImplementedError


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16)
        except ValueError:
            return None
    return None


def tx_from_rpc(raw: Dict[str, Any], *, seen_at_ms: Optional[int] = None) -> PendingTx:
    """Build a PendingTx from an eth_getTransactionByHash / block transaction object."""
    tx_hash = raw.get("hash")
    sender = raw.get("from")
    if not tx_hash or not sender:
        raise ValueError("transaction without hash or sender")
    return PendingTx(
        tx_hash=str(tx_hash).lower(),
        from_addr=normalize_address(sender),
        to_addr=normalize_address(raw.get("to")) if raw.get("to") else None,
        input=str(raw.get("input") or raw.get("data") or "0x"),
        value=int(_to_int(raw.get("value")) or 0),
        gas_price=_to_int(raw.get("gasPrice")),
        max_fee_per_gas=_to_int(raw.get("maxFeePerGas")),
        max_priority_fee_per_gas=_to_int(raw.get("maxPriorityFeePerGas")),
        tx_type=_to_int(raw.get("type")),
        nonce=_to_int(raw.get("nonce")),
        seen_at_ms=int(seen_at_ms if seen_at_ms is not None else time.time() * 1000),
        block_number=_to_int(raw.get("blockNumber")),
        transaction_index=_to_int(raw.get("transactionIndex")),
    )


class RPCFeed:
    """Feed backed by a JSON-RPC client (AsyncRPC or RPCPool)."""

    def __init__(self, rpc: Any, *, timeout_s: float = 3.0) -> None:
        self.rpc = rpc
        self.timeout_s = float(timeout_s)

    async def resolve(self, tx_hash: str) -> Optional[PendingTx]:
        raw = await self.rpc.call("eth_getTransactionByHash", [tx_hash], timeout_s=self.timeout_s)
        if not raw:
            # Dropped or replaced before we got to it.
            return None
        return tx_from_rpc(raw)

    async def current_fees(self) -> FeeSnapshot:
        return await get_fee_snapshot(self.rpc, timeout_s=self.timeout_s)

    async def simulate(self, tx: PendingTx) -> SimulationResult:
        return await simulate_tx(self.rpc, tx, timeout_s=self.timeout_s)

    async def get_mined_block(self, number: int) -> Optional[List[PendingTx]]:
        block = await self.rpc.call("eth_getBlockByNumber", [hex(int(number)), True], timeout_s=self.timeout_s)
        if not block:
            return None
        seen_at_ms = (_to_int(block.get("timestamp")) or 0) * 1000
        out: List[PendingTx] = []
        for raw in block.get("transactions") or []:
            if isinstance(raw, dict):
                out.append(tx_from_rpc(raw, seen_at_ms=seen_at_ms))
        return out

    async def get_receipt(self, tx_hash: str) -> Optional[ReceiptSummary]:
        return await fetch_receipt(self.rpc, tx_hash, timeout_s=self.timeout_s)
