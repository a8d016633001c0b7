from __future__ import annotations

from typing import Any, Optional

from mempool.types import ReceiptSummary


def _hex_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16)
    except ValueError:
        return None


async def fetch_receipt(
    rpc: Any,
    tx_hash: str,
    *,
    timeout_s: float = 2.0,
) -> Optional[ReceiptSummary]:
    """Post-execution summary of a mined transaction, or None if not mined/unavailable."""
    try:
        receipt = await rpc.call("eth_getTransactionReceipt", [tx_hash], timeout_s=timeout_s)
    except Exception:
        return None
    if not receipt or not receipt.get("blockNumber"):
        return None
    return ReceiptSummary(
        tx_hash=str(receipt.get("transactionHash") or tx_hash),
        status=_hex_int(receipt.get("status")),
        block_number=_hex_int(receipt.get("blockNumber")),
        gas_used=_hex_int(receipt.get("gasUsed")),
        effective_gas_price=_hex_int(receipt.get("effectiveGasPrice")),
        logs=len(receipt.get("logs") or []),
    )
