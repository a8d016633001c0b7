from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional

from mempool.types import FeeSnapshot


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


def _median(values: Iterable[int]) -> int:
    vals = sorted(int(v) for v in values if v is not None)
    if not vals:
        return 0
    mid = len(vals) // 2
    if len(vals) % 2:
        return vals[mid]
    return int((vals[mid - 1] + vals[mid]) / 2)


async def _tip_from_fee_history(rpc: Any, *, block_count: int, timeout_s: float) -> Optional[int]:
    try:
        res = await rpc.call(
            "eth_feeHistory",
            [hex(int(block_count)), "latest", [50]],
            timeout_s=timeout_s,
        )
    except Exception:
        return None
    rewards = (res or {}).get("reward") or []
    vals = []
    for row in rewards:
        if isinstance(row, (list, tuple)) and row:
            v = _to_int(row[0])
            if v is not None:
                vals.append(v)
    return _median(vals) if vals else None


async def _priority_fee(rpc: Any, *, block_count: int, timeout_s: float) -> Optional[int]:
    try:
        res = await rpc.call("eth_maxPriorityFeePerGas", [], timeout_s=timeout_s)
        tip = _to_int(res)
        if tip is not None:
            return tip
    except Exception:
        pass
    # Fallback: median reward over recent blocks
    return await _tip_from_fee_history(rpc, block_count=block_count, timeout_s=timeout_s)


async def get_fee_snapshot(
    rpc: Any,
    *,
    block_count: int = 10,
    timeout_s: float = 3.0,
) -> FeeSnapshot:
    """Return network-average gas price and priority fee.

    The gas price is mandatory: a failed eth_gasPrice lookup propagates so the
    caller can drop the transaction. The priority fee is best effort.
    """
    gas_price_raw, tip = await asyncio.gather(
        rpc.call("eth_gasPrice", [], timeout_s=timeout_s),
        _priority_fee(rpc, block_count=block_count, timeout_s=timeout_s),
    )
    gas_price = _to_int(gas_price_raw)
    if gas_price is None:
        raise ValueError(f"bad eth_gasPrice result: {gas_price_raw!r}")
    return FeeSnapshot(gas_price=gas_price, max_priority_fee_per_gas=tip)
