from __future__ import annotations

from typing import Any, Dict, Optional

from eth_abi.abi import decode as abi_decode

from mempool.types import PendingTx, SimulationResult


_SELECTOR_ERROR = b"\x08\xc3\x79\xa0"
_SELECTOR_PANIC = b"\x4e\x48\x7b\x71"


def decode_revert_reason(data_hex: Optional[str]) -> Optional[str]:
    if not data_hex or data_hex == "0x":
        return None
    hx = data_hex[2:] if data_hex.startswith("0x") else data_hex
    try:
        raw = bytes.fromhex(hx)
    except ValueError:
        return None
    if raw.startswith(_SELECTOR_ERROR):
        try:
            reason = abi_decode(["string"], raw[4:])[0]
            return f"revert:{reason}"
        except Exception:
            return "revert:error"
    if raw.startswith(_SELECTOR_PANIC):
        try:
            code = abi_decode(["uint256"], raw[4:])[0]
            return f"panic:0x{int(code):x}"
        except Exception:
            return "panic"
    return None


def call_params(tx: PendingTx) -> Dict[str, Any]:
    """eth_call parameters replaying tx as a dry run against the latest state."""
    params: Dict[str, Any] = {
        "from": tx.from_addr,
        "to": tx.to_addr,
        "data": tx.input or "0x",
        "value": hex(int(tx.value or 0)),
    }
    gas_price = tx.gas_price if tx.gas_price is not None else tx.max_fee_per_gas
    if gas_price is not None:
        params["gasPrice"] = hex(int(gas_price))
    return params


async def simulate_tx(rpc: Any, tx: PendingTx, *, timeout_s: float = 3.0) -> SimulationResult:
    """Dry-run tx with eth_call. Never raises: any failure is a failed simulation."""
    if not tx.to_addr:
        return SimulationResult(success=False, error="contract_creation")
    try:
        res = await rpc.call("eth_call", [call_params(tx), "latest"], timeout_s=timeout_s)
    except Exception as exc:
        data = getattr(exc, "data", None)
        reason = decode_revert_reason(data) if isinstance(data, str) else None
        return SimulationResult(success=False, error=reason or str(exc)[:180])
    return SimulationResult(success=True, result=res if isinstance(res, str) else None)
