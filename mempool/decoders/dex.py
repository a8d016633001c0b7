from __future__ import annotations

from typing import Optional

from eth_abi import decode

from mempool.decoders.utils import input_selector, selector
from mempool.types import DecodedCall, PendingTx


SWAP = "swapTokenAForTokenB"
ADD_LIQUIDITY = "addLiquidity"

SIG_SWAP = "swapTokenAForTokenB(uint256,uint256)"
SIG_ADD_LIQUIDITY = "addLiquidity(uint256,uint256)"

SELECTORS = {
    selector(SIG_SWAP): (SWAP, ["uint256", "uint256"]),
    selector(SIG_ADD_LIQUIDITY): (ADD_LIQUIDITY, ["uint256", "uint256"]),
}


class DexDecoder:
    """Decoder for the monitored pool's swap and add-liquidity entry points."""

    def __init__(self, contract_address: str) -> None:
        self.contract_address = str(contract_address).lower()

    def targets_contract(self, tx: PendingTx) -> bool:
        return (tx.to_addr or "").lower() == self.contract_address

    def function_name(self, tx: PendingTx) -> Optional[str]:
        sel = input_selector(tx.input)
        if sel is None or sel not in SELECTORS:
            return None
        return SELECTORS[sel][0]

    def decode(self, tx: PendingTx) -> Optional[DecodedCall]:
        sel = input_selector(tx.input)
        if sel is None or sel not in SELECTORS:
            return None
        name, types = SELECTORS[sel]
        try:
            args = decode(types, bytes.fromhex(tx.input[10:]))
        except Exception:
            return None
        return DecodedCall(
            tx_hash=tx.tx_hash,
            function_name=name,
            selector="0x" + sel,
            args=tuple(int(a) for a in args),
        )
