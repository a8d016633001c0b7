from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from mempool.feed import Feed
from mempool.types import PendingTx

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SandwichResult:
    is_sandwich: bool
    attacker: Optional[str] = None
    front_run_tx: Optional[str] = None
    back_run_tx: Optional[str] = None
    block_number: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _gas_price(tx: PendingTx) -> int:
    if tx.gas_price is not None:
        return int(tx.gas_price)
    return int(tx.max_fee_per_gas or 0)


def is_sandwich(prev_tx: PendingTx, victim: PendingTx, next_tx: PendingTx, contract_address: str) -> bool:
    contract = contract_address.lower()
    return (
        prev_tx.from_addr.lower() == next_tx.from_addr.lower()
        and (prev_tx.to_addr or "").lower() == contract
        and (next_tx.to_addr or "").lower() == contract
        and _gas_price(prev_tx) > _gas_price(victim)
    )


async def detect_sandwich(
    feed: Feed,
    victim_hash: str,
    contract_address: str,
    *,
    block_number: Optional[int] = None,
) -> SandwichResult:
    """Check whether a mined victim tx was bracketed by one attacker.

    Looks only at the victim's immediate neighbours in its block. Missing
    data (unmined victim, unknown block, no neighbour) gives a negative
    result, never an exception.
    """
    victim_hash = victim_hash.lower()
    try:
        if block_number is None:
            receipt = await feed.get_receipt(victim_hash)
            if receipt is None or receipt.block_number is None:
                return SandwichResult(False, error="victim_not_mined")
            block_number = receipt.block_number
        txs = await feed.get_mined_block(block_number)
    except Exception as exc:
        log.debug("sandwich lookup failed for %s: %s", victim_hash, exc)
        return SandwichResult(False, block_number=block_number, error=str(exc)[:180])
    if not txs:
        return SandwichResult(False, block_number=block_number, error="block_unavailable")

    idx = next((i for i, tx in enumerate(txs) if tx.tx_hash.lower() == victim_hash), -1)
    if idx == -1:
        return SandwichResult(False, block_number=block_number, error="victim_not_in_block")
    if idx == 0 or idx + 1 >= len(txs):
        return SandwichResult(False, block_number=block_number)

    prev_tx, victim, next_tx = txs[idx - 1], txs[idx], txs[idx + 1]
    if not is_sandwich(prev_tx, victim, next_tx, contract_address):
        return SandwichResult(False, block_number=block_number)
    return SandwichResult(
        True,
        attacker=prev_tx.from_addr,
        front_run_tx=prev_tx.tx_hash,
        back_run_tx=next_tx.tx_hash,
        block_number=block_number,
    )
