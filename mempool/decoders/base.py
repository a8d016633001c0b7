from __future__ import annotations

from typing import Optional, Protocol

from mempool.types import DecodedCall, PendingTx


class Decoder(Protocol):
    def targets_contract(self, tx: PendingTx) -> bool:
        raise NotImplementedError

    def function_name(self, tx: PendingTx) -> Optional[str]:
        """Return the tracked function name for tx's selector, else None."""
        raise NotImplementedError

    def decode(self, tx: PendingTx) -> Optional[DecodedCall]:
        """Return DecodedCall if the arguments of tx parse, else None."""
        raise NotImplementedError
