from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from detector import config


@dataclass(frozen=True)
class PendingHighRiskEntry:
    sender: str
    tx_hash: str
    timestamp: int
    risk_score: int
    function_signature: str


class FrontRunTracker:
    """Most recent unresolved front-run per sender.

    An entry older than ``ttl_ms`` no longer counts as live even if the
    housekeeping sweep has not removed it yet.
    """

    def __init__(self, ttl_ms: int = 2 * config.DEFAULT_CORRELATION_WINDOW_MS) -> None:
        self.ttl_ms = int(ttl_ms)
        self._entries: Dict[str, PendingHighRiskEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, sender: str) -> bool:
        return sender.lower() in self._entries

    def _expired(self, entry: PendingHighRiskEntry, now_ms: int) -> bool:
        return now_ms - entry.timestamp > self.ttl_ms

    def live(self, sender: str, now_ms: int) -> Optional[PendingHighRiskEntry]:
        entry = self._entries.get(sender.lower())
        if entry is None or self._expired(entry, now_ms):
            return None
        return entry

    def register(
        self,
        sender: str,
        *,
        tx_hash: str,
        timestamp: int,
        risk_score: int,
        function_signature: str,
    ) -> PendingHighRiskEntry:
        entry = PendingHighRiskEntry(
            sender=sender.lower(),
            tx_hash=tx_hash,
            timestamp=int(timestamp),
            risk_score=int(risk_score),
            function_signature=function_signature,
        )
        self._entries[entry.sender] = entry
        return entry

    def evict_stale(self, now_ms: int) -> List[str]:
        stale = [s for s, e in self._entries.items() if self._expired(e, now_ms)]
        for sender in stale:
            del self._entries[sender]
        return stale
