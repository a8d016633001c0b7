from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from detector import config

LOW = "LOW"
MEDIUM = "MEDIUM"
HIGH = "HIGH"
CRITICAL = "CRITICAL"

FRONT_RUN = "FRONT-RUN"
BACK_RUN = "BACK-RUN"
NORMAL = "NORMAL"
SUSPICIOUS = "SUSPICIOUS"

MEV_BADGES = {
    FRONT_RUN: "FRONT-RUN ATTEMPT",
    BACK_RUN: "BACK-RUN ATTEMPT",
    NORMAL: "NORMAL TRANSACTION",
    SUSPICIOUS: "SUSPICIOUS ACTIVITY",
}

WELCOME_MESSAGE = "Connected to MEV Detection Server"


def risk_level(score: int) -> str:
    if score >= config.RISK_CRITICAL:
        return CRITICAL
    if score >= config.RISK_HIGH:
        return HIGH
    if score >= config.RISK_MEDIUM:
        return MEDIUM
    return LOW


@dataclass(frozen=True)
class BehavioralInsights:
    is_known_bot: bool
    is_suspicious_behavior: bool
    address_tx_count: int
    simulation_success: bool


@dataclass(frozen=True)
class Alert:
    tx_hash: str
    sender: str
    function_name: str
    risk_level: str
    risk_score: int
    risk_factors: Tuple[str, ...]
    gas_info: str
    timestamp: int
    amount_in: Optional[int]
    amount_out_min: Optional[int]
    mev_type: str
    insights: BehavioralInsights

    @property
    def mev_badge(self) -> str:
        return MEV_BADGES[self.mev_type]

    def to_message(self) -> Dict[str, Any]:
        decoded = None
        if self.amount_in is not None:
            decoded = {
                "amountIn": str(self.amount_in),
                "amountOutMin": str(self.amount_out_min) if self.amount_out_min is not None else "N/A",
            }
        return {
            "type": "MEV_ALERT",
            "hash": self.tx_hash,
            "from": self.sender,
            "functionName": self.function_name,
            "riskLevel": self.risk_level,
            "riskScore": int(self.risk_score),
            "riskFactors": list(self.risk_factors),
            "gasInfo": self.gas_info,
            "timestamp": int(self.timestamp),
            "decodedData": decoded,
            "mevType": self.mev_type,
            "mevBadge": self.mev_badge,
            "behavioralInsights": {
                "isKnownBot": self.insights.is_known_bot,
                "isSuspiciousBehavior": self.insights.is_suspicious_behavior,
                "addressTxCount": int(self.insights.address_tx_count),
                "simulationSuccess": self.insights.simulation_success,
                "detectionSource": config.DETECTION_ENGINE,
            },
        }


def status_message(
    *,
    contract_address: str,
    timestamp: int,
    tracked_transactions: int,
    tracked_addresses: int,
    suspicious_addresses: int,
    known_bots: int,
) -> Dict[str, Any]:
    return {
        "type": "SYSTEM_STATUS",
        "status": "ONLINE",
        "monitoredContract": contract_address,
        "timestamp": int(timestamp),
        "trackedTransactions": int(tracked_transactions),
        "stats": {
            "trackedAddresses": int(tracked_addresses),
            "suspiciousAddresses": int(suspicious_addresses),
            "knownBots": int(known_bots),
            "detectionEngine": config.DETECTION_ENGINE,
        },
    }


def welcome_message() -> Dict[str, Any]:
    return {"type": "WELCOME", "message": WELCOME_MESSAGE}
