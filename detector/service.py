from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict, Optional

from detector.alerts import status_message
from detector.broadcaster import AlertBroadcaster
from detector.clock import Clock, now_ms
from detector.config import Settings
from detector.engine import ClassificationEngine
from detector.housekeeping import Housekeeper
from detector.state import DetectionState
from infra.metrics import METRICS
from infra.rpc import RPCPool
from mempool.feed import Feed, RPCFeed
from mempool.listener import MempoolListener

log = logging.getLogger(__name__)


class DetectorService:
    """Wires feed, engine, broadcaster and housekeeping; owns their lifecycle."""

    def __init__(
        self,
        settings: Settings,
        *,
        feed: Optional[Feed] = None,
        clock: Clock = now_ms,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.rpc: Optional[RPCPool] = None
        if feed is None:
            self.rpc = RPCPool(settings.rpc_urls, default_timeout_s=settings.rpc_timeout_s)
            feed = RPCFeed(self.rpc, timeout_s=settings.rpc_timeout_s)
        self.feed = feed
        self.rules = settings.rules()
        self.state = DetectionState(tracker_ttl_ms=settings.tracker_ttl_ms)

        self.broadcaster = AlertBroadcaster(
            status_provider=self.status,
            status_interval_s=settings.status_interval_s,
        )
        journal = Path(settings.log_dir) / "alerts.jsonl" if settings.log_dir else None
        self.engine = ClassificationEngine(
            feed,
            self.state,
            self.rules,
            settings.contract_address,
            alert_cb=self.broadcaster.broadcast_alert,
            clock=clock,
            journal_path=journal,
        )
        self.listener = MempoolListener(
            feed,
            settings.ws_urls,
            settings.contract_address,
            subscription=settings.feed_subscription,
            fetch_concurrency=settings.fetch_concurrency,
            tx_cb=self.engine.handle,
        )
        self.housekeeper = Housekeeper(self.state, settings.correlation_window_ms / 1000.0, clock=clock)

    async def status(self) -> Dict[str, Any]:
        stats = await self.state.stats()
        return status_message(
            contract_address=self.settings.contract_address,
            timestamp=self.clock(),
            tracked_transactions=stats.tracked_entries,
            tracked_addresses=stats.tracked_profiles,
            suspicious_addresses=stats.suspicious_profiles,
            known_bots=len(self.rules.known_bots),
        )

    def health(self) -> Dict[str, Any]:
        return {
            "listener": self.listener.status(),
            "rpc": self.rpc.health_snapshot() if self.rpc is not None else [],
            "subscribers": self.broadcaster.subscriber_count,
        }

    async def start(self) -> None:
        log.info("monitoring mempool for contract %s", self.settings.contract_address)
        await self.broadcaster.start(self.settings.alert_host, self.settings.alert_port)
        self.housekeeper.start()
        await self.listener.start()

    async def stop(self) -> None:
        await self.listener.stop()
        log.info("feed health: %s", self.health())
        await self.housekeeper.stop()
        await self.broadcaster.stop()
        if self.rpc is not None:
            await self.rpc.close()
        log.info("detector stopped; metrics=%s", METRICS.snapshot()["counters"])

    async def run_forever(self) -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                pass
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
