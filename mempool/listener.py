from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from infra.metrics import METRICS
from mempool.feed import Feed
from mempool.types import PendingTx

log = logging.getLogger(__name__)

PendingTxCallback = Callable[[PendingTx], Awaitable[Any]]

SUBSCRIPTION_STANDARD = "standard"
SUBSCRIPTION_ALCHEMY = "alchemy"

RECONNECT_BACKOFF_S = 1.0
RECONNECT_BACKOFF_MAX_S = 30.0


def subscription_request(mode: str, contract_address: str) -> Dict[str, Any]:
    if mode == SUBSCRIPTION_ALCHEMY:
        params: List[Any] = [
            "alchemy_pendingTransactions",
            {"toAddress": [contract_address], "hashesOnly": True},
        ]
    else:
        params = ["newPendingTransactions"]
    return {"id": 1, "jsonrpc": "2.0", "method": "eth_subscribe", "params": params}


def extract_hash(data: Any) -> Optional[str]:
    """Pull a pending tx hash out of an eth_subscription notification."""
    if not isinstance(data, dict) or data.get("method") != "eth_subscription":
        return None
    result = (data.get("params") or {}).get("result")
    if isinstance(result, dict):
        result = result.get("hash")
    if isinstance(result, str) and result.startswith("0x"):
        return result
    return None


class MempoolListener:
    """Pending-transaction subscription plus a pool of resolver workers.

    Hashes from the websocket are de-duplicated and queued; each worker
    resolves one hash at a time through the feed and hands the transaction to
    ``tx_cb``. A failed resolve drops that hash. The websocket loop reconnects
    with exponential backoff, rotating through ``ws_urls``.
    """

    def __init__(
        self,
        feed: Feed,
        ws_urls: List[str],
        contract_address: str,
        *,
        subscription: str = SUBSCRIPTION_STANDARD,
        max_inflight: int = 500,
        fetch_concurrency: int = 20,
        dedup_ttl_s: int = 120,
        tx_cb: Optional[PendingTxCallback] = None,
    ) -> None:
        self.feed = feed
        self.ws_urls = [str(u).strip() for u in ws_urls if str(u).strip()]
        self.contract_address = str(contract_address).lower()
        self.subscription = subscription
        self.max_inflight = int(max_inflight)
        self.fetch_concurrency = max(1, int(fetch_concurrency))
        self.dedup_ttl_s = int(dedup_ttl_s)
        self.tx_cb = tx_cb

        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max(1, self.max_inflight))
        self._seen: Dict[str, float] = {}
        self._last_prune = time.time()
        self._running = False
        self._ws_task: Optional[asyncio.Task] = None
        self._fetch_tasks: List[asyncio.Task] = []

        self._ws_connected = False
        self._ws_url: Optional[str] = None
        self._ws_reconnects = 0
        self._sleep = asyncio.sleep

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._ws_task = asyncio.create_task(self._ws_loop())
        self._fetch_tasks = [asyncio.create_task(self._fetch_loop(i)) for i in range(self.fetch_concurrency)]

    async def stop(self) -> None:
        self._running = False
        tasks = [t for t in [self._ws_task, *self._fetch_tasks] if t]
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._ws_connected = False

    def status(self) -> Dict[str, Any]:
        return {
            "ws_connected": self._ws_connected,
            "ws_url": self._ws_url,
            "ws_reconnects": self._ws_reconnects,
            "queue_size": self._queue.qsize(),
            "seen_cache_size": len(self._seen),
        }

    def _prune_seen(self, now: float) -> None:
        ttl = float(self.dedup_ttl_s)
        for h, ts in list(self._seen.items()):
            if now - ts > ttl:
                self._seen.pop(h, None)
        self._last_prune = now

    async def _fetch_loop(self, idx: int) -> None:
        while self._running:
            try:
                tx_hash = await self._queue.get()
            except asyncio.CancelledError:
                break
            await self._process_hash(tx_hash)

    async def _process_hash(self, tx_hash: str) -> None:
        try:
            tx = await self.feed.resolve(tx_hash)
        except Exception as exc:
            METRICS.inc("mempool_resolve_failed")
            log.debug("resolve failed for %s: %s", tx_hash, exc)
            return
        if tx is None:
            METRICS.inc("mempool_resolve_missing")
            return
        METRICS.inc("mempool_resolved")
        if not self.tx_cb:
            return
        try:
            await self.tx_cb(tx)
        except Exception as exc:
            # One bad transaction never stops the worker.
            METRICS.inc("mempool_tx_cb_failed")
            log.debug("processing failed for %s: %s", tx_hash, exc)

    async def _ws_loop(self) -> None:
        if not self.ws_urls:
            log.warning("no websocket feed configured; mempool subscription disabled")
            return
        ws_idx = 0
        backoff_s = RECONNECT_BACKOFF_S
        while self._running:
            url = self.ws_urls[ws_idx % len(self.ws_urls)]
            ws_idx += 1
            try:
                async with websockets.connect(url, ping_interval=20, ping_timeout=20) as ws:
                    await ws.send(json.dumps(subscription_request(self.subscription, self.contract_address)))
                    self._ws_connected = True
                    self._ws_url = url
                    backoff_s = RECONNECT_BACKOFF_S
                    log.info("subscribed to pending transactions via %s (%s)", url, self.subscription)
                    async for raw in ws:
                        try:
                            data = json.loads(raw)
                        except (TypeError, ValueError):
                            continue
                        tx_hash = extract_hash(data)
                        if tx_hash:
                            self.handle_hash(tx_hash)
                    raise ConnectionError("subscription closed by server")
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self._ws_connected = False
                self._ws_reconnects += 1
                log.warning("mempool feed %s failed (%s); reconnecting in %.0fs", url, exc, backoff_s)
                await self._sleep(backoff_s)
                backoff_s = min(backoff_s * 2.0, RECONNECT_BACKOFF_MAX_S)

    def handle_hash(self, tx_hash: str) -> bool:
        """Queue tx_hash for resolution. Returns False when deduplicated or dropped."""
        METRICS.inc("mempool_hashes_total")
        now = time.time()
        if now - self._last_prune > self.dedup_ttl_s:
            self._prune_seen(now)
        h = tx_hash.lower()
        if h in self._seen and (now - self._seen[h]) < float(self.dedup_ttl_s):
            return False
        self._seen[h] = now
        try:
            self._queue.put_nowait(h)
        except asyncio.QueueFull:
            METRICS.inc("mempool_queue_full")
            return False
        return True
