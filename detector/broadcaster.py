from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

import websockets
from websockets.exceptions import ConnectionClosed

from detector.alerts import Alert, welcome_message
from detector.scheduler import PeriodicTask

log = logging.getLogger(__name__)

StatusProvider = Callable[[], Awaitable[Dict[str, Any]]]


class Subscriber(Protocol):
    async def send(self, message: str) -> Any:
        ...


class AlertBroadcaster:
    """Fans alerts and status summaries out to websocket subscribers.

    Delivery is best effort. A subscriber whose send fails or times out is
    dropped and its connection closed; the others still receive the message.
    """

    def __init__(
        self,
        *,
        status_provider: Optional[StatusProvider] = None,
        status_interval_s: float = 30.0,
        send_timeout_s: float = 5.0,
    ) -> None:
        self.status_provider = status_provider
        self.send_timeout_s = float(send_timeout_s)
        self._clients: Set[Subscriber] = set()
        self._server: Any = None
        self._closing: Set[asyncio.Task] = set()
        self._status_task = PeriodicTask("status", status_interval_s, self.emit_status) if status_provider else None

    @property
    def subscriber_count(self) -> int:
        return len(self._clients)

    async def start(self, host: str, port: int) -> None:
        self._server = await websockets.serve(self._handler, host, port)
        if self._status_task:
            self._status_task.start()
        log.info("alert server listening on ws://%s:%d", host, port)

    async def stop(self) -> None:
        if self._status_task:
            await self._status_task.stop()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self._clients.clear()

    async def _handler(self, ws: Any, *_args: Any) -> None:
        await self.register(ws)
        try:
            async for _ in ws:
                # Subscribers are receive-only; inbound frames are ignored.
                pass
        except ConnectionClosed:
            pass
        finally:
            self.unregister(ws)

    async def register(self, subscriber: Subscriber) -> bool:
        if not await self._send(subscriber, json.dumps(welcome_message())):
            self._drop(subscriber)
            return False
        self._clients.add(subscriber)
        log.info("dashboard connected (%d subscribers)", len(self._clients))
        return True

    def unregister(self, subscriber: Subscriber) -> None:
        if subscriber in self._clients:
            self._clients.discard(subscriber)
            log.info("dashboard disconnected (%d subscribers)", len(self._clients))

    def _drop(self, subscriber: Subscriber) -> None:
        """Forget subscriber and close its connection so the client can reconnect."""
        self._clients.discard(subscriber)
        close = getattr(subscriber, "close", None)
        if close is None:
            return
        task = asyncio.ensure_future(self._close(subscriber))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close(self, subscriber: Any) -> None:
        try:
            await asyncio.wait_for(subscriber.close(), timeout=self.send_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.debug("closing subscriber %r failed: %s", subscriber, exc)

    async def _send(self, subscriber: Subscriber, message: str) -> bool:
        try:
            await asyncio.wait_for(subscriber.send(message), timeout=self.send_timeout_s)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.debug("dropping subscriber %r: %s", subscriber, exc)
            return False

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        """Deliver payload to every subscriber; returns the number reached."""
        if not self._clients:
            return 0
        message = json.dumps(payload)
        targets: List[Subscriber] = list(self._clients)
        results = await asyncio.gather(*(self._send(s, message) for s in targets))
        for subscriber, ok in zip(targets, results):
            if not ok:
                self._drop(subscriber)
        return sum(1 for ok in results if ok)

    async def broadcast_alert(self, alert: Alert) -> int:
        return await self.broadcast(alert.to_message())

    async def emit_status(self) -> int:
        if not self.status_provider:
            return 0
        return await self.broadcast(await self.status_provider())
