"""Network connectivity tracking with fan-out change notifications."""

import asyncio
import logging
from enum import Enum
from typing import Iterable, Optional

import httpx

from fieldsync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class ConnectivityResult(str, Enum):
    WIFI = "wifi"
    MOBILE = "mobile"
    ETHERNET = "ethernet"
    VPN = "vpn"
    OTHER = "other"
    NONE = "none"


def is_connected(results: Iterable[ConnectivityResult]) -> bool:
    """Connected when at least one transport other than NONE is present."""
    results = list(results)
    return bool(results) and any(r != ConnectivityResult.NONE for r in results)


class ConnectivitySubscription:
    """Async iterator over connectivity changes for one subscriber."""

    def __init__(self, monitor: "ConnectivityMonitor"):
        self._monitor = monitor
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _push(self, results: list[ConnectivityResult]) -> None:
        if not self._closed:
            self._queue.put_nowait(results)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._monitor._unsubscribe(self)
        # Wake a pending reader so iteration ends
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> list[ConnectivityResult]:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class ConnectivityMonitor:
    """
    Holds the last known connectivity results and broadcasts changes.

    Every subscriber receives every published change. Subscribers only read;
    publishing is done by the monitor itself (or a probe driving it).
    """

    def __init__(self, initial: Optional[list[ConnectivityResult]] = None):
        self._results: list[ConnectivityResult] = list(initial or [ConnectivityResult.NONE])
        self._subscribers: list[ConnectivitySubscription] = []

    @property
    def results(self) -> list[ConnectivityResult]:
        return list(self._results)

    @property
    def is_connected(self) -> bool:
        return is_connected(self._results)

    async def check_connectivity(self) -> list[ConnectivityResult]:
        return self.results

    def subscribe(self) -> ConnectivitySubscription:
        subscription = ConnectivitySubscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: ConnectivitySubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, results: list[ConnectivityResult]) -> None:
        """Record new results and notify subscribers if they changed."""
        results = list(results)
        if results == self._results:
            return
        was_connected = self.is_connected
        self._results = results
        if was_connected != self.is_connected:
            logger.info(f"Connectivity status changed: {'connected' if self.is_connected else 'disconnected'}")
        for subscription in list(self._subscribers):
            subscription._push(list(results))

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()


class HttpConnectivityMonitor(ConnectivityMonitor):
    """Derives connectivity from whether the API host answers at all."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self.settings = settings or get_settings()
        self._transport = transport

    async def probe(self) -> list[ConnectivityResult]:
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                await client.head(self.settings.api_base_url)
            return [ConnectivityResult.OTHER]
        except httpx.TransportError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            return [ConnectivityResult.NONE]

    async def check_connectivity(self) -> list[ConnectivityResult]:
        results = await self.probe()
        self.publish(results)
        return results
