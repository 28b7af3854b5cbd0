"""Process-wide online/offline signal and the HTTP probe that drives it."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

import httpx

from ..core.config import settings

logger = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


ConnectivityListener = Callable[[ConnectivityState], None]


class ConnectivityMonitor:
    """Gate negotiation attempts on the network being reachable."""

    def __init__(self, initial: ConnectivityState = ConnectivityState.ONLINE) -> None:
        self._state = initial
        self._online = asyncio.Event()
        if initial is ConnectivityState.ONLINE:
            self._online.set()
        self._listeners: list[ConnectivityListener] = []

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    def subscribe(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    def set_online(self) -> None:
        self._update(ConnectivityState.ONLINE)

    def set_offline(self) -> None:
        self._update(ConnectivityState.OFFLINE)

    async def wait_online(self) -> None:
        """Return immediately when online, otherwise wait for the next online transition."""

        if self.is_online:
            return
        logger.info("Waiting for network...")
        await self._online.wait()
        logger.info("Network is back.")

    def _update(self, state: ConnectivityState) -> None:
        if state is self._state:
            return
        self._state = state
        if state is ConnectivityState.ONLINE:
            self._online.set()
        else:
            self._online.clear()
        logger.warning("Connectivity changed: %s", state.value)
        for listener in list(self._listeners):
            listener(state)


class HealthProbe:
    """Poll the signaling server's health endpoint and mirror the result into a monitor."""

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: Optional[str] = None,
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.monitor = monitor
        self.url = url or settings.health_url
        self.interval = interval if interval is not None else settings.probe_interval
        self.timeout = timeout if timeout is not None else settings.probe_timeout
        self._client = client

    async def check(self) -> bool:
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.get(self.url, timeout=self.timeout)
            reachable = response.status_code == httpx.codes.OK
        except httpx.HTTPError as exc:
            logger.debug("Health probe to %s failed: %s", self.url, exc)
            reachable = False
        finally:
            if self._client is None:
                await client.aclose()

        if reachable:
            self.monitor.set_online()
        else:
            self.monitor.set_offline()
        return reachable

    async def run(self) -> None:
        owns_client = self._client is None
        if owns_client:
            self._client = httpx.AsyncClient()
        try:
            while True:
                await self.check()
                await asyncio.sleep(self.interval)
        finally:
            if owns_client:
                await self._client.aclose()
                self._client = None
