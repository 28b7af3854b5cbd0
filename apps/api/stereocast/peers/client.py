"""Persistent signaling connection with automatic reconnect."""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.config import settings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]
ConnectListener = Callable[[], Awaitable[None]]


class RelayClient:
    """Keep one WebSocket to the signaling server open and dispatch frames by ``type``.

    Handlers for one connection run one at a time in arrival order. Every
    successful (re)connect notifies the connect listeners, which is where
    callers re-announce themselves; nothing sent while disconnected is replayed.
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url or settings.signaling_url
        self._ws: Any = None
        self._handlers: Dict[str, list[MessageHandler]] = defaultdict(list)
        self._connect_listeners: list[ConnectListener] = []
        self._closed = False
        self.connections = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, message_type: str, handler: MessageHandler) -> None:
        self._handlers[message_type].append(handler)

    def on_connect(self, listener: ConnectListener) -> None:
        self._connect_listeners.append(listener)

    async def send(self, message: dict) -> bool:
        ws = self._ws
        if ws is None:
            logger.warning("Signaling disconnected; dropping %s", message.get("type"))
            return False
        try:
            await ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            logger.warning("Signaling closed while sending %s: %s", message.get("type"), exc)
            return False
        return True

    async def run(self) -> None:
        """Connect, dispatch and reconnect until ``close`` is called."""

        async for ws in websockets.connect(self.url):
            self._ws = ws
            self.connections += 1
            logger.info("Signaling connected to %s", self.url)
            try:
                for listener in list(self._connect_listeners):
                    await listener()
                async for raw in ws:
                    await self._dispatch(raw)
            except ConnectionClosed as exc:
                logger.warning("Signaling disconnected: %s", exc)
            finally:
                self._ws = None
            if self._closed:
                break
            logger.info("Signaling reconnecting...")

    async def close(self) -> None:
        self._closed = True
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-JSON signaling frame")
            return
        if not isinstance(message, dict):
            return
        message_type = message.get("type")
        handlers = self._handlers.get(message_type)
        if not handlers:
            logger.debug("No handler for %s", message_type)
            return
        for handler in list(handlers):
            try:
                await handler(message)
            except Exception:  # noqa: BLE001
                logger.exception("Handler for %s failed", message_type)
