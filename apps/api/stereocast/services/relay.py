"""In-memory message relay with per-room subscriptions."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class RelayConnection:
    """Connection wrapper for relay subscribers."""

    connection_id: str
    send: SendCallable


class MessageRelay:
    """Fan out opaque messages to the other subscribers of a room.

    Payloads are forwarded as-is. Ordering from a single sender holds as long as
    the caller awaits each broadcast before handling that sender's next message.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Dict[str, RelayConnection]] = {}

    def subscribe(self, room: str, connection: RelayConnection) -> None:
        """Register a connection with the room."""

        self._rooms.setdefault(room, {})[connection.connection_id] = connection

    def unsubscribe(self, room: str, connection_id: str) -> None:
        """Remove a connection from the room, cleaning up empty rooms."""

        subscribers = self._rooms.get(room)
        if not subscribers:
            return
        subscribers.pop(connection_id, None)
        if not subscribers:
            self._rooms.pop(room, None)

    def subscribers(self, room: str) -> list[str]:
        return list(self._rooms.get(room, {}))

    async def broadcast(self, room: str, sender_id: str, message: dict) -> int:
        """Send a message to all subscribers of the room except the sender.

        Returns the number of recipients that accepted the message.
        """

        recipients = [
            connection for connection in self._rooms.get(room, {}).values() if connection.connection_id != sender_id
        ]
        if not recipients:
            return 0

        results = await asyncio.gather(*(connection.send(message) for connection in recipients), return_exceptions=True)
        delivered = 0
        for connection, result in zip(recipients, results):
            if isinstance(result, Exception):
                logger.warning("Relay to %s in room %r failed: %s", connection.connection_id, room, result)
            else:
                delivered += 1
        return delivered

    async def send_to(self, connection: RelayConnection, message: dict) -> bool:
        """Directed delivery to a single connection."""

        try:
            await connection.send(message)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Direct send to %s failed: %s", connection.connection_id, exc)
            return False
        return True
