"""Rendezvous server: join/leave handling and negotiation message forwarding."""
from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from ..core.config import settings
from ..schemas import signaling as schemas
from ..schemas.signaling import Role
from .registry import Endpoint, MembershipChange, RoomRegistry, RoomRegistryError, SendCallable
from .relay import MessageRelay, RelayConnection

logger = logging.getLogger(__name__)


def resolve_room_id(room_id: str | None) -> str:
    """Strip the requested room id and fall back to the default room when blank."""

    cleaned = (room_id or "").strip()
    return cleaned or settings.default_room


class RendezvousServer:
    """Compose the room registry and the message relay behind one message handler."""

    def __init__(self, registry: RoomRegistry | None = None, relay: MessageRelay | None = None) -> None:
        self.registry = registry or RoomRegistry()
        self.relay = relay or MessageRelay()
        self.registry.subscribe(self._log_membership)

    def connect(self, send: SendCallable, connection_id: str | None = None) -> Endpoint:
        endpoint = Endpoint(connection_id=connection_id or uuid4().hex, send=send)
        logger.info("Endpoint %s connected", endpoint.connection_id)
        return endpoint

    async def handle(self, endpoint: Endpoint, raw: Any) -> None:
        """Process one inbound frame. Protocol errors are logged and dropped."""

        payload = self._decode(endpoint, raw)
        if payload is None:
            return

        try:
            message = schemas.client_message_adapter.validate_python(payload)
        except ValidationError as exc:
            logger.warning(
                "Dropping invalid %r message from %s: %s",
                payload.get("type"),
                endpoint.connection_id,
                exc.errors(include_url=False),
            )
            return

        if isinstance(message, schemas.JoinMessage):
            await self.join(endpoint, message.room_id, message.role)
        else:
            await self.forward(endpoint, payload)

    async def join(self, endpoint: Endpoint, room_id: str | None, role: Role) -> None:
        room = resolve_room_id(room_id)
        try:
            has_publisher = self.registry.join(endpoint, room, role)
        except RoomRegistryError as exc:
            logger.warning("Ignoring join: %s", exc)
            return
        self.relay.subscribe(room, RelayConnection(endpoint.connection_id, endpoint.send))

        if role is Role.PUBLISHER:
            await self.relay.broadcast(room, endpoint.connection_id, schemas.publisher_joined())
            return

        if not has_publisher:
            logger.info("Receiver %s waiting in room %r without a publisher", endpoint.connection_id, room)
            return
        publisher = self.registry.publisher_for(room)
        if publisher is None:
            return
        logger.info("Requesting offer from %s for receiver %s", publisher.connection_id, endpoint.connection_id)
        await self.relay.send_to(
            RelayConnection(publisher.connection_id, publisher.send),
            schemas.request_offer(room, endpoint.connection_id),
        )

    async def forward(self, endpoint: Endpoint, payload: dict) -> None:
        """Relay an offer, answer or candidate verbatim to the rest of the room."""

        if endpoint.room_id is None:
            logger.debug("Dropping %s from %s: not in a room", payload.get("type"), endpoint.connection_id)
            return
        delivered = await self.relay.broadcast(endpoint.room_id, endpoint.connection_id, payload)
        logger.debug(
            "Relayed %s from %s to %d peer(s) in %r",
            payload.get("type"),
            endpoint.connection_id,
            delivered,
            endpoint.room_id,
        )

    async def disconnect(self, endpoint: Endpoint) -> None:
        room = endpoint.room_id
        role = endpoint.role
        was_publisher = self.registry.is_current_publisher(endpoint)
        self.registry.leave(endpoint.connection_id)
        logger.info("Endpoint %s disconnected", endpoint.connection_id)
        if room is None:
            return

        self.relay.unsubscribe(room, endpoint.connection_id)
        if role is Role.PUBLISHER:
            if was_publisher:
                await self.relay.broadcast(room, endpoint.connection_id, schemas.publisher_left())
        else:
            await self.relay.broadcast(room, endpoint.connection_id, schemas.receiver_left(endpoint.connection_id))

    def rooms(self) -> list[dict]:
        return self.registry.snapshot()

    def _decode(self, endpoint: Endpoint, raw: Any) -> dict | None:
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError:
                logger.warning("Dropping non-JSON frame from %s", endpoint.connection_id)
                return None
        if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
            logger.warning("Dropping untyped frame from %s", endpoint.connection_id)
            return None
        return raw

    @staticmethod
    def _log_membership(change: MembershipChange) -> None:
        logger.info(
            "Room %r: %s %s %s (publisher=%s, receivers=%d)",
            change.room_id,
            change.role.value,
            change.connection_id,
            change.kind,
            change.has_publisher,
            change.receiver_count,
        )


server = RendezvousServer()
