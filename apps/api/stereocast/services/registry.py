"""In-memory room registry: which endpoint publishes and which receive, per room."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Literal, Optional

from ..schemas.signaling import Role

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]
ChangeKind = Literal["joined", "left", "replaced"]


@dataclass(eq=False)
class Endpoint:
    """A connected participant. The registry references it but never closes it."""

    connection_id: str
    send: SendCallable
    room_id: Optional[str] = None
    role: Optional[Role] = None

    @property
    def joined(self) -> bool:
        return self.room_id is not None


@dataclass
class Room:
    room_id: str
    publisher: Optional[Endpoint] = None
    receivers: Dict[str, Endpoint] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return self.publisher is None and not self.receivers


@dataclass(frozen=True, slots=True)
class MembershipChange:
    room_id: str
    connection_id: str
    role: Role
    kind: ChangeKind
    has_publisher: bool
    receiver_count: int


MembershipListener = Callable[[MembershipChange], None]


class RoomRegistryError(ValueError):
    """Raised when an endpoint tries to hold a second room/role pair."""


class RoomRegistry:
    """Single-writer table of rooms keyed by room id.

    All methods are synchronous so a mutation can never interleave with another
    coroutine on the event loop.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}
        self._endpoints: Dict[str, Endpoint] = {}
        self._listeners: list[MembershipListener] = []

    def subscribe(self, listener: MembershipListener) -> None:
        self._listeners.append(listener)

    def join(self, endpoint: Endpoint, room_id: str, role: Role) -> bool:
        """Register the endpoint and return whether the room has a publisher."""

        known = self._endpoints.get(endpoint.connection_id)
        if known is not None and (known.room_id != room_id or known.role is not role):
            raise RoomRegistryError(
                f"{endpoint.connection_id} already joined {known.room_id!r} as {known.role.value}"
            )

        endpoint.room_id = room_id
        endpoint.role = role
        self._endpoints[endpoint.connection_id] = endpoint
        room = self._rooms.get(room_id)
        if room is None:
            room = self._rooms[room_id] = Room(room_id=room_id)
            logger.info("Room %r created", room_id)

        if role is Role.PUBLISHER:
            previous = room.publisher
            if previous is endpoint:
                return True
            room.publisher = endpoint
            if previous is not None:
                # The displaced holder keeps its connection and is not told.
                logger.warning(
                    "Publisher %s replaced %s in room %r", endpoint.connection_id, previous.connection_id, room_id
                )
                self._emit(room, endpoint, "replaced")
            else:
                self._emit(room, endpoint, "joined")
            return True

        if endpoint.connection_id not in room.receivers:
            room.receivers[endpoint.connection_id] = endpoint
            self._emit(room, endpoint, "joined")
        return room.publisher is not None

    def leave(self, connection_id: str) -> Optional[Endpoint]:
        """Forget the endpoint; returns it if it was joined, otherwise ``None``."""

        endpoint = self._endpoints.pop(connection_id, None)
        if endpoint is None or endpoint.room_id is None:
            return None

        room = self._rooms.get(endpoint.room_id)
        if room is None:
            return endpoint

        changed = False
        if endpoint.role is Role.PUBLISHER and room.publisher is endpoint:
            room.publisher = None
            changed = True
        elif endpoint.role is Role.RECEIVER and room.receivers.pop(connection_id, None) is not None:
            changed = True

        if room.empty:
            del self._rooms[room.room_id]
            logger.info("Room %r deleted (empty)", room.room_id)
        if changed:
            self._emit(room, endpoint, "left")
        return endpoint

    def is_current_publisher(self, endpoint: Endpoint) -> bool:
        room = self._rooms.get(endpoint.room_id) if endpoint.room_id else None
        return room is not None and room.publisher is endpoint

    def publisher_for(self, room_id: str) -> Optional[Endpoint]:
        room = self._rooms.get(room_id)
        return room.publisher if room else None

    def has_publisher(self, room_id: str) -> bool:
        return self.publisher_for(room_id) is not None

    def receivers_for(self, room_id: str) -> list[Endpoint]:
        room = self._rooms.get(room_id)
        return list(room.receivers.values()) if room else []

    def endpoint(self, connection_id: str) -> Optional[Endpoint]:
        return self._endpoints.get(connection_id)

    def room_ids(self) -> list[str]:
        return list(self._rooms)

    def snapshot(self) -> list[dict]:
        return [
            {
                "room_id": room.room_id,
                "has_publisher": room.publisher is not None,
                "receiver_count": len(room.receivers),
            }
            for room in self._rooms.values()
        ]

    def _emit(self, room: Room, endpoint: Endpoint, kind: ChangeKind) -> None:
        change = MembershipChange(
            room_id=room.room_id,
            connection_id=endpoint.connection_id,
            role=endpoint.role,
            kind=kind,
            has_publisher=room.publisher is not None,
            receiver_count=len(room.receivers),
        )
        for listener in list(self._listeners):
            listener(change)
