"""Peer sessions: one negotiation attempt per instance, for either role.

A session is never renegotiated in place. When the supervisor decides to start
over it closes the current session and builds a new one with the next
generation number; anything still addressed to the old one is ignored.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from aiortc import MediaStreamTrack

from ..schemas.signaling import Role
from .errors import NegotiationError
from .media import MediaSink, MediaSource

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[Any]]
HealthListener = Callable[["PeerSession", str], None]

FAILURE_STATES = frozenset({"failed", "disconnected"})


class SessionState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting-answer"
    ANSWERING_OFFER = "answering-offer"
    CONNECTED = "connected"
    RECOVERING = "recovering"
    CLOSED = "closed"


class Transport(Protocol):
    """What a session needs from the media transport (see ``PeerTransport``)."""

    @property
    def has_remote_description(self) -> bool: ...

    def on_state_change(self, listener: Callable[[str], Awaitable[None]]) -> None: ...

    def on_local_candidate(self, listener: Callable[[dict], Awaitable[None]]) -> None: ...

    def on_track(self, listener: Callable[[MediaStreamTrack], Awaitable[None]]) -> None: ...

    def add_tracks(self, tracks: list[MediaStreamTrack]) -> None: ...

    def expect_remote_media(self, kinds: tuple[str, ...] = ...) -> None: ...

    async def create_offer(self) -> dict: ...

    async def create_answer(self) -> dict: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    async def announce_local_candidates(self) -> int: ...

    async def close(self) -> None: ...


class PeerSession:
    """State shared by both roles: candidate buffering, trickle and health reporting."""

    role: Role

    def __init__(
        self,
        generation: int,
        room_id: str,
        transport: Transport,
        send: SendCallable,
        on_health: Optional[HealthListener] = None,
    ) -> None:
        self.generation = generation
        self.room_id = room_id
        self.transport = transport
        self.state = SessionState.IDLE
        self.local_description: Optional[dict] = None
        self._send = send
        self._on_health = on_health
        self._pending_candidates: list[dict] = []
        self._remote_description_set = False
        transport.on_state_change(self._handle_transport_state)
        transport.on_local_candidate(self._relay_local_candidate)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} gen={self.generation} room={self.room_id!r} state={self.state.value}>"

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)

    @property
    def peer_generation(self) -> Optional[int]:
        """Generation shared with the remote side; tags candidates in both directions."""

        return self.generation

    async def on_remote_candidate(self, candidate: dict, generation: Optional[int] = None) -> bool:
        """Apply a remote candidate, or buffer it until the remote description is set.

        Candidates tagged with another generation belong to a superseded attempt and are dropped.
        """

        if self.closed:
            return False
        expected = self.peer_generation
        if generation is not None and expected is not None and generation != expected:
            logger.debug("Dropping candidate for generation %s (current %s)", generation, expected)
            return False
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            return False
        await self._apply_candidate(candidate)
        return True

    async def close(self) -> None:
        if self.closed:
            return
        self._transition(SessionState.CLOSED)
        self._pending_candidates.clear()
        await self.transport.close()

    async def _set_remote_description(self, description: dict) -> None:
        try:
            await self.transport.set_remote_description(description)
        except Exception as exc:  # noqa: BLE001 - aiortc raises several types for bad SDP
            raise NegotiationError(f"generation {self.generation}: remote description rejected: {exc}") from exc
        self._remote_description_set = True
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            if self.closed:
                return
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: dict) -> None:
        try:
            await self.transport.add_ice_candidate(candidate)
        except Exception as exc:  # noqa: BLE001
            raise NegotiationError(f"generation {self.generation}: remote candidate rejected: {exc}") from exc

    async def _send_description(self, kind: str, description: dict, generation: Optional[int]) -> None:
        message: dict[str, Any] = {"type": kind, "roomId": self.room_id, "sdp": description}
        if generation is not None:
            message["generation"] = generation
        await self._send(message)

    async def _relay_local_candidate(self, candidate: dict) -> None:
        if self.closed:
            return
        message: dict[str, Any] = {"type": "ice-candidate", "roomId": self.room_id, "candidate": candidate}
        if self.peer_generation is not None:
            message["generation"] = self.peer_generation
        await self._send(message)

    async def _handle_transport_state(self, state: str) -> None:
        if self.closed:
            return
        if state == "connected":
            self._transition(SessionState.CONNECTED)
        elif state in FAILURE_STATES:
            self._transition(SessionState.RECOVERING)
        if self._on_health is not None:
            self._on_health(self, state)

    def _transition(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info("%s session gen=%d: %s -> %s", self.role.value, self.generation, self.state.value, state.value)
        self.state = state


class PublisherSession(PeerSession):
    """Idle -> Offering -> AwaitingAnswer -> Connected."""

    role = Role.PUBLISHER

    def __init__(
        self,
        generation: int,
        room_id: str,
        transport: Transport,
        send: SendCallable,
        source: MediaSource,
        on_health: Optional[HealthListener] = None,
    ) -> None:
        super().__init__(generation, room_id, transport, send, on_health=on_health)
        self._source = source
        self._tracks: list[MediaStreamTrack] = []

    async def close(self) -> None:
        if self.closed:
            return
        await super().close()
        # Unsubscribes this session's proxies from the shared source.
        for track in self._tracks:
            track.stop()
        self._tracks = []

    async def start_negotiation(self) -> bool:
        """Attach local tracks, send an offer and trickle local candidates.

        Returns ``False`` if the session was closed while the offer was being built.
        """

        if self.state is not SessionState.IDLE:
            raise NegotiationError(f"generation {self.generation}: cannot offer from {self.state.value}")
        self._transition(SessionState.OFFERING)

        # Capability errors from the source propagate untouched.
        self._tracks = self._source.tracks()
        try:
            self.transport.add_tracks(self._tracks)
            offer = await self.transport.create_offer()
        except Exception as exc:  # noqa: BLE001
            raise NegotiationError(f"generation {self.generation}: offer failed: {exc}") from exc
        if self.closed:
            return False

        self.local_description = offer
        # Enter AwaitingAnswer before sending; the answer may arrive while the send is in flight.
        self._transition(SessionState.AWAITING_ANSWER)
        await self._send_description("offer", offer, self.generation)
        if self.closed:
            return False
        await self.transport.announce_local_candidates()
        return True

    async def on_answer(self, description: dict, generation: Optional[int] = None) -> bool:
        """Apply the answer for this session's offer; stale or duplicate answers are ignored."""

        if generation is not None and generation != self.generation:
            logger.debug("Ignoring answer for generation %s (current %d)", generation, self.generation)
            return False
        if self.state is not SessionState.AWAITING_ANSWER or self._remote_description_set:
            logger.debug("Ignoring answer in state %s", self.state.value)
            return False
        await self._set_remote_description(description)
        return True


class ReceiverSession(PeerSession):
    """Idle -> AnsweringOffer -> Connected."""

    role = Role.RECEIVER

    def __init__(
        self,
        generation: int,
        room_id: str,
        transport: Transport,
        send: SendCallable,
        sink: Optional[MediaSink] = None,
        on_health: Optional[HealthListener] = None,
        kinds: tuple[str, ...] = ("video",),
    ) -> None:
        super().__init__(generation, room_id, transport, send, on_health=on_health)
        self._sink = sink
        self._kinds = kinds
        self._delivered = False
        self.offer_generation: Optional[int] = None
        transport.on_track(self._handle_track)

    @property
    def peer_generation(self) -> Optional[int]:
        return self.offer_generation

    async def on_offer(self, description: dict, generation: Optional[int] = None) -> bool:
        """Answer an offer. Only valid once per session; renegotiation uses a new session."""

        if self.state is not SessionState.IDLE:
            logger.debug("Session gen=%d already negotiated; offer needs a fresh session", self.generation)
            return False
        self._transition(SessionState.ANSWERING_OFFER)
        self.offer_generation = generation

        await self._set_remote_description(description)
        if self.closed:
            return False
        try:
            self.transport.expect_remote_media(self._kinds)
            answer = await self.transport.create_answer()
        except Exception as exc:  # noqa: BLE001
            raise NegotiationError(f"generation {self.generation}: answer failed: {exc}") from exc
        if self.closed:
            return False

        self.local_description = answer
        await self._send_description("answer", answer, generation)
        if self.closed:
            return False
        await self.transport.announce_local_candidates()
        return True

    async def _handle_track(self, track: MediaStreamTrack) -> None:
        if self.closed or self._delivered or track.kind not in self._kinds:
            return
        self._delivered = True
        logger.info("Receiver session gen=%d: remote %s available", self.generation, track.kind)
        if self._sink is not None:
            await self._sink.attach(track)
