"""Reconnection supervisors: own the current peer session and replace it on failure.

Both roles follow the same recovery rule. A ``failed`` or ``disconnected``
report from the current session (or a negotiation error) discards that
session, waits until connectivity is online and then starts a new attempt.
At most one recovery is pending at a time. Every step that resumes after an
``await`` checks that its generation is still the current one.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from ..core.config import settings
from ..schemas.signaling import Role
from ..services.rendezvous import resolve_room_id
from .client import RelayClient
from .connectivity import ConnectivityMonitor
from .errors import NegotiationError
from .media import MediaSink, MediaSource
from .session import FAILURE_STATES, PeerSession, PublisherSession, ReceiverSession, SessionState, Transport
from .transport import PeerTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]


def default_transport_factory() -> Transport:
    return PeerTransport(settings.ice_servers)


class ReconnectionSupervisor(ABC):
    role: Role

    def __init__(
        self,
        client: RelayClient,
        connectivity: ConnectivityMonitor,
        room_id: Optional[str] = None,
        *,
        transport_factory: TransportFactory = default_transport_factory,
        retry_delay: Optional[float] = None,
    ) -> None:
        self.client = client
        self.connectivity = connectivity
        self.room_id = resolve_room_id(room_id)
        self.session: Optional[PeerSession] = None
        self._transport_factory = transport_factory
        self._generations = itertools.count(1)
        self._retry_delay = settings.rejoin_delay if retry_delay is None else retry_delay
        self._started = False
        self._stopped = False
        self._recovery_pending = False
        self._tasks: set[asyncio.Task] = set()

        client.on_connect(self._on_relay_connect)
        client.on("ice-candidate", self._on_candidate)

    @property
    def generation(self) -> int:
        return self.session.generation if self.session else 0

    @property
    def recovery_pending(self) -> bool:
        return self._recovery_pending

    async def start(self) -> None:
        self._started = True
        if self.client.connected:
            await self._announce()

    async def stop(self) -> None:
        self._stopped = True
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._discard_session()

    async def join(self) -> bool:
        logger.info("Joining room %r as %s", self.room_id, self.role.value)
        return await self.client.send({"type": "join", "roomId": self.room_id, "role": self.role.value})

    async def _on_relay_connect(self) -> None:
        # A new relay connection is a new endpoint on the server; announce again.
        if self._started and not self._stopped:
            await self._announce()

    async def _announce(self) -> None:
        await self.join()

    async def _on_candidate(self, message: dict) -> None:
        session = self.session
        candidate = message.get("candidate")
        if session is None or not isinstance(candidate, dict):
            logger.debug("No session for remote candidate; dropped")
            return
        try:
            await session.on_remote_candidate(candidate, message.get("generation"))
        except NegotiationError as exc:
            logger.exception("%s", exc)
            self._schedule_recovery(session, "candidate rejected")

    def _on_session_health(self, session: PeerSession, state: str) -> None:
        if session is not self.session:
            logger.debug("Ignoring %s from superseded generation %d", state, session.generation)
            return
        if state in FAILURE_STATES:
            self._schedule_recovery(session, f"transport {state}")

    def _schedule_recovery(self, session: PeerSession, reason: str) -> None:
        if self._stopped or session is not self.session:
            return
        if self._recovery_pending:
            logger.debug("Recovery already pending; ignoring %s on generation %d", reason, session.generation)
            return
        self._recovery_pending = True
        logger.warning("Generation %d lost (%s); recovering", session.generation, reason)
        self._spawn(self._recover(session.generation))

    async def _recover(self, generation: int) -> None:
        try:
            if self.generation == generation:
                await self._discard_session()
            while not self._stopped:
                await self.connectivity.wait_online()
                if self._stopped or self.generation > generation:
                    # Someone else already formed a newer session while we waited.
                    return
                if await self._resume(generation):
                    return
                # Our own attempt failed; retry from its generation.
                generation = self.generation
                await asyncio.sleep(self._retry_delay)
        finally:
            self._recovery_pending = False

    @abstractmethod
    async def _resume(self, generation: int) -> bool:
        """Start a new attempt after recovery; return True once nothing is left to retry."""

    def _next_generation(self) -> int:
        return next(self._generations)

    async def _discard_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.close()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s task failed: %s", self.role.value, exc, exc_info=exc)


class PublisherSupervisor(ReconnectionSupervisor):
    """Offer on start, on every ``request-offer`` and after every recovery."""

    role = Role.PUBLISHER

    def __init__(self, client: RelayClient, connectivity: ConnectivityMonitor, source: MediaSource, **kwargs) -> None:
        super().__init__(client, connectivity, **kwargs)
        self.source = source
        self._negotiating = False
        self._attempt: Optional[PublisherSession] = None
        self._reoffer_requested = False
        client.on("request-offer", self._on_request_offer)
        client.on("answer", self._on_answer)
        client.on("receiver-left", self._on_receiver_left)

    async def start(self) -> None:
        # Open the source up front so capability errors reach the caller.
        self.source.open()
        await super().start()

    async def _announce(self) -> None:
        await self.join()
        # Receivers that joined before us get no request-offer, so offer unless media is already flowing.
        if self.session is None or self.session.state is not SessionState.CONNECTED:
            self._spawn(self.negotiate())

    async def negotiate(self) -> bool:
        """Start a fresh offer unless one is already being prepared or recovered.

        A request that lands after the in-flight offer went out is remembered
        and answered with one more offer once that attempt finishes.
        """

        if self._negotiating or self._recovery_pending:
            attempt = self._attempt
            if attempt is not None and attempt.local_description is not None:
                self._reoffer_requested = True
                logger.debug("Offer for generation %d already sent; offering again afterwards", attempt.generation)
            else:
                logger.debug("Negotiation already in flight; request coalesced")
            return False
        ok = await self._negotiate_once()
        if not ok and self.session is not None:
            self._schedule_recovery(self.session, "negotiation failed")
        return ok

    async def _negotiate_once(self) -> bool:
        self._negotiating = True
        session: Optional[PublisherSession] = None
        ok = False
        try:
            await self.connectivity.wait_online()
            if self._stopped:
                return False
            await self._discard_session()
            session = PublisherSession(
                self._next_generation(),
                self.room_id,
                self._transport_factory(),
                self.client.send,
                self.source,
                on_health=self._on_session_health,
            )
            self.session = session
            self._attempt = session
            try:
                ok = await session.start_negotiation()
            except NegotiationError as exc:
                logger.exception("%s", exc)
        finally:
            self._negotiating = False
            if session is not None and self._attempt is session:
                self._attempt = None

        reoffer, self._reoffer_requested = self._reoffer_requested, False
        if ok and reoffer and not self._stopped and self.session is session:
            logger.info("Offer requested after generation %d was sent; offering again", session.generation)
            self._spawn(self.negotiate())
        return ok

    async def _resume(self, generation: int) -> bool:
        return await self._negotiate_once()

    async def _on_request_offer(self, message: dict) -> None:
        requested_room = message.get("roomId")
        if requested_room and requested_room != self.room_id:
            return
        # A late joiner never saw earlier offers, so always offer again.
        logger.info("Offer requested for receiver %s", message.get("receiverId"))
        self._spawn(self.negotiate())

    async def _on_answer(self, message: dict) -> None:
        session = self.session
        description = message.get("sdp")
        if session is None or not isinstance(description, dict):
            return
        try:
            await session.on_answer(description, message.get("generation"))
        except NegotiationError as exc:
            logger.exception("%s", exc)
            self._schedule_recovery(session, "answer rejected")

    async def _on_receiver_left(self, message: dict) -> None:
        logger.info("Receiver %s left room %r", message.get("receiverId"), self.room_id)


class ReceiverSupervisor(ReconnectionSupervisor):
    """Answer each offer from a fresh session; after a failure, rejoin to ask for one."""

    role = Role.RECEIVER

    def __init__(
        self,
        client: RelayClient,
        connectivity: ConnectivityMonitor,
        sink: Optional[MediaSink] = None,
        **kwargs,
    ) -> None:
        super().__init__(client, connectivity, **kwargs)
        self.sink = sink
        client.on("offer", self._on_offer)
        client.on("publisher-joined", self._on_publisher_joined)
        client.on("publisher-left", self._on_publisher_left)

    async def stop(self) -> None:
        await super().stop()
        if self.sink is not None:
            await self.sink.stop()

    async def _on_offer(self, message: dict) -> None:
        description = message.get("sdp")
        if not isinstance(description, dict):
            return
        if self.session is not None:
            # Never renegotiate a live transport in place.
            logger.info("New offer while in %s; replacing generation %d", self.session.state.value, self.generation)
        await self._discard_session()
        session = ReceiverSession(
            self._next_generation(),
            self.room_id,
            self._transport_factory(),
            self.client.send,
            sink=self.sink,
            on_health=self._on_session_health,
        )
        self.session = session
        try:
            await session.on_offer(description, message.get("generation"))
        except NegotiationError as exc:
            logger.exception("%s", exc)
            self._schedule_recovery(session, "offer rejected")

    async def _on_publisher_joined(self, message: dict) -> None:
        # Informational only; an offer still has to arrive before we answer.
        logger.info("Publisher present in room %r; waiting for offer", self.room_id)

    async def _on_publisher_left(self, message: dict) -> None:
        # Media may still be flowing; only a transport failure ends the session.
        logger.info("Publisher left room %r", self.room_id)

    async def _resume(self, generation: int) -> bool:
        await asyncio.sleep(self._retry_delay)
        if self._stopped or self.generation > generation:
            return True
        # The server answers a receiver join by asking the publisher for a fresh offer.
        await self.join()
        logger.info("Waiting for new offer from publisher...")
        return True
