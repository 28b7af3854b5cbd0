"""Shared fakes for peer-side tests: no network, no codecs."""
from __future__ import annotations

import asyncio
import json
from itertools import count

import pytest

from stereocast.peers.client import RelayClient
from stereocast.services.rendezvous import RendezvousServer

HOST_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.168.1.20 50000 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}

_ids = count(1)


async def settle(rounds: int = 50) -> None:
    """Let spawned tasks and chained callbacks run to completion."""

    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTrack:
    def __init__(self, kind: str = "video") -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeTransport:
    """Stands in for PeerTransport; the test decides when the connection state changes."""

    def __init__(self) -> None:
        self.id = next(_ids)
        self.state_listeners: list = []
        self.candidate_listeners: list = []
        self.track_listeners: list = []
        self.tracks: list = []
        self.kinds: tuple[str, ...] | None = None
        self.local: dict | None = None
        self.remote: dict | None = None
        self.applied_candidates: list[dict] = []
        self.local_candidates = [dict(HOST_CANDIDATE)]
        self.fail_remote = False
        self.fail_offer = False
        self.closed = False

    @property
    def has_remote_description(self) -> bool:
        return self.remote is not None

    def on_state_change(self, listener) -> None:
        self.state_listeners.append(listener)

    def on_local_candidate(self, listener) -> None:
        self.candidate_listeners.append(listener)

    def on_track(self, listener) -> None:
        self.track_listeners.append(listener)

    def add_tracks(self, tracks) -> None:
        self.tracks.extend(tracks)

    def expect_remote_media(self, kinds=("video",)) -> None:
        self.kinds = tuple(kinds)

    async def create_offer(self) -> dict:
        if self.fail_offer:
            raise RuntimeError("no codecs")
        self.local = {"type": "offer", "sdp": f"v=0 offer {self.id}"}
        return self.local

    async def create_answer(self) -> dict:
        self.local = {"type": "answer", "sdp": f"v=0 answer {self.id}"}
        return self.local

    async def set_remote_description(self, description: dict) -> None:
        if self.fail_remote:
            raise ValueError("malformed description")
        self.remote = description

    async def add_ice_candidate(self, candidate: dict) -> None:
        self.applied_candidates.append(candidate)

    async def announce_local_candidates(self) -> int:
        for candidate in self.local_candidates:
            for listener in list(self.candidate_listeners):
                await listener(candidate)
        return len(self.local_candidates)

    async def close(self) -> None:
        self.closed = True

    async def emit_state(self, state: str) -> None:
        for listener in list(self.state_listeners):
            await listener(state)

    async def emit_track(self, track) -> None:
        for listener in list(self.track_listeners):
            await listener(track)


class FakeSource:
    def __init__(self) -> None:
        self.opened = 0
        self.issued: list[FakeTrack] = []

    def open(self) -> None:
        self.opened += 1

    def tracks(self) -> list[FakeTrack]:
        track = FakeTrack("video")
        self.issued.append(track)
        return [track]


class FakeSink:
    def __init__(self) -> None:
        self.tracks: list = []
        self.stopped = False

    async def attach(self, track) -> None:
        self.tracks.append(track)

    async def stop(self) -> None:
        self.stopped = True


class TransportFactory:
    def __init__(self) -> None:
        self.created: list[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport()
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class LoopbackClient(RelayClient):
    """RelayClient wired straight into an in-process RendezvousServer."""

    def __init__(self, server: RendezvousServer) -> None:
        super().__init__("ws://loopback/api/rtc/signaling")
        self.server = server
        self.endpoint = None
        self.sent: list[dict] = []
        self.received: list[dict] = []

    @property
    def connected(self) -> bool:
        return self.endpoint is not None

    async def connect(self) -> None:
        self.endpoint = self.server.connect(self._deliver)
        self.connections += 1
        for listener in list(self._connect_listeners):
            await listener()

    async def drop(self) -> None:
        endpoint, self.endpoint = self.endpoint, None
        if endpoint is not None:
            await self.server.disconnect(endpoint)

    async def send(self, message: dict) -> bool:
        self.sent.append(message)
        if self.endpoint is None:
            return False
        await self.server.handle(self.endpoint, json.dumps(message))
        return True

    async def _deliver(self, message: dict) -> None:
        self.received.append(message)
        await self._dispatch(json.dumps(message))

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    def received_types(self) -> list[str]:
        return [message["type"] for message in self.received]


@pytest.fixture
def rendezvous() -> RendezvousServer:
    return RendezvousServer()


@pytest.fixture
def transports() -> TransportFactory:
    return TransportFactory()
