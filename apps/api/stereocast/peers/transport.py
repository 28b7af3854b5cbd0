"""Thin adapter over aiortc's RTCPeerConnection.

Descriptions and candidates cross this boundary in the browser JSON shapes
(``{"type", "sdp"}`` and ``{"candidate", "sdpMid", "sdpMLineIndex"}``) so the
rest of the package never touches aiortc objects directly.

aiortc gathers every local candidate while the local description is applied
instead of trickling them. ``announce_local_candidates`` replays the gathered
set one candidate at a time so browser peers see the usual trickle flow.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, Iterator, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

logger = logging.getLogger(__name__)

StateListener = Callable[[str], Awaitable[None]]
CandidateListener = Callable[[dict], Awaitable[None]]
TrackListener = Callable[[MediaStreamTrack], Awaitable[None]]

CANDIDATE_PREFIX = "candidate:"


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(payload: dict[str, Any]) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])


def candidate_to_dict(candidate: RTCIceCandidate) -> dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(payload: dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Parse a browser candidate object; ``None`` for the end-of-candidates marker."""

    line = (payload.get("candidate") or "").strip()
    if not line:
        return None
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def build_configuration(ice_servers: Iterable[str] = ()) -> RTCConfiguration:
    # An empty list keeps the transport on host candidates, like the browser demo.
    return RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in ice_servers])


class PeerTransport:
    """One RTCPeerConnection plus listener plumbing for a single session."""

    def __init__(self, ice_servers: Iterable[str] = ()) -> None:
        self._pc = RTCPeerConnection(configuration=build_configuration(ice_servers))
        self._state_listeners: list[StateListener] = []
        self._candidate_listeners: list[CandidateListener] = []
        self._track_listeners: list[TrackListener] = []
        self._pc.on("connectionstatechange", self._handle_state_change)
        self._pc.on("track", self._handle_track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_local_candidate(self, listener: CandidateListener) -> None:
        self._candidate_listeners.append(listener)

    def on_track(self, listener: TrackListener) -> None:
        self._track_listeners.append(listener)

    def add_tracks(self, tracks: Iterable[MediaStreamTrack]) -> None:
        for track in tracks:
            self._pc.addTrack(track)

    def expect_remote_media(self, kinds: Iterable[str] = ("video",)) -> None:
        """Receive only the listed kinds; every other offered m-line is declined."""

        wanted = set(kinds)
        for transceiver in self._pc.getTransceivers():
            transceiver.direction = "recvonly" if transceiver.kind in wanted else "inactive"

    async def create_offer(self) -> dict[str, str]:
        await self._pc.setLocalDescription(await self._pc.createOffer())
        return description_to_dict(self._pc.localDescription)

    async def create_answer(self) -> dict[str, str]:
        await self._pc.setLocalDescription(await self._pc.createAnswer())
        return description_to_dict(self._pc.localDescription)

    async def set_remote_description(self, description: dict[str, Any]) -> None:
        await self._pc.setRemoteDescription(description_from_dict(description))

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        parsed = candidate_from_dict(candidate)
        if parsed is None:
            return
        await self._pc.addIceCandidate(parsed)

    async def announce_local_candidates(self) -> int:
        count = 0
        for candidate in self._local_candidates():
            payload = candidate_to_dict(candidate)
            for listener in list(self._candidate_listeners):
                await listener(payload)
            count += 1
        return count

    async def close(self) -> None:
        await self._pc.close()

    def _local_candidates(self) -> Iterator[RTCIceCandidate]:
        seen: set[int] = set()
        for index, transceiver in enumerate(self._pc.getTransceivers()):
            dtls = transceiver.sender.transport
            if dtls is None:
                continue
            gatherer = dtls.transport.iceGatherer
            # Bundled transceivers share one gatherer.
            if id(gatherer) in seen:
                continue
            seen.add(id(gatherer))
            for candidate in gatherer.getLocalCandidates():
                candidate.sdpMid = transceiver.mid
                candidate.sdpMLineIndex = index
                yield candidate

    async def _handle_state_change(self) -> None:
        state = self._pc.connectionState
        logger.debug("Peer connection state: %s", state)
        for listener in list(self._state_listeners):
            try:
                await listener(state)
            except Exception:  # noqa: BLE001
                logger.exception("Connection state listener failed")

    async def _handle_track(self, track: MediaStreamTrack) -> None:
        logger.debug("Remote %s track received", track.kind)
        for listener in list(self._track_listeners):
            try:
                await listener(track)
            except Exception:  # noqa: BLE001
                logger.exception("Track listener failed")
