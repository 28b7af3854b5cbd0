"""Media collaborators: where published tracks come from and where received ones go."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol, Union

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder, MediaRelay

from .errors import MediaCapabilityError

logger = logging.getLogger(__name__)


class MediaSource(Protocol):
    def open(self) -> None: ...

    def tracks(self) -> list[MediaStreamTrack]: ...


class MediaSink(Protocol):
    async def attach(self, track: MediaStreamTrack) -> None: ...

    async def stop(self) -> None: ...


class FileMediaSource:
    """Play a local file (typically side-by-side stereo video) on a loop.

    Each call to ``tracks`` returns fresh relay subscriptions of the same
    player, so a replacement session can attach without reopening the file.
    """

    def __init__(self, path: Union[str, Path], *, loop: bool = True) -> None:
        self.path = Path(path)
        self.loop = loop
        self._player: Optional[MediaPlayer] = None
        self._relay = MediaRelay()

    def open(self) -> None:
        if self._player is not None:
            return
        if not self.path.is_file():
            raise MediaCapabilityError(f"Media file not found: {self.path}")
        try:
            player = MediaPlayer(str(self.path), loop=self.loop)
        except Exception as exc:  # noqa: BLE001 - PyAV raises its own error hierarchy
            raise MediaCapabilityError(f"Cannot open {self.path}: {exc}") from exc
        if player.video is None and player.audio is None:
            raise MediaCapabilityError(f"{self.path} has no audio or video stream")
        self._player = player
        logger.info(
            "Opened %s (video=%s, audio=%s)", self.path, player.video is not None, player.audio is not None
        )

    def tracks(self) -> list[MediaStreamTrack]:
        self.open()
        player = self._player
        return [self._relay.subscribe(track) for track in (player.video, player.audio) if track is not None]

    def stop(self) -> None:
        if self._player is None:
            return
        for track in (self._player.video, self._player.audio):
            if track is not None:
                track.stop()
        self._player = None


class RecorderSink:
    """Write the received track to a file, or discard it when no path is given.

    A new session hands over a new track; the previous recorder is stopped first.
    """

    def __init__(self, path: Union[str, Path, None] = None) -> None:
        self.path = Path(path) if path else None
        self._recorder: Union[MediaRecorder, MediaBlackhole, None] = None
        self.attached = 0

    async def attach(self, track: MediaStreamTrack) -> None:
        await self.stop()
        recorder = MediaRecorder(str(self.path)) if self.path else MediaBlackhole()
        recorder.addTrack(track)
        await recorder.start()
        self._recorder = recorder
        self.attached += 1
        logger.info("Rendering remote %s track to %s", track.kind, self.path or "blackhole")

    async def stop(self) -> None:
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            await recorder.stop()
