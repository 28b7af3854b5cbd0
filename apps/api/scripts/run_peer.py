"""Run a publisher or receiver peer against the signaling server."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import suppress

from stereocast.core.config import settings
from stereocast.core.logging import configure_logging
from stereocast.peers import (
    ConnectivityMonitor,
    FileMediaSource,
    HealthProbe,
    MediaCapabilityError,
    PublisherSupervisor,
    ReceiverSupervisor,
    RecorderSink,
    RelayClient,
)

logger = logging.getLogger("stereocast.run_peer")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("role", choices=["publisher", "receiver"])
    parser.add_argument("--room", default=settings.default_room, help="Room to join")
    parser.add_argument("--server", default=settings.signaling_url, help="Signaling WebSocket URL")
    parser.add_argument("--health", default=settings.health_url, help="Health URL polled for connectivity")
    parser.add_argument("--file", help="Media file to publish (publisher only)")
    parser.add_argument("--record", help="Write received video here (receiver only)")
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)
    if args.role == "publisher" and not args.file:
        parser.error("publisher needs --file")
    return args


async def run(args: argparse.Namespace) -> None:
    client = RelayClient(args.server)
    connectivity = ConnectivityMonitor()
    probe = HealthProbe(connectivity, args.health)

    source: FileMediaSource | None = None
    if args.role == "publisher":
        source = FileMediaSource(args.file)
        supervisor = PublisherSupervisor(client, connectivity, source, room_id=args.room)
    else:
        supervisor = ReceiverSupervisor(client, connectivity, RecorderSink(args.record), room_id=args.room)

    await supervisor.start()
    tasks = [asyncio.create_task(client.run()), asyncio.create_task(probe.run())]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        await supervisor.stop()
        await client.close()
        if source is not None:
            source.stop()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        asyncio.run(run(args))
    except MediaCapabilityError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
