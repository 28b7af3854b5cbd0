"""Signaling WebSocket endpoint and room listing."""
from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket

from ..schemas.signaling import RoomListResponse, RoomSummary
from ..services.rendezvous import server as rendezvous

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/rooms", response_model=RoomListResponse)
async def list_rooms() -> RoomListResponse:
    """Return the rooms currently held in memory."""

    return RoomListResponse(rooms=[RoomSummary(**room) for room in rendezvous.rooms()])


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Relay join, offer, answer and candidate frames between room members."""

    await websocket.accept()
    endpoint = rendezvous.connect(websocket.send_json)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            # Text and binary frames both carry JSON; the rendezvous server drops anything else.
            frame = message.get("text")
            if frame is None:
                frame = message.get("bytes")
            await rendezvous.handle(endpoint, frame)
    finally:
        await rendezvous.disconnect(endpoint)
