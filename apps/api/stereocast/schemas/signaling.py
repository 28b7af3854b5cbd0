"""Data contracts for the signaling wire protocol.

Every frame is a JSON object tagged by ``type``. Session descriptions and ICE
candidates are carried as opaque dictionaries; the server never looks inside.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Role(str, Enum):
    PUBLISHER = "publisher"
    RECEIVER = "receiver"


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class JoinMessage(_Message):
    type: Literal["join"] = "join"
    room_id: str | None = Field(default=None, alias="roomId", description="Room to join; blank means default")
    role: Role = Field(..., description="publisher or receiver")


class OfferMessage(_Message):
    type: Literal["offer"] = "offer"
    room_id: str | None = Field(default=None, alias="roomId")
    sdp: dict[str, Any] = Field(..., description="Session description object {type, sdp}")
    generation: int | None = Field(default=None, description="Negotiation attempt tag set by Python peers")


class AnswerMessage(_Message):
    type: Literal["answer"] = "answer"
    room_id: str | None = Field(default=None, alias="roomId")
    sdp: dict[str, Any] = Field(..., description="Session description object {type, sdp}")
    generation: int | None = Field(default=None, description="Generation of the offer being answered")


class IceCandidateMessage(_Message):
    type: Literal["ice-candidate"] = "ice-candidate"
    room_id: str | None = Field(default=None, alias="roomId")
    candidate: dict[str, Any] = Field(..., description="Candidate object {candidate, sdpMid, sdpMLineIndex}")
    generation: int | None = Field(default=None, description="Generation of the negotiation the candidate belongs to")


ClientMessage = Annotated[
    Union[JoinMessage, OfferMessage, AnswerMessage, IceCandidateMessage],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def request_offer(room_id: str, receiver_id: str) -> dict[str, Any]:
    return {"type": "request-offer", "roomId": room_id, "receiverId": receiver_id}


def publisher_joined() -> dict[str, Any]:
    return {"type": "publisher-joined"}


def publisher_left() -> dict[str, Any]:
    return {"type": "publisher-left"}


def receiver_left(receiver_id: str) -> dict[str, Any]:
    return {"type": "receiver-left", "receiverId": receiver_id}


class RoomSummary(BaseModel):
    room_id: str = Field(..., description="Room identifier")
    has_publisher: bool = Field(..., description="Whether a publisher currently holds the room")
    receiver_count: int = Field(..., ge=0, description="Number of receivers in the room")


class RoomListResponse(BaseModel):
    rooms: list[RoomSummary] = Field(default_factory=list)
