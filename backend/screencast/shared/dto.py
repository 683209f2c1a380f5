"""Lightweight shared DTOs exchanged between the relay and participants."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(str, Enum):
    """Kinds of session-setup messages carried by the relay."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    STOP = "stop"


class SignalingMessage(BaseModel):
    """Immutable signaling message.

    ``target_id`` absent means broadcast: host → every viewer, viewer → host.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: MessageKind = Field(alias="type")
    payload: Any = None
    sender_id: str = Field(alias="senderId")
    target_id: Optional[str] = Field(default=None, alias="targetId")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class StreamStats(BaseModel):
    """Human-facing stream metrics, recomputed on every sampling tick."""

    resolution: str = "N/A"
    bitrate: str = "0 kbps"
    fps: float = 0
    packets_lost: int = 0
    jitter: float = 0.0
