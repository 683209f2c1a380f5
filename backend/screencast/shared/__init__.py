"""Shared DTOs and type definitions used across the relay and participants.

Only lightweight, common data models should live here. Do not place
relay or media logic (aiortc, FastAPI) in this package.
"""

from .dto import MessageKind, SignalingMessage, StreamStats

__all__ = [
    "MessageKind",
    "SignalingMessage",
    "StreamStats",
]
