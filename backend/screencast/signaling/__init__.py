"""시그널링 모듈.

룸 레지스트리, 메시지 릴레이, 참가자 측 채널을 제공합니다.

Classes:
    RoomRegistry: 룸/토큰/멤버십 및 presence 타이머 관리
    Room: 룸 데이터 클래스
    SignalingRelay: 역할 기반 메시지 라우팅, presence 만료 처리
    LocalSignalingChannel: 같은 프로세스의 릴레이를 직접 호출하는 채널
    WebSocketSignalingChannel: /ws 엔드포인트에 접속하는 채널
"""

from .room_registry import Room, RoomRegistry
from .relay import (
    VIEWER_JOINED,
    VIEWER_LEFT,
    Endpoint,
    JoinResult,
    Role,
    SignalingRelay,
)
from .channel import LocalSignalingChannel, SignalingChannel, WebSocketSignalingChannel

__all__ = [
    "Room",
    "RoomRegistry",
    "VIEWER_JOINED",
    "VIEWER_LEFT",
    "Endpoint",
    "JoinResult",
    "Role",
    "SignalingRelay",
    "LocalSignalingChannel",
    "SignalingChannel",
    "WebSocketSignalingChannel",
]
