"""Screencast package.

이 패키지는 호스트 한 명이 여러 뷰어에게 화면을 공유하는 WebRTC
스크린캐스트 시스템의 핵심 모듈을 포함합니다.

Modules:
    signaling: 룸 레지스트리, 메시지 릴레이, 참가자 측 채널
    webrtc: 피어 세션, 세션 코디네이터, 화질/통계, 캡처
    routes: FastAPI HTTP/WebSocket 라우터
    shared: 공용 DTO (SignalingMessage, StreamStats)

NOTE: FastAPI 앱(app.py)은 로깅 설정을 수행하므로 여기서 import하지 않습니다.
"""

from .errors import ScreencastError
from .shared import MessageKind, SignalingMessage, StreamStats
from .signaling import (
    JoinResult,
    LocalSignalingChannel,
    Role,
    RoomRegistry,
    SignalingRelay,
    WebSocketSignalingChannel,
)
from .webrtc import SessionCoordinator, StreamState

__all__ = [
    "ScreencastError",
    "MessageKind",
    "SignalingMessage",
    "StreamStats",
    "JoinResult",
    "LocalSignalingChannel",
    "Role",
    "RoomRegistry",
    "SignalingRelay",
    "WebSocketSignalingChannel",
    "SessionCoordinator",
    "StreamState",
]
