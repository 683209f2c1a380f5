"""WebRTC 미디어 모듈.

피어 세션 상태 머신, 세션 코디네이터, 화질/통계, aiortc 전송 어댑터,
화면 캡처를 제공합니다.

Classes:
    SessionCoordinator: 참가자 한 명의 세션 조율 (호스트/뷰어)
    PeerSession: 피어 한 쌍의 협상 상태 머신
    AiortcTransport: RTCPeerConnection 기반 MediaTransport
    StatsSampler: 주기적 스트림 통계 수집
"""

from .transport import AiortcTransport, MediaTransport, build_rtc_configuration
from .media import BlackholeRenderer, MediaSource, acquire_display_capture
from .stats import StatsSampler, format_bitrate
from .peer_session import PeerSession, PeerState
from .quality import (
    QUALITY_PROFILES,
    EncodingSettings,
    QualityProfile,
    apply_quality,
    compute_scale,
)
from .coordinator import SessionCoordinator, StreamState

__all__ = [
    "AiortcTransport",
    "MediaTransport",
    "build_rtc_configuration",
    "BlackholeRenderer",
    "MediaSource",
    "acquire_display_capture",
    "StatsSampler",
    "format_bitrate",
    "PeerSession",
    "PeerState",
    "QUALITY_PROFILES",
    "EncodingSettings",
    "QualityProfile",
    "apply_quality",
    "compute_scale",
    "SessionCoordinator",
    "StreamState",
]
