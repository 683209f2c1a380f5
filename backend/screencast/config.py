"""스크린캐스트 설정.

TURN/STUN 서버, 시그널링 presence 타이머, 캡처 장치 등 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _parse_size(value: str) -> Tuple[int, int]:
    width, _, height = value.lower().partition("x")
    return int(width), int(height)


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def as_client_list(self) -> list:
        """브라우저/클라이언트용 iceServers 배열을 만듭니다."""
        ice_servers = []
        if self.STUN_SERVER_URL:
            ice_servers.append({"urls": self.STUN_SERVER_URL})
        for stun_url in self.DEFAULT_STUN_SERVERS:
            ice_servers.append({"urls": stun_url})
        if self.has_turn_server:
            ice_servers.append({
                "urls": self.TURN_SERVER_URL,
                "username": self.TURN_USERNAME,
                "credential": self.TURN_CREDENTIAL,
            })
        return ice_servers


# ============================================================
# 시그널링 설정
# ============================================================

@dataclass(frozen=True)
class SignalingConfig:
    """룸 presence 및 하트비트 설정."""

    # 호스트 하트비트가 없을 때 룸을 정리하기까지의 시간 (초)
    PRESENCE_TIMEOUT: float = float(os.getenv("PRESENCE_TIMEOUT", "7"))

    # 호스트 코디네이터의 하트비트 주기 (초), PRESENCE_TIMEOUT보다 짧아야 함
    HEARTBEAT_INTERVAL: float = float(os.getenv("HEARTBEAT_INTERVAL", "2"))

    # 시그널링 WebSocket 주소 (클라이언트용)
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")


# ============================================================
# 미디어 캡처 설정
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """화면/오디오 캡처 및 통계 수집 설정."""

    # ffmpeg 입력 장치 (x11grab ":0.0", gdigrab "desktop", avfoundation "1:none")
    DISPLAY_DEVICE: str = os.getenv("DISPLAY_DEVICE", ":0.0")
    DISPLAY_FORMAT: str = os.getenv("DISPLAY_FORMAT", "x11grab")
    DISPLAY_SIZE: str = os.getenv("DISPLAY_SIZE", "1920x1080")
    FRAMERATE: int = int(os.getenv("CAPTURE_FRAMERATE", "30"))

    # 시스템 오디오 (pulse "default", dshow "audio=...")
    AUDIO_DEVICE: str = os.getenv("AUDIO_DEVICE", "default")
    AUDIO_FORMAT: str = os.getenv("AUDIO_FORMAT", "pulse")

    # 통계 수집 주기 (초)
    STATS_INTERVAL: float = float(os.getenv("STATS_INTERVAL", "1"))

    @property
    def display_size(self) -> Tuple[int, int]:
        return _parse_size(self.DISPLAY_SIZE)


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
signaling_config = SignalingConfig()
media_config = MediaConfig()


logger.info(f"[Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
logger.info(f"[Config] presence 타임아웃: {signaling_config.PRESENCE_TIMEOUT}s, "
            f"하트비트 주기: {signaling_config.HEARTBEAT_INTERVAL}s")
