"""화질 프로필 모듈.

호스트가 선택한 화질 프로필을 피어 세션의 송출 비디오 인코딩 파라미터
(scaleResolutionDownBy, maxBitrate)로 변환해 적용합니다.

Profiles:
    native: 원본 해상도, 8 Mbps
    1440p: 6 Mbps
    1080p: 4 Mbps
    720p: 2 Mbps
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..errors import UnknownQualityProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QualityProfile:
    """화질 프로필.

    Attributes:
        name (str): 프로필 이름
        target_height (Optional[int]): 목표 높이 (None이면 원본)
        max_bitrate (int): 최대 비트레이트 (bps)
    """
    name: str
    target_height: Optional[int]
    max_bitrate: int


QUALITY_PROFILES: Dict[str, QualityProfile] = {
    profile.name: profile
    for profile in (
        QualityProfile("native", None, 8_000_000),
        QualityProfile("1440p", 1440, 6_000_000),
        QualityProfile("1080p", 1080, 4_000_000),
        QualityProfile("720p", 720, 2_000_000),
    )
}

DEFAULT_QUALITY = "native"


@dataclass(frozen=True)
class EncodingSettings:
    """적용된 인코딩 설정. scale은 원본 대비 크기 비율 (1.0 = 원본)."""
    scale: float
    max_bitrate: int


def get_profile(profile_name: str) -> QualityProfile:
    profile = QUALITY_PROFILES.get(profile_name)
    if profile is None:
        raise UnknownQualityProfile(f"Unknown quality profile '{profile_name}'")
    return profile


def compute_scale(profile: QualityProfile, native_height: int) -> float:
    """원본 높이가 목표보다 클 때만 축소합니다."""
    if profile.target_height is None or native_height <= profile.target_height:
        return 1.0
    return profile.target_height / native_height


async def apply_quality(session, profile_name: str, native_height: int) -> Optional[EncodingSettings]:
    """세션의 송출 비디오에 화질 프로필을 적용합니다.

    Args:
        session (PeerSession): 대상 피어 세션
        profile_name (str): 프로필 이름
        native_height (int): 캡처 원본 높이

    Returns:
        Optional[EncodingSettings]: 적용된 설정. 송출 비디오가 없으면 None

    Raises:
        UnknownQualityProfile: 정의되지 않은 프로필

    Examples:
        >>> await apply_quality(session, "720p", 1920)
        EncodingSettings(scale=0.375, max_bitrate=2000000)
    """
    profile = get_profile(profile_name)
    if "video" not in session.outbound_tracks:
        return None

    scale = compute_scale(profile, native_height)
    parameters = await session.transport.get_encoding_parameters("video")
    encodings = parameters.get("encodings") or [{}]
    encodings[0]["scaleResolutionDownBy"] = 1 / scale
    encodings[0]["maxBitrate"] = profile.max_bitrate
    parameters["encodings"] = encodings
    await session.transport.set_encoding_parameters("video", parameters)

    logger.info(f"[WebRTC] {session.remote_id[:8]} 화질 '{profile.name}' 적용: "
                f"scale={scale:.3f}, maxBitrate={profile.max_bitrate}")
    return EncodingSettings(scale=scale, max_bitrate=profile.max_bitrate)
