"""화면 캡처 및 렌더링 협력자 모듈.

호스트의 화면(선택적으로 시스템 오디오)을 aiortc MediaPlayer로 캡처하고,
뷰어 측에서 수신한 트랙을 소비하는 기본 렌더러를 제공합니다.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer

from ..config import MediaConfig, media_config
from ..errors import MediaCaptureError
from .tracks import MeteredVideoTrack

logger = logging.getLogger(__name__)

Renderer = Callable[[MediaStreamTrack], Awaitable[None]]


@dataclass
class MediaSource:
    """로컬 캡처 결과.

    Attributes:
        video (MediaStreamTrack): 화면 비디오 트랙 (MeteredVideoTrack이면 실제 프레임 크기를 추적)
        audio (Optional[MediaStreamTrack]): 시스템 오디오 트랙
        width (int): 설정된 캡처 너비 (첫 프레임 전까지 사용)
        height (int): 설정된 캡처 높이 (첫 프레임 전까지 사용)
    """
    video: MediaStreamTrack
    audio: Optional[MediaStreamTrack] = None
    width: int = 1920
    height: int = 1080
    players: List[MediaPlayer] = field(default_factory=list, repr=False)

    @property
    def native_size(self) -> Tuple[int, int]:
        """캡처 원본 해상도. 프레임을 받기 전에는 설정값을 돌려줍니다."""
        meter = getattr(self.video, "meter", None)
        if meter is not None and meter.height:
            return meter.width, meter.height
        return self.width, self.height

    @property
    def native_width(self) -> int:
        return self.native_size[0]

    @property
    def native_height(self) -> int:
        return self.native_size[1]

    def tracks(self) -> List[MediaStreamTrack]:
        return [t for t in (self.video, self.audio) if t is not None]

    def stop(self) -> None:
        """캡처를 중지합니다. 모든 트랙이 멈추면 MediaPlayer 스레드도 종료됩니다."""
        for track in self.tracks():
            track.stop()


async def acquire_display_capture(with_audio: bool, config: MediaConfig = media_config) -> MediaSource:
    """화면 캡처를 시작합니다.

    Args:
        with_audio (bool): 시스템 오디오 캡처 여부
        config (MediaConfig): 캡처 장치 설정

    Returns:
        MediaSource: 캡처된 트랙과 원본 해상도

    Raises:
        MediaCaptureError: 장치를 열 수 없거나 권한이 없는 경우
    """
    width, height = config.display_size
    options = {"framerate": str(config.FRAMERATE), "video_size": config.DISPLAY_SIZE}
    logger.info(f"[WebRTC] 화면 캡처 시작: {config.DISPLAY_FORMAT} {config.DISPLAY_DEVICE} {options}")

    try:
        video_player = MediaPlayer(config.DISPLAY_DEVICE, format=config.DISPLAY_FORMAT, options=options)
    except Exception as e:
        logger.error(f"[WebRTC] 화면 캡처 장치 열기 실패: {e}")
        raise MediaCaptureError(f"Could not start screen capture: {e}") from e

    if video_player.video is None:
        raise MediaCaptureError("Capture device produced no video stream")

    source = MediaSource(
        video=MeteredVideoTrack(video_player.video),
        width=width,
        height=height,
        players=[video_player],
    )

    if with_audio:
        try:
            audio_player = MediaPlayer(config.AUDIO_DEVICE, format=config.AUDIO_FORMAT)
        except Exception as e:
            source.stop()
            logger.error(f"[WebRTC] 오디오 캡처 장치 열기 실패: {e}")
            raise MediaCaptureError(
                f"Could not start screen capture: {e}. Audio capture might not be supported."
            ) from e
        if audio_player.audio is None:
            source.stop()
            raise MediaCaptureError("Audio device produced no audio stream")
        source.audio = audio_player.audio
        source.players.append(audio_player)

    return source


class BlackholeRenderer:
    """수신 트랙을 소비만 하는 기본 렌더러 (화면 출력은 범위 밖)."""

    def __init__(self):
        self.blackhole = MediaBlackhole()
        self.started = False

    async def __call__(self, track: MediaStreamTrack) -> None:
        self.blackhole.addTrack(track)
        # start() only spawns consumers for tracks that have none yet
        await self.blackhole.start()
        self.started = True

    async def stop(self) -> None:
        if self.started:
            await self.blackhole.stop()
            self.started = False
