"""비디오 트랙 래퍼 모듈.

송출 측에서는 화질 프로필에 따라 프레임을 축소하는 ScaledVideoTrack을,
수신 측과 캡처 원본에는 해상도/프레임레이트를 측정하는 MeteredVideoTrack을 제공합니다.
두 트랙 모두 FrameMeter로 최근 프레임 정보를 기록하며, 이 값은 통계 수집에서
frameWidth/frameHeight/framesPerSecond로 사용됩니다.
"""

import logging
import time
from collections import deque
from typing import Deque, Optional

from aiortc import MediaStreamTrack

logger = logging.getLogger(__name__)


class FrameMeter:
    """최근 프레임의 크기와 프레임레이트를 추적합니다.

    Attributes:
        width (Optional[int]): 마지막 프레임 너비
        height (Optional[int]): 마지막 프레임 높이
    """

    def __init__(self, window: int = 60):
        self.width: Optional[int] = None
        self.height: Optional[int] = None
        self.frame_times: Deque[float] = deque(maxlen=window)

    def tick(self, frame) -> None:
        self.width = frame.width
        self.height = frame.height
        self.frame_times.append(time.perf_counter())

    @property
    def fps(self) -> float:
        if len(self.frame_times) < 2:
            return 0.0
        elapsed = self.frame_times[-1] - self.frame_times[0]
        if elapsed <= 0:
            return 0.0
        return (len(self.frame_times) - 1) / elapsed


class ScaledVideoTrack(MediaStreamTrack):
    """원본 캡처 프레임을 scale_resolution_down_by 비율로 축소해 송출하는 트랙.

    피어 세션마다 하나씩 생성되므로 뷰어별로 다른 화질을 적용할 수 있습니다.

    Attributes:
        kind (str): 트랙 종류 ("video")
        track (MediaStreamTrack): 원본 비디오 트랙 (MediaRelay 구독본)
        scale_resolution_down_by (float): 축소 비율 (1.0 = 원본)
        meter (FrameMeter): 송출 프레임 측정기
    """
    kind = "video"

    def __init__(self, track: MediaStreamTrack):
        super().__init__()
        self.track = track
        self.scale_resolution_down_by = 1.0
        self.meter = FrameMeter()

    async def recv(self):
        frame = await self.track.recv()

        scale = self.scale_resolution_down_by
        if scale > 1.0:
            # Encoders expect even dimensions
            width = max(2, int(frame.width / scale) // 2 * 2)
            height = max(2, int(frame.height / scale) // 2 * 2)
            scaled = frame.reformat(width=width, height=height)
            scaled.pts = frame.pts
            scaled.time_base = frame.time_base
            frame = scaled

        self.meter.tick(frame)
        return frame

    def stop(self):
        super().stop()
        self.track.stop()


class MeteredVideoTrack(MediaStreamTrack):
    """비디오 프레임을 그대로 전달하면서 크기/프레임레이트를 기록하는 트랙.

    수신 트랙과 호스트의 캡처 트랙 모두에 사용됩니다. 프레임 크기가 바뀌면
    (첫 프레임 포함) "resize" 이벤트를 (width, height)와 함께 발생시키고,
    원본 트랙이 끝나면 이 트랙도 "ended"가 됩니다.
    """
    kind = "video"

    def __init__(self, track: MediaStreamTrack):
        super().__init__()
        self.track = track
        self.meter = FrameMeter()
        track.on("ended", self.stop)

    async def recv(self):
        frame = await self.track.recv()
        resized = (frame.width, frame.height) != (self.meter.width, self.meter.height)
        self.meter.tick(frame)
        if resized:
            self.emit("resize", frame.width, frame.height)
        return frame

    def stop(self):
        super().stop()
        self.track.stop()
