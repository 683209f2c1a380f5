"""테스트 공용 fixture.

실제 미디어 엔진/캡처 장치 없이 동작하는 FakeTransport와 가짜 캡처를
제공합니다. FakeTransport는 local/remote description이 모두 설정되면
aiortc처럼 별도 태스크에서 connectionstatechange("connected")를 발생시킵니다.
"""

import asyncio
import copy
from fractions import Fraction
from typing import List, Optional

import pytest
from aiortc import MediaStreamTrack
from av import VideoFrame

from screencast.errors import MediaCaptureError, NegotiationError
from screencast.signaling import LocalSignalingChannel, RoomRegistry, SignalingRelay
from screencast.webrtc import MediaSource


class FakeVideoTrack(MediaStreamTrack):
    kind = "video"

    async def recv(self):
        await asyncio.sleep(3600)


class FakeAudioTrack(MediaStreamTrack):
    kind = "audio"

    async def recv(self):
        await asyncio.sleep(3600)


class FrameSource(MediaStreamTrack):
    """지정한 크기의 빈 av VideoFrame을 내보내는 트랙."""
    kind = "video"

    def __init__(self, width=1920, height=1080):
        super().__init__()
        self.width = width
        self.height = height
        self.pts = 0

    async def recv(self):
        frame = VideoFrame(width=self.width, height=self.height, format="yuv420p")
        frame.pts = self.pts
        frame.time_base = Fraction(1, 90000)
        self.pts += 3000
        return frame


class FakeTransport:
    """MediaTransport 테스트 더블.

    Args:
        fail_on: NegotiationError를 발생시킬 메서드 이름들
        auto_connect: description 교환 완료 시 자동으로 connected 전환
    """

    def __init__(self, fail_on=(), auto_connect: bool = True):
        self.fail_on = set(fail_on)
        self.auto_connect = auto_connect
        self.connection_state = "new"
        self.local_description: Optional[dict] = None
        self.remote_description: Optional[dict] = None
        self.added_candidates: List[dict] = []
        self.tracks: List[MediaStreamTrack] = []
        self.parameters = {}
        self.stats_reports: List[dict] = []
        self.offers = 0
        self.closed = False
        self._on_state = None
        self._on_candidate = None
        self._on_track = None
        self._tasks = []

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise NegotiationError(f"{name} failed")

    def on_connection_state_change(self, callback):
        self._on_state = callback

    def on_ice_candidate(self, callback):
        self._on_candidate = callback

    def on_track(self, callback):
        self._on_track = callback

    async def create_offer(self) -> dict:
        self._check("create_offer")
        self.offers += 1
        return {"sdp": f"v=0 offer {self.offers}", "type": "offer"}

    async def create_answer(self) -> dict:
        self._check("create_answer")
        return {"sdp": "v=0 answer", "type": "answer"}

    async def set_local_description(self, description: dict) -> None:
        self._check("set_local_description")
        self.local_description = description
        self._maybe_connect()

    async def set_remote_description(self, description: dict) -> None:
        self._check("set_remote_description")
        self.remote_description = description
        self._maybe_connect()

    def _maybe_connect(self) -> None:
        if (
            self.auto_connect
            and self.local_description is not None
            and self.remote_description is not None
            and self.connection_state == "new"
        ):
            self.connection_state = "connecting"
            self._tasks.append(asyncio.get_running_loop().create_task(self.set_state("connected")))

    async def set_state(self, state: str) -> None:
        self.connection_state = state
        if self._on_state is not None:
            await self._on_state(state)

    async def emit_candidate(self, candidate: dict) -> None:
        await self._on_candidate(candidate)

    async def emit_track(self, track: MediaStreamTrack) -> None:
        await self._on_track(track)

    async def add_ice_candidate(self, candidate: dict) -> None:
        self._check("add_ice_candidate")
        self.added_candidates.append(candidate)

    async def add_track(self, track: MediaStreamTrack) -> None:
        self.tracks.append(track)
        self.parameters.setdefault(track.kind, {"encodings": [{}]})

    async def remove_track(self, track: MediaStreamTrack) -> None:
        self.tracks.remove(track)
        self.parameters.pop(track.kind, None)

    async def get_encoding_parameters(self, kind: str) -> dict:
        return copy.deepcopy(self.parameters.get(kind, {"encodings": [{}]}))

    async def set_encoding_parameters(self, kind: str, parameters: dict) -> None:
        self.parameters[kind] = copy.deepcopy(parameters)

    async def get_stats(self) -> List[dict]:
        return list(self.stats_reports)

    async def close(self) -> None:
        self.closed = True
        self.connection_state = "closed"


class TransportFactory:
    """생성한 FakeTransport를 기록하는 팩토리."""

    def __init__(self):
        self.created: List[FakeTransport] = []
        self.fail_next = set()

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(fail_on=self.fail_next)
        self.fail_next = set()
        self.created.append(transport)
        return transport


class FakeCapture:
    """acquire_display_capture 대체. fail=True면 MediaCaptureError.

    video_factory로 캡처 비디오 트랙을 바꿀 수 있습니다 (예: 실제 프레임을 내는 트랙).
    """

    def __init__(self, width: int = 1920, height: int = 1080, fail: bool = False, video_factory=FakeVideoTrack):
        self.width = width
        self.height = height
        self.fail = fail
        self.video_factory = video_factory
        self.sources: List[MediaSource] = []

    async def __call__(self, with_audio: bool) -> MediaSource:
        if self.fail:
            raise MediaCaptureError("Could not start screen capture: Permission denied")
        source = MediaSource(
            video=self.video_factory(),
            audio=FakeAudioTrack() if with_audio else None,
            width=self.width,
            height=self.height,
        )
        self.sources.append(source)
        return source


class RecordingEndpoint:
    """릴레이가 전달한 메시지/이벤트를 기록하는 엔드포인트."""

    def __init__(self):
        self.messages = []
        self.events = []

    async def deliver(self, message) -> None:
        self.messages.append(message)

    async def notify(self, event: str, peer_id: str) -> None:
        self.events.append((event, peer_id))

    def kinds(self) -> List[str]:
        return [m.kind.value for m in self.messages]


async def settle(*coordinators, rounds: int = 20) -> None:
    """코디네이터 inbox와 예약된 태스크가 모두 처리될 때까지 이벤트 루프를 돌립니다."""
    for _ in range(rounds):
        for coordinator in coordinators:
            await coordinator.wait_idle()
        await asyncio.sleep(0.001)


@pytest.fixture
def registry():
    return RoomRegistry(presence_timeout=60.0)


@pytest.fixture
def relay(registry):
    return SignalingRelay(registry)


@pytest.fixture
def channel_factory(relay):
    def make():
        return LocalSignalingChannel(relay)
    return make


@pytest.fixture
def transport_factory():
    return TransportFactory()


@pytest.fixture
def capture():
    return FakeCapture()
