"""세션 코디네이터 모듈.

참가자 한 명(호스트 또는 뷰어)의 스크린캐스트 세션 전체를 조율합니다.
릴레이 채널의 엔드포인트로 자신을 등록하고, 수신 메시지를 하나의 inbox
큐에서 순서대로 처리하면서 원격 피어마다 PeerSession을 생성/소멸합니다.

호스트:
    - 룸 입장 후 HEARTBEAT_INTERVAL마다 하트비트 전송
    - start_sharing: 화면 캡처 → 알려진 뷰어마다 세션 생성 및 offer
    - 공유 중 viewer-joined 수신 시 즉시 세션 생성 및 offer
    - viewer-left 수신 시 해당 뷰어 세션만 종료
    - stop_sharing: stop 브로드캐스트, 세션/캡처 해제 (멱등)
    - change_quality: 모든 세션에 화질 적용, 이후 세션에도 사용
    - 캡처 첫 프레임(또는 해상도 변경) 시 실제 높이로 화질 재적용
    - 캡처 비디오 트랙이 끝나면 stop_sharing, 오디오 트랙이 끝나면
      세션에서 오디오를 빼고 재협상
    - stop 수신 시 (뷰어가 보낸 것 포함) 공유를 끝내고 ended 상태

뷰어:
    - 호스트의 첫 offer로 연결 시작 (명시적 시작 없음)
    - 수신 트랙은 렌더러에 전달 (기본: MediaBlackhole)
    - stop 수신 시 세션 정리 후 ended 상태, on_stream_ended 호출

Stream States:
    idle → sharing (호스트)
    idle → connecting → watching (뷰어)
    → ended (stop 수신 또는 룸 종료)

Examples:
    >>> relay = SignalingRelay(RoomRegistry())
    >>> host = await SessionCoordinator.create(LocalSignalingChannel(relay))
    >>> viewer = await SessionCoordinator.join(
    ...     LocalSignalingChannel(relay), Role.VIEWER, host.room_id, host.token)
    >>> await host.start_sharing(with_audio=False)
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay

from ..config import media_config, signaling_config
from ..errors import MediaCaptureError, NotHost, ScreencastError
from ..shared import MessageKind, SignalingMessage, StreamStats
from ..signaling import VIEWER_JOINED, VIEWER_LEFT, Role, SignalingChannel
from .media import BlackholeRenderer, MediaSource, Renderer, acquire_display_capture
from .peer_session import PeerSession, PeerState
from .quality import DEFAULT_QUALITY, EncodingSettings, apply_quality, get_profile
from .tracks import ScaledVideoTrack
from .transport import AiortcTransport, MediaTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], MediaTransport]
CaptureFunction = Callable[[bool], Awaitable[MediaSource]]


# capture track changes queued onto the inbox
CAPTURE_RESIZED = "resized"
VIDEO_ENDED = "video-ended"
AUDIO_ENDED = "audio-ended"


class StreamState(str, Enum):
    IDLE = "idle"
    SHARING = "sharing"
    CONNECTING = "connecting"
    WATCHING = "watching"
    ENDED = "ended"


class SessionCoordinator:
    """참가자 한 명의 스크린캐스트 세션.

    Attributes:
        channel (SignalingChannel): 릴레이 연결
        role (Role): 호스트 / 뷰어
        room_id (str): 룸 ID
        token (str): 룸 접근 토큰
        local_id (Optional[str]): 릴레이가 발급한 참가자 ID
        host_id (Optional[str]): 룸 호스트 ID
        sessions (Dict[str, PeerSession]): 원격 참가자 ID → 피어 세션
        viewers (Set[str]): 호스트가 알고 있는 뷰어 ID
        source (Optional[MediaSource]): 공유 중인 캡처
        quality (str): 현재 화질 프로필 이름
        state (StreamState): 스트림 상태
        error (Optional[str]): 마지막 캡처 오류 메시지

    Note:
        릴레이는 deliver/notify를 await하므로 이 메서드들은 inbox에 넣기만
        하고 즉시 반환합니다. 실제 처리는 _pump 태스크가 순서대로 수행합니다.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        role: Union[Role, str],
        room_id: Optional[str] = None,
        token: Optional[str] = None,
        *,
        transport_factory: TransportFactory = AiortcTransport,
        capture: CaptureFunction = acquire_display_capture,
        renderer: Optional[Renderer] = None,
        on_stream_ended: Optional[Callable[[], Any]] = None,
        on_state_change: Optional[Callable[[StreamState], None]] = None,
        on_stats: Optional[Callable[[str, StreamStats], None]] = None,
        heartbeat_interval: float = signaling_config.HEARTBEAT_INTERVAL,
        stats_interval: float = media_config.STATS_INTERVAL,
    ):
        self.channel = channel
        self.role = Role(role)
        self.room_id = room_id
        self.token = token
        self.transport_factory = transport_factory
        self.capture = capture
        self.renderer = renderer if renderer is not None else BlackholeRenderer()
        self.on_stream_ended = on_stream_ended
        self.on_state_change = on_state_change
        self.on_stats = on_stats
        self.heartbeat_interval = heartbeat_interval
        self.stats_interval = stats_interval

        self.local_id: Optional[str] = None
        self.host_id: Optional[str] = None
        self.sessions: Dict[str, PeerSession] = {}
        self.viewers: Set[str] = set()
        self.remote_tracks: Dict[str, MediaStreamTrack] = {}

        self.source: Optional[MediaSource] = None
        self.media_relay: Optional[MediaRelay] = None
        self.quality = DEFAULT_QUALITY
        self.state = StreamState.IDLE
        self.error: Optional[str] = None

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._room_closed = False
        self._closed = False

    # ------------------------------------------------------------------
    # 생성 / 입장
    # ------------------------------------------------------------------

    @classmethod
    async def create(cls, channel: SignalingChannel, **kwargs) -> "SessionCoordinator":
        """새 룸을 만들고 호스트로 입장합니다."""
        coordinator = cls(channel, Role.HOST, **kwargs)
        await coordinator._open()
        try:
            coordinator.room_id, coordinator.token = await channel.create_room()
            await coordinator._join()
        except BaseException:
            await coordinator.close()
            raise
        return coordinator

    @classmethod
    async def join(
        cls,
        channel: SignalingChannel,
        role: Union[Role, str],
        room_id: str,
        token: str,
        **kwargs,
    ) -> "SessionCoordinator":
        """기존 룸에 입장합니다.

        Args:
            channel (SignalingChannel): 릴레이 연결 (열리지 않은 상태면 여기서 엶)
            role (Role | str): "host" 또는 "viewer"
            room_id (str): 룸 ID
            token (str): 룸 토큰

        Raises:
            RoomNotFound, InvalidToken, NotHost: 입장 실패 (채널은 닫힘)
        """
        coordinator = cls(channel, role, room_id, token, **kwargs)
        await coordinator._open()
        try:
            await coordinator._join()
        except BaseException:
            await coordinator.close()
            raise
        return coordinator

    async def _open(self) -> None:
        self.local_id = await self.channel.open(self)
        self._pump_task = asyncio.create_task(self._pump())

    async def _join(self) -> None:
        result = await self.channel.join_room(self.room_id, self.token)
        if self.role == Role.HOST and result.role != Role.HOST:
            await self.channel.leave_room()
            raise NotHost(f"Participant '{self.local_id}' is not the host of '{self.room_id}'")

        self.host_id = result.host_id
        if self.role == Role.HOST:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"[WebRTC] 룸 '{self.room_id}' {self.role.value}로 입장 "
                    f"(참가자: {self.local_id[:8]})")

    # ------------------------------------------------------------------
    # Endpoint
    # ------------------------------------------------------------------

    async def deliver(self, message: SignalingMessage) -> None:
        self._inbox.put_nowait(("signal", message))

    async def notify(self, event: str, peer_id: str) -> None:
        self._inbox.put_nowait(("event", event, peer_id))

    async def wait_idle(self) -> None:
        """inbox에 쌓인 메시지가 모두 처리될 때까지 기다립니다."""
        await self._inbox.join()

    async def _pump(self) -> None:
        while True:
            item = await self._inbox.get()
            try:
                if item[0] == "signal":
                    await self._handle_message(item[1])
                elif item[0] == "capture":
                    await self._on_capture_change(item[1], item[2])
                else:
                    await self._handle_event(item[1], item[2])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[WebRTC] 수신 처리 중 오류: {type(e).__name__}: {e}", exc_info=True)
            finally:
                self._inbox.task_done()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.channel.heartbeat(self.room_id, self.token)
            except (ScreencastError, ConnectionError) as e:
                logger.warning(f"[WebRTC] 룸 '{self.room_id}' 하트비트 중단: {e}")
                return

    # ------------------------------------------------------------------
    # 수신 처리
    # ------------------------------------------------------------------

    async def _handle_message(self, message: SignalingMessage) -> None:
        if message.kind == MessageKind.STOP:
            await self._on_stop(message)
            return

        session = self.sessions.get(message.sender_id)

        if self.role == Role.VIEWER and session is None:
            if message.sender_id != self.host_id or message.kind == MessageKind.ANSWER:
                logger.debug(f"[WebRTC] {message.sender_id[:8]}의 {message.kind.value} 무시")
                return
            session = self._open_session(message.sender_id)
            self._set_state(StreamState.CONNECTING)

        if session is None:
            logger.debug(f"[WebRTC] 세션 없는 피어 {message.sender_id[:8]}의 "
                         f"{message.kind.value} 무시")
            return

        if message.kind == MessageKind.OFFER:
            if self.role != Role.VIEWER:
                logger.warning(f"[WebRTC] 호스트가 {message.sender_id[:8]}의 offer 무시")
                return
            await self._run_session(session, session.handle_offer(message.payload))
        elif message.kind == MessageKind.ANSWER:
            await self._run_session(session, session.handle_answer(message.payload))
        elif message.kind == MessageKind.ICE_CANDIDATE:
            await self._run_session(session, session.handle_candidate(message.payload))

    async def _handle_event(self, event: str, peer_id: str) -> None:
        if self.role != Role.HOST:
            return
        if event == VIEWER_JOINED:
            self.viewers.add(peer_id)
            logger.info(f"[WebRTC] 뷰어 {peer_id[:8]} 입장")
            if self.state == StreamState.SHARING:
                await self._connect_viewer(peer_id)
        elif event == VIEWER_LEFT:
            self.viewers.discard(peer_id)
            logger.info(f"[WebRTC] 뷰어 {peer_id[:8]} 퇴장")
            session = self.sessions.get(peer_id)
            if session is not None:
                await session.close()

    async def _on_stop(self, message: SignalingMessage) -> None:
        if self.role == Role.VIEWER:
            if message.sender_id != self.host_id:
                logger.debug(f"[WebRTC] {message.sender_id[:8]}의 stop 무시")
                return
            logger.info(f"[WebRTC] 호스트 {message.sender_id[:8]}가 스트림 종료")
        else:
            logger.info(f"[WebRTC] 뷰어 {message.sender_id[:8]}의 stop 수신, 공유 종료")
        self._set_state(StreamState.ENDED)
        await self._close_sessions()
        self._release_capture()
        await self._stream_ended()

    async def _on_capture_change(self, change: str, source: MediaSource) -> None:
        # 이미 해제된 캡처에서 늦게 도착한 이벤트는 무시
        if source is not self.source or self.state != StreamState.SHARING:
            return
        if change == CAPTURE_RESIZED:
            logger.info(f"[WebRTC] 캡처 해상도 확인: {source.native_width}x{source.native_height}")
            await self._apply_quality_all(self.quality)
        elif change == VIDEO_ENDED:
            logger.info("[WebRTC] 캡처 비디오 트랙 종료, 화면 공유 중지")
            await self.stop_sharing()
        elif change == AUDIO_ENDED:
            logger.info("[WebRTC] 캡처 오디오 트랙 종료, 세션에서 오디오 제거")
            source.audio = None
            for session in list(self.sessions.values()):
                await self._run_session(session, session.remove_track("audio"))

    async def _stream_ended(self) -> None:
        if self.on_stream_ended is None:
            return
        result = self.on_stream_ended()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # 피어 세션
    # ------------------------------------------------------------------

    def _open_session(self, remote_id: str) -> PeerSession:
        transport = self.transport_factory()
        session = PeerSession(
            self.local_id,
            remote_id,
            transport,
            self.channel.send,
            stats_interval=self.stats_interval,
            on_closed=self._on_session_closed,
            on_state_change=self._on_session_state,
            on_stats=self._on_session_stats,
        )
        if self.role == Role.VIEWER:
            transport.on_track(self._on_remote_track)
        self.sessions[remote_id] = session
        return session

    async def _run_session(self, session: PeerSession, operation: Awaitable[bool]) -> bool:
        try:
            return await operation
        except ScreencastError as e:
            # only the affected session is torn down
            logger.warning(f"[WebRTC] {session.remote_id[:8]} 세션 오류로 종료: {e}")
            await session.close()
            return False

    async def _connect_viewer(self, viewer_id: str) -> None:
        if viewer_id in self.sessions or self.source is None:
            return
        session = self._open_session(viewer_id)
        await self._run_session(session, self._attach_and_offer(session))

    async def _attach_and_offer(self, session: PeerSession) -> bool:
        source = self.source
        await session.add_track(ScaledVideoTrack(self.media_relay.subscribe(source.video)))
        if source.audio is not None:
            await session.add_track(self.media_relay.subscribe(source.audio))
        await apply_quality(session, self.quality, source.native_height)
        return await session.negotiate()

    def _on_session_closed(self, session: PeerSession) -> None:
        if self.sessions.get(session.remote_id) is session:
            del self.sessions[session.remote_id]
        if self.role == Role.VIEWER and not self.sessions and self.state in (
            StreamState.CONNECTING, StreamState.WATCHING
        ):
            self._set_state(StreamState.IDLE)

    def _on_session_state(self, session: PeerSession, state: PeerState) -> None:
        if self.role == Role.VIEWER and state == PeerState.CONNECTED:
            self._set_state(StreamState.WATCHING)

    def _on_session_stats(self, session: PeerSession, stats: StreamStats) -> None:
        if self.on_stats is not None:
            self.on_stats(session.remote_id, stats)

    async def _on_remote_track(self, track: MediaStreamTrack) -> None:
        self.remote_tracks[track.kind] = track
        await self.renderer(track)

    async def _close_sessions(self) -> None:
        for session in list(self.sessions.values()):
            await session.close()
        self.sessions.clear()

    def _set_state(self, state: StreamState) -> None:
        if state == self.state:
            return
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    @property
    def stats(self) -> StreamStats:
        """연결된 첫 세션의 통계. 연결된 세션이 없으면 초기값."""
        for session in self.sessions.values():
            if session.state == PeerState.CONNECTED:
                return session.stats
        return StreamStats()

    # ------------------------------------------------------------------
    # 호스트 연산
    # ------------------------------------------------------------------

    def _require_host(self, operation: str) -> None:
        if self.role != Role.HOST:
            raise NotHost(f"Only the host can {operation}")

    async def start_sharing(self, with_audio: bool = False) -> None:
        """화면 공유를 시작합니다.

        Raises:
            NotHost: 뷰어가 호출한 경우
            MediaCaptureError: 캡처 실패 (상태는 그대로, error에 메시지 기록)
        """
        self._require_host("start sharing")
        if self.state == StreamState.SHARING:
            return

        self.error = None
        try:
            self.source = await self.capture(with_audio)
        except MediaCaptureError as e:
            self.error = e.message
            logger.error(f"[WebRTC] 화면 공유 시작 실패: {e.message}")
            raise

        self.media_relay = MediaRelay()
        self._watch_capture(self.source)
        self._set_state(StreamState.SHARING)
        logger.info(f"[WebRTC] 화면 공유 시작 ({self.source.native_width}x{self.source.native_height}, "
                    f"오디오={'on' if self.source.audio else 'off'}), 뷰어 {len(self.viewers)}명")

        for viewer_id in list(self.viewers):
            await self._connect_viewer(viewer_id)

    async def stop_sharing(self) -> None:
        """공유를 중지합니다. 공유 중이 아니면 아무 것도 하지 않습니다."""
        self._require_host("stop sharing")
        if self.state != StreamState.SHARING:
            return

        self._set_state(StreamState.IDLE)
        stop = SignalingMessage(kind=MessageKind.STOP, payload=None, sender_id=self.local_id)
        try:
            await self.channel.send(stop)
        except (ScreencastError, ConnectionError) as e:
            logger.warning(f"[WebRTC] stop 전송 실패: {e}")

        await self._close_sessions()
        self._release_capture()
        logger.info("[WebRTC] 화면 공유 중지")

    async def change_quality(self, profile_name: str) -> Dict[str, Optional[EncodingSettings]]:
        """모든 세션에 화질 프로필을 적용합니다.

        Returns:
            Dict[str, Optional[EncodingSettings]]: 뷰어 ID → 적용된 설정

        Raises:
            NotHost: 뷰어가 호출한 경우
            UnknownQualityProfile: 정의되지 않은 프로필
        """
        self._require_host("change quality")
        get_profile(profile_name)
        self.quality = profile_name
        return await self._apply_quality_all(profile_name)

    def _watch_capture(self, source: MediaSource) -> None:
        def queue(change: str) -> Callable[..., None]:
            return lambda *args: self._inbox.put_nowait(("capture", change, source))

        source.video.on("resize", queue(CAPTURE_RESIZED))
        source.video.on("ended", queue(VIDEO_ENDED))
        if source.audio is not None:
            source.audio.on("ended", queue(AUDIO_ENDED))

    async def _apply_quality_all(self, profile_name: str) -> Dict[str, Optional[EncodingSettings]]:
        applied: Dict[str, Optional[EncodingSettings]] = {}
        if self.source is None:
            return applied
        native_height = self.source.native_height
        for remote_id, session in list(self.sessions.items()):
            applied[remote_id] = await apply_quality(session, profile_name, native_height)
        return applied

    async def close_room(self) -> None:
        """룸을 닫습니다. 릴레이가 남은 뷰어에게 stop을 보냅니다."""
        self._require_host("close the room")
        if self._room_closed:
            return
        self._room_closed = True
        self._cancel_heartbeat()
        await self.channel.close_room(self.room_id, self.token)
        await self._close_sessions()
        self._release_capture()
        self._set_state(StreamState.ENDED)
        logger.info(f"[WebRTC] 룸 '{self.room_id}' 종료")

    def _release_capture(self) -> None:
        if self.source is not None:
            self.source.stop()
        self.source = None
        self.media_relay = None

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    # ------------------------------------------------------------------
    # 종료
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """하트비트/수신 처리를 멈추고 모든 세션과 채널을 닫습니다."""
        if self._closed:
            return
        self._closed = True

        tasks: Tuple[asyncio.Task, ...] = tuple(
            t for t in (self._heartbeat_task, self._pump_task) if t is not None
        )
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat_task = None
        self._pump_task = None

        await self._close_sessions()
        self._release_capture()
        stop_renderer = getattr(self.renderer, "stop", None)
        if stop_renderer is not None:
            await stop_renderer()
        await self.channel.close()
        logger.info(f"[WebRTC] 참가자 {(self.local_id or '')[:8]} 세션 종료")
