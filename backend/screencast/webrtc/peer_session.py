"""WebRTC 피어 세션 모듈.

로컬 참가자와 원격 참가자 한 쌍 사이의 미디어 연결 협상을 상태 머신으로
관리합니다. 호스트는 offer를 만들어 보내고, 뷰어는 offer에 answer로
응답합니다. 협상 메시지는 시그널링 릴레이를 통해 원격 피어에게
유니캐스트됩니다.

상태 전이:
    idle → offering → answering → negotiating-ice → connected
    connected → disconnected | failed | closed
    (closed는 종료 상태, 이후 모든 메시지/타이머는 무시)

주요 규칙:
    - 첫 협상 이후 송출 트랙을 추가/제거하면 connected에서는 즉시 재협상,
      협상 중이면 answer 적용 또는 연결 완료 직후로 보류
    - offering/answering 중의 negotiate()는 보류 후 answer 적용 직후 재실행
    - 원격 description 적용 전에 받은 ICE candidate는 큐에 쌓았다가
      적용 직후 도착 순서대로 추가
    - 전송 연결이 connected가 되면 통계 샘플러 시작, 벗어나면 중지
    - 현재 상태에서 허용되지 않는 메시지는 False를 반환하고 세션은 유지

Classes:
    PeerState: 협상 상태
    PeerSession: 피어 한 쌍의 협상/연결 관리

See Also:
    transport.py: MediaTransport 프로토콜과 aiortc 구현
    coordinator.py: 세션 생성/소멸을 담당하는 코디네이터
"""
import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from aiortc import MediaStreamTrack

from ..errors import NegotiationError, ScreencastError
from ..shared import MessageKind, SignalingMessage, StreamStats
from .stats import StatsSampler
from .transport import MediaTransport

logger = logging.getLogger(__name__)

Sender = Callable[[SignalingMessage], Awaitable[None]]


class PeerState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    NEGOTIATING_ICE = "negotiating-ice"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class PeerSession:
    """(local_id, remote_id) 쌍의 피어 세션.

    Attributes:
        local_id (str): 로컬 참가자 ID
        remote_id (str): 원격 참가자 ID
        transport (MediaTransport): 미디어 연결
        state (PeerState): 현재 협상 상태
        history (List[PeerState]): 거쳐 온 상태 목록
        pending_candidates (Deque[dict]): 원격 description 적용 전 수신한 candidate
        outbound_tracks (Dict[str, MediaStreamTrack]): 종류별 송출 트랙
        sampler (StatsSampler): 연결 중 통계 샘플러

    Thread Safety:
        모든 협상 핸들러는 세션별 asyncio.Lock으로 직렬화됩니다.
        로컬 ICE candidate 전송은 락을 잡지 않습니다.
    """

    def __init__(
        self,
        local_id: str,
        remote_id: str,
        transport: MediaTransport,
        send: Sender,
        *,
        stats_interval: float = 1.0,
        on_closed: Optional[Callable[["PeerSession"], None]] = None,
        on_state_change: Optional[Callable[["PeerSession", PeerState], None]] = None,
        on_stats: Optional[Callable[["PeerSession", StreamStats], None]] = None,
    ):
        self.local_id = local_id
        self.remote_id = remote_id
        self.transport = transport
        self.send = send
        self.on_closed = on_closed
        self.on_state_change = on_state_change
        self.on_stats = on_stats

        self.state = PeerState.IDLE
        self.history: List[PeerState] = [PeerState.IDLE]
        self.pending_candidates: Deque[dict] = deque()
        self.remote_description_set = False
        self.outbound_tracks: Dict[str, MediaStreamTrack] = {}
        self.negotiated = False
        self.offerer = False
        self.renegotiation_needed = False
        self.lock = asyncio.Lock()

        self.sampler = StatsSampler(
            transport.get_stats,
            kind="video",
            interval=stats_interval,
            on_update=self._on_stats,
        )

        transport.on_connection_state_change(self._on_transport_state)
        transport.on_ice_candidate(self._on_local_candidate)

    @property
    def stats(self) -> StreamStats:
        return self.sampler.stats

    @property
    def closed(self) -> bool:
        return self.state == PeerState.CLOSED

    def _set_state(self, state: PeerState) -> None:
        if state == self.state:
            return
        logger.debug(f"[WebRTC] 세션 {self.remote_id[:8]}: {self.state.value} → {state.value}")
        self.state = state
        self.history.append(state)
        if self.on_state_change is not None:
            self.on_state_change(self, state)

    def _on_stats(self, stats: StreamStats) -> None:
        if self.on_stats is not None:
            self.on_stats(self, stats)

    def _message(self, kind: MessageKind, payload: Any) -> SignalingMessage:
        return SignalingMessage(
            kind=kind,
            payload=payload,
            sender_id=self.local_id,
            target_id=self.remote_id,
        )

    def _reject(self, what: str) -> bool:
        logger.warning(f"[WebRTC] 세션 {self.remote_id[:8]}: {self.state.value} 상태에서 "
                       f"{what} 무시")
        return False

    # ------------------------------------------------------------------
    # 송출 트랙
    # ------------------------------------------------------------------

    async def add_track(self, track: MediaStreamTrack) -> None:
        """송출 트랙을 추가합니다. 첫 협상 이후라면 재협상합니다.

        Raises:
            NegotiationError: 재협상 offer 생성 실패 (세션은 종료됨)
        """
        async with self.lock:
            if self.closed:
                track.stop()
                return
            await self.transport.add_track(track)
            self.outbound_tracks[track.kind] = track
            await self._negotiation_needed()

    async def remove_track(self, kind: str) -> bool:
        """해당 종류의 송출 트랙을 제거하고 멈춥니다. 첫 협상 이후라면 재협상합니다.

        Returns:
            bool: 제거할 트랙이 있었으면 True
        """
        async with self.lock:
            if self.closed:
                return False
            track = self.outbound_tracks.pop(kind, None)
            if track is None:
                return False
            await self.transport.remove_track(track)
            track.stop()
            await self._negotiation_needed()
            return True

    async def _negotiation_needed(self) -> None:
        # connected이면 바로 offer, 협상 중이면 끝난 뒤로 보류
        if not self.negotiated or not self.offerer:
            return
        if self.state == PeerState.CONNECTED:
            logger.info(f"[WebRTC] 세션 {self.remote_id[:8]}: 트랙 구성 변경, 재협상")
            await self._send_offer()
        else:
            self.renegotiation_needed = True

    # ------------------------------------------------------------------
    # 협상 (호스트)
    # ------------------------------------------------------------------

    async def negotiate(self) -> bool:
        """offer를 만들어 원격 피어에게 보냅니다.

        Returns:
            bool: offer를 보냈거나 재협상이 예약되었으면 True

        Raises:
            NegotiationError: 전송 계층 오류 (세션은 종료됨)
        """
        async with self.lock:
            if self.closed:
                return False
            if self.state in (PeerState.OFFERING, PeerState.ANSWERING):
                self.renegotiation_needed = True
                logger.debug(f"[WebRTC] 세션 {self.remote_id[:8]}: 협상 중, 재협상 예약")
                return True
            if self.state not in (PeerState.IDLE, PeerState.CONNECTED):
                return self._reject("negotiate")
            await self._send_offer()
            return True

    async def _send_offer(self) -> None:
        self.renegotiation_needed = False
        self.offerer = True
        self._set_state(PeerState.OFFERING)
        try:
            offer = await self.transport.create_offer()
            await self.transport.set_local_description(offer)
        except NegotiationError:
            await self._fail_locked()
            raise
        self._set_state(PeerState.ANSWERING)
        self.negotiated = True
        await self.send(self._message(MessageKind.OFFER, self.transport.local_description or offer))
        logger.info(f"[WebRTC] {self.remote_id[:8]}에 offer 전송")

    async def handle_answer(self, description: dict) -> bool:
        """원격 answer를 적용합니다. answering 상태에서만 허용됩니다."""
        async with self.lock:
            if self.closed:
                return False
            if self.state != PeerState.ANSWERING:
                return self._reject("answer")
            try:
                await self.transport.set_remote_description(description)
                await self._flush_candidates()
            except NegotiationError:
                await self._fail_locked()
                raise

            if self.transport.connection_state == "connected":
                self._set_state(PeerState.CONNECTED)
            else:
                self._set_state(PeerState.NEGOTIATING_ICE)
            logger.info(f"[WebRTC] {self.remote_id[:8]}의 answer 적용")

            if self.renegotiation_needed:
                await self._send_offer()
            return True

    # ------------------------------------------------------------------
    # 협상 (뷰어)
    # ------------------------------------------------------------------

    async def handle_offer(self, description: dict) -> bool:
        """원격 offer에 answer로 응답합니다.

        idle에서는 첫 협상, connected에서는 재협상으로 처리하며 재협상 중에는
        connected 상태를 유지합니다.
        """
        async with self.lock:
            if self.closed:
                return False
            if self.state not in (PeerState.IDLE, PeerState.CONNECTED):
                return self._reject("offer")
            renegotiating = self.state == PeerState.CONNECTED

            try:
                await self.transport.set_remote_description(description)
                await self._flush_candidates()
                answer = await self.transport.create_answer()
                await self.transport.set_local_description(answer)
            except NegotiationError:
                await self._fail_locked()
                raise

            if not renegotiating and self.state != PeerState.CONNECTED:
                self._set_state(PeerState.NEGOTIATING_ICE)
            self.negotiated = True
            await self.send(self._message(MessageKind.ANSWER, self.transport.local_description or answer))
            logger.info(f"[WebRTC] {self.remote_id[:8]}에 answer 전송"
                        f"{' (재협상)' if renegotiating else ''}")
            return True

    # ------------------------------------------------------------------
    # ICE candidate
    # ------------------------------------------------------------------

    async def handle_candidate(self, candidate: dict) -> bool:
        """원격 ICE candidate를 추가하거나, description 적용 전이면 큐에 넣습니다."""
        async with self.lock:
            if self.closed:
                return False
            if not self.remote_description_set:
                self.pending_candidates.append(candidate)
                return True
            try:
                await self.transport.add_ice_candidate(candidate)
            except NegotiationError as e:
                logger.warning(f"[WebRTC] 세션 {self.remote_id[:8]}: candidate 추가 실패: {e}")
                return False
            return True

    async def _flush_candidates(self) -> None:
        self.remote_description_set = True
        while self.pending_candidates:
            candidate = self.pending_candidates.popleft()
            try:
                await self.transport.add_ice_candidate(candidate)
            except NegotiationError as e:
                logger.warning(f"[WebRTC] 세션 {self.remote_id[:8]}: 보류 candidate 추가 실패: {e}")

    async def _on_local_candidate(self, candidate: dict) -> None:
        if self.closed:
            return
        try:
            await self.send(self._message(MessageKind.ICE_CANDIDATE, candidate))
        except ScreencastError as e:
            logger.warning(f"[WebRTC] 세션 {self.remote_id[:8]}: candidate 전송 실패: {e}")

    # ------------------------------------------------------------------
    # 연결 상태
    # ------------------------------------------------------------------

    async def _on_transport_state(self, state: str) -> None:
        async with self.lock:
            if self.closed:
                return
            if state == "connected":
                self._set_state(PeerState.CONNECTED)
                self.sampler.start()
                logger.info(f"[WebRTC] {self.remote_id[:8]}와 연결 완료")
                if self.renegotiation_needed and self.offerer:
                    try:
                        await self._send_offer()
                    except NegotiationError as e:
                        logger.warning(f"[WebRTC] 세션 {self.remote_id[:8]}: 재협상 실패: {e}")
            elif state == "disconnected":
                self.sampler.stop()
                if self.state == PeerState.CONNECTED:
                    self._set_state(PeerState.DISCONNECTED)
            elif state == "failed":
                logger.warning(f"[WebRTC] {self.remote_id[:8]}와 연결 실패")
                await self._fail_locked()
            elif state == "closed":
                await self._close_locked()

    async def _fail_locked(self) -> None:
        self._set_state(PeerState.FAILED)
        await self._close_locked()

    async def close(self) -> None:
        """세션을 종료합니다. 여러 번 호출해도 안전합니다."""
        async with self.lock:
            await self._close_locked()

    async def _close_locked(self) -> None:
        if self.closed:
            return
        self.sampler.stop()
        self._set_state(PeerState.CLOSED)
        self.pending_candidates.clear()

        for track in self.outbound_tracks.values():
            track.stop()
        self.outbound_tracks.clear()

        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"[WebRTC] 세션 {self.remote_id[:8]} 전송 종료 중 오류: {e}")

        logger.info(f"[WebRTC] 세션 {self.remote_id[:8]} 종료")
        if self.on_closed is not None:
            self.on_closed(self)
