"""시그널링 릴레이 모듈.

참가자(엔드포인트)를 등록하고, SignalingMessage를 룸 역할에 따라 정확한
수신자에게 전달합니다. 호스트 presence 만료와 연결 끊김 시 뷰어에게
stop 메시지를 합성해 보내고 룸을 정리합니다.

Routing:
    - target_id 지정: 같은 룸 구성원인 대상에게만 유니캐스트
    - target_id 없음: 호스트 → 모든 뷰어, 뷰어 → 호스트
    - 전달은 best-effort (최대 1회). 대상이 없거나 전송 실패 시 조용히 폐기

Out-of-band 이벤트:
    - viewer-joined(viewer_id): 뷰어 입장 시 호스트에게
    - viewer-left(viewer_id): 뷰어 퇴장/연결 끊김 시 호스트에게
"""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Protocol, Tuple

from ..errors import NotInRoom
from ..shared import MessageKind, SignalingMessage
from .room_registry import Room, RoomRegistry

logger = logging.getLogger(__name__)

VIEWER_JOINED = "viewer-joined"
VIEWER_LEFT = "viewer-left"


class Role(str, Enum):
    HOST = "host"
    VIEWER = "viewer"


@dataclass(frozen=True)
class JoinResult:
    """join_room 결과. 뷰어는 연결을 요청할 호스트 ID를 받습니다."""
    role: Role
    host_id: str


class Endpoint(Protocol):
    """릴레이가 메시지를 전달하는 참가자 측 수신자."""

    async def deliver(self, message: SignalingMessage) -> None:
        ...

    async def notify(self, event: str, peer_id: str) -> None:
        ...


class SignalingRelay:
    """룸 기반 시그널링 메시지 라우터.

    Attributes:
        registry (RoomRegistry): 룸/멤버십 저장소
        endpoints (Dict[str, Endpoint]): 참가자 ID → 엔드포인트
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        self.registry.on_expired = self._on_host_expired
        self.endpoints: Dict[str, Endpoint] = {}

    # ------------------------------------------------------------------
    # 연결 관리
    # ------------------------------------------------------------------

    def connect(self, endpoint: Endpoint) -> str:
        """엔드포인트를 등록하고 새 참가자 ID를 발급합니다."""
        peer_id = str(uuid.uuid4())
        self.endpoints[peer_id] = endpoint
        logger.info(f"[Signaling] 참가자 {peer_id[:8]} 연결됨")
        return peer_id

    async def disconnect(self, peer_id: str) -> None:
        """연결 끊김 처리.

        호스트가 끊기면 presence 만료와 동일하게 즉시 stop을 보내고 룸을
        정리합니다. 뷰어가 끊기면 룸에서 제거하고 호스트에게 알립니다.
        """
        self.endpoints.pop(peer_id, None)
        room = self.registry.lookup_room_of(peer_id)
        if room is not None:
            if room.host_id == peer_id:
                detached = await self.registry.expire_host(room.room_id)
                if detached is not None:
                    await self._broadcast_stop(detached)
            else:
                await self.leave_room(peer_id)
        logger.info(f"[Signaling] 참가자 {peer_id[:8]} 연결 정리 완료")

    # ------------------------------------------------------------------
    # 룸 연산
    # ------------------------------------------------------------------

    async def create_room(self, caller: str) -> Tuple[str, str]:
        return await self.registry.create_room(caller)

    async def join_room(self, caller: str, room_id: str, token: str) -> JoinResult:
        """룸에 입장합니다.

        호출자가 룸의 호스트면 하트비트로 처리하고, 아니면 토큰을 검증해
        뷰어로 추가한 뒤 호스트에게 viewer-joined를 보냅니다.
        """
        room = self.registry.rooms.get(room_id)
        if room is not None and room.host_id == caller:
            await self.registry.join_as_host(caller, room_id, token)
            return JoinResult(role=Role.HOST, host_id=caller)

        host_id = await self.registry.join_as_viewer(caller, room_id, token)
        await self._notify(host_id, VIEWER_JOINED, caller)
        return JoinResult(role=Role.VIEWER, host_id=host_id)

    async def heartbeat(self, caller: str, room_id: str, token: str) -> None:
        await self.registry.join_as_host(caller, room_id, token)

    async def close_room(self, caller: str, room_id: str, token: str) -> None:
        """호스트가 룸을 닫습니다. 남은 뷰어에게 stop을 보냅니다."""
        room = await self.registry.close_room(caller, room_id, token)
        if room is not None:
            await self._broadcast_stop(room)

    async def leave_room(self, caller: str) -> None:
        room = await self.registry.leave(caller)
        if room is not None:
            await self._notify(room.host_id, VIEWER_LEFT, caller)

    # ------------------------------------------------------------------
    # 메시지 라우팅
    # ------------------------------------------------------------------

    async def send(self, message: SignalingMessage) -> int:
        """메시지를 수신자에게 전달합니다.

        Returns:
            int: 전달에 성공한 수신자 수

        Raises:
            NotInRoom: 발신자가 어떤 룸에도 속하지 않은 경우
        """
        room = self.registry.lookup_room_of(message.sender_id)
        if room is None:
            raise NotInRoom(f"Participant '{message.sender_id}' is not in a room")

        async with room.lock:
            if room.closed:
                raise NotInRoom(f"Participant '{message.sender_id}' is not in a room")
            recipients = self._resolve_recipients(room, message)

        delivered = 0
        for recipient in recipients:
            if await self._deliver(recipient, message):
                delivered += 1
        logger.debug(f"[Signaling] {message.kind.value} {message.sender_id[:8]} -> "
                     f"{delivered}/{len(recipients)} 전달")
        return delivered

    @staticmethod
    def _resolve_recipients(room: Room, message: SignalingMessage) -> Tuple[str, ...]:
        if message.target_id is not None:
            if message.target_id == message.sender_id:
                return ()
            if message.target_id not in room.members():
                logger.debug(f"[Signaling] 대상 {message.target_id[:8]} 룸 구성원 아님, 폐기")
                return ()
            return (message.target_id,)
        if message.sender_id == room.host_id:
            return tuple(room.viewers)
        return (room.host_id,)

    async def _deliver(self, peer_id: str, message: SignalingMessage) -> bool:
        endpoint = self.endpoints.get(peer_id)
        if endpoint is None:
            logger.debug(f"[Signaling] 참가자 {peer_id[:8]} 연결 없음, {message.kind.value} 폐기")
            return False
        try:
            await endpoint.deliver(message)
            return True
        except Exception as e:
            logger.warning(f"[Signaling] 참가자 {peer_id[:8]}에 전달 실패: {e}")
            return False

    async def _notify(self, peer_id: str, event: str, subject: str) -> None:
        endpoint = self.endpoints.get(peer_id)
        if endpoint is None:
            return
        try:
            await endpoint.notify(event, subject)
        except Exception as e:
            logger.warning(f"[Signaling] 참가자 {peer_id[:8]}에 {event} 알림 실패: {e}")

    async def _broadcast_stop(self, room: Room) -> None:
        stop = SignalingMessage(kind=MessageKind.STOP, payload=None, sender_id=room.host_id)
        for viewer_id in list(room.viewers):
            await self._deliver(viewer_id, stop)

    async def _on_host_expired(self, room: Room) -> None:
        await self._broadcast_stop(room)

    async def shutdown(self) -> None:
        await self.registry.shutdown()
        self.endpoints.clear()
