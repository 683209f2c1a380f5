"""룸 레지스트리 모듈.

스크린캐스트 룸(호스트 1명 + 뷰어 N명)의 생성, 입장, 종료와
호스트 presence 타이머를 관리합니다. 모든 상태는 생성된 인스턴스 안에만
존재하므로 여러 레지스트리(테스트, 다중 앱)가 서로 간섭하지 않습니다.

주요 기능:
    - 룸 생성 (룸 ID와 접근 토큰 발급)
    - 호스트 하트비트(join_as_host)로 presence 마감 시각 갱신
    - 토큰 검증 후 뷰어 입장
    - 호스트에 의한 룸 종료 (멱등)
    - presence 마감 시각이 지나면 룸을 분리하고 만료 콜백 호출

Architecture:
    - rooms: Dict[str, Room] - 룸 ID → 룸
    - member_rooms: Dict[str, str] - 참가자 ID → 룸 ID (빠른 조회용)
    - 룸별 asyncio.Lock으로 변경을 직렬화 (룸 간에는 조정 불필요)

Classes:
    Room: 룸 정보를 담는 데이터 클래스
    RoomRegistry: 룸 및 presence 타이머 관리 클래스

Examples:
    >>> registry = RoomRegistry(presence_timeout=7.0)
    >>> room_id, token = await registry.create_room("host-1")
    >>> await registry.join_as_host("host-1", room_id, token)
    >>> host_id = await registry.join_as_viewer("viewer-1", room_id, token)

See Also:
    relay.py: 메시지 라우팅 및 presence 만료 처리
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..errors import AlreadyInRoom, InvalidToken, NotHost, RoomNotFound

logger = logging.getLogger(__name__)

ExpiryCallback = Callable[["Room"], Awaitable[None]]


@dataclass
class Room:
    """호스트 한 명과 여러 뷰어로 구성된 룸.

    Attributes:
        room_id (str): 룸 식별자
        token (str): 뷰어 입장용 공유 토큰 (생성 후 불변)
        host_id (str): 호스트 참가자 ID (생성 후 불변)
        viewers (Set[str]): 뷰어 참가자 ID 집합
        deadline (Optional[float]): presence 마감 시각 (이벤트 루프 시간)
    """
    room_id: str
    token: str
    host_id: str
    viewers: Set[str] = field(default_factory=set)
    deadline: Optional[float] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    presence_task: Optional[asyncio.Task] = field(default=None, repr=False)
    closed: bool = False

    def members(self) -> List[str]:
        return [self.host_id, *self.viewers]


class RoomRegistry:
    """룸과 presence 타이머를 관리하는 인메모리 저장소.

    Attributes:
        presence_timeout (float): 하트비트 이후 룸을 정리하기까지의 시간 (초)
        on_expired (Optional[ExpiryCallback]): presence 만료 시 호출되는 콜백.
            릴레이가 설정하며, 이미 레지스트리에서 분리된 룸을 인자로 받음

    Thread Safety:
        - asyncio 단일 이벤트 루프 전제
        - 룸 단위 변경은 Room.lock으로 직렬화
        - 하트비트의 타이머 취소/재설정과 타이머 만료 판정은 같은 락 안에서
          수행되므로, 방금 하트비트한 룸이 정리되지 않음
    """

    def __init__(self, presence_timeout: float = 7.0):
        self.presence_timeout = presence_timeout
        self.on_expired: Optional[ExpiryCallback] = None

        # room_id -> Room
        self.rooms: Dict[str, Room] = {}

        # participant_id -> room_id (for quick lookup)
        self.member_rooms: Dict[str, str] = {}

    @staticmethod
    def _generate_id() -> str:
        return secrets.token_urlsafe(8)

    def _get_room(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomNotFound(f"Room '{room_id}' not found")
        return room

    async def create_room(self, host_id: str) -> Tuple[str, str]:
        """호출자를 호스트로 하는 빈 룸을 생성합니다.

        presence 타이머는 첫 하트비트(join_as_host)에서 시작됩니다.

        Args:
            host_id (str): 호스트가 될 참가자 ID

        Returns:
            Tuple[str, str]: (room_id, token)

        Raises:
            AlreadyInRoom: 참가자가 이미 다른 룸에 속한 경우
        """
        if host_id in self.member_rooms:
            raise AlreadyInRoom(f"Participant '{host_id}' already belongs to a room")

        room_id = self._generate_id()
        while room_id in self.rooms:
            room_id = self._generate_id()
        token = secrets.token_urlsafe(16)

        self.rooms[room_id] = Room(room_id=room_id, token=token, host_id=host_id)
        self.member_rooms[host_id] = room_id
        logger.info(f"[Signaling] 룸 '{room_id}' 생성 (호스트: {host_id[:8]})")
        return room_id, token

    async def join_as_host(self, caller: str, room_id: str, token: str) -> None:
        """호스트 하트비트. presence 마감 시각을 갱신하고 타이머를 재설정합니다.

        Raises:
            RoomNotFound: 룸이 없는 경우
            NotHost: 호출자가 기록된 호스트가 아닌 경우
        """
        room = self._get_room(room_id)
        async with room.lock:
            if room.closed:
                raise RoomNotFound(f"Room '{room_id}' not found")
            if room.host_id != caller:
                raise NotHost(f"Participant '{caller}' is not the host of '{room_id}'")

            loop = asyncio.get_running_loop()
            if room.presence_task is not None:
                room.presence_task.cancel()
            room.deadline = loop.time() + self.presence_timeout
            room.presence_task = asyncio.create_task(self._watch_presence(room))

        logger.debug(f"[Signaling] 룸 '{room_id}' 하트비트, 마감 {self.presence_timeout}s 후")

    async def join_as_viewer(self, caller: str, room_id: str, token: str) -> str:
        """토큰을 검증하고 호출자를 뷰어로 추가합니다.

        Returns:
            str: 룸의 호스트 ID (연결 요청 대상)

        Raises:
            RoomNotFound: 룸이 없는 경우
            InvalidToken: 토큰이 일치하지 않는 경우
            AlreadyInRoom: 다른 룸에 이미 속한 경우
        """
        room = self._get_room(room_id)
        async with room.lock:
            if room.closed:
                raise RoomNotFound(f"Room '{room_id}' not found")
            if not secrets.compare_digest(room.token, token or ""):
                logger.warning(f"[Signaling] 룸 '{room_id}' 잘못된 토큰 (참가자: {caller[:8]})")
                raise InvalidToken(f"Invalid token for room '{room_id}'")

            current = self.member_rooms.get(caller)
            if current is not None and current != room_id:
                raise AlreadyInRoom(f"Participant '{caller}' already belongs to a room")
            if caller == room.host_id:
                raise AlreadyInRoom(f"Host '{caller}' cannot join its own room as viewer")

            room.viewers.add(caller)
            self.member_rooms[caller] = room_id

        logger.info(f"[Signaling] 뷰어 {caller[:8]} 룸 '{room_id}' 입장. "
                    f"뷰어 {len(room.viewers)}명")
        return room.host_id

    async def close_room(self, caller: str, room_id: str, token: str) -> Optional[Room]:
        """호스트가 룸을 종료합니다. 이미 없는 룸이면 아무 것도 하지 않습니다.

        Returns:
            Optional[Room]: 제거된 룸. 이미 닫혀 있었으면 None

        Raises:
            NotHost: 호출자가 호스트가 아닌 경우
            InvalidToken: 토큰이 일치하지 않는 경우
        """
        room = self.rooms.get(room_id)
        if room is None:
            return None
        async with room.lock:
            if room.closed:
                return None
            if room.host_id != caller:
                raise NotHost(f"Participant '{caller}' is not the host of '{room_id}'")
            if not secrets.compare_digest(room.token, token or ""):
                raise InvalidToken(f"Invalid token for room '{room_id}'")
            self._detach(room)

        logger.info(f"[Signaling] 호스트 {caller[:8]}가 룸 '{room_id}' 종료")
        return room

    async def expire_host(self, room_id: str) -> Optional[Room]:
        """호스트 연결 끊김을 즉시 presence 만료로 처리합니다."""
        room = self.rooms.get(room_id)
        if room is None:
            return None
        async with room.lock:
            if room.closed:
                return None
            self._detach(room)
        logger.info(f"[Signaling] 룸 '{room_id}' 호스트 연결 끊김으로 정리")
        return room

    async def leave(self, participant_id: str) -> Optional[Room]:
        """뷰어를 현재 룸에서 제거합니다.

        Returns:
            Optional[Room]: 뷰어가 속해 있던 룸. 뷰어가 아니면 None
        """
        room_id = self.member_rooms.get(participant_id)
        room = self.rooms.get(room_id) if room_id else None
        if room is None:
            return None
        async with room.lock:
            if participant_id not in room.viewers:
                return None
            room.viewers.discard(participant_id)
            self.member_rooms.pop(participant_id, None)

        logger.info(f"[Signaling] 뷰어 {participant_id[:8]} 룸 '{room.room_id}' 퇴장. "
                    f"뷰어 {len(room.viewers)}명")
        return room

    def lookup_room_of(self, participant_id: str) -> Optional[Room]:
        """참가자가 속한 룸을 반환합니다."""
        room_id = self.member_rooms.get(participant_id)
        if room_id is None:
            return None
        return self.rooms.get(room_id)

    def list_rooms(self) -> List[dict]:
        """모든 룸의 요약 정보를 리스트로 반환합니다."""
        return [
            {
                "room_id": room.room_id,
                "host_id": room.host_id,
                "viewer_count": len(room.viewers),
                "viewers": sorted(room.viewers),
            }
            for room in self.rooms.values()
        ]

    async def shutdown(self) -> None:
        """모든 presence 타이머를 취소합니다."""
        for room in list(self.rooms.values()):
            if room.presence_task is not None:
                room.presence_task.cancel()
        self.rooms.clear()
        self.member_rooms.clear()

    def _detach(self, room: Room) -> None:
        # caller holds room.lock
        room.closed = True
        task = room.presence_task
        room.presence_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self.rooms.pop(room.room_id, None)
        for member in room.members():
            if self.member_rooms.get(member) == room.room_id:
                del self.member_rooms[member]

    async def _watch_presence(self, room: Room) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                remaining = room.deadline - loop.time()
                if remaining > 0:
                    await asyncio.sleep(remaining)
                async with room.lock:
                    if room.closed or room.presence_task is not asyncio.current_task():
                        return
                    if room.deadline > loop.time():
                        continue
                    self._detach(room)
                break
        except asyncio.CancelledError:
            return

        logger.info(f"[Signaling] 룸 '{room.room_id}' 호스트 presence 만료 "
                    f"({self.presence_timeout}s), 뷰어 {len(room.viewers)}명에게 종료 통보")
        if self.on_expired is not None:
            await self.on_expired(room)
