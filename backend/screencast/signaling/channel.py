"""참가자 측 시그널링 채널.

세션 코디네이터가 릴레이와 통신하는 통로입니다. 같은 프로세스의 릴레이를
직접 호출하는 LocalSignalingChannel과, /ws WebSocket 엔드포인트에 접속하는
WebSocketSignalingChannel 두 구현을 제공합니다. 라우팅 규칙은 두 경우 모두
릴레이가 결정하며, 전달 방식만 다릅니다.

WebSocket 프로토콜:
    클라이언트 → 서버: {"type", "request_id", "data"}
        type: create_room | join_room | heartbeat | close_room | leave_room | signal
    서버 → 클라이언트:
        peer_id, result, error({"code", "message"}), signal, viewer_joined, viewer_left
"""
import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Optional, Protocol, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from ..errors import error_from_dict
from ..shared import SignalingMessage
from .relay import VIEWER_JOINED, VIEWER_LEFT, Endpoint, JoinResult, Role, SignalingRelay

logger = logging.getLogger(__name__)

# wire event name -> relay event name
_WIRE_EVENTS = {
    "viewer_joined": VIEWER_JOINED,
    "viewer_left": VIEWER_LEFT,
}


class SignalingChannel(Protocol):
    """코디네이터가 사용하는 릴레이 연결."""

    peer_id: Optional[str]

    async def open(self, endpoint: Endpoint) -> str:
        ...

    async def create_room(self) -> Tuple[str, str]:
        ...

    async def join_room(self, room_id: str, token: str) -> JoinResult:
        ...

    async def heartbeat(self, room_id: str, token: str) -> None:
        ...

    async def close_room(self, room_id: str, token: str) -> None:
        ...

    async def leave_room(self) -> None:
        ...

    async def send(self, message: SignalingMessage) -> None:
        ...

    async def close(self) -> None:
        ...


class LocalSignalingChannel:
    """같은 프로세스의 SignalingRelay를 직접 호출하는 채널."""

    def __init__(self, relay: SignalingRelay):
        self.relay = relay
        self.peer_id: Optional[str] = None

    async def open(self, endpoint: Endpoint) -> str:
        self.peer_id = self.relay.connect(endpoint)
        return self.peer_id

    async def create_room(self) -> Tuple[str, str]:
        return await self.relay.create_room(self.peer_id)

    async def join_room(self, room_id: str, token: str) -> JoinResult:
        return await self.relay.join_room(self.peer_id, room_id, token)

    async def heartbeat(self, room_id: str, token: str) -> None:
        await self.relay.heartbeat(self.peer_id, room_id, token)

    async def close_room(self, room_id: str, token: str) -> None:
        await self.relay.close_room(self.peer_id, room_id, token)

    async def leave_room(self) -> None:
        await self.relay.leave_room(self.peer_id)

    async def send(self, message: SignalingMessage) -> None:
        await self.relay.send(message)

    async def close(self) -> None:
        if self.peer_id is not None:
            await self.relay.disconnect(self.peer_id)


class WebSocketSignalingChannel:
    """/ws 시그널링 엔드포인트에 접속하는 채널.

    요청마다 request_id를 붙여 보내고, 서버의 result/error 응답으로 대기 중인
    Future를 완료합니다. signal/viewer_* 프레임은 엔드포인트로 전달합니다.

    Attributes:
        url (str): 시그널링 서버 WebSocket URL
        request_timeout (float): 요청 응답 대기 시간 (초)
    """

    def __init__(self, url: str, request_timeout: float = 10.0):
        self.url = url
        self.request_timeout = request_timeout
        self.peer_id: Optional[str] = None
        self.conn = None
        self._endpoint: Optional[Endpoint] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._reader: Optional[asyncio.Task] = None

    async def open(self, endpoint: Endpoint) -> str:
        self._endpoint = endpoint
        self.conn = await websockets.connect(self.url)
        hello = json.loads(await self.conn.recv())
        if hello.get("type") != "peer_id":
            await self.conn.close()
            raise ConnectionError(f"Unexpected handshake frame: {hello.get('type')}")
        self.peer_id = hello["data"]["peer_id"]
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"[Signaling] {self.url} 연결됨 (peer_id={self.peer_id[:8]})")
        return self.peer_id

    async def _request(self, msg_type: str, data: Optional[dict] = None) -> Any:
        if self.conn is None:
            raise ConnectionError("Signaling channel is not open")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.conn.send(json.dumps({
                "type": msg_type,
                "request_id": request_id,
                "data": data or {},
            }))
            return await asyncio.wait_for(future, self.request_timeout)
        except ConnectionClosed as e:
            raise ConnectionError("Signaling connection closed") from e
        finally:
            self._pending.pop(request_id, None)

    async def create_room(self) -> Tuple[str, str]:
        result = await self._request("create_room")
        return result["room_id"], result["token"]

    async def join_room(self, room_id: str, token: str) -> JoinResult:
        result = await self._request("join_room", {"room_id": room_id, "token": token})
        return JoinResult(role=Role(result["role"]), host_id=result["host_id"])

    async def heartbeat(self, room_id: str, token: str) -> None:
        await self._request("heartbeat", {"room_id": room_id, "token": token})

    async def close_room(self, room_id: str, token: str) -> None:
        await self._request("close_room", {"room_id": room_id, "token": token})

    async def leave_room(self) -> None:
        await self._request("leave_room")

    async def send(self, message: SignalingMessage) -> None:
        await self._request("signal", message.to_wire())

    async def _read_loop(self) -> None:
        try:
            async for raw in self.conn:
                frame = json.loads(raw)
                await self._dispatch(frame)
        except ConnectionClosed:
            logger.info(f"[Signaling] {self.url} 연결 종료")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("Signaling connection closed"))

    async def _dispatch(self, frame: dict) -> None:
        msg_type = frame.get("type")
        data = frame.get("data") or {}

        if msg_type in ("result", "error"):
            future = self._pending.get(frame.get("request_id"))
            if future is None or future.done():
                if msg_type == "error":
                    logger.warning(f"[Signaling] 서버 오류: {data}")
                return
            if msg_type == "result":
                future.set_result(data)
            else:
                future.set_exception(error_from_dict(data))
        elif msg_type == "signal":
            await self._endpoint.deliver(SignalingMessage.model_validate(data))
        elif msg_type in _WIRE_EVENTS:
            await self._endpoint.notify(_WIRE_EVENTS[msg_type], data["peer_id"])
        else:
            logger.warning(f"[Signaling] 알 수 없는 프레임 타입: {msg_type}")

    async def close(self) -> None:
        if self.conn is not None:
            await self.conn.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        self.conn = None
