"""시그널링 WebSocket 라우터.

참가자 한 명의 WebSocket 연결을 릴레이 엔드포인트로 등록하고, 요청
프레임을 릴레이 연산으로 변환합니다. 시그널링 메시지의 발신자 ID는
항상 서버가 발급한 참가자 ID로 덮어씁니다.

요청 프레임 (클라이언트 → 서버):
    {"type": <op>, "request_id": <any>, "data": {...}}
    - create_room: {} → {"room_id", "token"}
    - join_room: {"room_id", "token"} → {"role", "host_id"}
    - heartbeat: {"room_id", "token"} → {}
    - close_room: {"room_id", "token"} → {}
    - leave_room: {} → {}
    - signal: {"type", "payload", "targetId"?} → {"delivered"}

서버 → 클라이언트:
    - peer_id: 연결 직후 {"peer_id"}
    - result / error: 요청 응답 (error.data = {"code", "message"})
    - signal: 릴레이된 SignalingMessage
    - viewer_joined / viewer_left: {"peer_id"} (호스트에게만)
"""

import asyncio
import logging
from typing import Any, Optional, Tuple

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..errors import BadRequest, ScreencastError
from ..shared import SignalingMessage
from ..signaling import VIEWER_JOINED, VIEWER_LEFT, SignalingRelay
from .deps import get_relay, verify_ws_token

logger = logging.getLogger(__name__)

router = APIRouter()

# relay event name -> wire frame type
_EVENT_FRAMES = {
    VIEWER_JOINED: "viewer_joined",
    VIEWER_LEFT: "viewer_left",
}


class WebSocketEndpoint:
    """WebSocket 연결을 릴레이 Endpoint로 감싸는 어댑터."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    async def send_frame(self, frame: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_json(frame)

    async def deliver(self, message: SignalingMessage) -> None:
        await self.send_frame({"type": "signal", "data": message.to_wire()})

    async def notify(self, event: str, peer_id: str) -> None:
        await self.send_frame({"type": _EVENT_FRAMES[event], "data": {"peer_id": peer_id}})


def _room_args(data: dict):
    try:
        return data["room_id"], data["token"]
    except KeyError as e:
        raise BadRequest(f"Missing field {e}") from e


def _parse_frame(frame: Any) -> Tuple[Optional[str], dict]:
    if not isinstance(frame, dict):
        raise BadRequest("Request frame must be a JSON object")
    data = frame.get("data") or {}
    if not isinstance(data, dict):
        raise BadRequest("Request data must be a JSON object")
    return frame.get("type"), data


async def _handle_request(relay: SignalingRelay, peer_id: str, msg_type: Optional[str], data: dict) -> Any:
    if msg_type == "create_room":
        room_id, token = await relay.create_room(peer_id)
        return {"room_id": room_id, "token": token}

    if msg_type == "join_room":
        result = await relay.join_room(peer_id, *_room_args(data))
        return {"role": result.role.value, "host_id": result.host_id}

    if msg_type == "heartbeat":
        await relay.heartbeat(peer_id, *_room_args(data))
        return {}

    if msg_type == "close_room":
        await relay.close_room(peer_id, *_room_args(data))
        return {}

    if msg_type == "leave_room":
        await relay.leave_room(peer_id)
        return {}

    if msg_type == "signal":
        fields = {k: v for k, v in data.items() if k not in ("senderId", "sender_id")}
        try:
            message = SignalingMessage.model_validate({**fields, "senderId": peer_id})
        except ValidationError as e:
            raise BadRequest(f"Invalid signaling message: {e.error_count()} error(s)") from e
        delivered = await relay.send(message)
        return {"delivered": delivered}

    raise BadRequest(f"Unknown message type: {msg_type}")


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    relay: SignalingRelay = Depends(get_relay),
):
    """시그널링 WebSocket 엔드포인트.

    연결마다 릴레이에 엔드포인트를 등록하고 참가자 ID를 먼저 보냅니다.
    연결이 끊기면 릴레이가 호스트/뷰어에 맞게 정리합니다.

    Args:
        websocket: FastAPI WebSocket 연결 객체
        token: 접근 토큰 (ACCESS_PASSWORD 설정 시, 쿼리 파라미터)
    """
    # 연결 수락 전 토큰 검증
    if not verify_ws_token(token):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()

    endpoint = WebSocketEndpoint(websocket)
    peer_id = relay.connect(endpoint)
    await endpoint.send_frame({"type": "peer_id", "data": {"peer_id": peer_id}})

    try:
        while True:
            frame = await websocket.receive_json()
            request_id = frame.get("request_id") if isinstance(frame, dict) else None
            msg_type = None

            try:
                msg_type, data = _parse_frame(frame)
                result = await _handle_request(relay, peer_id, msg_type, data)
            except ScreencastError as e:
                logger.info(f"[Signaling] 참가자 {peer_id[:8]} {msg_type} 실패: {e.code}")
                await endpoint.send_frame({"type": "error", "request_id": request_id, "data": e.to_dict()})
                continue

            await endpoint.send_frame({"type": "result", "request_id": request_id, "data": result})

    except WebSocketDisconnect:
        logger.info(f"[Signaling] 참가자 {peer_id[:8]} 연결 끊김")
    except Exception as e:
        logger.error(f"[Signaling] 참가자 {peer_id[:8]}의 WebSocket 연결 중 오류: {e}")
    finally:
        await relay.disconnect(peer_id)
