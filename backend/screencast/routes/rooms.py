"""룸 조회 및 ICE 서버 API 라우터.

룸 생성은 WebSocket으로 연결된 참가자만 할 수 있으므로 여기서는 조회만
제공합니다.
"""
import logging

from fastapi import APIRouter, Depends

from ..config import ice_config
from ..signaling import RoomRegistry
from .deps import get_registry, verify_auth_header

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["rooms"])


@router.get("/rooms")
async def get_rooms(
    registry: RoomRegistry = Depends(get_registry),
    _: bool = Depends(verify_auth_header),
):
    """활성화된 모든 룸의 목록을 조회합니다.

    Returns:
        dict: {"rooms": [{"room_id", "host_id", "viewer_count", "viewers"}, ...]}
    """
    return {"rooms": registry.list_rooms()}


@router.get("/turn-credentials")
async def get_turn_credentials(_: bool = Depends(verify_auth_header)):
    """클라이언트용 ICE 서버 설정을 제공합니다.

    TURN credentials는 Backend 환경 변수에서만 관리합니다.

    Returns:
        list: ICE servers 배열 (STUN + 설정된 경우 TURN)

    Examples:
        [
            {"urls": "stun:stun.l.google.com:19302"},
            {"urls": "turn:turn.example.com:3478", "username": "u", "credential": "p"}
        ]
    """
    ice_servers = ice_config.as_client_list()
    if ice_config.has_turn_server:
        logger.info("ICE 서버 제공: STUN + TURN")
    else:
        logger.info("ICE 서버 제공: STUN만 (TURN 미설정)")
    return ice_servers
