"""Health Check API 라우터.

서비스 상태 확인을 위한 엔드포인트를 제공합니다.
"""

from fastapi import APIRouter, Depends

from ..signaling import SignalingRelay
from .deps import get_relay

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check(relay: SignalingRelay = Depends(get_relay)):
    """릴레이 상태를 확인합니다.

    Returns:
        dict: 상태와 현재 룸/연결 수
    """
    return {
        "status": "ok",
        "rooms": len(relay.registry.rooms),
        "connections": len(relay.endpoints),
    }
