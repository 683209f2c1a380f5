"""공유 의존성 모듈.

라우터들이 공통으로 사용하는 의존성을 정의합니다. 릴레이와 레지스트리는
앱마다 생성되어 app.state에 보관되며, 여기의 함수로 조회합니다.
"""

import os
from typing import Optional

from fastapi import Depends, Header, HTTPException
from starlette.requests import HTTPConnection

from ..signaling import RoomRegistry, SignalingRelay

# 접근 비밀번호 설정
ACCESS_PASSWORD = os.getenv("ACCESS_PASSWORD", "")


def get_relay(connection: HTTPConnection) -> SignalingRelay:
    """앱에 등록된 시그널링 릴레이를 반환합니다 (HTTP/WebSocket 공용)."""
    return connection.app.state.relay


def get_registry(relay: SignalingRelay = Depends(get_relay)) -> RoomRegistry:
    return relay.registry


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """Authorization 헤더를 검증합니다.

    Args:
        authorization: Authorization 헤더 값

    Returns:
        bool: 검증 성공 시 True

    Raises:
        HTTPException: 인증 실패 시
    """
    if not ACCESS_PASSWORD:
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization format")
    if parts[1] != ACCESS_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid password")
    return True


def verify_ws_token(token: Optional[str]) -> bool:
    """WebSocket 연결 시 접근 토큰을 검증합니다.

    룸 토큰과는 별개이며, ACCESS_PASSWORD가 설정된 경우에만 확인합니다.
    """
    if not ACCESS_PASSWORD:
        return True
    return token == ACCESS_PASSWORD
