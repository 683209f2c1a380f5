"""스크린캐스트 예외 정의.

룸 인증/조회, 미디어 캡처, WebRTC 협상 과정에서 발생하는 오류를
하나의 계층으로 정의합니다. 각 예외는 WebSocket 에러 프레임에 그대로
실리는 고정 ``code`` 값을 가집니다.

Classes:
    ScreencastError: 모든 도메인 예외의 기반 클래스
    RoomNotFound, InvalidToken, NotHost, NotInRoom, AlreadyInRoom:
        룸 인증/조회 오류 (호출자에게 즉시 반환, 자동 재시도 없음)
    MediaCaptureError: 화면/오디오 캡처 실패
    NegotiationError: 피어 세션 하나의 협상 실패 (해당 세션만 종료)
    PresenceTimeout: 호스트 presence 만료 (뷰어에게는 stop으로 전달)
    PeerNotFound: 알 수 없는 원격 피어
    UnknownQualityProfile: 정의되지 않은 화질 프로필
    BadRequest: 형식이 잘못된 WebSocket 요청
"""

from typing import Dict, Type


class ScreencastError(Exception):
    """도메인 예외 기반 클래스."""

    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class RoomNotFound(ScreencastError):
    code = "room_not_found"


class InvalidToken(ScreencastError):
    code = "invalid_token"


class NotHost(ScreencastError):
    code = "not_host"


class NotInRoom(ScreencastError):
    code = "not_in_room"


class AlreadyInRoom(ScreencastError):
    code = "already_in_room"


class MediaCaptureError(ScreencastError):
    code = "media_capture_error"


class NegotiationError(ScreencastError):
    code = "negotiation_error"


class PresenceTimeout(ScreencastError):
    code = "timeout"


class PeerNotFound(ScreencastError):
    code = "peer_not_found"


class UnknownQualityProfile(ScreencastError, ValueError):
    code = "unknown_quality"


class BadRequest(ScreencastError):
    code = "bad_request"


ERRORS_BY_CODE: Dict[str, Type[ScreencastError]] = {
    cls.code: cls
    for cls in (
        RoomNotFound,
        InvalidToken,
        NotHost,
        NotInRoom,
        AlreadyInRoom,
        MediaCaptureError,
        NegotiationError,
        PresenceTimeout,
        PeerNotFound,
        UnknownQualityProfile,
        BadRequest,
    )
}


def error_from_dict(data: dict) -> ScreencastError:
    """WebSocket 에러 프레임을 대응하는 예외 객체로 복원합니다."""
    cls = ERRORS_BY_CODE.get(data.get("code", ""), ScreencastError)
    return cls(data.get("message", ""))
