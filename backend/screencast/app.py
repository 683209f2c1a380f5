"""FastAPI Screencast Signaling Server.

이 모듈은 화면 공유(스크린캐스트) 룸을 위한 시그널링 서버를 제공합니다.
호스트 한 명이 화면을 공유하고 여러 뷰어가 시청하며, 서버는 룸/토큰과
호스트 presence를 관리하고 offer/answer/ICE candidate/stop 메시지를
중계합니다. 미디어는 서버를 거치지 않고 참가자 간 직접 전달됩니다.

주요 기능:
    - 룸 생성/입장/종료 (토큰 기반 뷰어 입장)
    - 역할 기반 시그널링 메시지 라우팅
    - 호스트 presence 만료 시 뷰어에게 stop 통보
    - ICE 서버 설정 제공
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - RoomRegistry: 룸/멤버십 및 presence 타이머
    - SignalingRelay: 참가자 엔드포인트 및 메시지 라우팅
    - WebSocket(/ws): 참가자별 시그널링 연결
    - 레지스트리/릴레이는 앱마다 생성되어 app.state에 보관
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import signaling_config
from .routes import health_router, rooms_router, signaling_router
from .signaling import RoomRegistry, SignalingRelay

# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일) - 기본 60일 (2개월)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))

SERVICE_NAME = "Screencast Signaling Server"


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    import glob
    from datetime import timedelta

    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file).replace("server_", "").replace(".log", "")
            file_date = datetime.strptime(date_str, "%Y%m%d")

            if file_date < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    시작 시 오래된 로그를 정리하고, 종료 시 모든 presence 타이머를 취소하고
    룸을 비웁니다.

    Args:
        app (FastAPI): FastAPI 애플리케이션 인스턴스

    Yields:
        None: 앱이 실행되는 동안 제어를 반환
    """
    logger.info("스크린캐스트 시그널링 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    yield

    logger.info("서버 종료 중...")
    await app.state.relay.shutdown()


def create_app(presence_timeout: float = signaling_config.PRESENCE_TIMEOUT) -> FastAPI:
    """레지스트리/릴레이를 가진 새 FastAPI 앱을 만듭니다.

    Args:
        presence_timeout: 호스트 하트비트가 끊긴 뒤 룸을 정리하기까지의 시간 (초)

    Returns:
        FastAPI: 설정된 애플리케이션
    """
    app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
    app.state.relay = SignalingRelay(RoomRegistry(presence_timeout=presence_timeout))

    # CORS - 개발 환경에서는 모든 로컬 네트워크 허용
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|172\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$|^https://.*\.ngrok(-free)?\.(app|dev|io)$|^https://.*\.trycloudflare\.com$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 라우터 등록
    app.include_router(health_router)
    app.include_router(rooms_router)
    app.include_router(signaling_router)

    @app.get("/")
    async def root():
        """서버 상태 확인 엔드포인트 (Health check).

        Returns:
            dict: {"status": "ok", "service": <서비스 이름>}
        """
        return {"status": "ok", "service": SERVICE_NAME}

    return app


app = create_app()


def main():
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")), log_level="info")


if __name__ == "__main__":
    main()
