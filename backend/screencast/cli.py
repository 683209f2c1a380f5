"""스크린캐스트 참가자 CLI.

시그널링 서버(/ws)에 접속해 호스트로 화면을 공유하거나 뷰어로 시청합니다.

사용법:
    screencast host [--audio] [--quality 720p]
    screencast view <room_id> <token>
"""
import argparse
import asyncio
import logging

from .config import media_config, signaling_config
from .errors import ScreencastError
from .signaling import Role, WebSocketSignalingChannel
from .webrtc import QUALITY_PROFILES, SessionCoordinator, StreamState

logger = logging.getLogger("screencast")


async def run_host(url: str, with_audio: bool, quality: str) -> None:
    ended = asyncio.Event()
    coordinator = await SessionCoordinator.create(WebSocketSignalingChannel(url), on_stream_ended=ended.set)
    try:
        logger.info(f"룸 생성 완료: room_id={coordinator.room_id} token={coordinator.token}")
        await coordinator.change_quality(quality)
        await coordinator.start_sharing(with_audio=with_audio)
        # Ctrl-C, stop 수신 또는 캡처 종료 시 끝남
        while not ended.is_set() and coordinator.state == StreamState.SHARING:
            try:
                await asyncio.wait_for(ended.wait(), media_config.STATS_INTERVAL * 5)
            except asyncio.TimeoutError:
                for viewer_id, session in coordinator.sessions.items():
                    stats = session.stats
                    logger.info(f"뷰어 {viewer_id[:8]}: {stats.resolution} {stats.bitrate} {stats.fps}fps")
        logger.info("화면 공유가 끝났습니다")
    finally:
        await coordinator.close()


async def run_viewer(url: str, room_id: str, token: str) -> None:
    ended = asyncio.Event()
    coordinator = await SessionCoordinator.join(
        WebSocketSignalingChannel(url), Role.VIEWER, room_id, token, on_stream_ended=ended.set,
    )
    try:
        while not ended.is_set():
            try:
                await asyncio.wait_for(ended.wait(), media_config.STATS_INTERVAL * 5)
            except asyncio.TimeoutError:
                stats = coordinator.stats
                logger.info(f"[{coordinator.state.value}] {stats.resolution} {stats.bitrate} "
                            f"{stats.fps}fps 손실={stats.packets_lost} jitter={stats.jitter:.3f}")
        logger.info("호스트가 스트림을 종료했습니다")
    finally:
        await coordinator.close()


def main():
    parser = argparse.ArgumentParser(description="Screencast participant")
    parser.add_argument("--url", default=signaling_config.SIGNALING_URL, help="Signaling WebSocket URL")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    host = sub.add_parser("host", help="Share this screen")
    host.add_argument("--audio", action="store_true", help="Also capture system audio")
    host.add_argument("--quality", default="native", choices=sorted(QUALITY_PROFILES))

    view = sub.add_parser("view", help="Watch a room")
    view.add_argument("room_id")
    view.add_argument("token")

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        if args.command == "host":
            asyncio.run(run_host(args.url, args.audio, args.quality))
        else:
            asyncio.run(run_viewer(args.url, args.room_id, args.token))
    except ScreencastError as e:
        logger.error(f"{e.code}: {e.message}")
        raise SystemExit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
