"""스트림 통계 수집 모듈.

연결된 피어 세션의 전송 통계를 주기적으로 읽어 화면 표시용 StreamStats를
계산합니다. 송출 리포트(outbound-rtp)가 있으면 그것을, 없으면 수신
리포트(inbound-rtp)를 사용합니다. 한 리포트에 없는 필드는 이전 값을
유지합니다 (packets_lost/jitter는 수신 측에서만 제공).
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from ..shared import StreamStats

logger = logging.getLogger(__name__)

StatsProvider = Callable[[], Awaitable[List[dict]]]
StatsCallback = Callable[[StreamStats], None]


def format_bitrate(bits_per_second: float) -> str:
    if bits_per_second >= 1_000_000:
        return f"{bits_per_second / 1_000_000:.2f} Mbps"
    return f"{bits_per_second / 1000:.0f} kbps"


class StatsSampler:
    """주기적 통계 샘플러.

    Attributes:
        kind (str): 대상 미디어 종류 ("video")
        interval (float): 샘플링 주기 (초)
        stats (StreamStats): 최근 계산된 통계
    """

    def __init__(
        self,
        provider: StatsProvider,
        kind: str = "video",
        interval: float = 1.0,
        on_update: Optional[StatsCallback] = None,
    ):
        self.provider = provider
        self.kind = kind
        self.interval = interval
        self.on_update = on_update
        self.stats = StreamStats()
        self._task: Optional[asyncio.Task] = None
        self._last_bytes: Optional[int] = None
        self._last_time: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """샘플링을 멈추고 통계를 초기값으로 되돌립니다."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._last_bytes = None
        self._last_time = None
        self.stats = StreamStats()
        if self.on_update is not None:
            self.on_update(self.stats)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sample()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[WebRTC] 통계 수집 실패: {type(e).__name__}: {e}")

    def _pick_report(self, reports: List[dict]) -> Optional[dict]:
        outbound = inbound = None
        for report in reports:
            if report.get("kind") != self.kind:
                continue
            if report.get("type") == "outbound-rtp" and outbound is None:
                outbound = report
            elif report.get("type") == "inbound-rtp" and inbound is None:
                inbound = report
        return outbound or inbound

    async def sample(self) -> StreamStats:
        """한 번 샘플링하고 갱신된 통계를 반환합니다."""
        report = self._pick_report(await self.provider())
        if report is None:
            return self.stats

        updates = {}
        now = asyncio.get_running_loop().time()
        inbound = report.get("type") == "inbound-rtp"

        total_bytes = report.get("bytesReceived" if inbound else "bytesSent")
        if total_bytes is not None:
            if self._last_bytes is not None and now > self._last_time:
                delta = max(0, total_bytes - self._last_bytes)
                updates["bitrate"] = format_bitrate(delta * 8 / (now - self._last_time))
            self._last_bytes = total_bytes
            self._last_time = now

        if report.get("frameWidth") and report.get("frameHeight"):
            updates["resolution"] = f"{report['frameWidth']}x{report['frameHeight']}"
        if report.get("framesPerSecond") is not None:
            updates["fps"] = report["framesPerSecond"]

        if inbound:
            if report.get("packetsLost") is not None:
                updates["packets_lost"] = report["packetsLost"]
            if report.get("jitter") is not None:
                updates["jitter"] = float(report["jitter"])

        self.stats = self.stats.model_copy(update=updates)
        if self.on_update is not None:
            self.on_update(self.stats)
        return self.stats
