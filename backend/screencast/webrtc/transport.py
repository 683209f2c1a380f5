"""WebRTC 미디어 전송 어댑터 모듈.

피어 세션이 호출하는 미디어 엔진 기능(offer/answer 생성, description 적용,
ICE candidate 추가, 트랙 추가, 인코딩 파라미터, 통계)을 MediaTransport
프로토콜로 정의하고, aiortc RTCPeerConnection 기반 구현을 제공합니다.

Description/candidate는 모두 브라우저와 같은 dict 형식으로 주고받습니다:
    - description: {"sdp": str, "type": "offer" | "answer"}
    - candidate: {"candidate": str, "sdpMid": str, "sdpMLineIndex": int}

See Also:
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import copy
import dataclasses
import datetime
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..config import ice_config
from ..errors import NegotiationError
from .tracks import MeteredVideoTrack

logger = logging.getLogger(__name__)

StateCallback = Callable[[str], Awaitable[None]]
CandidateCallback = Callable[[dict], Awaitable[None]]
TrackCallback = Callable[[MediaStreamTrack], Awaitable[None]]


class MediaTransport(Protocol):
    """피어 하나와의 미디어 연결 (외부 기능)."""

    connection_state: str
    local_description: Optional[dict]

    def on_connection_state_change(self, callback: StateCallback) -> None: ...

    def on_ice_candidate(self, callback: CandidateCallback) -> None: ...

    def on_track(self, callback: TrackCallback) -> None: ...

    async def create_offer(self) -> dict: ...

    async def create_answer(self) -> dict: ...

    async def set_local_description(self, description: dict) -> None: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    async def add_track(self, track: MediaStreamTrack) -> None: ...

    async def remove_track(self, track: MediaStreamTrack) -> None: ...

    async def get_encoding_parameters(self, kind: str) -> dict: ...

    async def set_encoding_parameters(self, kind: str, parameters: dict) -> None: ...

    async def get_stats(self) -> List[dict]: ...

    async def close(self) -> None: ...


def build_rtc_configuration() -> RTCConfiguration:
    """설정의 STUN/TURN 서버로 RTCConfiguration을 만듭니다."""
    ice_servers = []

    if ice_config.STUN_SERVER_URL:
        ice_servers.append(RTCIceServer(urls=[ice_config.STUN_SERVER_URL]))
        logger.info(f"[WebRTC] STUN 서버 설정: {ice_config.STUN_SERVER_URL}")

    # Google STUN 서버 (백업용)
    for stun_url in ice_config.DEFAULT_STUN_SERVERS:
        ice_servers.append(RTCIceServer(urls=[stun_url]))

    if ice_config.has_turn_server:
        ice_servers.append(RTCIceServer(
            urls=[ice_config.TURN_SERVER_URL],
            username=ice_config.TURN_USERNAME,
            credential=ice_config.TURN_CREDENTIAL
        ))
        logger.info(f"[WebRTC] TURN 서버 설정: {ice_config.TURN_SERVER_URL}")
    else:
        logger.debug("[WebRTC] TURN 서버 설정 없음 - STUN만 사용")

    return RTCConfiguration(iceServers=ice_servers)


def _describe(description: Optional[RTCSessionDescription]) -> Optional[dict]:
    if description is None:
        return None
    return {"sdp": description.sdp, "type": description.type}


def _stats_to_dict(stats: Any) -> Dict[str, Any]:
    data = dataclasses.asdict(stats)
    timestamp = data.get("timestamp")
    if isinstance(timestamp, datetime.datetime):
        data["timestamp"] = timestamp.timestamp()
    return data


class AiortcTransport:
    """aiortc RTCPeerConnection 기반 MediaTransport 구현.

    Attributes:
        pc (RTCPeerConnection): 실제 피어 연결
        inbound_tracks (Dict[str, MediaStreamTrack]): 종류별 수신 트랙

    Note:
        - aiortc는 RTCRtpSender.setParameters를 지원하지 않으므로 인코딩
          파라미터는 이 객체가 보관하고, 축소 비율은 ScaledVideoTrack에,
          비트레이트 상한은 동작 중인 인코더에 직접 적용합니다
          (enforce_bitrate_ceiling, 연결 완료 및 통계 수집 시 재적용).
        - aiortc는 ICE candidate를 SDP에 묶어 보내므로 icecandidate 이벤트는
          거의 발생하지 않습니다. 원격(브라우저) 측 trickle candidate는
          add_ice_candidate로 정상 처리됩니다.
    """

    def __init__(self, configuration: Optional[RTCConfiguration] = None):
        self.pc = RTCPeerConnection(configuration=configuration or build_rtc_configuration())
        self.inbound_tracks: Dict[str, MediaStreamTrack] = {}
        self._parameters: Dict[str, dict] = {}
        self._on_state: Optional[StateCallback] = None
        self._on_candidate: Optional[CandidateCallback] = None
        self._on_track: Optional[TrackCallback] = None

        pc = self.pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"[WebRTC] 연결 상태: {pc.connectionState}")
            if pc.connectionState == "connected":
                self.enforce_bitrate_ceiling()
            if self._on_state is not None:
                await self._on_state(pc.connectionState)

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate and self._on_candidate is not None:
                await self._on_candidate({
                    "candidate": f"candidate:{candidate_to_sdp(candidate)}",
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                })

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            logger.info(f"[WebRTC] {track.kind} 트랙 수신")
            if track.kind == "video":
                track = MeteredVideoTrack(track)
            self.inbound_tracks[track.kind] = track
            if self._on_track is not None:
                await self._on_track(track)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def local_description(self) -> Optional[dict]:
        return _describe(self.pc.localDescription)

    def on_connection_state_change(self, callback: StateCallback) -> None:
        self._on_state = callback

    def on_ice_candidate(self, callback: CandidateCallback) -> None:
        self._on_candidate = callback

    def on_track(self, callback: TrackCallback) -> None:
        self._on_track = callback

    async def create_offer(self) -> dict:
        try:
            return _describe(await self.pc.createOffer())
        except Exception as e:
            raise NegotiationError(f"createOffer failed: {e}") from e

    async def create_answer(self) -> dict:
        try:
            return _describe(await self.pc.createAnswer())
        except Exception as e:
            raise NegotiationError(f"createAnswer failed: {e}") from e

    async def set_local_description(self, description: dict) -> None:
        try:
            await self.pc.setLocalDescription(
                RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            )
        except Exception as e:
            raise NegotiationError(f"setLocalDescription failed: {e}") from e
        candidate_count = self.pc.localDescription.sdp.count("a=candidate:")
        logger.debug(f"[WebRTC] local description 설정: gathering={self.pc.iceGatheringState}, "
                     f"후보수={candidate_count}")

    async def set_remote_description(self, description: dict) -> None:
        try:
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            )
        except Exception as e:
            raise NegotiationError(f"setRemoteDescription failed: {e}") from e

    async def add_ice_candidate(self, candidate: dict) -> None:
        candidate_str = candidate.get("candidate", "")
        if not candidate_str:
            # end-of-candidates
            return
        if candidate_str.startswith("candidate:"):
            candidate_str = candidate_str[10:]
        try:
            ice_candidate = candidate_from_sdp(candidate_str)
            ice_candidate.sdpMid = candidate.get("sdpMid")
            ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
            await self.pc.addIceCandidate(ice_candidate)
        except Exception as e:
            raise NegotiationError(f"addIceCandidate failed: {e}") from e

    async def add_track(self, track: MediaStreamTrack) -> None:
        self.pc.addTrack(track)
        self._parameters.setdefault(track.kind, {"encodings": [{}]})

    async def remove_track(self, track: MediaStreamTrack) -> None:
        # aiortc has no removeTrack; detaching the sender's track stops sending
        for sender in self.pc.getSenders():
            if sender.track is track:
                sender.replaceTrack(None)
        self._parameters.pop(track.kind, None)

    def _sender_for(self, kind: str):
        for sender in self.pc.getSenders():
            if sender.track is not None and sender.track.kind == kind:
                return sender
        return None

    async def get_encoding_parameters(self, kind: str) -> dict:
        return copy.deepcopy(self._parameters.get(kind, {"encodings": [{}]}))

    async def set_encoding_parameters(self, kind: str, parameters: dict) -> None:
        self._parameters[kind] = copy.deepcopy(parameters)
        sender = self._sender_for(kind)
        if sender is None:
            return

        scale = (parameters.get("encodings") or [{}])[0].get("scaleResolutionDownBy")
        if scale is not None and hasattr(sender.track, "scale_resolution_down_by"):
            sender.track.scale_resolution_down_by = float(scale)
        self.enforce_bitrate_ceiling()

    def enforce_bitrate_ceiling(self) -> None:
        """보관 중인 maxBitrate로 동작 중인 인코더의 목표 비트레이트를 제한합니다.

        aiortc 인코더는 첫 프레임을 보낼 때 만들어지고 REMB 피드백으로 목표
        비트레이트가 다시 올라가므로, 연결 완료 시와 통계 수집 주기마다
        다시 적용합니다.
        """
        for kind, parameters in self._parameters.items():
            max_bitrate = (parameters.get("encodings") or [{}])[0].get("maxBitrate")
            sender = self._sender_for(kind)
            if not max_bitrate or sender is None:
                continue
            # aiortc exposes no setParameters; the encoder is only reachable privately
            encoder = getattr(sender, "_RTCRtpSender__encoder", None)
            if encoder is None or not hasattr(encoder, "target_bitrate"):
                continue
            if encoder.target_bitrate > max_bitrate:
                encoder.target_bitrate = int(max_bitrate)

    async def get_stats(self) -> List[dict]:
        self.enforce_bitrate_ceiling()
        report = await self.pc.getStats()
        reports = [_stats_to_dict(stats) for stats in report.values()]

        bytes_received = sum(r.get("bytesReceived", 0) for r in reports if r.get("type") == "transport")
        for entry in reports:
            kind = entry.get("kind")
            if entry.get("type") == "outbound-rtp":
                sender = self._sender_for(kind)
                meter = getattr(sender.track, "meter", None) if sender else None
            elif entry.get("type") == "inbound-rtp":
                entry.setdefault("bytesReceived", bytes_received)
                meter = getattr(self.inbound_tracks.get(kind), "meter", None)
            else:
                continue
            if meter is not None and meter.width:
                entry["frameWidth"] = meter.width
                entry["frameHeight"] = meter.height
                entry["framesPerSecond"] = round(meter.fps, 1)
        return reports

    async def close(self) -> None:
        await self.pc.close()
