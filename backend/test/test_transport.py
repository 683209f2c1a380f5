"""AiortcTransport 인코딩 파라미터 테스트 (실제 RTCPeerConnection, 네트워크 없음)."""

from types import SimpleNamespace

import pytest

from conftest import FakeVideoTrack
from screencast.webrtc import AiortcTransport


def fake_sender(kind="video", target_bitrate=8_000_000):
    track = FakeVideoTrack() if kind == "video" else None
    sender = SimpleNamespace(track=track)
    encoder = SimpleNamespace(target_bitrate=target_bitrate)
    setattr(sender, "_RTCRtpSender__encoder", encoder)
    return sender, encoder


@pytest.fixture
async def transport():
    transport = AiortcTransport()
    yield transport
    await transport.close()


async def test_bitrate_ceiling_is_applied_to_running_encoder(transport):
    sender, encoder = fake_sender()
    transport._sender_for = lambda kind: sender if kind == "video" else None

    await transport.set_encoding_parameters("video", {"encodings": [{"maxBitrate": 2_000_000}]})

    assert encoder.target_bitrate == 2_000_000


async def test_bitrate_ceiling_is_reapplied_once_encoder_exists(transport):
    senders = {}
    transport._sender_for = lambda kind: senders.get(kind)

    # no sender/encoder yet: parameters are only stored
    await transport.set_encoding_parameters("video", {"encodings": [{"maxBitrate": 2_000_000}]})
    assert (await transport.get_encoding_parameters("video"))["encodings"][0]["maxBitrate"] == 2_000_000

    sender, encoder = fake_sender(target_bitrate=6_000_000)
    senders["video"] = sender
    transport.enforce_bitrate_ceiling()
    assert encoder.target_bitrate == 2_000_000

    # receiver feedback raised it again
    encoder.target_bitrate = 5_000_000
    transport.enforce_bitrate_ceiling()
    assert encoder.target_bitrate == 2_000_000


async def test_bitrate_below_ceiling_is_left_alone(transport):
    sender, encoder = fake_sender(target_bitrate=1_000_000)
    transport._sender_for = lambda kind: sender

    await transport.set_encoding_parameters("video", {"encodings": [{"maxBitrate": 2_000_000}]})

    assert encoder.target_bitrate == 1_000_000
