"""SessionCoordinator 종단 간 테스트 (LocalSignalingChannel + FakeTransport)."""

import asyncio

import pytest

from conftest import FakeCapture, FakeVideoTrack, FrameSource, settle
from screencast.errors import InvalidToken, MediaCaptureError, NotHost, UnknownQualityProfile
from screencast.shared import MessageKind, SignalingMessage
from screencast.signaling import LocalSignalingChannel, RoomRegistry, SignalingRelay
from screencast.webrtc import PeerState, SessionCoordinator, StreamState
from screencast.webrtc.tracks import MeteredVideoTrack


@pytest.fixture
async def host(channel_factory, transport_factory, capture):
    coordinator = await SessionCoordinator.create(
        channel_factory(), transport_factory=transport_factory, capture=capture,
    )
    yield coordinator
    await coordinator.close()


async def _join_viewer(host, channel_factory, transport_factory, **kwargs):
    return await SessionCoordinator.join(
        channel_factory(), "viewer", host.room_id, host.token,
        transport_factory=transport_factory, **kwargs,
    )


async def test_host_and_viewer_connect(host, channel_factory, transport_factory):
    viewer = await _join_viewer(host, channel_factory, transport_factory)
    await settle(host, viewer)
    assert host.viewers == {viewer.local_id}

    await host.start_sharing(with_audio=True)
    host_session = host.sessions[viewer.local_id]
    assert host_session.history[:3] == [PeerState.IDLE, PeerState.OFFERING, PeerState.ANSWERING]

    await settle(host, viewer)

    viewer_session = viewer.sessions[host.local_id]
    assert viewer_session.history == [PeerState.IDLE, PeerState.NEGOTIATING_ICE, PeerState.CONNECTED]
    assert host_session.state == PeerState.CONNECTED
    assert host.state == StreamState.SHARING
    assert viewer.state == StreamState.WATCHING
    assert {t.kind for t in host_session.transport.tracks} == {"video", "audio"}
    await viewer.close()


async def test_viewer_joining_while_sharing_is_connected(host, channel_factory, transport_factory):
    await host.start_sharing()
    viewer = await _join_viewer(host, channel_factory, transport_factory)

    await settle(host, viewer)

    assert host.sessions[viewer.local_id].state == PeerState.CONNECTED
    assert viewer.state == StreamState.WATCHING
    await viewer.close()


async def test_wrong_token_leaves_room_untouched(host, channel_factory, transport_factory, relay):
    with pytest.raises(InvalidToken):
        await SessionCoordinator.join(
            channel_factory(), "viewer", host.room_id, "wrong-token",
            transport_factory=transport_factory,
        )
    await settle(host)

    assert relay.registry.rooms[host.room_id].viewers == set()
    assert host.viewers == set()


async def test_stop_sharing_ends_viewers_and_is_idempotent(host, channel_factory, transport_factory, capture):
    ended = []
    viewers = [
        await _join_viewer(host, channel_factory, transport_factory, on_stream_ended=lambda: ended.append(1))
        for _ in range(2)
    ]
    await host.start_sharing()
    await settle(host, *viewers)
    source = capture.sources[0]

    await host.stop_sharing()
    await host.stop_sharing()
    await settle(host, *viewers)

    assert host.state == StreamState.IDLE
    assert host.sessions == {}
    assert host.source is None
    assert source.video.readyState == "ended"
    for viewer in viewers:
        assert viewer.state == StreamState.ENDED
        assert viewer.sessions == {}
    assert ended == [1, 1]
    for viewer in viewers:
        await viewer.close()


async def test_sharing_can_restart_after_stop(host, channel_factory, transport_factory):
    viewer = await _join_viewer(host, channel_factory, transport_factory)
    await host.start_sharing()
    await settle(host, viewer)
    await host.stop_sharing()
    await settle(host, viewer)

    await host.start_sharing()
    await settle(host, viewer)

    assert viewer.state == StreamState.WATCHING
    await viewer.close()


async def test_capture_failure_is_surfaced(channel_factory, transport_factory):
    host = await SessionCoordinator.create(
        channel_factory(), transport_factory=transport_factory, capture=FakeCapture(fail=True),
    )

    with pytest.raises(MediaCaptureError):
        await host.start_sharing(with_audio=True)

    assert host.state == StreamState.IDLE
    assert "Permission denied" in host.error
    await host.close()


async def test_negotiation_failure_only_closes_that_viewer(host, channel_factory, transport_factory):
    first = await _join_viewer(host, channel_factory, transport_factory)
    second = await _join_viewer(host, channel_factory, transport_factory)
    await settle(host, first, second)

    # the host transport created for whichever viewer is offered first fails
    transport_factory.fail_next = {"create_offer"}
    await host.start_sharing()
    await settle(host, first, second)

    failed = [v for v in (first, second) if v.state != StreamState.WATCHING]
    healthy = [v for v in (first, second) if v.state == StreamState.WATCHING]
    assert len(failed) == 1 and len(healthy) == 1
    assert failed[0].local_id not in host.sessions
    assert host.sessions[healthy[0].local_id].state == PeerState.CONNECTED
    for viewer in (first, second):
        await viewer.close()


async def test_viewer_leaving_closes_its_session(host, channel_factory, transport_factory):
    viewer = await _join_viewer(host, channel_factory, transport_factory)
    await host.start_sharing()
    await settle(host, viewer)
    session = host.sessions[viewer.local_id]

    await viewer.close()
    await settle(host)

    assert session.state == PeerState.CLOSED
    assert viewer.local_id not in host.sessions
    assert host.viewers == set()


async def test_change_quality_applies_to_current_and_future_sessions(host, channel_factory, transport_factory):
    first = await _join_viewer(host, channel_factory, transport_factory)
    await host.start_sharing()
    await settle(host, first)

    applied = await host.change_quality("720p")

    assert applied[first.local_id].max_bitrate == 2_000_000
    assert applied[first.local_id].scale == pytest.approx(720 / 1080)

    second = await _join_viewer(host, channel_factory, transport_factory)
    await settle(host, first, second)
    encoding = host.sessions[second.local_id].transport.parameters["video"]["encodings"][0]
    assert encoding["maxBitrate"] == 2_000_000

    with pytest.raises(UnknownQualityProfile):
        await host.change_quality("8k")
    for viewer in (first, second):
        await viewer.close()


async def test_viewer_cannot_use_host_operations(host, channel_factory, transport_factory):
    viewer = await _join_viewer(host, channel_factory, transport_factory)

    with pytest.raises(NotHost):
        await viewer.start_sharing()
    with pytest.raises(NotHost):
        await viewer.change_quality("720p")
    with pytest.raises(NotHost):
        await viewer.close_room()
    await viewer.close()


async def test_close_room_stops_viewers(host, channel_factory, transport_factory, relay):
    viewer = await _join_viewer(host, channel_factory, transport_factory)
    await host.start_sharing()
    await settle(host, viewer)

    await host.close_room()
    await host.close_room()
    await settle(host, viewer)

    assert host.room_id not in relay.registry.rooms
    assert host.state == StreamState.ENDED
    assert viewer.state == StreamState.ENDED
    await viewer.close()


async def test_host_presence_loss_ends_viewers(transport_factory):
    relay = SignalingRelay(RoomRegistry(presence_timeout=0.1))
    host = await SessionCoordinator.create(
        LocalSignalingChannel(relay), transport_factory=transport_factory, capture=FakeCapture(),
        heartbeat_interval=3600,
    )
    ended = asyncio.Event()
    viewer = await SessionCoordinator.join(
        LocalSignalingChannel(relay), "viewer", host.room_id, host.token,
        transport_factory=transport_factory, on_stream_ended=ended.set,
    )
    await host.start_sharing()
    await settle(host, viewer)

    await asyncio.wait_for(ended.wait(), 1.0)
    await settle(viewer)

    assert host.room_id not in relay.registry.rooms
    assert viewer.state == StreamState.ENDED
    await viewer.close()
    await host.close()


async def test_heartbeat_keeps_room_alive(transport_factory):
    relay = SignalingRelay(RoomRegistry(presence_timeout=0.15))
    host = await SessionCoordinator.create(
        LocalSignalingChannel(relay), transport_factory=transport_factory, capture=FakeCapture(),
        heartbeat_interval=0.03,
    )

    await asyncio.sleep(0.4)

    assert host.room_id in relay.registry.rooms
    await host.close()
    assert relay.registry.rooms == {}


async def test_remote_tracks_go_to_renderer(host, channel_factory, transport_factory):
    rendered = []

    async def renderer(track):
        rendered.append(track)

    viewer = await _join_viewer(host, channel_factory, transport_factory, renderer=renderer)
    await host.start_sharing()
    await settle(host, viewer)

    track = FakeVideoTrack()
    await viewer.sessions[host.local_id].transport.emit_track(track)

    assert rendered == [track]
    assert viewer.remote_tracks["video"] is track
    await viewer.close()


async def test_stop_from_viewer_ends_host_stream(channel_factory, transport_factory, capture):
    ended = []
    host = await SessionCoordinator.create(
        channel_factory(), transport_factory=transport_factory, capture=capture,
        on_stream_ended=lambda: ended.append(1),
    )
    viewer = await _join_viewer(host, channel_factory, transport_factory)
    await host.start_sharing()
    await settle(host, viewer)
    session = host.sessions[viewer.local_id]

    await viewer.channel.send(SignalingMessage(kind=MessageKind.STOP, payload=None, sender_id=viewer.local_id))
    await settle(host, viewer)

    assert host.state == StreamState.ENDED
    assert host.sessions == {}
    assert session.state == PeerState.CLOSED
    assert host.source is None
    assert capture.sources[0].video.readyState == "ended"
    assert ended == [1]
    await viewer.close()
    await host.close()


async def test_capture_video_ending_stops_sharing(host, channel_factory, transport_factory, capture):
    ended = []
    viewer = await _join_viewer(host, channel_factory, transport_factory, on_stream_ended=lambda: ended.append(1))
    await host.start_sharing()
    await settle(host, viewer)

    capture.sources[0].video.stop()
    await settle(host, viewer)

    assert host.state == StreamState.IDLE
    assert host.sessions == {}
    assert host.source is None
    assert viewer.state == StreamState.ENDED
    assert ended == [1]
    await viewer.close()


async def test_capture_audio_ending_drops_audio_and_renegotiates(host, channel_factory, transport_factory, capture):
    viewer = await _join_viewer(host, channel_factory, transport_factory)
    await host.start_sharing(with_audio=True)
    await settle(host, viewer)
    session = host.sessions[viewer.local_id]

    capture.sources[0].audio.stop()
    await settle(host, viewer)

    assert host.state == StreamState.SHARING
    assert host.source.audio is None
    assert [t.kind for t in session.transport.tracks] == ["video"]
    assert session.transport.offers == 2
    assert session.state == PeerState.CONNECTED
    assert viewer.state == StreamState.WATCHING
    await viewer.close()


async def test_quality_follows_observed_capture_height(channel_factory, transport_factory):
    capture = FakeCapture(width=1920, height=1080, video_factory=lambda: MeteredVideoTrack(FrameSource(1080, 1920)))
    host = await SessionCoordinator.create(
        channel_factory(), transport_factory=transport_factory, capture=capture,
    )
    viewer = await _join_viewer(host, channel_factory, transport_factory)
    await host.change_quality("720p")
    await host.start_sharing()
    await settle(host, viewer)
    transport = host.sessions[viewer.local_id].transport

    # configured size until the first frame arrives
    assert transport.parameters["video"]["encodings"][0]["scaleResolutionDownBy"] == pytest.approx(1080 / 720)

    await capture.sources[0].video.recv()
    await settle(host, viewer)

    assert host.source.native_size == (1080, 1920)
    assert transport.parameters["video"]["encodings"][0]["scaleResolutionDownBy"] == pytest.approx(1920 / 720)
    assert transport.parameters["video"]["encodings"][0]["maxBitrate"] == 2_000_000
    await viewer.close()
    await host.close()
