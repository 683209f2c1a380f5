"""비디오 트랙 래퍼 테스트."""

from fractions import Fraction

from conftest import FrameSource
from screencast.webrtc.tracks import MeteredVideoTrack, ScaledVideoTrack


async def test_native_frames_pass_through():
    track = ScaledVideoTrack(FrameSource())

    frame = await track.recv()

    assert (frame.width, frame.height) == (1920, 1080)
    assert (track.meter.width, track.meter.height) == (1920, 1080)


async def test_frames_are_scaled_down_with_timing_kept():
    track = ScaledVideoTrack(FrameSource(height=1920, width=1080))
    track.scale_resolution_down_by = 1 / 0.375

    await track.recv()
    frame = await track.recv()

    assert (frame.width, frame.height) == (404, 720)
    assert frame.pts == 3000
    assert frame.time_base == Fraction(1, 90000)


async def test_stopping_scaled_track_stops_source():
    source = FrameSource()
    track = ScaledVideoTrack(source)

    track.stop()

    assert source.readyState == "ended"


async def test_metered_track_reports_fps():
    track = MeteredVideoTrack(FrameSource(1280, 720))

    for _ in range(5):
        await track.recv()

    assert (track.meter.width, track.meter.height) == (1280, 720)
    assert track.meter.fps > 0


async def test_metered_track_emits_resize_on_first_frame_and_size_change():
    source = FrameSource(1280, 720)
    track = MeteredVideoTrack(source)
    sizes = []
    track.on("resize", lambda width, height: sizes.append((width, height)))

    await track.recv()
    await track.recv()
    source.width, source.height = 2560, 1440
    await track.recv()

    assert sizes == [(1280, 720), (2560, 1440)]


async def test_metered_track_ends_with_its_source():
    source = FrameSource()
    track = MeteredVideoTrack(source)
    ended = []
    track.on("ended", lambda: ended.append(1))

    source.stop()

    assert track.readyState == "ended"
    assert ended == [1]
