import pytest

from drivers.media_source import open_local_media
from service.video_service import LocalMedia, PatternVideoTrack, pattern_media


@pytest.mark.asyncio
async def test_pattern_frame_shape():
    track = PatternVideoTrack(width=64, height=48)

    frame = track.render(0.5)

    assert frame.shape == (48, 64, 3)
    assert frame.any()


@pytest.mark.asyncio
async def test_pattern_track_produces_video_frames():
    track = PatternVideoTrack(width=32, height=16)

    frame = await track.recv()

    assert (frame.width, frame.height) == (32, 16)
    track.stop()


@pytest.mark.asyncio
async def test_session_tracks_are_independent_of_source():
    media = pattern_media(width=32, height=16)
    [source] = media.tracks

    [proxy] = media.session_tracks()
    proxy.stop()

    assert proxy is not source
    assert proxy.kind == "video"
    assert source.readyState == "live"
    assert media.kinds == ["video"]


@pytest.mark.asyncio
async def test_stopped_media_hands_out_nothing():
    media = pattern_media(width=32, height=16)

    media.stop()
    media.stop()

    assert media.tracks[0].readyState == "ended"
    with pytest.raises(RuntimeError):
        media.session_tracks()


@pytest.mark.asyncio
async def test_no_source_configured_uses_pattern():
    media = open_local_media({"source": None, "width": 32, "height": 16})

    assert isinstance(media, LocalMedia)
    assert isinstance(media.tracks[0], PatternVideoTrack)
    assert media.tracks[0].width == 32
