import pytest

from conftest import BrokenBackend
from drivers.media import LocalMediaSource, MediaAcquisitionError, SyntheticBackend
from service.tracks import MutableAudioTrack, MutableVideoTrack, PlaceholderVideoTrack, RemoteStream, ToneAudioTrack


@pytest.mark.asyncio
async def test_disabled_video_sends_black_frames():
    track = MutableVideoTrack(PlaceholderVideoTrack("alice", 64, 48))

    live = await track.recv()
    track.enabled = False
    muted = await track.recv()

    assert live.to_ndarray(format="bgr24").any()
    image = muted.to_ndarray(format="bgr24")
    assert image.shape == (48, 64, 3)
    assert not image.any()
    assert muted.pts is not None
    track.stop()


@pytest.mark.asyncio
async def test_disabled_audio_sends_silence():
    track = MutableAudioTrack(ToneAudioTrack())

    live = await track.recv()
    track.enabled = False
    muted = await track.recv()

    assert live.to_ndarray().any()
    assert muted.samples == live.samples
    assert muted.sample_rate == 48000
    assert not muted.to_ndarray().any()
    track.stop()


@pytest.mark.asyncio
async def test_synthetic_source_acquire_and_stop():
    media = LocalMediaSource(SyntheticBackend("alice", 64, 48))

    assert await media.acquire() is media
    assert [t.kind for t in media.tracks] == ["audio", "video"]
    assert [t.kind for t in media.subscribe()] == ["audio", "video"]

    media.set_video_enabled(False)
    media.set_audio_enabled(False)
    assert not media.video.enabled
    assert not media.audio.enabled

    media.stop()
    media.stop()
    assert not media.running
    assert media.video.readyState == "ended"
    assert media.video.source.readyState == "ended"


@pytest.mark.asyncio
async def test_backend_failure_is_acquisition_error():
    media = LocalMediaSource(BrokenBackend())

    with pytest.raises(MediaAcquisitionError, match="Permission denied"):
        await media.acquire()

    assert not media.running
    assert media.tracks == []


def test_remote_stream_groups_tracks():
    stream = RemoteStream("s1")
    audio = ToneAudioTrack()
    video = PlaceholderVideoTrack()

    stream.add_track(audio)
    stream.add_track(video)
    stream.add_track(video)

    assert stream.get_audio_tracks() == [audio]
    assert stream.get_video_tracks() == [video]
    assert "audio,video" in repr(stream)
