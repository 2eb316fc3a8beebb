# drivers/media.py
import asyncio
import logging
import platform
from typing import Optional, Tuple, List, Dict

from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamTrack

from service.tracks import MutableAudioTrack, MutableVideoTrack, PlaceholderVideoTrack, ToneAudioTrack

logger = logging.getLogger("media")


class MediaAcquisitionError(Exception):
    """Camera or microphone could not be opened. Fatal to joining a meeting."""


class MediaBackend:
    """Abstract source of raw local tracks."""

    def open(self) -> Tuple[MediaStreamTrack, MediaStreamTrack]:
        """Returns (audio, video)."""
        raise NotImplementedError

    def close(self):
        raise NotImplementedError


class DeviceBackend(MediaBackend):
    """Camera + microphone through FFmpeg capture devices."""

    def __init__(self, width: int = 640, height: int = 480, fps: int = 30,
                 video_device: Optional[str] = None, audio_device: Optional[str] = None):
        self.width = width
        self.height = height
        self.fps = fps
        self.video_device = video_device
        self.audio_device = audio_device
        self.players: List[MediaPlayer] = []

    def _options(self) -> Dict[str, str]:
        return {"framerate": str(self.fps), "video_size": f"{self.width}x{self.height}"}

    def _open_players(self) -> Tuple[MediaPlayer, MediaPlayer]:
        system = platform.system()
        if system == "Darwin":
            player = MediaPlayer(self.video_device or "default:default", format="avfoundation",
                                 options=self._options())
            return player, player
        if system == "Windows":
            video = MediaPlayer(f"video={self.video_device or 'Integrated Camera'}", format="dshow",
                                options=self._options())
            audio = MediaPlayer(f"audio={self.audio_device or 'Microphone'}", format="dshow")
            return audio, video

        video = MediaPlayer(self.video_device or "/dev/video0", format="v4l2", options=self._options())
        audio = MediaPlayer(self.audio_device or "default", format="pulse")
        return audio, video

    def open(self) -> Tuple[MediaStreamTrack, MediaStreamTrack]:
        try:
            audio_player, video_player = self._open_players()
        except Exception as e:
            raise MediaAcquisitionError(f"Could not open camera or microphone: {e}") from e

        self.players = [audio_player] if audio_player is video_player else [audio_player, video_player]
        if audio_player.audio is None or video_player.video is None:
            self.close()
            raise MediaAcquisitionError("Capture device did not expose both audio and video")
        return audio_player.audio, video_player.video

    def close(self):
        for player in self.players:
            for track in (player.audio, player.video):
                if track is not None:
                    track.stop()
        self.players = []


class SyntheticBackend(MediaBackend):
    """Generated placeholder video and test tone, for headless participants."""

    def __init__(self, label: str = "U", width: int = 640, height: int = 480):
        self.label = label
        self.width = width
        self.height = height

    def open(self) -> Tuple[MediaStreamTrack, MediaStreamTrack]:
        return ToneAudioTrack(), PlaceholderVideoTrack(self.label, self.width, self.height)

    def close(self):
        pass


class LocalMediaSource:
    """
    The local camera/microphone handle shared by every peer link.

    Tracks are wrapped so that mute is a track-level flag, and each link
    gets its own MediaRelay subscription of the same capture.
    """

    def __init__(self, backend: MediaBackend):
        self.backend = backend
        self.audio: Optional[MutableAudioTrack] = None
        self.video: Optional[MutableVideoTrack] = None
        self.relay = MediaRelay()
        self.running = False

    async def acquire(self) -> "LocalMediaSource":
        if self.running:
            return self
        logger.info(f"Acquiring local media via {type(self.backend).__name__}")
        try:
            audio, video = await asyncio.to_thread(self.backend.open)
        except MediaAcquisitionError:
            raise
        except Exception as e:
            raise MediaAcquisitionError(f"Local media unavailable: {e}") from e

        self.audio = MutableAudioTrack(audio)
        self.video = MutableVideoTrack(video)
        self.running = True
        logger.info("Local media acquired")
        return self

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    def subscribe(self) -> List[MediaStreamTrack]:
        """Per-link proxies of the local tracks."""
        return [self.relay.subscribe(track) for track in self.tracks]

    def set_video_enabled(self, enabled: bool):
        if self.video is not None:
            self.video.enabled = enabled
            logger.info(f"Local video {'enabled' if enabled else 'disabled'}")

    def set_audio_enabled(self, enabled: bool):
        if self.audio is not None:
            self.audio.enabled = enabled
            logger.info(f"Local audio {'enabled' if enabled else 'disabled'}")

    def stop(self):
        if not self.running:
            return
        self.running = False
        for track in self.tracks:
            track.stop()
        try:
            self.backend.close()
        except Exception as e:
            logger.warning(f"Error closing media backend: {e}")
        logger.info("Local media stopped")
