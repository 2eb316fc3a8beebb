# service/tracks.py
import asyncio
import fractions
import logging
import math
import time
import uuid
from typing import List, Optional

import cv2
import numpy as np
from av import AudioFrame, VideoFrame
from aiortc import AudioStreamTrack, VideoStreamTrack
from aiortc.mediastreams import MediaStreamTrack, MediaStreamError

logger = logging.getLogger("tracks")

AUDIO_PTIME = 0.020
AUDIO_SAMPLE_RATE = 48000


class MutableVideoTrack(VideoStreamTrack):
    """
    Local video track with a track-level ``enabled`` flag.
    While disabled it keeps pacing the source but sends black frames,
    so no peer connection needs to renegotiate.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.source = source
        self.enabled = True

    async def recv(self) -> VideoFrame:
        frame = await self.source.recv()
        if self.enabled:
            return frame

        black = VideoFrame.from_ndarray(
            np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="bgr24"
        )
        black.pts = frame.pts
        black.time_base = frame.time_base
        return black

    def stop(self):
        super().stop()
        self.source.stop()


class MutableAudioTrack(AudioStreamTrack):
    """Local audio track; emits silence while disabled."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.source = source
        self.enabled = True

    async def recv(self) -> AudioFrame:
        frame = await self.source.recv()
        if self.enabled:
            return frame

        silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in silent.planes:
            plane.update(bytes(plane.buffer_size))
        silent.pts = frame.pts
        silent.sample_rate = frame.sample_rate
        silent.time_base = frame.time_base
        return silent

    def stop(self):
        super().stop()
        self.source.stop()


class PlaceholderVideoTrack(VideoStreamTrack):
    """
    Generated video: a dark card with the participant's initial,
    the same placeholder a client shows when a camera is off.
    """

    def __init__(self, label: str = "U", width: int = 640, height: int = 480):
        super().__init__()
        self.label = (label or "U")[0].upper()
        self.width = width
        self.height = height
        self._card: Optional[np.ndarray] = None

    def _render(self) -> np.ndarray:
        if self._card is None:
            card = np.full((self.height, self.width, 3), (48, 32, 32), dtype=np.uint8)
            center = (self.width // 2, self.height // 2)
            radius = min(self.width, self.height) // 6
            cv2.circle(card, center, radius, (90, 70, 70), thickness=-1)
            scale = radius / 30.0
            (tw, th), _ = cv2.getTextSize(self.label, cv2.FONT_HERSHEY_SIMPLEX, scale, 2)
            origin = (center[0] - tw // 2, center[1] + th // 2)
            cv2.putText(card, self.label, origin, cv2.FONT_HERSHEY_SIMPLEX, scale, (255, 255, 255), 2)
            self._card = card
        return self._card

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = VideoFrame.from_ndarray(self._render(), format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class ToneAudioTrack(MediaStreamTrack):
    """Generated mono 48 kHz sine tone paced in 20 ms frames."""

    kind = "audio"

    def __init__(self, frequency: float = 440.0, amplitude: float = 0.1):
        super().__init__()
        self.frequency = frequency
        self.amplitude = amplitude
        self._start: Optional[float] = None
        self._timestamp = 0

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        samples = int(AUDIO_PTIME * AUDIO_SAMPLE_RATE)
        if self._start is None:
            self._start = time.time()
            self._timestamp = 0
        else:
            self._timestamp += samples
            wait = self._start + (self._timestamp / AUDIO_SAMPLE_RATE) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        t = (np.arange(samples) + self._timestamp) / AUDIO_SAMPLE_RATE
        wave = self.amplitude * np.sin(2 * math.pi * self.frequency * t)
        pcm = (wave * 32767).astype(np.int16).reshape(1, -1)

        frame = AudioFrame.from_ndarray(pcm, format="s16", layout="mono")
        frame.pts = self._timestamp
        frame.sample_rate = AUDIO_SAMPLE_RATE
        frame.time_base = fractions.Fraction(1, AUDIO_SAMPLE_RATE)
        return frame


class RemoteStream:
    """Tracks received from one remote participant, grouped like a browser MediaStream."""

    def __init__(self, stream_id: Optional[str] = None):
        self.id = stream_id or str(uuid.uuid4())
        self.tracks: List[MediaStreamTrack] = []

    def add_track(self, track: MediaStreamTrack):
        if track not in self.tracks:
            self.tracks.append(track)

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self.tracks if t.kind == "video"]

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    def __repr__(self):
        kinds = ",".join(t.kind for t in self.tracks)
        return f"RemoteStream(id={self.id!r}, tracks=[{kinds}])"
