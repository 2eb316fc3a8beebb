"""
Shared fixtures: an in-process fake of the media transport, a relay hub,
and helpers to run several meeting sessions in one event loop.
"""

import asyncio
import itertools
from typing import Dict, List, Optional

import pytest
from aiortc import RTCIceCandidate, RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from drivers.media import LocalMediaSource, MediaBackend, SyntheticBackend
from drivers.relay import InMemoryRelay
from service.session import SessionCoordinator

CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.168.1.2 54321 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.id = f"{kind}-track"


class FakePeerConnection(AsyncIOEventEmitter):
    """Mimics the RTCPeerConnection surface used by PeerLink."""

    _ids = itertools.count(1)

    def __init__(self, network: "FakeNetwork", ice_servers):
        super().__init__()
        self.uid = f"pc{next(self._ids)}"
        self.network = network
        self.ice_servers = ice_servers
        self.tracks: List = []
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.candidates: List[RTCIceCandidate] = []
        self.connectionState = "new"
        self.closed = False
        self.peer: Optional["FakePeerConnection"] = None
        self.gate: Optional[asyncio.Event] = None
        self.reject_remote_description = False

    async def _wait(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.closed:
            raise RuntimeError("RTCPeerConnection is closed")

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        await self._wait()
        return RTCSessionDescription(sdp=f"fake-sdp:{self.uid}", type="offer")

    async def createAnswer(self):
        await self._wait()
        if self.remoteDescription is None or self.remoteDescription.type != "offer":
            raise RuntimeError("Cannot create answer without a remote offer")
        return RTCSessionDescription(sdp=f"fake-sdp:{self.uid}", type="answer")

    async def setLocalDescription(self, description):
        await self._wait()
        self.localDescription = description
        self._maybe_connect()

    async def setRemoteDescription(self, description):
        await self._wait()
        if self.reject_remote_description:
            raise ValueError("Remote description rejected by transport")
        if not description.sdp.startswith("fake-sdp:"):
            raise ValueError(f"Malformed session description: {description.sdp!r}")
        self.remoteDescription = description
        self.peer = self.network.by_uid.get(description.sdp.split(":", 1)[1])
        self._maybe_connect()

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise RuntimeError("addIceCandidate before setRemoteDescription")
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    def _ready(self) -> bool:
        return not self.closed and self.localDescription is not None and self.remoteDescription is not None

    def _maybe_connect(self):
        peer = self.peer
        if peer is None or peer.peer is not self or not (self._ready() and peer._ready()):
            return
        if self.connectionState == "connected":
            return
        for side, other in ((self, peer), (peer, self)):
            side.connectionState = "connected"
            side.emit("connectionstatechange")
            for track in other.tracks:
                side.emit("track", FakeTrack(track.kind))

    def emit_candidate(self, candidate: RTCIceCandidate):
        self.emit("icecandidate", candidate)

    def fail(self):
        self.connectionState = "failed"
        self.emit("connectionstatechange")


class FakeNetwork:
    """Transport factory; pairs fake transports through the SDP they exchange."""

    def __init__(self):
        self.created: List[FakePeerConnection] = []
        self.by_uid: Dict[str, FakePeerConnection] = {}

    def __call__(self, ice_servers):
        pc = FakePeerConnection(self, ice_servers)
        self.created.append(pc)
        self.by_uid[pc.uid] = pc
        return pc


class RecordingRouter:
    """Stands in for SignalingRouter in single-link tests."""

    def __init__(self):
        self.sent = []

    async def send(self, kind, to_user_id, payload):
        self.sent.append((kind, to_user_id, payload))

    def kinds(self):
        return [kind.value for kind, _, _ in self.sent]


class BrokenBackend(MediaBackend):
    def open(self):
        raise OSError("Permission denied: /dev/video0")

    def close(self):
        pass


async def settle(*sessions, rounds: int = 10):
    """Let every in-flight task of the given sessions finish."""
    for _ in range(rounds):
        for session in sessions:
            await session.drain()
        await asyncio.sleep(0)
        if not any(session._tasks for session in sessions):
            break


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def hub():
    return InMemoryRelay()


@pytest.fixture
def router():
    return RecordingRouter()


@pytest.fixture
def make_session(hub, network):
    def factory(user_id: str, meeting_id: str = "m1", display_name: Optional[str] = None,
                settings: Optional[dict] = None, backend: Optional[MediaBackend] = None):
        session = SessionCoordinator(
            meeting_id,
            user_id,
            display_name or user_id.upper(),
            hub.channel(meeting_id),
            LocalMediaSource(backend or SyntheticBackend(user_id, 64, 48)),
            settings=settings,
            transport_factory=network,
        )
        return session

    return factory
