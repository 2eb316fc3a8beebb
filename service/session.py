# service/session.py
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import RTCIceServer
from pyee.asyncio import AsyncIOEventEmitter

from app.config import build_ice_servers, get_initial_ice_config, get_session_settings
from drivers.media import DeviceBackend, LocalMediaSource, SyntheticBackend
from drivers.relay import RelayChannel, WebSocketRelayChannel
from models.messages import HandshakeMessage, MessageKind, PresenceRecord
from models.participant import ConnectionState, Participant, RemovalReason
from models.peer_link import NegotiationState, PeerLink
from service.presence import VIA_SYNC, PresenceTracker
from service.signaling import SignalingRouter

logger = logging.getLogger("session")

POLICY_NEWCOMER = "newcomer"
POLICY_LOWER_ID = "lower_id"


class SessionState(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    LEFT = "left"


class SessionCoordinator(AsyncIOEventEmitter):
    """
    Ties presence to peer link lifecycle for one open meeting view.

    Owns the local media source, the participant roster and the link map,
    both keyed by remote user id.

    Events:
      participant_joined(participant)
      participant_updated(participant)
      participant_removed(user_id, reason)
      stream_attached(user_id, stream)
    """

    def __init__(self, meeting_id: str, user_id: str, display_name: str,
                 channel: RelayChannel, media: LocalMediaSource,
                 settings: Optional[Dict[str, Any]] = None,
                 ice_servers: Optional[List[RTCIceServer]] = None,
                 transport_factory: Optional[Callable] = None):
        super().__init__()
        settings = settings or {}
        self.meeting_id = meeting_id
        self.user_id = user_id
        self.display_name = display_name
        self.channel = channel
        self.media = media
        self.ice_servers = list(ice_servers or [])
        self.transport_factory = transport_factory
        self.initiator_policy = settings.get("initiator_policy", POLICY_NEWCOMER)
        self.max_link_retries = int(settings.get("max_link_retries", 1))

        self.state = SessionState.IDLE
        self.participants: Dict[str, Participant] = {}
        self.links: Dict[str, PeerLink] = {}
        self.retries: Dict[str, int] = {}
        self.tracker: Optional[PresenceTracker] = None
        self.router: Optional[SignalingRouter] = None
        self._tasks: Set[asyncio.Task] = set()

    # ---------- lifecycle ----------
    async def join(self) -> Optional[LocalMediaSource]:
        """
        Enter the meeting.

        Raises MediaAcquisitionError before any relay traffic if the camera
        or microphone cannot be opened. If the relay channel cannot be joined,
        local media is released again and the RelayError propagates. Returns
        None when leave() ran while media was still being acquired.
        """
        if self.state != SessionState.IDLE:
            raise RuntimeError(f"Session {self.meeting_id} is {self.state.value}")
        self.state = SessionState.JOINING
        logger.info(f"{self.user_id} joining meeting {self.meeting_id}")

        try:
            await self.media.acquire()
        except Exception:
            self.state = SessionState.LEFT
            raise

        if self.state == SessionState.LEFT:
            logger.info(f"{self.user_id} left meeting {self.meeting_id} before join completed")
            self.media.stop()
            return None

        self.router = SignalingRouter(self.channel, self.user_id)
        self.router.on_message(MessageKind.OFFER, self._on_offer)
        self.router.on_message(MessageKind.ANSWER, self._on_answer)
        self.router.on_message(MessageKind.ICE_CANDIDATE, self._on_candidate)

        identity = PresenceRecord(user_id=self.user_id, display_name=self.display_name)
        self.tracker = PresenceTracker(self.channel, identity)
        self.tracker.on("participant_discovered", self._on_discovered)
        self.tracker.on("participant_removed", self._on_removed)

        try:
            await self.tracker.join()
        except Exception as e:
            logger.error(f"{self.user_id} could not join relay channel for {self.meeting_id}: {e}")
            await self.leave()
            raise
        if self.state == SessionState.LEFT:
            await self.tracker.leave()
            return None
        if self.state == SessionState.JOINING:
            self.state = SessionState.JOINED
            logger.info(f"{self.user_id} joined meeting {self.meeting_id}")
        return self.media

    async def leave(self):
        """Close every link, release media and presence. Safe to repeat."""
        if self.state == SessionState.LEFT:
            return
        self.state = SessionState.LEFT
        logger.info(f"{self.user_id} leaving meeting {self.meeting_id}")

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        links = list(self.links.values())
        self.links.clear()
        await asyncio.gather(*(link.close() for link in links), return_exceptions=True)

        self.media.stop()

        if self.router is not None:
            self.router.close()
        if self.tracker is not None:
            try:
                await self.tracker.leave()
            except Exception as e:
                logger.warning(f"Error leaving presence for {self.meeting_id}: {e}")
        self.participants.clear()
        self.retries.clear()

    @property
    def active(self) -> bool:
        return self.state in (SessionState.JOINING, SessionState.JOINED)

    # ---------- media controls ----------
    def toggle_local_video(self, enabled: bool):
        self.media.set_video_enabled(enabled)

    def toggle_local_audio(self, enabled: bool):
        self.media.set_audio_enabled(enabled)

    # ---------- task bookkeeping ----------
    def _spawn(self, coro) -> Optional[asyncio.Task]:
        if not self.active:
            coro.close()
            return None
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Session task failed: {exc}", exc_info=exc)

    async def drain(self):
        """Wait until no coordinator task is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------- links ----------
    def _should_initiate(self, remote_id: str, via: str) -> bool:
        if self.initiator_policy == POLICY_LOWER_ID:
            return self.user_id < remote_id
        return via == VIA_SYNC

    def _discard_link(self, link: PeerLink):
        link.remove_all_listeners()
        link.abort()
        self._spawn(link.close())

    def _create_link(self, remote_id: str, is_initiator: bool, restart: bool = False) -> PeerLink:
        old = self.links.pop(remote_id, None)
        if old is not None:
            self._discard_link(old)

        link = PeerLink(
            self.user_id, remote_id, is_initiator, self.router, self.media.subscribe(),
            ice_servers=self.ice_servers, transport_factory=self.transport_factory, restart=restart,
        )
        link.on("stream_attached", self._on_stream_attached)
        link.on("connection_state", self._on_connection_state)
        link.on("failed", self._on_link_failed)
        self.links[remote_id] = link
        logger.info(f"Created {link!r}")
        return link

    def _ensure_participant(self, user_id: str, display_name: str) -> Participant:
        participant = self.participants.get(user_id)
        if participant is None:
            participant = Participant(user_id=user_id, display_name=display_name)
            self.participants[user_id] = participant
            self.emit("participant_joined", participant)
        return participant

    def _on_discovered(self, record: PresenceRecord, via: str):
        if not self.active:
            return
        participant = self._ensure_participant(record.user_id, record.display_name)
        participant.display_name = record.display_name
        if record.user_id in self.links:
            return
        if self._should_initiate(record.user_id, via):
            link = self._create_link(record.user_id, is_initiator=True)
            self._spawn(link.start())
        else:
            # responder link queues candidates that arrive ahead of the offer
            self._create_link(record.user_id, is_initiator=False)
            logger.info(f"Waiting for offer from {record.user_id}")

    def _on_removed(self, user_id: str):
        link = self.links.pop(user_id, None)
        if link is not None:
            self._discard_link(link)
        self.retries.pop(user_id, None)
        if self.participants.pop(user_id, None) is not None:
            self.emit("participant_removed", user_id, RemovalReason.LEFT)

    def _on_offer(self, message: HandshakeMessage):
        if not self.active:
            return
        remote_id = message.sender
        restart = bool(message.payload.get("restart"))
        link = self.links.get(remote_id)
        if link is not None and link.is_initiator and link.state in (
                NegotiationState.NEW, NegotiationState.HAVE_LOCAL_OFFER):
            if restart and not link.restart:
                # the remote side failed on our offer and is retrying
                logger.info(f"{remote_id} restarted negotiation: yielding to remote offer")
            elif self.user_id < remote_id:
                logger.info(f"Offer collision with {remote_id}: keeping local offer")
                return
            else:
                logger.info(f"Offer collision with {remote_id}: yielding to remote offer")

        display_name = remote_id
        if self.tracker is not None and remote_id in self.tracker.known:
            display_name = self.tracker.known[remote_id].display_name
        self._ensure_participant(remote_id, display_name)

        if link is None or link.is_initiator or link.state != NegotiationState.NEW:
            link = self._create_link(remote_id, is_initiator=False)
        self._spawn(link.handle_offer(message.payload))

    def _on_answer(self, message: HandshakeMessage):
        link = self.links.get(message.sender)
        if link is None:
            logger.debug(f"Answer from {message.sender} has no link")
            return
        self._spawn(link.handle_answer(message.payload))

    def _on_candidate(self, message: HandshakeMessage):
        link = self.links.get(message.sender)
        if link is None:
            logger.debug(f"Candidate from {message.sender} has no link")
            return
        self._spawn(link.add_remote_candidate(message.payload))

    def _on_stream_attached(self, user_id: str, stream):
        participant = self.participants.get(user_id)
        if participant is None:
            return
        participant.media_stream = stream
        self.emit("stream_attached", user_id, stream)
        self.emit("participant_updated", participant)

    def _on_connection_state(self, user_id: str, state: str):
        participant = self.participants.get(user_id)
        if participant is not None and state == "connected":
            participant.connection_state = ConnectionState.CONNECTED
            self.emit("participant_updated", participant)

    def _on_link_failed(self, user_id: str, error: Exception):
        if not self.active or user_id not in self.links:
            return
        attempts = self.retries.get(user_id, 0)
        if attempts < self.max_link_retries:
            self.retries[user_id] = attempts + 1
            logger.warning(f"Recreating link to {user_id} (retry {attempts + 1}/{self.max_link_retries})")
            link = self._create_link(user_id, is_initiator=True, restart=True)
            self._spawn(link.start())
            return

        logger.error(f"Giving up on {user_id}: {error}")
        self._discard_link(self.links.pop(user_id))
        participant = self.participants.pop(user_id, None)
        if participant is not None:
            participant.connection_state = ConnectionState.FAILED
            self.emit("participant_updated", participant)
            self.emit("participant_removed", user_id, RemovalReason.CONNECTION_FAILED)


def create_session(meeting_id: str, user_id: str, display_name: str,
                   settings: Optional[Dict[str, Any]] = None,
                   ice_config: Optional[Dict[str, Any]] = None) -> SessionCoordinator:
    """Builds a coordinator wired to the websocket relay and configured media."""
    settings = settings or get_session_settings()
    camera = settings.get("camera", {})
    if settings.get("media_backend") == "synthetic":
        backend = SyntheticBackend(display_name, camera.get("width", 640), camera.get("height", 480))
    else:
        backend = DeviceBackend(camera.get("width", 640), camera.get("height", 480), camera.get("fps", 30))

    channel = WebSocketRelayChannel(
        settings["relay_url"], meeting_id,
        reconnect_delay=settings.get("relay_reconnect_delay", 1.0),
        max_reconnect_delay=settings.get("relay_max_reconnect_delay", 30.0),
    )
    return SessionCoordinator(
        meeting_id, user_id, display_name, channel, LocalMediaSource(backend),
        settings=settings, ice_servers=build_ice_servers(ice_config or get_initial_ice_config()),
    )
