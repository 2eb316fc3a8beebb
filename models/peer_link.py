# models/peer_link.py
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pydantic import ValidationError
from pyee.asyncio import AsyncIOEventEmitter

from models.messages import IceCandidatePayload, MessageKind, SessionDescriptionPayload
from service.tracks import RemoteStream

logger = logging.getLogger("peer_link")


class NegotiationError(Exception):
    """Handshake for a single peer link could not be completed."""


class NegotiationState(str, Enum):
    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    FAILED = "failed"
    CLOSED = "closed"


TRANSITIONS = {
    NegotiationState.NEW: {
        NegotiationState.HAVE_LOCAL_OFFER,
        NegotiationState.HAVE_REMOTE_OFFER,
        NegotiationState.FAILED,
        NegotiationState.CLOSED,
    },
    NegotiationState.HAVE_LOCAL_OFFER: {NegotiationState.STABLE, NegotiationState.FAILED, NegotiationState.CLOSED},
    NegotiationState.HAVE_REMOTE_OFFER: {NegotiationState.STABLE, NegotiationState.FAILED, NegotiationState.CLOSED},
    NegotiationState.STABLE: {NegotiationState.FAILED, NegotiationState.CLOSED},
    NegotiationState.FAILED: {NegotiationState.CLOSED},
    NegotiationState.CLOSED: set(),
}


def default_transport_factory(ice_servers: List[RTCIceServer]) -> RTCPeerConnection:
    return RTCPeerConnection(RTCConfiguration(iceServers=ice_servers))


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return IceCandidatePayload(
        candidate="candidate:" + candidate_to_sdp(candidate),
        sdp_mid=candidate.sdpMid,
        sdp_mline_index=candidate.sdpMLineIndex,
    ).model_dump(by_alias=True)


def candidate_from_payload(payload: Dict[str, Any]) -> RTCIceCandidate:
    data = IceCandidatePayload.model_validate(payload)
    line = data.candidate
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.sdp_mid
    candidate.sdpMLineIndex = data.sdp_mline_index
    return candidate


class PeerLink(AsyncIOEventEmitter):
    """
    One media transport between the local user and one remote participant.

    States: new -> (have-local-offer | have-remote-offer) -> stable -> closed,
    with failed reachable from any non-terminal state. Handshake steps on a
    link run one at a time; a step that resumes after close() does nothing.

    Events:
      state_change(link, old, new)
      stream_attached(remote_user_id, stream)
      connection_state(remote_user_id, state)
      failed(remote_user_id, error)
    """

    def __init__(self, local_user_id: str, remote_user_id: str, is_initiator: bool,
                 router, local_tracks: List[Any], ice_servers: Optional[List[RTCIceServer]] = None,
                 transport_factory: Optional[Callable[[List[RTCIceServer]], Any]] = None,
                 restart: bool = False):
        super().__init__()
        self.local_user_id = local_user_id
        self.remote_user_id = remote_user_id
        self.is_initiator = is_initiator
        self.restart = restart
        self.router = router
        self.state = NegotiationState.NEW
        self.remote_stream = RemoteStream()
        self.error: Optional[Exception] = None
        self._pending_candidates: List[RTCIceCandidate] = []
        self._step_lock = asyncio.Lock()
        self._released = False

        factory = transport_factory or default_transport_factory
        self.pc = factory(list(ice_servers or []))
        for track in local_tracks:
            self.pc.addTrack(track)

        self.pc.on("track", self._on_track)
        self.pc.on("icecandidate", self._on_icecandidate)
        self.pc.on("connectionstatechange", self._on_connectionstatechange)

    def __repr__(self):
        role = "initiator" if self.is_initiator else "responder"
        return f"PeerLink({self.local_user_id}->{self.remote_user_id}, {role}, {self.state.value})"

    @property
    def closed(self) -> bool:
        return self.state == NegotiationState.CLOSED

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)

    def _transition(self, new: NegotiationState):
        old = self.state
        if new not in TRANSITIONS[old]:
            raise NegotiationError(f"Invalid transition {old.value} -> {new.value} for {self.remote_user_id}")
        self.state = new
        logger.debug(f"Link {self.remote_user_id}: {old.value} -> {new.value}")
        self.emit("state_change", self, old, new)

    def _fail(self, error: Exception):
        if self.state in (NegotiationState.CLOSED, NegotiationState.FAILED):
            return
        logger.error(f"Negotiation with {self.remote_user_id} failed: {error}")
        self.error = error
        self._transition(NegotiationState.FAILED)
        self.emit("failed", self.remote_user_id, error)

    # ---------- transport callbacks ----------
    def _on_track(self, track):
        if self.closed:
            return
        logger.info(f"Received remote {track.kind} track from {self.remote_user_id}")
        self.remote_stream.add_track(track)
        self.emit("stream_attached", self.remote_user_id, self.remote_stream)

    def _on_icecandidate(self, candidate):
        if self.closed or candidate is None:
            return
        asyncio.ensure_future(self._send(MessageKind.ICE_CANDIDATE, candidate_to_payload(candidate)))

    def _on_connectionstatechange(self):
        if self.closed:
            return
        state = self.pc.connectionState
        logger.info(f"Connection with {self.remote_user_id} state={state}")
        self.emit("connection_state", self.remote_user_id, state)
        if state == "failed":
            self._fail(NegotiationError(f"Transport to {self.remote_user_id} failed"))

    async def _send(self, kind: MessageKind, payload: Dict[str, Any]):
        if self.closed:
            return
        await self.router.send(kind, self.remote_user_id, payload)

    # ---------- handshake ----------
    async def start(self):
        """Initiator path: create and send the offer."""
        if not self.is_initiator:
            raise NegotiationError("Only the initiating side creates an offer")
        async with self._step_lock:
            if self.state != NegotiationState.NEW:
                return
            try:
                offer = await self.pc.createOffer()
                if self.closed:
                    return
                await self.pc.setLocalDescription(offer)
                if self.closed:
                    return
                self._transition(NegotiationState.HAVE_LOCAL_OFFER)
                desc = self.pc.localDescription
                logger.info(f"Sending offer to {self.remote_user_id}")
                offer_payload = {"sdp": desc.sdp, "type": desc.type}
                if self.restart:
                    offer_payload["restart"] = True
                await self._send(MessageKind.OFFER, offer_payload)
            except Exception as e:
                if not self.closed:
                    self._fail(e)

    async def handle_offer(self, payload: Dict[str, Any]):
        """Responder path: apply the remote offer, answer it."""
        async with self._step_lock:
            if self.closed:
                return
            if self.state != NegotiationState.NEW:
                logger.warning(f"Ignoring offer from {self.remote_user_id} in state {self.state.value}")
                return
            try:
                desc = SessionDescriptionPayload.model_validate(payload)
                if desc.type != "offer":
                    raise NegotiationError(f"Expected offer, got {desc.type}")
                await self.pc.setRemoteDescription(RTCSessionDescription(sdp=desc.sdp, type=desc.type))
                if self.closed:
                    return
                self._transition(NegotiationState.HAVE_REMOTE_OFFER)
                await self._flush_candidates()
                if self.closed:
                    return
                answer = await self.pc.createAnswer()
                if self.closed:
                    return
                await self.pc.setLocalDescription(answer)
                if self.closed:
                    return
                self._transition(NegotiationState.STABLE)
                local = self.pc.localDescription
                logger.info(f"Sending answer to {self.remote_user_id}")
                await self._send(MessageKind.ANSWER, {"sdp": local.sdp, "type": local.type})
            except Exception as e:
                if not self.closed:
                    self._fail(e)

    async def handle_answer(self, payload: Dict[str, Any]):
        """Initiator completion: apply the remote answer."""
        async with self._step_lock:
            if self.state != NegotiationState.HAVE_LOCAL_OFFER:
                logger.debug(f"Ignoring answer from {self.remote_user_id} in state {self.state.value}")
                return
            try:
                desc = SessionDescriptionPayload.model_validate(payload)
                if desc.type != "answer":
                    raise NegotiationError(f"Expected answer, got {desc.type}")
                await self.pc.setRemoteDescription(RTCSessionDescription(sdp=desc.sdp, type=desc.type))
                if self.closed:
                    return
                self._transition(NegotiationState.STABLE)
                await self._flush_candidates()
            except Exception as e:
                if not self.closed:
                    self._fail(e)

    async def add_remote_candidate(self, payload: Dict[str, Any]):
        """Apply a remote candidate, or hold it until a remote description exists."""
        async with self._step_lock:
            if self.state in (NegotiationState.CLOSED, NegotiationState.FAILED):
                return
            try:
                candidate = candidate_from_payload(payload)
            except (ValidationError, ValueError, IndexError, AssertionError) as e:
                logger.warning(f"Dropping malformed candidate from {self.remote_user_id}: {e}")
                return
            if self.pc.remoteDescription is None:
                logger.debug(f"Queueing early candidate from {self.remote_user_id}")
                self._pending_candidates.append(candidate)
                return
            try:
                await self.pc.addIceCandidate(candidate)
            except Exception as e:
                if not self.closed:
                    logger.warning(f"Failed to add candidate from {self.remote_user_id}: {e}")

    async def _flush_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug(f"Applying {len(pending)} queued candidates from {self.remote_user_id}")
        for candidate in pending:
            if self.closed:
                return
            try:
                await self.pc.addIceCandidate(candidate)
            except Exception as e:
                logger.warning(f"Failed to add queued candidate from {self.remote_user_id}: {e}")

    def abort(self):
        """Stop negotiating immediately. The transport is released by close()."""
        if self.closed:
            return
        self._transition(NegotiationState.CLOSED)
        self._pending_candidates = []

    async def close(self):
        if self._released:
            return
        self._released = True
        self.abort()
        try:
            await self.pc.close()
        except Exception as e:
            logger.warning(f"Error closing transport to {self.remote_user_id}: {e}")
        self.remove_all_listeners()
        logger.info(f"Closed link to {self.remote_user_id}")
