# service/presence.py
import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pyee.asyncio import AsyncIOEventEmitter

from drivers.relay import ChannelStatus, RelayChannel
from models.messages import PresenceRecord

logger = logging.getLogger("presence")

VIA_SYNC = "sync"
VIA_JOIN = "join"


class PresenceTracker(AsyncIOEventEmitter):
    """
    Live roster of a meeting's relay channel.

    Each remote identity is discovered exactly once (by sync or by join)
    and removed at most once per disappearance.

    Events:
      participant_discovered(record, via)
      participant_removed(user_id)
    """

    def __init__(self, channel: RelayChannel, identity: PresenceRecord):
        super().__init__()
        self.channel = channel
        self.identity = identity
        self.known: Dict[str, PresenceRecord] = {}
        self.joined = False
        self._was_interrupted = False
        self._attached = True

        self.channel.on("presence_sync", self._on_sync)
        self.channel.on("presence_join", self._on_join)
        self.channel.on("presence_leave", self._on_leave)
        self.channel.on("status", self._on_status)

    @property
    def self_id(self) -> str:
        return self.identity.user_id

    async def join(self):
        """Subscribe to the meeting channel, then announce the local identity."""
        if not self.identity.joined_at:
            self.identity.joined_at = time.time()
        await self.channel.subscribe()
        self.joined = True
        await self.channel.track(self.self_id, self.identity.to_wire())
        logger.info(f"{self.self_id} joined presence on {self.channel.topic}")

    async def leave(self):
        if not self.joined:
            self._detach()
            return
        self.joined = False
        try:
            await self.channel.untrack()
            await self.channel.unsubscribe()
        finally:
            self._detach()
        logger.info(f"{self.self_id} left presence on {self.channel.topic}")

    def _detach(self):
        if not self._attached:
            return
        self._attached = False
        self.channel.remove_listener("presence_sync", self._on_sync)
        self.channel.remove_listener("presence_join", self._on_join)
        self.channel.remove_listener("presence_leave", self._on_leave)
        self.channel.remove_listener("status", self._on_status)

    def _parse(self, presence: Dict[str, Any]) -> Optional[PresenceRecord]:
        try:
            return PresenceRecord.model_validate(presence)
        except ValidationError as e:
            logger.warning(f"Skipping malformed presence payload: {e.error_count()} errors")
            return None

    def _discover(self, record: PresenceRecord, via: str):
        self.known[record.user_id] = record
        logger.info(f"Participant discovered via {via}: {record.user_id}")
        self.emit("participant_discovered", record, via)

    def _remove(self, user_id: str):
        if self.known.pop(user_id, None) is not None:
            logger.info(f"Participant removed: {user_id}")
            self.emit("participant_removed", user_id)

    def _on_sync(self):
        state = self.channel.presence_state()
        present: Dict[str, PresenceRecord] = {}
        for presences in state.values():
            for presence in presences:
                record = self._parse(presence)
                if record is not None and record.user_id != self.self_id:
                    present.setdefault(record.user_id, record)

        for user_id in list(self.known):
            if user_id not in present:
                self._remove(user_id)
        for user_id, record in present.items():
            if user_id not in self.known:
                self._discover(record, VIA_SYNC)

    def _on_join(self, key: str, new_presences: List[Dict[str, Any]]):
        for presence in new_presences:
            record = self._parse(presence)
            if record is None or record.user_id == self.self_id:
                continue
            if record.user_id not in self.known:
                self._discover(record, VIA_JOIN)

    def _on_leave(self, key: str, left_presences: List[Dict[str, Any]]):
        still_present = self.channel.presence_state().get(key)
        for presence in left_presences:
            record = self._parse(presence)
            if record is None or record.user_id == self.self_id:
                continue
            if still_present:
                logger.debug(f"{record.user_id} left one view but is still present")
                continue
            self._remove(record.user_id)

    def _on_status(self, status: ChannelStatus):
        if status == ChannelStatus.CHANNEL_ERROR:
            logger.warning(f"Relay channel {self.channel.topic} interrupted, roster frozen until reconnect")
            self._was_interrupted = True
        elif status == ChannelStatus.SUBSCRIBED and self._was_interrupted and self.joined:
            self._was_interrupted = False
            logger.info(f"Relay channel {self.channel.topic} restored, waiting for presence sync")
