# drivers/relay.py
import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import websockets
from pyee.asyncio import AsyncIOEventEmitter

logger = logging.getLogger("relay")


class RelayError(Exception):
    """Relay channel operation attempted in the wrong state."""


class ChannelStatus(str, Enum):
    IDLE = "IDLE"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    CLOSED = "CLOSED"


class RelayChannel(AsyncIOEventEmitter):
    """
    Publish/subscribe channel for one meeting.

    Events:
      status(status)                      subscription state changed
      presence_sync()                     presence_state() holds a full snapshot
      presence_join(key, new_presences)   presences added under key
      presence_leave(key, left_presences) presences removed under key
      broadcast(event, payload)           message published by another member
    """

    def __init__(self, topic: str):
        super().__init__()
        self.topic = topic
        self.status = ChannelStatus.IDLE

    def _set_status(self, status: ChannelStatus):
        if status != self.status:
            self.status = status
            logger.info(f"Channel {self.topic} status={status.value}")
            self.emit("status", status)

    async def subscribe(self):
        raise NotImplementedError

    async def unsubscribe(self):
        raise NotImplementedError

    async def track(self, key: str, payload: Dict[str, Any]):
        raise NotImplementedError

    async def untrack(self):
        raise NotImplementedError

    async def send(self, event: str, payload: Dict[str, Any]):
        raise NotImplementedError

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        raise NotImplementedError


class InMemoryRelay:
    """Process-local relay hub. Delivery is synchronous, in publish order."""

    def __init__(self):
        self.subscribers: Dict[str, List["InMemoryChannel"]] = {}
        # topic -> [(channel, key, payload)]
        self.presences: Dict[str, List[tuple]] = {}

    def channel(self, topic: str) -> "InMemoryChannel":
        return InMemoryChannel(self, topic)

    def snapshot(self, topic: str) -> Dict[str, List[Dict[str, Any]]]:
        state: Dict[str, List[Dict[str, Any]]] = {}
        for _, key, payload in self.presences.get(topic, []):
            state.setdefault(key, []).append(dict(payload))
        return state

    def _live(self, topic: str) -> List["InMemoryChannel"]:
        return [c for c in self.subscribers.get(topic, []) if c.status == ChannelStatus.SUBSCRIBED]

    def _publish_presence(self, topic: str, joins: Dict[str, list], leaves: Dict[str, list]):
        for channel in self._live(topic):
            for key, presences in joins.items():
                channel.emit("presence_join", key, presences)
            for key, presences in leaves.items():
                channel.emit("presence_leave", key, presences)
            channel.emit("presence_sync")

    def _track(self, channel: "InMemoryChannel", key: str, payload: Dict[str, Any]):
        entries = self.presences.setdefault(channel.topic, [])
        for i, (owner, old_key, _) in enumerate(entries):
            if owner is channel and old_key == key:
                entries[i] = (channel, key, dict(payload))
                return
        entries.append((channel, key, dict(payload)))
        self._publish_presence(channel.topic, {key: [dict(payload)]}, {})

    def _untrack(self, channel: "InMemoryChannel"):
        entries = self.presences.get(channel.topic, [])
        removed = [e for e in entries if e[0] is channel]
        if not removed:
            return
        self.presences[channel.topic] = [e for e in entries if e[0] is not channel]
        leaves: Dict[str, list] = {}
        for _, key, payload in removed:
            leaves.setdefault(key, []).append(dict(payload))
        self._publish_presence(channel.topic, {}, leaves)

    def _broadcast(self, sender: "InMemoryChannel", event: str, payload: Dict[str, Any]):
        for channel in self._live(sender.topic):
            if channel is not sender:
                channel.emit("broadcast", event, json.loads(json.dumps(payload)))


class InMemoryChannel(RelayChannel):
    def __init__(self, hub: InMemoryRelay, topic: str):
        super().__init__(topic)
        self.hub = hub

    async def subscribe(self):
        subscribers = self.hub.subscribers.setdefault(self.topic, [])
        if self not in subscribers:
            subscribers.append(self)
        self._set_status(ChannelStatus.SUBSCRIBED)
        self.emit("presence_sync")

    async def unsubscribe(self):
        self.hub._untrack(self)
        subscribers = self.hub.subscribers.get(self.topic, [])
        if self in subscribers:
            subscribers.remove(self)
        self._set_status(ChannelStatus.CLOSED)

    async def track(self, key: str, payload: Dict[str, Any]):
        if self.status != ChannelStatus.SUBSCRIBED:
            raise RelayError(f"Cannot track presence on {self.topic}: channel is {self.status.value}")
        self.hub._track(self, key, payload)

    async def untrack(self):
        self.hub._untrack(self)

    async def send(self, event: str, payload: Dict[str, Any]):
        if self.status != ChannelStatus.SUBSCRIBED:
            logger.debug(f"Dropping '{event}' on {self.topic}: channel is {self.status.value}")
            return
        self.hub._broadcast(self, event, payload)

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.hub.snapshot(self.topic)

    def drop(self):
        """Simulate a relay outage: nothing is delivered until reconnect()."""
        self._set_status(ChannelStatus.CHANNEL_ERROR)

    async def reconnect(self):
        await self.subscribe()


class WebSocketRelayChannel(RelayChannel):
    """Client for the bundled relay server (``/meetings/{id}/ws``)."""

    def __init__(self, base_url: str, meeting_id: str,
                 reconnect_delay: float = 1.0, max_reconnect_delay: float = 30.0):
        super().__init__(meeting_id)
        self.url = f"{base_url.rstrip('/')}/meetings/{meeting_id}/ws"
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.ws = None
        self._state: Dict[str, List[Dict[str, Any]]] = {}
        self._tracked: Optional[tuple] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self._retry_count = 0

    async def subscribe(self):
        self._closing = False
        await self._connect()
        self._reader = asyncio.ensure_future(self._run())

    async def _connect(self):
        try:
            self.ws = await websockets.connect(self.url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            self._set_status(ChannelStatus.CHANNEL_ERROR)
            raise RelayError(f"Could not connect to relay {self.url}: {e}") from e
        self._retry_count = 0
        self._set_status(ChannelStatus.SUBSCRIBED)
        if self._tracked is not None:
            key, payload = self._tracked
            await self._send_frame({"type": "track", "key": key, "payload": payload})

    async def _run(self):
        while not self._closing:
            try:
                async for raw in self.ws:
                    self._dispatch(raw)
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(f"Relay connection closed: {e}")
            if self._closing:
                break
            self._set_status(ChannelStatus.CHANNEL_ERROR)
            await self._reconnect()

    async def _reconnect(self):
        while not self._closing:
            delay = min(self.reconnect_delay * (2 ** self._retry_count), self.max_reconnect_delay)
            self._retry_count += 1
            logger.info(f"Reconnecting to relay in {delay:.1f}s (attempt {self._retry_count})")
            await asyncio.sleep(delay)
            try:
                await self._connect()
                return
            except RelayError as e:
                logger.warning(f"Relay reconnection failed: {e}")

    def _dispatch(self, raw):
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON relay frame")
            return

        t = msg.get("type")
        if t == "presence_state":
            self._state = {k: list(v) for k, v in (msg.get("state") or {}).items()}
            self.emit("presence_sync")
        elif t == "presence_diff":
            joins = msg.get("joins") or {}
            leaves = msg.get("leaves") or {}
            for key, presences in joins.items():
                self._state.setdefault(key, []).extend(presences)
            for key, presences in leaves.items():
                remaining = list(self._state.get(key, []))
                for p in presences:
                    if p in remaining:
                        remaining.remove(p)
                if remaining:
                    self._state[key] = remaining
                else:
                    self._state.pop(key, None)
            for key, presences in joins.items():
                self.emit("presence_join", key, presences)
            for key, presences in leaves.items():
                self.emit("presence_leave", key, presences)
            self.emit("presence_sync")
        elif t == "broadcast":
            self.emit("broadcast", msg.get("event"), msg.get("payload") or {})
        elif t == "error":
            logger.warning(f"Relay reported error: {msg.get('reason')}")
        else:
            logger.debug(f"Unknown relay frame type: {t}")

    async def _send_frame(self, frame: Dict[str, Any]):
        if self.ws is None or self.status != ChannelStatus.SUBSCRIBED:
            logger.debug(f"Dropping relay frame {frame.get('type')}: channel is {self.status.value}")
            return
        try:
            await self.ws.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Relay send failed: {e}")

    async def track(self, key: str, payload: Dict[str, Any]):
        self._tracked = (key, dict(payload))
        await self._send_frame({"type": "track", "key": key, "payload": payload})

    async def untrack(self):
        self._tracked = None
        await self._send_frame({"type": "untrack"})

    async def send(self, event: str, payload: Dict[str, Any]):
        await self._send_frame({"type": "broadcast", "event": event, "payload": payload})

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return {k: list(v) for k, v in self._state.items()}

    async def unsubscribe(self):
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self.ws is not None:
            await self.ws.close()
            self.ws = None
        self._state = {}
        self._set_status(ChannelStatus.CLOSED)
