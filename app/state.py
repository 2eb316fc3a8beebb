import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from app.config import get_initial_ice_config

logger = logging.getLogger("state")


@dataclass
class RelayConnection:
    """One websocket subscribed to a meeting topic."""
    connection_id: str
    meeting_id: str
    socket: Any
    presence_key: Optional[str] = None
    presence: Optional[Dict[str, Any]] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


ice_config: Dict[str, Any] = {}
ice_lock = asyncio.Lock()

# meeting_id -> {connection_id: RelayConnection}
meetings: Dict[str, Dict[str, RelayConnection]] = {}
meetings_lock = asyncio.Lock()


async def init_state():
    global ice_config
    if not ice_config:
        ice_config = get_initial_ice_config()
        logger.info("ICE config initialized successfully")


async def shutdown_state():
    async with meetings_lock:
        sockets = [c.socket for room in meetings.values() for c in room.values()]
        meetings.clear()
    for socket in sockets:
        try:
            await socket.close()
        except Exception as e:
            logger.warning(f"Error closing relay socket: {e}")
    logger.info(f"Relay state shut down ({len(sockets)} sockets closed)")


async def get_ice_config_state() -> Dict[str, Any]:
    async with ice_lock:
        return dict(ice_config)


async def update_ice_config_state(new_config: Dict[str, Any]) -> Dict[str, Any]:
    async with ice_lock:
        if "use_turn" in new_config:
            ice_config["use_turn"] = bool(new_config["use_turn"])
        if "urls" in new_config and isinstance(new_config["urls"], list):
            ice_config["urls"] = [u.strip() for u in new_config["urls"] if isinstance(u, str) and u.strip()]
        if "username" in new_config and new_config["username"] is not None:
            ice_config["username"] = str(new_config["username"])
        if "credential" in new_config and new_config["credential"] is not None:
            ice_config["credential"] = str(new_config["credential"])
        if "relay_only" in new_config:
            ice_config["relay_only"] = bool(new_config["relay_only"])
        return dict(ice_config)


def _snapshot(room: Dict[str, RelayConnection]) -> Dict[str, List[Dict[str, Any]]]:
    state: Dict[str, List[Dict[str, Any]]] = {}
    for conn in room.values():
        if conn.presence_key is not None:
            state.setdefault(conn.presence_key, []).append(dict(conn.presence))
    return state


async def add_connection(meeting_id: str, socket) -> Tuple[RelayConnection, Dict[str, List[Dict[str, Any]]]]:
    """Registers a subscriber and returns it with the current presence snapshot."""
    async with meetings_lock:
        conn = RelayConnection(connection_id=str(uuid.uuid4()), meeting_id=meeting_id, socket=socket)
        room = meetings.setdefault(meeting_id, {})
        room[conn.connection_id] = conn
        logger.info(f"Connection {conn.connection_id} subscribed to meeting {meeting_id} ({len(room)} total)")
        return conn, _snapshot(room)


async def remove_connection(conn: RelayConnection) -> Tuple[List[Any], Dict[str, List[Dict[str, Any]]]]:
    """Unregisters a subscriber. Returns (remaining sockets, presence leaves)."""
    async with meetings_lock:
        room = meetings.get(conn.meeting_id, {})
        room.pop(conn.connection_id, None)
        leaves = {}
        if conn.presence_key is not None:
            leaves = {conn.presence_key: [dict(conn.presence)]}
            conn.presence_key = None
            conn.presence = None
        if not room:
            meetings.pop(conn.meeting_id, None)
            logger.info(f"Meeting {conn.meeting_id} is empty")
        logger.info(f"Connection {conn.connection_id} left meeting {conn.meeting_id}")
        return [c.socket for c in room.values()], leaves


async def set_presence(conn: RelayConnection, key: str, payload: Dict[str, Any]) -> Tuple[List[Any], Dict[str, list], Dict[str, list]]:
    """Tracks (or replaces) a connection's presence. Returns (sockets, joins, leaves)."""
    async with meetings_lock:
        leaves = {}
        if conn.presence_key is not None:
            leaves = {conn.presence_key: [dict(conn.presence)]}
        conn.presence_key = key
        conn.presence = dict(payload)
        room = meetings.get(conn.meeting_id, {})
        return [c.socket for c in room.values()], {key: [dict(payload)]}, leaves


async def clear_presence(conn: RelayConnection) -> Tuple[List[Any], Dict[str, list]]:
    async with meetings_lock:
        if conn.presence_key is None:
            return [], {}
        leaves = {conn.presence_key: [dict(conn.presence)]}
        conn.presence_key = None
        conn.presence = None
        room = meetings.get(conn.meeting_id, {})
        return [c.socket for c in room.values()], leaves


async def get_peer_sockets(conn: RelayConnection) -> List[Any]:
    """Every other subscriber of the connection's meeting."""
    async with meetings_lock:
        room = meetings.get(conn.meeting_id, {})
        return [c.socket for c in room.values() if c.connection_id != conn.connection_id]


async def get_presence_snapshot(meeting_id: str) -> Optional[Dict[str, List[Dict[str, Any]]]]:
    async with meetings_lock:
        room = meetings.get(meeting_id)
        if room is None:
            return None
        return _snapshot(room)


async def get_all_meetings() -> Dict[str, Dict[str, Any]]:
    async with meetings_lock:
        return {
            meeting_id: {
                "connections": len(room),
                "participants": sorted(_snapshot(room).keys()),
            }
            for meeting_id, room in meetings.items()
        }


async def cleanup_empty_meetings() -> List[str]:
    """Drops meetings with no subscribers left."""
    async with meetings_lock:
        empty = [meeting_id for meeting_id, room in meetings.items() if not room]
        for meeting_id in empty:
            meetings.pop(meeting_id, None)
        if empty:
            logger.info(f"Removed {len(empty)} empty meetings")
        else:
            logger.debug("No empty meetings to clean up")
        return empty
