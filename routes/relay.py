# routes/relay.py
import json
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from models.messages import IceConfig, MeetingSummary
from app.state import (get_ice_config_state, update_ice_config_state,
    add_connection, remove_connection, set_presence, clear_presence,
    get_peer_sockets, get_presence_snapshot, get_all_meetings, cleanup_empty_meetings
)

logger = logging.getLogger("relay_server")
router = APIRouter()


async def _fan_out(sockets: List[Any], frame: Dict[str, Any]):
    data = json.dumps(frame)
    for socket in sockets:
        try:
            await socket.send_text(data)
        except Exception as e:
            logger.debug(f"Relay send failed: {e}")


async def _presence_diff(sockets: List[Any], joins: Dict[str, list], leaves: Dict[str, list]):
    if joins or leaves:
        await _fan_out(sockets, {"type": "presence_diff", "joins": joins, "leaves": leaves})


@router.get("/ice_config")
async def get_ice_config():
    """Returns current ICE configuration."""
    config = await get_ice_config_state()
    logger.debug("ICE config requested")
    return config


@router.post("/ice_config")
async def update_ice_config(config: IceConfig):
    """Updates ICE configuration."""
    updated_config = await update_ice_config_state(config.model_dump())
    logger.info("ICE config updated")
    return updated_config


@router.get("/health")
async def health():
    meetings = await get_all_meetings()
    return {"status": "ok", "meetings": len(meetings)}


@router.get("/meetings", response_model=List[MeetingSummary])
async def list_meetings():
    """Returns every meeting with at least one subscriber."""
    meetings = await get_all_meetings()
    return [
        MeetingSummary(meeting_id=meeting_id, connections=info["connections"], participants=info["participants"])
        for meeting_id, info in meetings.items()
    ]


@router.get("/meetings/{meeting_id}/presence")
async def meeting_presence(meeting_id: str):
    """Returns the presence snapshot of a meeting."""
    state = await get_presence_snapshot(meeting_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Meeting not found or empty")
    return {"meeting_id": meeting_id, "state": state}


@router.post("/cleanup")
async def cleanup():
    """Drops meetings without subscribers."""
    removed = await cleanup_empty_meetings()
    return {"status": "ok", "removed": removed}


@router.websocket("/meetings/{meeting_id}/ws")
async def relay_socket(websocket: WebSocket, meeting_id: str):
    """Presence + broadcast relay for one meeting."""
    await websocket.accept()
    conn, snapshot = await add_connection(meeting_id, websocket)
    await websocket.send_text(json.dumps({"type": "presence_state", "state": snapshot}))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "reason": "invalid-json"}))
                continue
            if not isinstance(msg, dict):
                await websocket.send_text(json.dumps({"type": "error", "reason": "invalid-frame"}))
                continue

            t = msg.get("type")
            if t == "track":
                key = msg.get("key")
                payload = msg.get("payload")
                if not isinstance(key, str) or not isinstance(payload, dict):
                    await websocket.send_text(json.dumps({"type": "error", "reason": "invalid-presence"}))
                    continue
                sockets, joins, leaves = await set_presence(conn, key, payload)
                logger.info(f"[TRACK] '{key}' in meeting {meeting_id}")
                await _presence_diff(sockets, joins, leaves)
            elif t == "untrack":
                sockets, leaves = await clear_presence(conn)
                await _presence_diff(sockets, {}, leaves)
            elif t == "broadcast":
                event = msg.get("event")
                if not isinstance(event, str):
                    await websocket.send_text(json.dumps({"type": "error", "reason": "missing-event"}))
                    continue
                sockets = await get_peer_sockets(conn)
                logger.debug(f"[RELAY] {event} in meeting {meeting_id} to {len(sockets)} peers")
                await _fan_out(sockets, {"type": "broadcast", "event": event, "payload": msg.get("payload")})
            else:
                logger.warning(f"Unknown relay frame type: {t}")
                await websocket.send_text(json.dumps({"type": "error", "reason": "unknown-type", "got": t}))
    except WebSocketDisconnect:
        logger.info(f"[DISCONNECT] {conn.connection_id} from meeting {meeting_id}")
    finally:
        sockets, leaves = await remove_connection(conn)
        await _presence_diff(sockets, {}, leaves)
