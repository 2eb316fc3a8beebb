# models/participant.py
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Any


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class RemovalReason(str, Enum):
    LEFT = "left"
    CONNECTION_FAILED = "connection_failed"


@dataclass
class Participant:
    """A remote member of the meeting as seen by the local session.

    Keyed by ``user_id``; the coordinator keeps at most one per user.
    """

    user_id: str
    display_name: str
    media_stream: Optional[Any] = None
    connection_state: ConnectionState = ConnectionState.CONNECTING

    @property
    def has_stream(self) -> bool:
        return self.media_stream is not None
