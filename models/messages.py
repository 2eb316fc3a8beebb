# models/messages.py
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class SessionDescriptionPayload(BaseModel):
    sdp: str
    type: str
    # set on offers that replace a failed link
    restart: bool = False


class IceCandidatePayload(BaseModel):
    """Browser-shaped ICE candidate (``RTCIceCandidate.toJSON()``)."""

    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")


class HandshakeMessage(BaseModel):
    """Point-to-point handshake message carried over the broadcast relay."""

    model_config = ConfigDict(populate_by_name=True)

    kind: MessageKind
    sender: str = Field(alias="from")
    to: str
    payload: Dict[str, Any]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"kind"})


class PresenceRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    display_name: str = Field(default="User", alias="displayName")
    joined_at: float = Field(default=0.0, alias="joinedAt")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class IceConfig(BaseModel):
    use_turn: bool = False
    urls: List[str] = []
    username: Optional[str] = None
    credential: Optional[str] = None
    relay_only: bool = False


class MeetingSummary(BaseModel):
    meeting_id: str
    connections: int
    participants: List[str]
