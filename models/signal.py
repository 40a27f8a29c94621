# models/signal.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal

SignalType = Literal["offer", "answer", "candidate"]


class SessionDescriptionPayload(BaseModel):
    sdp: str
    type: Literal["offer", "answer"]


class CandidatePayload(BaseModel):
    # field names follow the browser RTCIceCandidateInit shape
    candidate: str = ""
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class SignalEnvelope(BaseModel):
    """Broadcast payload exchanged on a session channel."""

    model_config = ConfigDict(populate_by_name=True)

    type: SignalType
    payload: Optional[Dict[str, Any]] = None
    from_: str = Field(alias="from")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class IceConfig(BaseModel):
    use_turn: bool = False
    urls: List[str] = []
    turn_urls: List[str] = []
    username: Optional[str] = None
    credential: Optional[str] = None


class StatusInfo(BaseModel):
    client_id: str
    searching: bool
    in_pool: bool
    pairing_in_progress: bool
    partner_id: Optional[str] = None
    session_channel: Optional[str] = None
    is_offerer: Optional[bool] = None
    negotiation_phase: Optional[str] = None
    connection_state: Optional[str] = None
    queued_signals: int = 0
    has_local_media: bool = False
