# models/pairing.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

CHANNEL_PREFIX = "private:chat_room_"

SIGNAL_OFFER = "offer"
SIGNAL_ANSWER = "answer"
SIGNAL_CANDIDATE = "candidate"
SIGNAL_TYPES = (SIGNAL_OFFER, SIGNAL_ANSWER, SIGNAL_CANDIDATE)


def new_client_id() -> str:
    """Generates an opaque client identity, fixed for the lifetime of a client."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def session_channel_name(first_id: str, second_id: str) -> str:
    """Both sides derive the same name from the sorted identity pair."""
    return CHANNEL_PREFIX + "_".join(sorted([first_id, second_id]))


def is_offerer(own_id: str, partner_id: str) -> bool:
    # lexicographically smaller identity offers
    return own_id < partner_id


@dataclass(frozen=True)
class PairingDecision:
    partner_id: str
    session_channel_id: str
    is_offerer: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partner_id": self.partner_id,
            "session_channel_id": self.session_channel_id,
            "is_offerer": self.is_offerer,
        }


def compute_pairing_decision(own_id: str, partner_id: str) -> PairingDecision:
    if own_id == partner_id:
        raise ValueError(f"Cannot pair client {own_id} with itself")
    return PairingDecision(
        partner_id=partner_id,
        session_channel_id=session_channel_name(own_id, partner_id),
        is_offerer=is_offerer(own_id, partner_id),
    )


@dataclass
class WaitingPoolMembership:
    client_id: str
    joined_at: datetime = field(default_factory=utcnow)

    def presence_meta(self) -> Dict[str, Any]:
        return {"joined_at": self.joined_at.isoformat()}


@dataclass(frozen=True)
class QueuedSignal:
    """Negotiation message held until the engine can apply it."""

    type: str
    payload: Optional[Dict[str, Any]] = None
