from typing import Optional


class PairingError(Exception):
    """Base class for pairing and negotiation errors."""

    kind = "pairing_error"
    recoverable = True


class RelayError(PairingError):
    """Relay channel operation failed (not joined, connection lost)."""

    kind = "relay_error"


class RelaySubscriptionFailure(RelayError):
    """Pool or session channel join did not reach the SUBSCRIBED state."""

    kind = "relay_subscription_failure"

    def __init__(self, topic: str, status: str, message: Optional[str] = None):
        self.topic = topic
        self.status = status
        super().__init__(message or f"Failed to subscribe to {topic}: {status}")


class NegotiationResourceUnavailable(PairingError):
    """Negotiation step attempted before the local media resource was ready."""

    kind = "negotiation_resource_unavailable"


class NegotiationStepFailure(PairingError):
    """The transport rejected a description or candidate. Fatal to the session."""

    kind = "negotiation_step_failure"
    recoverable = False


class ChannelTransitionFailure(PairingError):
    """Moving from the waiting pool to the session channel failed."""

    kind = "channel_transition_failure"


class InvalidNegotiationState(PairingError):
    kind = "invalid_negotiation_state"


class InvalidSignal(PairingError):
    kind = "invalid_signal"
