import logging
from typing import Callable, Dict, List, Optional

from app.errors import RelayError, RelaySubscriptionFailure
from models.pairing import PairingDecision, WaitingPoolMembership, compute_pairing_decision
from service.relay import Relay, RelayChannel, RelayEvent

logger = logging.getLogger("matchmaking")

WAITING_POOL = "public:waiting_pool"


class MatchmakingCoordinator:
    """
    Waiting pool membership and pairing decisions.

    Decisions are made only from presence that already lists this client, so
    both sides of a pair evaluate the same membership. Partner selection takes
    the first other member in presence (join) order.
    With three or more members waiting at once, two clients can pick different
    partners; nothing here reconciles that.
    """

    def __init__(self, relay: Relay, client_id: str, sink: Callable[[RelayEvent], None],
                 pool_name: str = WAITING_POOL, subscribe_timeout: float = 10.0):
        self.relay = relay
        self.client_id = client_id
        self.pool_name = pool_name
        self.subscribe_timeout = subscribe_timeout
        self.membership: Optional[WaitingPoolMembership] = None
        self.pairing_in_progress = False
        self.last_decision: Optional[PairingDecision] = None
        self._channel: Optional[RelayChannel] = None
        self._sink = sink

    @property
    def channel(self) -> Optional[RelayChannel]:
        return self._channel

    @property
    def in_pool(self) -> bool:
        return self._channel is not None

    async def join_pool(self) -> bool:
        """Enters the waiting pool. Returns False when already joined or pairing."""
        if self._channel is not None or self.pairing_in_progress:
            logger.info(f"[{self.client_id}] already in waiting pool or pairing in progress")
            return False

        channel = self.relay.channel(self.pool_name, key=self.client_id, sink=self._sink)
        self._channel = channel
        logger.info(f"[{self.client_id}] joining {self.pool_name}")
        try:
            await channel.subscribe(timeout=self.subscribe_timeout)
        except RelaySubscriptionFailure as e:
            if self._channel is channel:
                self._channel = None
                self.membership = None
            await self.relay.remove_channel(channel)
            if e.status == "CLOSED":
                # left while joining
                return False
            logger.error(f"[{self.client_id}] {e}")
            raise

        if self._channel is not channel:
            await self.relay.remove_channel(channel)
            return False

        membership = WaitingPoolMembership(self.client_id)
        self.membership = membership
        try:
            await channel.track(membership.presence_meta())
        except RelayError as e:
            if self._channel is channel:
                self._channel = None
                self.membership = None
            await self.relay.remove_channel(channel)
            logger.error(f"[{self.client_id}] could not announce presence: {e}")
            raise RelaySubscriptionFailure(self.pool_name, "CHANNEL_ERROR", str(e)) from e
        return True

    async def leave_pool(self) -> bool:
        """Leaves the waiting pool. Returns False when not in it."""
        channel, self._channel = self._channel, None
        self.membership = None
        if channel is None:
            logger.debug(f"[{self.client_id}] no waiting pool channel to leave")
            return False

        logger.info(f"[{self.client_id}] leaving {self.pool_name}")
        try:
            await channel.unsubscribe()
        except RelayError as e:
            logger.error(f"[{self.client_id}] error unsubscribing from waiting pool: {e}")
        await self.relay.remove_channel(channel)
        return True

    def on_presence_sync(self, event: RelayEvent, has_session: bool) -> Optional[PairingDecision]:
        """Evaluates a presence notification; returns a decision at most once per pairing."""
        if event.channel is not self._channel or self._channel is None:
            logger.debug(f"[{self.client_id}] ignoring presence from stale pool channel")
            return None
        if self.pairing_in_progress or has_session:
            return None
        if self.client_id not in event.payload:
            # join snapshot sent before our own track(); the partner cannot see us yet
            return None

        others = self.other_members(event.payload)
        logger.debug(f"[{self.client_id}] pool presence: {len(others)} other member(s)")
        if not others:
            return None

        partner_id = others[0]
        decision = compute_pairing_decision(self.client_id, partner_id)
        self.pairing_in_progress = True
        self.last_decision = decision
        logger.info(f"[{self.client_id}] found partner {partner_id}, channel "
                    f"{decision.session_channel_id}, offerer={decision.is_offerer}")
        return decision

    def other_members(self, state: Dict[str, List[dict]]) -> List[str]:
        return [key for key in state if key != self.client_id]

    def complete_pairing(self) -> None:
        self.pairing_in_progress = False

    def reset(self) -> None:
        self.pairing_in_progress = False
        self.last_decision = None
