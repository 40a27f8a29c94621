"""
Presence/broadcast relay abstraction.

A relay hands out named channels. A channel joins a topic under a presence key,
publishes presence metadata with ``track()``, and exchanges broadcast messages
with the other subscribers of the same topic. Incoming traffic is delivered as
``RelayEvent`` objects to the ``sink`` given when the channel was created; sinks
must not block (the client puts events on its inbox queue).

``LocalRelay`` is the in-process hub. It backs the tests, single-process
deployments and the ``/relay`` WebSocket endpoint.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from app.errors import RelayError, RelaySubscriptionFailure

logger = logging.getLogger("relay")

PRESENCE = "presence"
BROADCAST = "broadcast"
# delivered once when the relay drops a joined channel
LOST = "lost"

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"

# channel states
STATE_CLOSED = "closed"
STATE_JOINING = "joining"
STATE_JOINED = "joined"
STATE_LEAVING = "leaving"
STATE_ERRORED = "errored"

PresenceState = Dict[str, List[Dict[str, Any]]]


@dataclass
class RelayEvent:
    channel: "RelayChannel"
    kind: str
    payload: Dict[str, Any]
    event: Optional[str] = None


class RelayChannel:
    """Base class for a subscription to one relay topic."""

    def __init__(self, topic: str, key: str, sink: Callable[[RelayEvent], None]):
        self.topic = topic
        self.key = key
        self.state = STATE_CLOSED
        self._sink = sink
        self._presence: PresenceState = {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.topic} key={self.key} state={self.state}>"

    @property
    def joined(self) -> bool:
        return self.state == STATE_JOINED

    def presence_state(self) -> PresenceState:
        return {key: list(metas) for key, metas in self._presence.items()}

    async def subscribe(self, timeout: float = 10.0) -> None:
        """Joins the topic; raises ``RelaySubscriptionFailure`` unless the relay acknowledges."""
        if self.state == STATE_JOINED:
            return
        self.state = STATE_JOINING
        try:
            status = await asyncio.wait_for(self._join(), timeout)
        except asyncio.TimeoutError:
            status = TIMED_OUT
        except RelayError as exc:
            logger.warning(f"Join of {self.topic} failed: {exc}")
            status = CHANNEL_ERROR

        if self.state != STATE_JOINING:
            # unsubscribed while the join was in flight
            raise RelaySubscriptionFailure(self.topic, CLOSED)
        if status != SUBSCRIBED:
            self.state = STATE_ERRORED
            raise RelaySubscriptionFailure(self.topic, status)
        self.state = STATE_JOINED
        logger.info(f"Subscribed to {self.topic} as {self.key}")

    async def unsubscribe(self) -> None:
        if self.state in (STATE_CLOSED, STATE_LEAVING):
            return
        previous = self.state
        self.state = STATE_LEAVING
        try:
            if previous in (STATE_JOINED, STATE_JOINING):
                await self._leave()
            elif previous == STATE_ERRORED:
                # the relay may still have accepted a join that timed out here
                try:
                    await self._leave()
                except RelayError as e:
                    logger.debug(f"Leave after failed join of {self.topic} not delivered: {e}")
        finally:
            self.state = STATE_CLOSED
            self._presence = {}
        logger.info(f"Unsubscribed from {self.topic}")

    async def track(self, meta: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _join(self) -> str:
        raise NotImplementedError

    async def _leave(self) -> None:
        raise NotImplementedError

    def _lose(self, reason: str) -> bool:
        """Marks a joined channel as dropped by the relay and notifies the sink once."""
        if self.state != STATE_JOINED:
            return False
        logger.warning(f"Relay dropped {self.topic}: {reason}")
        self._dispatch(LOST, {"reason": reason})
        self.state = STATE_ERRORED
        self._presence = {}
        return True

    def _dispatch(self, kind: str, payload: Dict[str, Any], event: Optional[str] = None) -> None:
        if self.state not in (STATE_JOINING, STATE_JOINED):
            return
        if kind == PRESENCE:
            self._presence = {key: list(metas) for key, metas in payload.items()}
        self._sink(RelayEvent(self, kind, payload, event))


class Relay:
    """Factory and owner of relay channels."""

    def channel(self, topic: str, key: str, sink: Callable[[RelayEvent], None]) -> RelayChannel:
        raise NotImplementedError

    async def remove_channel(self, channel: RelayChannel) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LocalChannel(RelayChannel):
    def __init__(self, relay: "LocalRelay", topic: str, key: str, sink: Callable[[RelayEvent], None]):
        super().__init__(topic, key, sink)
        self._relay = relay

    async def _join(self) -> str:
        return await self._relay._attach(self)

    async def _leave(self) -> None:
        await self._relay._detach(self)

    async def track(self, meta: Dict[str, Any]) -> None:
        if not self.joined:
            raise RelayError(f"Cannot track presence on {self.topic}: channel is {self.state}")
        self._relay._track(self, meta)

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.joined:
            raise RelayError(f"Cannot send on {self.topic}: channel is {self.state}")
        self._relay._broadcast(self, event, payload)


class LocalRelay(Relay):
    """
    In-process relay hub.

    Presence state maps each key to the metadata tracked by its channels, in
    join order. Every join, track and leave pushes a full presence snapshot to
    all subscribers of the topic. Broadcasts are not echoed to the sender.
    """

    def __init__(self, ack_delay: float = 0.0):
        self.ack_delay = ack_delay
        self._subscribers: Dict[str, Dict[RelayChannel, None]] = {}
        self._tracked: Dict[str, Dict[RelayChannel, Dict[str, Any]]] = {}
        self._channels: List[RelayChannel] = []

    def channel(self, topic: str, key: str, sink: Callable[[RelayEvent], None]) -> RelayChannel:
        ch = LocalChannel(self, topic, key, sink)
        self._channels.append(ch)
        return ch

    async def remove_channel(self, channel: RelayChannel) -> None:
        if channel.state != STATE_CLOSED:
            await channel.unsubscribe()
        if channel in self._channels:
            self._channels.remove(channel)

    async def close(self) -> None:
        for ch in list(self._channels):
            await self.remove_channel(ch)

    def presence(self, topic: str) -> Dict[str, List[Dict[str, Any]]]:
        state: Dict[str, List[Dict[str, Any]]] = {}
        for ch, meta in self._tracked.get(topic, {}).items():
            state.setdefault(ch.key, []).append(dict(meta))
        return state

    def subscribers(self, topic: str) -> List[RelayChannel]:
        return list(self._subscribers.get(topic, {}))

    def subscriptions_for(self, key: str) -> List[str]:
        """Topics the given presence key is currently subscribed to."""
        return [
            topic for topic, channels in self._subscribers.items()
            if any(ch.key == key for ch in channels)
        ]

    async def _attach(self, channel: RelayChannel) -> str:
        await asyncio.sleep(self.ack_delay)
        if channel.state != STATE_JOINING:
            # left while the join was in flight
            return CLOSED
        self._subscribers.setdefault(channel.topic, {})[channel] = None
        channel._dispatch(PRESENCE, self.presence(channel.topic))
        return SUBSCRIBED

    async def _detach(self, channel: RelayChannel) -> None:
        await asyncio.sleep(self.ack_delay)
        subscribers = self._subscribers.get(channel.topic, {})
        subscribers.pop(channel, None)
        was_tracked = self._tracked.get(channel.topic, {}).pop(channel, None) is not None
        if not subscribers:
            self._subscribers.pop(channel.topic, None)
            self._tracked.pop(channel.topic, None)
        if was_tracked:
            self._sync(channel.topic)

    def _track(self, channel: RelayChannel, meta: Dict[str, Any]) -> None:
        self._tracked.setdefault(channel.topic, {})[channel] = dict(meta)
        self._sync(channel.topic)

    def _sync(self, topic: str) -> None:
        state = self.presence(topic)
        for ch in list(self._subscribers.get(topic, {})):
            ch._dispatch(PRESENCE, state)

    def _broadcast(self, sender: RelayChannel, event: str, payload: Dict[str, Any]) -> None:
        receivers = [ch for ch in self._subscribers.get(sender.topic, {}) if ch is not sender]
        logger.debug(f"Broadcast {event} on {sender.topic} to {len(receivers)} subscriber(s)")
        for ch in receivers:
            ch._dispatch(BROADCAST, payload, event)
