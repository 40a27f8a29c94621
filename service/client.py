import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from pydantic import ValidationError

from app.config import DEFAULT_STUN_URLS
from app.errors import (
    ChannelTransitionFailure, InvalidNegotiationState, InvalidSignal,
    NegotiationStepFailure, PairingError, RelayError, RelaySubscriptionFailure,
)
from models.pairing import PairingDecision, QueuedSignal, new_client_id, utcnow
from models.signal import SignalEnvelope
from models.webrtc import (
    NegotiationEngine, NegotiationPhase, TRANSPORT_CONNECTIVITY,
    TRANSPORT_LOCAL_CANDIDATE, TRANSPORT_TRACK,
)
from service.lifecycle import (
    ConnectionLifecycleManager, ConnectionState, EVENT_CONNECTION_STATE,
    EVENT_REMOTE_MEDIA, Generation,
)
from service.matchmaking import MatchmakingCoordinator, WAITING_POOL
from service.relay import BROADCAST, CHANNEL_ERROR, LOST, PRESENCE, Relay, RelayChannel, RelayEvent
from service.transport import AiortcTransport, NegotiationTransport

logger = logging.getLogger("client")

SIGNAL_EVENT = "webrtc_signal"

SEARCH_STARTED = "search_started"
SEARCH_STOPPED = "search_stopped"
PARTNER_CHANGED = "partner_changed"
CONNECTION_STATE = EVENT_CONNECTION_STATE
CONNECTION_ERROR = "connection_error"
REMOTE_MEDIA_AVAILABLE = EVENT_REMOTE_MEDIA


@dataclass
class ClientEvent:
    """Notification for the presentation layer."""

    kind: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "data": self.data}


@dataclass
class SessionEvent:
    token: int
    kind: str
    data: Any = None


class PairingClient:
    """
    Top-level orchestrator for one anonymous client.

    Owns the matchmaking coordinator, at most one negotiation engine with its
    lifecycle manager, and the session channel. Relay and transport callbacks
    only enqueue onto ``_inbox``; a single consumer task handles them in order.
    A generation token is advanced on every stop and teardown so transitions
    that resume afterwards discard their results.
    """

    def __init__(self, relay: Relay, client_id: Optional[str] = None,
                 transport_factory: Optional[Callable[[], NegotiationTransport]] = None,
                 pool_name: str = WAITING_POOL, subscribe_timeout: float = 10.0):
        self.client_id = client_id or new_client_id()
        self.relay = relay
        self.subscribe_timeout = subscribe_timeout
        self.transport_factory = transport_factory or partial(
            AiortcTransport, {"urls": list(DEFAULT_STUN_URLS)})
        self.coordinator = MatchmakingCoordinator(
            relay, self.client_id, self._deliver,
            pool_name=pool_name, subscribe_timeout=subscribe_timeout)

        self.local_media = None
        self.engine: Optional[NegotiationEngine] = None
        self.lifecycle: Optional[ConnectionLifecycleManager] = None
        self.session_channel: Optional[RelayChannel] = None
        self.decision: Optional[PairingDecision] = None
        self.partner_id: Optional[str] = None
        self.last_error: Optional[Dict[str, Any]] = None
        self.history: Deque[ClientEvent] = deque(maxlen=200)

        self._generation = Generation()
        self._session_token: Optional[int] = None
        self._partner_seen = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._listeners: List[asyncio.Queue] = []

    # --- lifecycle of the client itself ---

    async def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())
            logger.info(f"Pairing client {self.client_id} started")

    async def close(self) -> None:
        await self.reset()
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        logger.info(f"Pairing client {self.client_id} closed")

    async def reset(self) -> None:
        """Leaves the pool, tears down any session and clears pending events."""
        await self.stop_search(reason="reset")
        self.coordinator.reset()
        self.last_error = None
        while not self._inbox.empty():
            self._inbox.get_nowait()
            self._inbox.task_done()

    async def wait_idle(self) -> None:
        await self._inbox.join()

    # --- presentation-facing operations ---

    async def start_search(self, media=None) -> bool:
        if media is not None:
            await self.attach_media(media)
        if self.engine is not None:
            logger.info(f"[{self.client_id}] session with {self.partner_id} active, not searching")
            return False
        try:
            joined = await self.coordinator.join_pool()
        except RelaySubscriptionFailure as e:
            self._report_error(e)
            raise
        if joined:
            self.last_error = None
            self._emit(SEARCH_STARTED, {"pool": self.coordinator.pool_name})
        return joined

    async def stop_search(self, reason: str = "stopped") -> bool:
        self._generation.advance()
        was_pairing = self.coordinator.pairing_in_progress
        left = await self.coordinator.leave_pool()
        torn_down = False
        lifecycle = self.lifecycle
        if lifecycle is not None:
            torn_down = await lifecycle.teardown(reason)
        self.coordinator.reset()
        stopped = left or torn_down or was_pairing
        if stopped:
            self._emit(SEARCH_STOPPED, {"reason": reason})
        return stopped

    async def attach_media(self, media) -> None:
        """Sets the local media; a replaced handle is stopped unless a session still uses it."""
        previous = self.local_media
        if previous is not None and previous is not media:
            if self.engine is not None and self.engine.media is previous:
                raise InvalidNegotiationState("Local media is in use by the active session")
            previous.stop()
            logger.info(f"[{self.client_id}] replaced local media")
        self.local_media = media
        engine = self.engine
        if engine is not None and engine.phase == NegotiationPhase.AWAITING_RESOURCE:
            await self._initialize_engine()

    def listen(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.append(queue)
        return queue

    def unlisten(self, queue: asyncio.Queue) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    @property
    def remote_tracks(self) -> List[Any]:
        return list(self.lifecycle.remote_tracks) if self.lifecycle is not None else []

    def snapshot(self) -> Dict[str, Any]:
        engine, lifecycle = self.engine, self.lifecycle
        queued = 0
        if engine is not None:
            queued = len(engine.signal_queue) + len(engine.candidate_queue)
        return {
            "client_id": self.client_id,
            "searching": self.coordinator.in_pool or self.coordinator.pairing_in_progress,
            "in_pool": self.coordinator.in_pool,
            "pairing_in_progress": self.coordinator.pairing_in_progress,
            "partner_id": self.partner_id,
            "session_channel": self.session_channel.topic if self.session_channel is not None else None,
            "is_offerer": self.decision.is_offerer if self.decision is not None else None,
            "negotiation_phase": engine.phase.value if engine is not None else None,
            "connection_state": lifecycle.state.value if lifecycle is not None else None,
            "queued_signals": queued,
            "has_local_media": self.local_media is not None,
        }

    # --- inbox ---

    def _deliver(self, item: Union[RelayEvent, SessionEvent]) -> None:
        self._inbox.put_nowait(item)

    async def _consume(self) -> None:
        while True:
            item = await self._inbox.get()
            try:
                await self._handle(item)
            except NegotiationStepFailure as e:
                await self._fail_session(e)
            except PairingError as e:
                logger.warning(f"[{self.client_id}] {e.kind}: {e}")
            except Exception as e:
                logger.error(f"[{self.client_id}] error handling {type(item).__name__}: {e}", exc_info=True)
                await self._fail_session(NegotiationStepFailure(str(e)))
            finally:
                self._inbox.task_done()

    async def _handle(self, item: Union[RelayEvent, SessionEvent]) -> None:
        if isinstance(item, SessionEvent):
            await self._on_session_event(item)
            return

        pool_channel = self.coordinator.channel
        if pool_channel is not None and item.channel is pool_channel:
            if item.kind == PRESENCE:
                decision = self.coordinator.on_presence_sync(item, has_session=self.engine is not None)
                if decision is not None:
                    await self._enter_session(decision)
            elif item.kind == LOST:
                await self._on_pool_lost(item)
            return

        if self.session_channel is not None and item.channel is self.session_channel:
            if item.kind == PRESENCE:
                await self._on_session_presence(item)
            elif item.kind == BROADCAST and item.event == SIGNAL_EVENT:
                await self._on_signal(item)
            elif item.kind == LOST:
                await self._fail_session(RelayError(
                    f"Session channel {item.channel.topic} lost: {item.payload.get('reason')}"))
            return

        logger.debug(f"[{self.client_id}] discarding {item.kind} from stale channel {item.channel.topic}")

    async def _on_pool_lost(self, event: RelayEvent) -> None:
        await self.coordinator.leave_pool()
        self.coordinator.reset()
        self._report_error(RelaySubscriptionFailure(
            event.channel.topic, CHANNEL_ERROR, f"Waiting pool lost: {event.payload.get('reason')}"))
        self._emit(SEARCH_STOPPED, {"reason": "relay_lost"})

    # --- pool -> session transition ---

    async def _enter_session(self, decision: PairingDecision) -> None:
        token = self._generation.capture()
        await self.coordinator.leave_pool()
        if not self._generation.is_current(token):
            logger.info(f"[{self.client_id}] pairing with {decision.partner_id} abandoned")
            self.coordinator.reset()
            return

        self._open_session(decision)
        channel = self.relay.channel(decision.session_channel_id, key=self.client_id, sink=self._deliver)
        self.session_channel = channel
        try:
            await channel.subscribe(timeout=self.subscribe_timeout)
            if self._generation.is_current(token):
                await channel.track({"online_at": utcnow().isoformat(), "user_id": self.client_id})
        except RelayError as e:
            if not self._generation.is_current(token):
                logger.info(f"[{self.client_id}] join of {decision.session_channel_id} abandoned")
                return
            failure = ChannelTransitionFailure(
                f"Could not move to {decision.session_channel_id}: {e}")
            await self._abort_session(failure)
            raise failure from e
        if not self._generation.is_current(token):
            return

        self.coordinator.complete_pairing()
        logger.info(f"[{self.client_id}] joined {decision.session_channel_id}")
        await self._initialize_engine()

    def _open_session(self, decision: PairingDecision) -> None:
        if self.engine is not None:
            raise InvalidNegotiationState(f"Session {self.engine} is still active")
        token = self._generation.capture()
        self._session_token = token
        self.decision = decision
        self.partner_id = decision.partner_id
        self._partner_seen = False
        self.engine = NegotiationEngine(
            self.client_id, decision,
            publish=self._publish_signal,
            transport_factory=self.transport_factory,
            on_transport_event=lambda kind, data: self._deliver(SessionEvent(token, kind, data)),
        )
        self.lifecycle = ConnectionLifecycleManager(
            decision.session_channel_id,
            cleanup=self._release_session,
            notify=lambda kind, data: self._on_lifecycle_event(token, kind, data),
        )
        self._emit(PARTNER_CHANGED, {"partner_id": decision.partner_id, **decision.to_dict()})

    async def _initialize_engine(self) -> None:
        engine = self.engine
        if engine is None:
            return
        try:
            ready = await engine.initialize(self.local_media)
        except NegotiationStepFailure as e:
            await self._fail_session(e)
            return
        if ready:
            await self._maybe_offer()

    async def _maybe_offer(self) -> None:
        engine = self.engine
        if engine is None or not engine.is_offerer or engine.offer_started or not engine.ready:
            return
        if not self._partner_seen:
            logger.debug(f"[{self.client_id}] waiting for {self.partner_id} to join before offering")
            return
        try:
            await engine.create_offer()
        except NegotiationStepFailure as e:
            await self._fail_session(e)

    # --- session channel traffic ---

    async def _on_session_presence(self, event: RelayEvent) -> None:
        present = self.partner_id in event.payload
        if present and not self._partner_seen:
            self._partner_seen = True
            logger.info(f"[{self.client_id}] partner {self.partner_id} joined the session channel")
            await self._maybe_offer()
        elif not present and self._partner_seen and self.lifecycle is not None:
            logger.info(f"[{self.client_id}] partner {self.partner_id} left the session channel")
            await self.lifecycle.teardown("partner_left")

    async def _on_signal(self, event: RelayEvent) -> None:
        try:
            envelope = SignalEnvelope.model_validate(event.payload)
        except ValidationError as e:
            raise InvalidSignal(f"Malformed signal envelope: {e}") from e
        if envelope.from_ == self.client_id:
            return
        if envelope.from_ != self.partner_id:
            logger.warning(f"[{self.client_id}] ignoring {envelope.type} from unexpected sender {envelope.from_}")
            return
        engine = self.engine
        if engine is None:
            return
        logger.debug(f"[{self.client_id}] received {envelope.type} from {envelope.from_}")
        try:
            await engine.receive(QueuedSignal(envelope.type, envelope.payload))
        except NegotiationStepFailure as e:
            await self._fail_session(e)

    async def _publish_signal(self, signal_type: str, payload: Dict[str, Any]) -> None:
        channel = self.session_channel
        if channel is None or not channel.joined:
            raise RelayError(f"No session channel to send {signal_type} on")
        envelope = SignalEnvelope(type=signal_type, payload=payload, from_=self.client_id)
        logger.debug(f"[{self.client_id}] sending {signal_type} on {channel.topic}")
        await channel.send(SIGNAL_EVENT, envelope.to_wire())

    async def _on_session_event(self, event: SessionEvent) -> None:
        engine, lifecycle = self.engine, self.lifecycle
        if event.token != self._session_token or engine is None or lifecycle is None:
            logger.debug(f"[{self.client_id}] discarding stale {event.kind} event")
            return
        if event.kind == TRANSPORT_CONNECTIVITY:
            state = lifecycle.on_transport_state(event.data)
            if state == ConnectionState.CONNECTED:
                engine.mark_connected()
            elif state == ConnectionState.DISCONNECTED:
                engine.mark_disconnected()
            elif state == ConnectionState.FAILED:
                await self._fail_session(NegotiationStepFailure("Connectivity checks failed"))
            elif state == ConnectionState.CLOSED:
                await lifecycle.teardown("transport closed")
        elif event.kind == TRANSPORT_TRACK:
            lifecycle.on_remote_track(event.data)
        elif event.kind == TRANSPORT_LOCAL_CANDIDATE:
            await engine.publish_local_candidate(event.data)

    def _on_lifecycle_event(self, token: int, kind: str, data: Any) -> None:
        if token != self._session_token:
            return
        if kind == EVENT_CONNECTION_STATE:
            self._emit(CONNECTION_STATE, {"state": data.value, "partner_id": self.partner_id})
        elif kind == EVENT_REMOTE_MEDIA:
            self._emit(REMOTE_MEDIA_AVAILABLE, {
                "partner_id": self.partner_id,
                "kinds": [getattr(track, "kind", None) for track in data],
            })

    # --- failure and teardown ---

    async def _fail_session(self, error: PairingError) -> None:
        lifecycle = self.lifecycle
        if lifecycle is None or lifecycle.tearing_down:
            return
        if self.engine is not None:
            self.engine.mark_failed()
        lifecycle.fail()
        self._report_error(error)
        await lifecycle.teardown(f"negotiation failed: {error}")

    async def _abort_session(self, error: PairingError) -> None:
        self._report_error(error)
        lifecycle = self.lifecycle
        if lifecycle is not None:
            await lifecycle.teardown(str(error))
        self.coordinator.reset()
        self._emit(SEARCH_STOPPED, {"reason": error.kind})

    async def _release_session(self, reason: str) -> None:
        """Single cleanup sequence for a session, run through the lifecycle manager."""
        self._generation.advance()
        engine, channel = self.engine, self.session_channel
        self.session_channel = None
        previous_partner = self.partner_id

        if engine is not None:
            await engine.close_connection()
        if channel is not None:
            try:
                await channel.unsubscribe()
            except RelayError as e:
                logger.error(f"[{self.client_id}] error leaving {channel.topic}: {e}")
            await self.relay.remove_channel(channel)

        self.engine = None
        self.lifecycle = None
        self.decision = None
        self.partner_id = None
        self._session_token = None
        self._partner_seen = False
        self.coordinator.reset()
        if previous_partner is not None:
            self._emit(PARTNER_CHANGED, {"partner_id": None, "reason": reason})

    def _report_error(self, error: PairingError) -> None:
        self.last_error = {"error": error.kind, "message": str(error), "retry": "start_search"}
        logger.warning(f"[{self.client_id}] {error.kind}: {error}")
        self._emit(CONNECTION_ERROR, dict(self.last_error))

    def _emit(self, kind: str, data: Optional[Dict[str, Any]] = None) -> None:
        event = ClientEvent(kind, data or {})
        self.history.append(event)
        for queue in self._listeners:
            queue.put_nowait(event)
