import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from app.errors import (
    InvalidNegotiationState, InvalidSignal, NegotiationResourceUnavailable,
    NegotiationStepFailure, PairingError, RelayError,
)
from models.pairing import (
    PairingDecision, QueuedSignal, SIGNAL_ANSWER, SIGNAL_CANDIDATE, SIGNAL_OFFER,
)
from service.lifecycle import Generation
from service.signal_queue import SignalQueue
from service.transport import NegotiationTransport

logger = logging.getLogger("negotiation")

TRANSPORT_CONNECTIVITY = "connectivity"
TRANSPORT_TRACK = "track"
TRANSPORT_LOCAL_CANDIDATE = "local_candidate"


class NegotiationPhase(str, Enum):
    IDLE = "idle"
    AWAITING_RESOURCE = "awaiting_resource"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


class _Stale(Exception):
    """Raised internally when an engine step resumes after close."""


class NegotiationEngine:
    """
    Offer/answer/candidate state machine for one pairing.

    The engine owns the transport and the per-session track handles it attached.
    Until a local media resource is supplied it stays in AWAITING_RESOURCE and
    every incoming signal is buffered; ``initialize()`` replays them in arrival
    order. Remote candidates that arrive before the remote description is set
    are buffered separately and applied right after it.
    """

    def __init__(self, client_id: str, decision: PairingDecision,
                 publish: Callable[[str, Dict[str, Any]], Awaitable[None]],
                 transport_factory: Callable[[], NegotiationTransport],
                 on_transport_event: Optional[Callable[[str, Any], None]] = None,
                 signal_queue: Optional[SignalQueue] = None):
        self.client_id = client_id
        self.decision = decision
        self.phase = NegotiationPhase.IDLE
        self.transport: Optional[NegotiationTransport] = None
        self.media = None
        self.signal_queue = signal_queue or SignalQueue(f"{client_id}:signals")
        self.candidate_queue = SignalQueue(f"{client_id}:early-candidates")

        self.local_description: Optional[Dict[str, Any]] = None
        self.remote_description: Optional[Dict[str, Any]] = None
        self.offer_started = False
        self.offer_sent = False
        self.applied_candidates: List[Dict[str, Any]] = []
        self._candidate_keys: Set[Tuple[Any, Any, Any]] = set()
        self._owned_tracks: List[Any] = []

        self._publish = publish
        self._transport_factory = transport_factory
        self._on_transport_event = on_transport_event
        self._generation = Generation()

    def __repr__(self) -> str:
        return f"<NegotiationEngine {self.decision.session_channel_id} {self.phase.value}>"

    @property
    def is_offerer(self) -> bool:
        return self.decision.is_offerer

    @property
    def ready(self) -> bool:
        return self.transport is not None and self.phase in (
            NegotiationPhase.NEGOTIATING, NegotiationPhase.CONNECTED)

    @property
    def closed(self) -> bool:
        return self.phase in (NegotiationPhase.CLOSED, NegotiationPhase.FAILED)

    @property
    def remote_description_set(self) -> bool:
        return self.remote_description is not None

    @property
    def local_description_set(self) -> bool:
        return self.local_description is not None

    async def initialize(self, media) -> bool:
        """
        Creates the transport once a local media resource exists.

        Without media the engine parks in AWAITING_RESOURCE and keeps the pairing
        decision; calling again with media resumes. Returns True when ready.
        """
        if self.closed:
            raise InvalidNegotiationState(f"Cannot initialize a {self.phase.value} session")
        if self.transport is not None:
            return True
        if media is None:
            if self.phase != NegotiationPhase.AWAITING_RESOURCE:
                logger.info(f"[{self.client_id}] waiting for local media before negotiating "
                            f"{self.decision.session_channel_id}")
            self.phase = NegotiationPhase.AWAITING_RESOURCE
            return False

        transport = self._transport_factory()
        transport.on_connectivity = lambda state: self._forward(TRANSPORT_CONNECTIVITY, state)
        transport.on_track = lambda track: self._forward(TRANSPORT_TRACK, track)
        transport.on_local_candidate = lambda c: self._forward(TRANSPORT_LOCAL_CANDIDATE, c)

        tracks = list(media.session_tracks())
        for track in tracks:
            transport.add_track(track)
        self._owned_tracks = tracks
        self.transport = transport
        self.media = media
        self.phase = NegotiationPhase.NEGOTIATING
        logger.info(f"[{self.client_id}] negotiating {self.decision.session_channel_id} "
                    f"as {'offerer' if self.is_offerer else 'answerer'} with {len(tracks)} local track(s)")

        await self.signal_queue.drain_when_ready(lambda: self.ready, self._replay)
        return True

    async def receive(self, signal: QueuedSignal) -> None:
        """Entry point for signals delivered on the session channel."""
        if self.closed:
            logger.debug(f"[{self.client_id}] dropping {signal.type} for {self.phase.value} session")
            return
        if not self.ready or self.signal_queue.draining or len(self.signal_queue):
            self.signal_queue.enqueue(signal)
            await self.signal_queue.drain_when_ready(lambda: self.ready, self._replay)
            return
        await self.dispatch(signal)

    async def dispatch(self, signal: QueuedSignal) -> None:
        payload = signal.payload or {}
        if signal.type == SIGNAL_OFFER:
            await self.handle_offer(payload)
        elif signal.type == SIGNAL_ANSWER:
            await self.handle_answer(payload)
        elif signal.type == SIGNAL_CANDIDATE:
            await self.handle_candidate(payload)
        else:
            raise InvalidSignal(f"Unknown signal type {signal.type!r}")

    async def _replay(self, signal: QueuedSignal) -> None:
        try:
            await self.dispatch(signal)
        except NegotiationStepFailure:
            raise
        except PairingError as e:
            logger.warning(f"[{self.client_id}] rejected queued {signal.type}: {e}")

    async def create_offer(self) -> Optional[Dict[str, Any]]:
        if not self.is_offerer:
            raise InvalidNegotiationState("Only the offerer may create an offer")
        if self.offer_started:
            raise InvalidNegotiationState(
                f"Offer already created for {self.decision.session_channel_id}")
        if not self.ready:
            raise NegotiationResourceUnavailable("Local media is not attached yet")

        self.offer_started = True
        token = self._generation.capture()
        try:
            offer = await self._step("create offer", self.transport.create_offer(), token)
            local = await self._step("set local offer", self.transport.set_local_description(offer), token)
        except _Stale:
            logger.info(f"[{self.client_id}] discarding offer for closed session")
            return None
        self.local_description = local
        self.offer_sent = True
        await self._send(SIGNAL_OFFER, local)
        logger.info(f"[{self.client_id}] offer sent to {self.decision.partner_id}")
        return local

    async def handle_offer(self, description: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.is_offerer:
            raise InvalidNegotiationState("Offer received by the offering side")
        if not self.ready:
            self.signal_queue.enqueue(QueuedSignal(SIGNAL_OFFER, description))
            return None
        if self.remote_description_set:
            raise InvalidNegotiationState("Remote offer already applied for this session")

        token = self._generation.capture()
        try:
            await self._step("set remote offer", self.transport.set_remote_description(description), token)
            self.remote_description = description
            await self._drain_candidates()
            answer = await self._step("create answer", self.transport.create_answer(), token)
            local = await self._step("set local answer", self.transport.set_local_description(answer), token)
        except _Stale:
            logger.info(f"[{self.client_id}] discarding answer for closed session")
            return None
        self.local_description = local
        await self._send(SIGNAL_ANSWER, local)
        logger.info(f"[{self.client_id}] answer sent to {self.decision.partner_id}")
        return local

    async def handle_answer(self, description: Dict[str, Any]) -> bool:
        if not self.offer_sent:
            raise InvalidNegotiationState("Answer received before a local offer was sent")
        if self.remote_description_set:
            raise InvalidNegotiationState("Remote answer already applied for this session")

        token = self._generation.capture()
        try:
            await self._step("set remote answer", self.transport.set_remote_description(description), token)
        except _Stale:
            return False
        self.remote_description = description
        logger.info(f"[{self.client_id}] answer from {self.decision.partner_id} applied")
        await self._drain_candidates()
        return True

    async def handle_candidate(self, candidate: Dict[str, Any]) -> bool:
        """Applies a trickled candidate; returns False when it was buffered or ignored."""
        key = (candidate.get("candidate"), candidate.get("sdpMid"), candidate.get("sdpMLineIndex"))
        if key in self._candidate_keys:
            logger.debug(f"[{self.client_id}] duplicate candidate ignored")
            return False
        if not self.ready:
            self.signal_queue.enqueue(QueuedSignal(SIGNAL_CANDIDATE, candidate))
            return False
        if not self.remote_description_set:
            self.candidate_queue.enqueue(QueuedSignal(SIGNAL_CANDIDATE, candidate))
            return False
        if not candidate.get("candidate"):
            # end-of-candidates marker
            return False

        token = self._generation.capture()
        try:
            await self._step("add candidate", self.transport.add_candidate(candidate), token)
        except _Stale:
            return False
        self._candidate_keys.add(key)
        self.applied_candidates.append(candidate)
        return True

    async def publish_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.closed:
            return
        await self._send(SIGNAL_CANDIDATE, candidate)

    def mark_connected(self) -> bool:
        if self.phase != NegotiationPhase.NEGOTIATING:
            return False
        self.phase = NegotiationPhase.CONNECTED
        logger.info(f"[{self.client_id}] connected to {self.decision.partner_id}")
        return True

    def mark_disconnected(self) -> bool:
        """Connectivity lost after connecting; ICE may still recover."""
        if self.phase != NegotiationPhase.CONNECTED:
            return False
        self.phase = NegotiationPhase.NEGOTIATING
        logger.info(f"[{self.client_id}] connection to {self.decision.partner_id} interrupted")
        return True

    def mark_failed(self) -> None:
        if not self.closed:
            self.phase = NegotiationPhase.FAILED

    async def close_connection(self) -> bool:
        """Releases the transport and the owned track handles. Safe to call repeatedly."""
        if self.phase == NegotiationPhase.CLOSED:
            return False
        self._generation.advance()
        self.phase = NegotiationPhase.CLOSED
        self.signal_queue.reset()
        self.candidate_queue.reset()

        tracks, self._owned_tracks = self._owned_tracks, []
        for track in tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"[{self.client_id}] error stopping local track: {e}")

        transport, self.transport = self.transport, None
        if transport is not None:
            transport.on_connectivity = None
            transport.on_track = None
            transport.on_local_candidate = None
            try:
                await transport.close()
            except Exception as e:
                logger.warning(f"[{self.client_id}] error closing transport: {e}")
        logger.info(f"[{self.client_id}] negotiation for {self.decision.session_channel_id} closed")
        return True

    async def _drain_candidates(self) -> None:
        await self.candidate_queue.drain_when_ready(
            lambda: self.ready and self.remote_description_set, self._replay)

    async def _send(self, signal_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self._publish(signal_type, payload)
        except RelayError as e:
            if self.phase == NegotiationPhase.CLOSED:
                logger.debug(f"[{self.client_id}] {signal_type} not sent, session closed: {e}")
                return
            self.mark_failed()
            logger.error(f"[{self.client_id}] publishing {signal_type} failed: {e}")
            raise NegotiationStepFailure(f"publish {signal_type} failed: {e}") from e

    async def _step(self, name: str, awaitable, token: int):
        try:
            result = await awaitable
        except Exception as e:
            if not self._generation.is_current(token):
                raise _Stale() from e
            self.mark_failed()
            logger.error(f"[{self.client_id}] {name} failed: {e}")
            raise NegotiationStepFailure(f"{name} failed: {e}") from e
        if not self._generation.is_current(token):
            raise _Stale()
        return result

    def _forward(self, kind: str, data: Any) -> None:
        if self._on_transport_event is not None and not self.closed:
            self._on_transport_event(kind, data)
