import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger("lifecycle")


class ConnectionState(str, Enum):
    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


# aiortc reports "completed" where browsers report "connected";
# RTCPeerConnection.connectionState uses "connecting" for the checking phase.
TRANSPORT_STATE_MAP = {
    "new": ConnectionState.NEW,
    "checking": ConnectionState.CHECKING,
    "connecting": ConnectionState.CHECKING,
    "connected": ConnectionState.CONNECTED,
    "completed": ConnectionState.CONNECTED,
    "disconnected": ConnectionState.DISCONNECTED,
    "failed": ConnectionState.FAILED,
    "closed": ConnectionState.CLOSED,
}

TERMINAL_STATES = (ConnectionState.FAILED, ConnectionState.CLOSED)

EVENT_CONNECTION_STATE = "connection_state"
EVENT_REMOTE_MEDIA = "remote_media_available"


class Generation:
    """
    Monotonic token for discarding stale async results.

    An operation captures the token before its first await and commits only if
    ``is_current(token)`` still holds when it resumes.
    """

    def __init__(self):
        self.value = 0

    def capture(self) -> int:
        return self.value

    def advance(self) -> int:
        self.value += 1
        return self.value

    def is_current(self, token: int) -> bool:
        return token == self.value


class ConnectionLifecycleManager:
    """
    Tracks connectivity for one session and owns its single teardown path.

    ``teardown()`` may be triggered by an explicit stop, a negotiation failure,
    a terminal transport state or the partner leaving; the cleanup callable runs
    once and later callers wait for that same run.
    """

    def __init__(self, session_id: str,
                 cleanup: Callable[[str], Awaitable[None]],
                 notify: Optional[Callable[[str, Any], None]] = None):
        self.session_id = session_id
        self.state = ConnectionState.NEW
        self.history: List[ConnectionState] = [ConnectionState.NEW]
        self.remote_tracks: List[Any] = []
        self.teardown_reason: Optional[str] = None
        self._cleanup = cleanup
        self._notify = notify
        self._remote_media_announced = False
        self._teardown_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def torn_down(self) -> bool:
        return self._teardown_task is not None and self._teardown_task.done()

    @property
    def tearing_down(self) -> bool:
        return self._teardown_task is not None

    def on_transport_state(self, raw_state: str) -> Optional[ConnectionState]:
        """Maps a transport connectivity string. Returns the new state, or None if unchanged."""
        state = TRANSPORT_STATE_MAP.get((raw_state or "").lower())
        if state is None:
            logger.warning(f"[{self.session_id}] unknown transport state {raw_state!r}")
            return None
        if self.tearing_down or state == self.state:
            return None
        logger.info(f"[{self.session_id}] connection {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        self._emit(EVENT_CONNECTION_STATE, state)
        return state

    def fail(self) -> None:
        """Marks the session failed on a negotiation error the transport did not report."""
        if self.tearing_down or self.state == ConnectionState.FAILED:
            return
        self.on_transport_state(ConnectionState.FAILED.value)

    def on_remote_track(self, track) -> bool:
        """Records a remote track; True only for the first track of the session."""
        if self.tearing_down:
            return False
        self.remote_tracks.append(track)
        if self._remote_media_announced:
            return False
        self._remote_media_announced = True
        self._emit(EVENT_REMOTE_MEDIA, self.remote_tracks)
        return True

    async def teardown(self, reason: str) -> bool:
        """Runs the cleanup sequence once. Returns True for the call that started it."""
        started = False
        if self._teardown_task is None:
            self.teardown_reason = reason
            logger.info(f"[{self.session_id}] tearing down: {reason}")
            self._teardown_task = asyncio.ensure_future(self._run_teardown(reason))
            started = True
        await asyncio.shield(self._teardown_task)
        return started

    async def _run_teardown(self, reason: str) -> None:
        try:
            await self._cleanup(reason)
        finally:
            if self.state != ConnectionState.FAILED:
                self.state = ConnectionState.CLOSED
                self.history.append(ConnectionState.CLOSED)
            logger.info(f"[{self.session_id}] teardown complete")

    def _emit(self, kind: str, data: Any) -> None:
        if self._notify is not None:
            self._notify(kind, data)
