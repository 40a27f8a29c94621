"""In-memory stand-ins for the transport and media collaborators."""

from __future__ import annotations

import asyncio
import itertools
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional

from service.transport import NegotiationTransport


class FakeTrack:
    def __init__(self, kind: str = "video") -> None:
        self.kind = kind
        self.stop_calls = 0

    def stop(self) -> None:
        self.stop_calls += 1


class FakeMedia:
    """Hands out fresh per-session track handles, like ``LocalMedia``."""

    def __init__(self, kinds: Iterable[str] = ("audio", "video")) -> None:
        self.kinds = list(kinds)
        self.issued: List[FakeTrack] = []
        self.stopped = False

    def session_tracks(self) -> List[FakeTrack]:
        tracks = [FakeTrack(kind) for kind in self.kinds]
        self.issued.extend(tracks)
        return tracks

    def stop(self) -> None:
        self.stopped = True


class FakeTransport(NegotiationTransport):
    """
    Records every call. Descriptions carry the transport name so two fake
    transports find each other; once both sides hold local and remote
    descriptions they report checking -> connected and exchange tracks.
    """

    def __init__(self, network: "FakeNetwork", name: str, fail_on: Iterable[str] = ()) -> None:
        super().__init__()
        self.network = network
        self.name = name
        self.fail_on = set(fail_on)
        self.calls: List[tuple] = []
        self.tracks: List[Any] = []
        self.local: Optional[Dict[str, Any]] = None
        self.remote: Optional[Dict[str, Any]] = None
        self.closed = False
        self.connected = False

    async def _call(self, name: str, arg: Any = None) -> None:
        await asyncio.sleep(0)
        self.calls.append((name,) if arg is None else (name, arg))
        if name in self.fail_on:
            raise ValueError(f"{name} rejected by fake transport")

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def add_track(self, track) -> None:
        self.calls.append(("add_track", track.kind))
        self.tracks.append(track)

    async def create_offer(self) -> Dict[str, str]:
        await self._call("create_offer")
        return {"type": "offer", "sdp": f"fake-offer-{self.name}"}

    async def create_answer(self) -> Dict[str, str]:
        await self._call("create_answer")
        return {"type": "answer", "sdp": f"fake-answer-{self.name}"}

    async def set_local_description(self, description: Dict[str, str]) -> Dict[str, str]:
        await self._call("set_local_description", description["type"])
        self.local = dict(description)
        self._maybe_connect()
        return dict(description)

    async def set_remote_description(self, description: Dict[str, str]) -> None:
        await self._call("set_remote_description", description["type"])
        self.remote = dict(description)
        self._maybe_connect()

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        await self._call("add_candidate", candidate.get("candidate"))

    async def close(self) -> None:
        self.calls.append(("close",))
        self.closed = True

    def peer(self) -> Optional["FakeTransport"]:
        if not self.remote:
            return None
        return self.network.transports.get(self.remote["sdp"].rsplit("-", 1)[-1])

    def _maybe_connect(self) -> None:
        peer = self.peer()
        if self.connected or peer is None or not self.network.auto_connect:
            return
        if not (self.local and self.remote and peer.local and peer.remote):
            return
        for transport, other in ((self, peer), (peer, self)):
            transport.connected = True
            transport._emit_connectivity("checking")
            for track in other.tracks:
                transport._emit_track(track)
            transport._emit_connectivity("connected")


class FakeNetwork:
    def __init__(self, fail_on: Iterable[str] = (), auto_connect: bool = True) -> None:
        self.fail_on = set(fail_on)
        self.auto_connect = auto_connect
        self.transports: Dict[str, FakeTransport] = {}
        self._ids = itertools.count(1)

    def create(self) -> FakeTransport:
        transport = FakeTransport(self, f"t{next(self._ids)}", self.fail_on)
        self.transports[transport.name] = transport
        return transport


class Recorder:
    """Async callable collecting (signal_type, payload) publications."""

    def __init__(self) -> None:
        self.published: List[tuple] = []

    async def __call__(self, signal_type: str, payload: Dict[str, Any]) -> None:
        self.published.append((signal_type, payload))

    def types(self) -> List[str]:
        return [item[0] for item in self.published]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)


@asynccontextmanager
async def running(*clients):
    for client in clients:
        await client.start()
    try:
        yield clients
    finally:
        for client in clients:
            await client.close()


def candidate(n: int, mid: str = "0") -> Dict[str, Any]:
    return {
        "candidate": f"candidate:{n} 1 udp 2122260223 192.168.1.{n} 5440{n} typ host",
        "sdpMid": mid,
        "sdpMLineIndex": 0,
    }
