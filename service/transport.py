import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger("transport")

Description = Dict[str, str]


def build_ice_servers(ice_config: Dict[str, Any]) -> List[RTCIceServer]:
    ice_servers = []
    urls = ice_config.get("urls") or []
    if urls:
        ice_servers.append(RTCIceServer(urls=urls))
    turn_urls = ice_config.get("turn_urls") or []
    if ice_config.get("use_turn") and turn_urls:
        ice_servers.append(RTCIceServer(
            urls=turn_urls,
            username=ice_config.get("username"),
            credential=ice_config.get("credential")
        ))
    return ice_servers


def candidate_from_payload(payload: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Converts a browser-style candidate dict. Returns None for end-of-candidates."""
    raw = (payload.get("candidate") or "").strip()
    if not raw:
        return None
    if raw.startswith("candidate:"):
        raw = raw[len("candidate:"):]
    candidate = candidate_from_sdp(raw)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class NegotiationTransport:
    """
    Description/candidate machinery for one peer connection.

    Callbacks are plain callables assigned by the owner:
      - ``on_connectivity(state: str)``
      - ``on_track(track)``
      - ``on_local_candidate(candidate: dict)``
    """

    def __init__(self):
        self.on_connectivity: Optional[Callable[[str], None]] = None
        self.on_track: Optional[Callable[[Any], None]] = None
        self.on_local_candidate: Optional[Callable[[Dict[str, Any]], None]] = None

    def _emit_connectivity(self, state: str) -> None:
        if self.on_connectivity is not None:
            self.on_connectivity(state)

    def _emit_track(self, track) -> None:
        if self.on_track is not None:
            self.on_track(track)

    def _emit_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.on_local_candidate is not None:
            self.on_local_candidate(candidate)

    def add_track(self, track) -> None:
        raise NotImplementedError

    async def create_offer(self) -> Description:
        raise NotImplementedError

    async def create_answer(self) -> Description:
        raise NotImplementedError

    async def set_local_description(self, description: Description) -> Description:
        """Applies the description and returns the effective local description."""
        raise NotImplementedError

    async def set_remote_description(self, description: Description) -> None:
        raise NotImplementedError

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class AiortcTransport(NegotiationTransport):
    """
    aiortc peer connection. aiortc gathers candidates while applying the local
    description and embeds them in the SDP, so it never trickles local candidates;
    remote candidates trickled by browser peers are applied normally.
    """

    def __init__(self, ice_config: Dict[str, Any]):
        super().__init__()
        self.pc = RTCPeerConnection(RTCConfiguration(iceServers=build_ice_servers(ice_config)))

        @self.pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange():
            state = self.pc.iceConnectionState
            logger.info(f"ICE state={state}")
            self._emit_connectivity(state)

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track received")
            self._emit_track(track)

    def add_track(self, track) -> None:
        self.pc.addTrack(track)

    async def create_offer(self) -> Description:
        offer = await self.pc.createOffer()
        return {"sdp": offer.sdp, "type": offer.type}

    async def create_answer(self) -> Description:
        answer = await self.pc.createAnswer()
        return {"sdp": answer.sdp, "type": answer.type}

    async def set_local_description(self, description: Description) -> Description:
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))
        local = self.pc.localDescription
        return {"sdp": local.sdp, "type": local.type}

    async def set_remote_description(self, description: Description) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        ice_candidate = candidate_from_payload(candidate)
        if ice_candidate is None:
            return
        await self.pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        await self.pc.close()
