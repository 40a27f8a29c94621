import asyncio
from typing import Optional, Dict, Any
import logging

from starlette.requests import HTTPConnection

from app.config import get_initial_ice_config, get_media_config, get_relay_config
from drivers.media_source import open_local_media
from service.client import PairingClient
from service.relay import LocalRelay, Relay
from service.transport import AiortcTransport
from service.ws_relay import WebSocketRelay

logger = logging.getLogger("state")


class ServiceContext:
    """
    Everything the service owns for its lifetime: the relay hub served at
    ``/relay``, the relay the local client talks to, ICE settings and the
    pairing client. Created in the app lifespan and stored on ``app.state``.
    """

    def __init__(self, relay_config: Dict[str, Any], ice_config: Dict[str, Any],
                 media_config: Dict[str, Any], relay: Optional[Relay] = None):
        self.relay_config = dict(relay_config)
        self.media_config = dict(media_config)
        self.ice_config: Dict[str, Any] = dict(ice_config)
        self.ice_lock = asyncio.Lock()

        self.relay_hub = LocalRelay()
        if relay is not None:
            self.relay = relay
        elif relay_config.get("url"):
            self.relay = WebSocketRelay(relay_config["url"], open_timeout=relay_config.get("subscribe_timeout", 10.0))
        else:
            self.relay = self.relay_hub

        self.client = PairingClient(
            self.relay,
            client_id=relay_config.get("client_id"),
            transport_factory=self._create_transport,
            pool_name=relay_config.get("pool_name", "public:waiting_pool"),
            subscribe_timeout=relay_config.get("subscribe_timeout", 10.0),
        )

    def _create_transport(self) -> AiortcTransport:
        return AiortcTransport(dict(self.ice_config))

    async def start(self) -> None:
        await self.client.start()
        logger.info(f"Service context started, client {self.client.client_id}, "
                    f"relay {'in-process' if self.relay is self.relay_hub else self.relay_config.get('url')}")

    async def ensure_local_media(self):
        """Opens the configured capture source once and hands it to the client."""
        if self.client.local_media is None:
            media = open_local_media(self.media_config)
            await self.client.attach_media(media)
        return self.client.local_media

    async def reset(self) -> None:
        await self.client.reset()

    async def shutdown(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.error(f"Error closing pairing client: {e}")
        media = self.client.local_media
        if media is not None:
            media.stop()
        if self.relay is not self.relay_hub:
            await self.relay.close()
        await self.relay_hub.close()
        logger.info("Service context shut down")

    async def get_ice_config(self) -> Dict[str, Any]:
        async with self.ice_lock:
            return dict(self.ice_config)

    async def update_ice_config(self, new_config: Dict[str, Any]) -> Dict[str, Any]:
        async with self.ice_lock:
            if "use_turn" in new_config:
                self.ice_config["use_turn"] = bool(new_config["use_turn"])
            for key in ("urls", "turn_urls"):
                if key in new_config and isinstance(new_config[key], list):
                    valid_urls = []
                    for url in new_config[key]:
                        if isinstance(url, str) and url.strip():
                            valid_urls.append(url.strip())
                    self.ice_config[key] = valid_urls
            if "username" in new_config and new_config["username"] is not None:
                self.ice_config["username"] = str(new_config["username"])
            if "credential" in new_config and new_config["credential"] is not None:
                self.ice_config["credential"] = str(new_config["credential"])
            logger.info("ICE config updated; applies to the next session")
            return dict(self.ice_config)


async def init_state(app, relay: Optional[Relay] = None) -> ServiceContext:
    context = ServiceContext(get_relay_config(), get_initial_ice_config(), get_media_config(), relay=relay)
    await context.start()
    app.state.context = context
    return context


async def shutdown_state(app) -> None:
    context: Optional[ServiceContext] = getattr(app.state, "context", None)
    if context is None:
        return
    try:
        await context.shutdown()
    finally:
        app.state.context = None


def get_context(connection: HTTPConnection) -> ServiceContext:
    """FastAPI dependency returning the running service context."""
    context = getattr(connection.app.state, "context", None)
    if context is None:
        raise RuntimeError("Service context is not initialized")
    return context
