import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from app.errors import RelayError
from service.relay import (
    BROADCAST, CHANNEL_ERROR, CLOSED, PRESENCE, Relay, RelayChannel, RelayEvent, STATE_CLOSED,
)

logger = logging.getLogger("ws_relay")


class RemoteChannel(RelayChannel):
    def __init__(self, relay: "WebSocketRelay", topic: str, key: str, sink: Callable[[RelayEvent], None]):
        super().__init__(topic, key, sink)
        self._relay = relay
        self._ack: Optional[asyncio.Future] = None

    async def _join(self) -> str:
        self._ack = asyncio.get_running_loop().create_future()
        await self._relay._send({"op": "join", "topic": self.topic, "key": self.key})
        return await self._ack

    async def _leave(self) -> None:
        await self._relay._send({"op": "leave", "topic": self.topic})

    async def track(self, meta: Dict[str, Any]) -> None:
        if not self.joined:
            raise RelayError(f"Cannot track presence on {self.topic}: channel is {self.state}")
        await self._relay._send({"op": "track", "topic": self.topic, "meta": meta})

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.joined:
            raise RelayError(f"Cannot send on {self.topic}: channel is {self.state}")
        await self._relay._send({"op": "send", "topic": self.topic, "event": event, "payload": payload})

    def _resolve(self, status: str) -> None:
        if self._ack is not None and not self._ack.done():
            self._ack.set_result(status)


class WebSocketRelay(Relay):
    """Relay client for the hub served at ``/relay``. One socket carries every channel."""

    def __init__(self, url: str, open_timeout: float = 10.0):
        self.url = url
        self.open_timeout = open_timeout
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._channels: Dict[str, RemoteChannel] = {}
        self._connect_lock = asyncio.Lock()

    def channel(self, topic: str, key: str, sink: Callable[[RelayEvent], None]) -> RelayChannel:
        existing = self._channels.get(topic)
        if existing is not None and existing.state != STATE_CLOSED:
            raise RelayError(f"Channel {topic} is still open; remove it before creating a replacement")
        ch = RemoteChannel(self, topic, key, sink)
        self._channels[topic] = ch
        return ch

    async def remove_channel(self, channel: RelayChannel) -> None:
        if channel.state != STATE_CLOSED:
            await channel.unsubscribe()
        if self._channels.get(channel.topic) is channel:
            del self._channels[channel.topic]

    async def close(self) -> None:
        for ch in list(self._channels.values()):
            try:
                await self.remove_channel(ch)
            except RelayError as e:
                logger.warning(f"Error removing channel {ch.topic}: {e}")
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        logger.info(f"Relay connection to {self.url} closed")

    async def _ensure_connected(self):
        async with self._connect_lock:
            if self._ws is None:
                logger.info(f"Connecting to relay {self.url}")
                try:
                    self._ws = await asyncio.wait_for(websockets.connect(self.url), self.open_timeout)
                except (OSError, asyncio.TimeoutError) as e:
                    raise RelayError(f"Cannot reach relay {self.url}: {e}") from e
                self._reader = asyncio.create_task(self._read_loop(self._ws))
            return self._ws

    async def _send(self, message: Dict[str, Any]) -> None:
        ws = await self._ensure_connected()
        try:
            await ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise RelayError(f"Relay connection closed: {e}") from e

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError as e:
                    logger.warning(f"Ignoring malformed relay frame: {e}")
                    continue
                self._route(message)
        except ConnectionClosed as e:
            logger.warning(f"Relay connection lost: {e}")
        finally:
            if self._ws is ws:
                self._ws = None
            # joins in flight fail; joined channels are reported lost to their owners
            for ch in list(self._channels.values()):
                ch._resolve(CHANNEL_ERROR)
                ch._lose("relay connection lost")

    def _route(self, message: Dict[str, Any]) -> None:
        ch = self._channels.get(message.get("topic"))
        if ch is None:
            logger.debug(f"Relay frame for unknown topic {message.get('topic')}")
            return
        op = message.get("op")
        if op == "ack":
            ch._resolve(message.get("status", CLOSED))
        elif op == PRESENCE:
            ch._dispatch(PRESENCE, message.get("payload") or {})
        elif op == BROADCAST:
            ch._dispatch(BROADCAST, message.get("payload") or {}, message.get("event"))
        else:
            logger.debug(f"Unhandled relay op {op}")
