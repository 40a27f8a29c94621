# routes/relay.py
import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.errors import RelayError, RelaySubscriptionFailure
from app.state import ServiceContext, get_context
from service.relay import RelayChannel, RelayEvent, SUBSCRIBED

logger = logging.getLogger("relay_hub")
router = APIRouter()


def encode_event(event: RelayEvent) -> Dict[str, Any]:
    return {
        "op": event.kind,
        "topic": event.channel.topic,
        "event": event.event,
        "payload": event.payload,
    }


@router.websocket("/relay")
async def relay_socket(websocket: WebSocket, ctx: ServiceContext = Depends(get_context)):
    """
    Presence/broadcast hub for remote clients.

    Client frames: ``join`` {topic, key}, ``track`` {topic, meta},
    ``send`` {topic, event, payload}, ``leave`` {topic}.
    Hub frames: ``ack`` {topic, status}, ``presence`` {topic, payload},
    ``broadcast`` {topic, event, payload}.
    """
    await websocket.accept()
    hub = ctx.relay_hub
    outbox: asyncio.Queue = asyncio.Queue()
    channels: Dict[str, RelayChannel] = {}

    def sink(event: RelayEvent) -> None:
        outbox.put_nowait(encode_event(event))

    async def pump() -> None:
        while True:
            await websocket.send_json(await outbox.get())

    writer = asyncio.create_task(pump())
    try:
        while True:
            message = await websocket.receive_json()
            op = message.get("op")
            topic = message.get("topic")
            if not topic:
                logger.warning(f"Relay frame without topic: {op}")
                continue
            if op == "join":
                previous = channels.pop(topic, None)
                if previous is not None:
                    await hub.remove_channel(previous)
                channel = hub.channel(topic, key=str(message.get("key")), sink=sink)
                channels[topic] = channel
                try:
                    await channel.subscribe()
                    status = SUBSCRIBED
                except RelaySubscriptionFailure as e:
                    status = e.status
                outbox.put_nowait({"op": "ack", "topic": topic, "status": status})
            elif op == "leave":
                channel = channels.pop(topic, None)
                if channel is not None:
                    await hub.remove_channel(channel)
            elif op in ("track", "send"):
                channel = channels.get(topic)
                if channel is None:
                    logger.warning(f"{op} on {topic} before join")
                    continue
                try:
                    if op == "track":
                        await channel.track(message.get("meta") or {})
                    else:
                        await channel.send(message.get("event"), message.get("payload") or {})
                except RelayError as e:
                    logger.warning(f"Relay {op} on {topic} rejected: {e}")
            else:
                logger.warning(f"Unknown relay op {op}")
    except WebSocketDisconnect:
        logger.info(f"Relay peer disconnected ({len(channels)} channel(s) open)")
    finally:
        writer.cancel()
        for channel in channels.values():
            await hub.remove_channel(channel)
