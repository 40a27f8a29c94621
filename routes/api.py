# routes/api.py
import asyncio
import logging
from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from app.errors import PairingError, RelaySubscriptionFailure
from app.state import ServiceContext, get_context
from drivers.media_source import MediaSourceError
from models.signal import IceConfig, StatusInfo

logger = logging.getLogger("api")
router = APIRouter()


@router.get("/ice_config")
async def get_ice_config(ctx: ServiceContext = Depends(get_context)):
    """Returns current ICE configuration."""
    config = await ctx.get_ice_config()
    logger.debug("ICE config requested")
    return config


@router.post("/ice_config")
async def update_ice_config(config: IceConfig, ctx: ServiceContext = Depends(get_context)):
    """Updates ICE configuration used by the next session."""
    updated_config = await ctx.update_ice_config(config.model_dump())
    logger.info("ICE config updated")
    return updated_config


@router.get("/status", response_model=StatusInfo)
async def get_status(ctx: ServiceContext = Depends(get_context)):
    """Returns matchmaking and session state of the local client."""
    return ctx.client.snapshot()


@router.post("/search/start")
async def start_search(ctx: ServiceContext = Depends(get_context)):
    """Opens local media if needed and enters the waiting pool."""
    client = ctx.client
    try:
        await ctx.ensure_local_media()
        joined = await client.start_search()
    except MediaSourceError as e:
        logger.error(f"Local media unavailable: {e}")
        raise HTTPException(status_code=500, detail=f"Local media unavailable: {e}")
    except RelaySubscriptionFailure as e:
        raise HTTPException(status_code=503, detail={
            "error": e.kind, "message": str(e), "retry": "POST /search/start",
        })
    except PairingError as e:
        logger.error(f"Error starting search: {e}")
        raise HTTPException(status_code=409, detail={"error": e.kind, "message": str(e)})

    status = "searching" if joined else "unchanged"
    logger.info(f"Search start requested for {client.client_id}: {status}")
    return {"status": status, "client_id": client.client_id}


@router.post("/search/stop")
async def stop_search(ctx: ServiceContext = Depends(get_context)):
    """Leaves the waiting pool and tears down the current session."""
    stopped = await ctx.client.stop_search()
    return {"status": "stopped" if stopped else "already_idle"}


@router.post("/reset")
async def reset(ctx: ServiceContext = Depends(get_context)):
    """Returns the client to a clean idle state."""
    await ctx.reset()
    return {"status": "reset"}


@router.websocket("/events")
async def events(websocket: WebSocket, ctx: ServiceContext = Depends(get_context)):
    """Streams presentation notifications (partner changes, errors, remote media)."""
    await websocket.accept()
    queue = ctx.client.listen()
    await websocket.send_json({"kind": "status", "data": ctx.client.snapshot()})
    receiver = asyncio.create_task(_wait_disconnect(websocket))
    try:
        while not receiver.done():
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result().to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        receiver.cancel()
        ctx.client.unlisten(queue)
        logger.debug("Event listener disconnected")


async def _wait_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
