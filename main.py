import os
import sys
import logging
from fastapi import FastAPI
from contextlib import asynccontextmanager

CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
if CURRENT_DIR not in sys.path:
    sys.path.insert(0, CURRENT_DIR)

from app.config import get_log_level
from app.state import init_state, shutdown_state
from routes import api, relay

logging.basicConfig(
    level=get_log_level(),
    format="[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Creates the service context on startup and releases it on shutdown."""
    await init_state(app)
    try:
        yield
    finally:
        await shutdown_state(app)


app = FastAPI(
    title="Anonymous Pairing WebRTC Service",
    version="1.0.0",
    lifespan=lifespan
)

# --- Routers ---
# Presentation API for the local client
app.include_router(api.router, tags=["Pairing"])

# Same API behind the reverse-proxy prefix
app.include_router(api.router, prefix="/api/v1/pairing", tags=["Pairing Proxy"])

# Presence/broadcast hub for other nodes
app.include_router(relay.router, tags=["Relay"])


@app.get("/", include_in_schema=False)
async def root():
    return {"service": app.title, "version": app.version}


# --- Run with uvicorn ---
if __name__ == "__main__":
    import uvicorn

    host = os.getenv("SERVICE_HOST", "0.0.0.0")
    port = int(os.getenv("SERVICE_PORT", "8104"))

    uvicorn.run("main:app", host=host, port=port, reload=False)
