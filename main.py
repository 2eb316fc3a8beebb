import os
import sys
import logging
from fastapi import FastAPI
from contextlib import asynccontextmanager

CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
if CURRENT_DIR not in sys.path:
    sys.path.insert(0, CURRENT_DIR)

from app.config import setup_logging
from app.state import init_state, shutdown_state
from routes import relay

logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize relay state and close every subscriber on shutdown."""
    await init_state()
    try:
        yield
    finally:
        await shutdown_state()


app = FastAPI(
    title="Meeting Relay Service",
    version="1.0.0",
    lifespan=lifespan
)

# --- Routers ---
app.include_router(relay.router, tags=["Meeting Relay"])

# Same API behind a reverse proxy prefix
app.include_router(relay.router, prefix="/api/v1/relay", tags=["Meeting Relay Proxy"])


@app.get("/", include_in_schema=False)
async def root():
    return {"service": app.title, "version": app.version}


# --- Run with uvicorn ---
if __name__ == "__main__":
    import uvicorn

    setup_logging()
    host = os.getenv("SERVICE_HOST", "0.0.0.0")
    port = int(os.getenv("SERVICE_PORT", "8105"))

    uvicorn.run("main:app", host=host, port=port, reload=False)
