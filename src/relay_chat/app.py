# app.py -- FastAPI application
# Single process: REST API + WebSocket hub + uploaded media.
# Entry point: `python -m relay_chat` or `relay-chat` CLI.

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .config import config
from .db import Database
from .media import MEDIA_URL_PREFIX, MediaStore
from .ws import ConnectionHub

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create shared state on startup, drop live sockets on shutdown."""
    app.state.db = Database()
    app.state.media = MediaStore()
    app.state.start_time = time.time()

    # Presence registry lives here; empty on every start
    hub = ConnectionHub()
    app.state.hub = hub

    log.info("Relay chat started -- listening on http://%s:%d", config.web_host, config.web_port)
    yield

    await hub.close_all()
    log.info("Relay chat stopped")


app = FastAPI(title="Relay Chat", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.cors_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and include routes (uses dependency injection via app.state)
from .api.routes import router  # noqa: E402

app.include_router(router)

config.media_dir.mkdir(parents=True, exist_ok=True)
app.mount(MEDIA_URL_PREFIX, StaticFiles(directory=str(config.media_dir)), name="media")


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    uvicorn.run(
        "relay_chat.app:app",
        host=config.web_host,
        port=config.web_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
