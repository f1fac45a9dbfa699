"""FastAPI application entrypoint."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gatewaychat.config import settings
from gatewaychat.routers import chat
from gatewaychat.services.chat_session import chat_session

# ── Logging setup ────────────────────────────────────────────────────
_log_level = os.environ.get("GATEWAYCHAT_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Always trace gateway frames and run lifecycle
logging.getLogger("gatewaychat.adapters.gateway").setLevel(logging.DEBUG)
logging.getLogger("gatewaychat.services.chat_session").setLevel(logging.DEBUG)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.auto_connect:
        logger.info("Auto-connecting to gateway at %s", settings.gateway_url)
        await chat_session.connect()

    yield

    # Shutdown
    await chat_session.disconnect()


app = FastAPI(
    title="gatewaychat",
    description="Chat relay for an OpenClaw agent gateway",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router, prefix="/api/chat", tags=["chat"])


@app.get("/health")
async def health():
    state = chat_session.state
    return {
        "status": "ok",
        "service": "gatewaychat",
        "gateway": {
            "status": state.status.value,
            "session_key": state.session_key,
        },
    }
