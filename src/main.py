"""Entry point for the Twilio to voice-AI audio relay service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.routes import router as api_router
from config.settings import get_settings
from relay.config import RelayConfig
from relay.controller import create_session_controller

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "controller", None) is None:
        # Lazy import so tests that inject a controller never need the backend client.
        from integrations.elevenlabs_agent import ElevenLabsConnector

        config = RelayConfig.from_settings(get_settings())
        app.state.controller = create_session_controller(config, connector=ElevenLabsConnector())
        LOGGER.info("Relay started (layout=%s)", config.frame_layout.value)
    try:
        yield
    finally:
        await app.state.controller.close_all()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Voice Agent Relay",
    description="Bridges Twilio Media Streams to an ElevenLabs conversational agent.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")


def run() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
