"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import HTTPException, Request, WebSocket

from integrations.twilio_client import TwilioConfig, get_twilio_config

if TYPE_CHECKING:  # pragma: no cover
    from integrations.twilio_client import TwilioCallPlacer
    from relay.controller import SessionController


def get_controller(request: Request) -> SessionController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="Relay is not running")
    return controller


def get_ws_controller(websocket: WebSocket) -> SessionController | None:
    return getattr(websocket.app.state, "controller", None)


@lru_cache(maxsize=1)
def _call_placer_factory() -> TwilioCallPlacer:
    # Lazy import so the Twilio SDK is only loaded when calls are placed.
    from integrations.twilio_client import TwilioCallPlacer

    return TwilioCallPlacer()


def get_call_placer() -> TwilioCallPlacer:
    try:
        return _call_placer_factory()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def get_twilio_cfg() -> TwilioConfig:
    try:
        return get_twilio_config()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
