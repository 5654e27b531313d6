"""FastAPI routes for service health and session inspection."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.dependencies import get_controller
from api.schemas import HealthResponse, SessionResponse, TerminateResponse
from api.twilio_routes import router as twilio_router
from relay.controller import SessionController
from relay.errors import RelayError

LOGGER = logging.getLogger(__name__)

router = APIRouter()
router.include_router(twilio_router)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    controller = getattr(request.app.state, "controller", None)
    active = controller.registry.active_count if controller is not None else 0
    return HealthResponse(status="ok" if controller is not None else "starting", active_sessions=active)


@router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(controller: SessionController = Depends(get_controller)) -> list[SessionResponse]:
    return [SessionResponse(**session.snapshot()) for session in controller.registry.snapshot()]


@router.get("/sessions/{call_id}", response_model=SessionResponse)
async def get_session(
    call_id: str,
    controller: SessionController = Depends(get_controller),
) -> SessionResponse:
    session = controller.registry.get(call_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No active session for this call.")
    return SessionResponse(**session.snapshot())


@router.post("/sessions/{call_id}/terminate", response_model=TerminateResponse, status_code=202)
async def terminate_session(
    call_id: str,
    controller: SessionController = Depends(get_controller),
) -> TerminateResponse:
    try:
        await controller.terminate(call_id, reason="api")
    except RelayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    LOGGER.info("Terminate requested via API for %s", call_id)
    return TerminateResponse(call_id=call_id)
