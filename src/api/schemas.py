"""API-facing Pydantic models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    active_sessions: int


class SessionResponse(BaseModel):
    call_id: str
    stream_sid: str | None = None
    state: str
    created_at: float
    last_activity_at: float
    error: str | None = Field(default=None, description="Name of the error that ended the session, if any.")
    close_reason: str | None = None


class TerminateResponse(BaseModel):
    call_id: str
    status: str = "terminating"


class CallRequest(BaseModel):
    to_number: str = Field(description="E.164 phone number, e.g. +4179...")


class CallResponse(BaseModel):
    call_sid: str
    to_number: str
