"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    port: int = Field(default=8080, description="HTTP port the service listens on.")

    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )

    # Voice-AI backend (ElevenLabs Conversational AI)
    elevenlabs_agent_id: str | None = Field(default=None)
    elevenlabs_api_key: str | None = Field(
        default=None,
        description="Required for private agents; used to request a signed conversation URL.",
    )
    elevenlabs_ws_url: str = Field(default="wss://api.elevenlabs.io/v1/convai/conversation")
    elevenlabs_api_url: str = Field(default="https://api.elevenlabs.io/v1")

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +4144...")
    twilio_calls_api_key: str | None = Field(
        default=None,
        description="Optional API key required to call the outbound call endpoint.",
    )

    # Relay tuning
    handshake_timeout_seconds: float = Field(default=10.0, gt=0)
    drain_grace_seconds: float = Field(default=2.0, ge=0)
    reconnect_backoff_seconds: float = Field(default=0.5, ge=0)
    inbound_queue_max_frames: int = Field(default=50, ge=1)
    max_consecutive_malformed_frames: int = Field(default=10, ge=1)
    frame_ms: int = Field(default=20, ge=10, le=100)
    telephony_frame_layout: Literal["twilio_json", "fixed", "length_prefixed"] = Field(
        default="twilio_json",
        description="Frame layout declared by the upstream telephony transport.",
    )

    # Background ambience (8 kHz, 16-bit, mono PCM WAV)
    ambience_wav_path: Path | None = Field(default=None)
    ambience_gain: float = Field(default=0.3, ge=0.0, le=1.0)

    @field_validator("ambience_wav_path")
    @classmethod
    def ensure_ambience_exists(cls, value: Path | None) -> Path | None:
        if value is not None and not value.is_file():
            raise ValueError(f"Ambience file not found: {value}")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
