from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from config.settings import Settings
from telephony.codec import FrameLayout


@dataclass(frozen=True)
class RelayConfig:
    """Immutable relay tuning, built once at startup from `Settings`."""

    handshake_timeout_s: float = 10.0
    drain_grace_s: float = 2.0
    reconnect_backoff_s: float = 0.5
    inbound_queue_max_frames: int = 50
    max_consecutive_malformed_frames: int = 10
    frame_ms: int = 20
    frame_layout: FrameLayout = FrameLayout.TWILIO_JSON
    ambience_wav_path: Path | None = None
    ambience_gain: float = 0.3

    @classmethod
    def from_settings(cls, settings: Settings) -> RelayConfig:
        return cls(
            handshake_timeout_s=settings.handshake_timeout_seconds,
            drain_grace_s=settings.drain_grace_seconds,
            reconnect_backoff_s=settings.reconnect_backoff_seconds,
            inbound_queue_max_frames=settings.inbound_queue_max_frames,
            max_consecutive_malformed_frames=settings.max_consecutive_malformed_frames,
            frame_ms=settings.frame_ms,
            frame_layout=FrameLayout(settings.telephony_frame_layout),
            ambience_wav_path=settings.ambience_wav_path,
            ambience_gain=settings.ambience_gain,
        )
