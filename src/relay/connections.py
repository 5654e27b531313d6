"""Interfaces the relay core depends on.

Concrete implementations live in `integrations` (Twilio WebSocket,
ElevenLabs agent, Twilio REST); tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from telephony.frames import Frame


@dataclass(frozen=True, slots=True)
class BackendEvent:
    """Non-audio message from the voice-AI backend."""

    kind: str
    data: dict[str, Any] = field(default_factory=dict)


class TelephonyConnection(Protocol):
    def messages(self) -> AsyncIterator[str | bytes]:
        """Raw inbound messages; the iterator ends when the caller disconnects."""

    async def send(self, message: str | bytes) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class BackendConnection(Protocol):
    async def send_frame(self, frame: Frame) -> None:
        """Send caller audio; suspends while the backend's send buffer is full."""

    def receive(self) -> AsyncIterator[Frame | BackendEvent]:
        """Agent audio and control events.

        Ends on a normal close. Raises `ConnectionClosed(transient=True)` on an
        abnormal close that is worth one reconnect.
        """

    async def close(self) -> None:
        ...


class BackendConnector(Protocol):
    async def connect(self, *, call_id: str, parameters: dict[str, str] | None = None) -> BackendConnection:
        """Open a backend connection and complete its handshake."""


class CallPlacer(Protocol):
    async def place_call(self, *, to_number: str, from_number: str, callback_url: str) -> str:
        """Originate a call and return its call SID."""
