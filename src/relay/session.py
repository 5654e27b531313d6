"""Call session container and its state machine."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from relay.errors import InvalidTransition, RelayError

if TYPE_CHECKING:  # pragma: no cover
    from relay.connections import BackendConnection, TelephonyConnection


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


_ALLOWED: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.ACTIVE, SessionState.CLOSED}),
    SessionState.ACTIVE: frozenset({SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


@dataclass
class Session:
    """One phone call and its paired AI conversation.

    Owned by the session controller; the relays only hold references.
    """

    call_id: str
    telephony: TelephonyConnection | None = None
    backend: BackendConnection | None = None
    stream_sid: str | None = None
    state: SessionState = SessionState.CONNECTING
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    error: RelayError | None = None
    close_reason: str | None = None
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    terminate_requested: asyncio.Event = field(default_factory=asyncio.Event)
    history: list[SessionState] = field(default_factory=lambda: [SessionState.CONNECTING])

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _ALLOWED[self.state]:
            raise InvalidTransition(
                f"{self.state.value} -> {new_state.value} is not allowed",
                call_id=self.call_id,
            )
        self.state = new_state
        self.history.append(new_state)
        self.touch()

    def fail(self, error: RelayError) -> None:
        """Record the first terminal error; later errors are ignored."""
        if self.error is None:
            self.error = error

    def touch(self) -> None:
        self.last_activity_at = time.time()

    @property
    def is_live(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.ACTIVE)

    def snapshot(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "stream_sid": self.stream_sid,
            "state": self.state.value,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "error": type(self.error).__name__ if self.error else None,
            "close_reason": self.close_reason,
        }
