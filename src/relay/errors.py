"""Domain-specific exceptions for relay operations.

These exceptions are safe to import from API layers without pulling in the
audio stack.
"""

from __future__ import annotations


class RelayError(Exception):
    status_code: int = 500
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None, *, call_id: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail
        self.call_id = call_id


class DuplicateSession(RelayError):
    status_code = 409
    default_detail = "A session for this call already exists."


class SessionNotFound(RelayError):
    status_code = 404
    default_detail = "No active session for this call."


class MalformedFrame(RelayError):
    status_code = 400
    default_detail = "Malformed media frame."


class BackendUnavailable(RelayError):
    status_code = 503
    default_detail = "Voice-AI backend unavailable."


class HandshakeTimeout(BackendUnavailable):
    status_code = 504
    default_detail = "Voice-AI backend handshake timed out."


class RelayOverrun(RelayError):
    status_code = 503
    default_detail = "Inbound relay buffer overrun."


class ConnectionClosed(RelayError):
    status_code = 410
    default_detail = "Connection closed."

    def __init__(
        self,
        detail: str | None = None,
        *,
        call_id: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(detail, call_id=call_id)
        self.transient = transient


class InvalidTransition(RelayError):
    status_code = 409
    default_detail = "Invalid session state transition."
