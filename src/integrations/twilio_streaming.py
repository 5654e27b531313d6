"""Twilio Media Streams wire protocol.

Parses the JSON envelopes Twilio sends over the media-stream WebSocket
(`connected`, `start`, `media`, `mark`, `dtmf`, `stop`), builds the messages
we send back (`media`, `clear`, `mark`) and adapts a FastAPI WebSocket to the
telephony connection interface used by the relay.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from relay.errors import ConnectionClosed, MalformedFrame

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StreamMessage:
    event: str
    stream_sid: str | None = None
    sequence: int | None = None
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def call_sid(self) -> str | None:
        start = self.body.get("start") or self.body.get("stop") or {}
        value = start.get("callSid")
        return str(value) if value else None

    @property
    def custom_parameters(self) -> dict[str, str]:
        start = self.body.get("start") or {}
        return dict(start.get("customParameters") or {})

    @property
    def media_format(self) -> dict[str, Any]:
        start = self.body.get("start") or {}
        return dict(start.get("mediaFormat") or {})


def parse_stream_message(text: str | bytes) -> StreamMessage:
    """Parse one Twilio stream envelope.

    Raises:
        MalformedFrame: if the text is not a JSON object with an `event` field.
    """

    try:
        body = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedFrame(f"Invalid stream message JSON: {exc}") from exc

    if not isinstance(body, dict) or not body.get("event"):
        raise MalformedFrame("Stream message has no event")

    stream_sid = body.get("streamSid") or (body.get("start") or {}).get("streamSid")
    raw_sequence = body.get("sequenceNumber")
    try:
        sequence = int(raw_sequence) if raw_sequence is not None else None
    except (TypeError, ValueError) as exc:
        raise MalformedFrame(f"Invalid sequenceNumber: {raw_sequence!r}") from exc

    return StreamMessage(
        event=str(body["event"]),
        stream_sid=str(stream_sid) if stream_sid else None,
        sequence=sequence,
        body=body,
    )


def media_message(*, stream_sid: str | None, payload_b64: str, sequence: int, timestamp_ms: int) -> str:
    message: dict[str, Any] = {
        "event": "media",
        "sequenceNumber": str(sequence),
        "media": {"timestamp": str(timestamp_ms), "payload": payload_b64},
    }
    if stream_sid:
        message["streamSid"] = stream_sid
    return json.dumps(message, separators=(",", ":"))


def clear_message(stream_sid: str | None) -> str:
    return json.dumps({"event": "clear", "streamSid": stream_sid}, separators=(",", ":"))


def mark_message(stream_sid: str | None, name: str) -> str:
    return json.dumps(
        {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}},
        separators=(",", ":"),
    )


class TwilioMediaStream:
    """Telephony connection backed by a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def messages(self) -> AsyncIterator[str | bytes]:
        """Yield raw messages until the caller side disconnects."""

        while True:
            try:
                message = await self._websocket.receive()
            except (WebSocketDisconnect, RuntimeError):
                return

            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                yield message["text"]
            elif message.get("bytes") is not None:
                yield message["bytes"]

    async def send(self, message: str | bytes) -> None:
        try:
            if isinstance(message, bytes):
                await self._websocket.send_bytes(message)
            else:
                await self._websocket.send_text(message)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise ConnectionClosed("Telephony connection closed") from exc

    async def close(self, code: int = 1000) -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        if self._websocket.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._websocket.close(code=code)
        except RuntimeError:
            LOGGER.debug("Telephony websocket already closed")
