"""ElevenLabs Conversational AI agent over WebSocket.

Protocol notes:
- Public agents connect to `{ws_url}?agent_id=...`; private agents first
  fetch a signed URL from the REST API using the account API key.
- The client sends `conversation_initiation_client_data`, then waits for
  `conversation_initiation_metadata`, which announces the audio formats.
- Caller audio goes up as `{"user_audio_chunk": <base64>}`.
- Agent audio comes down in `audio` events; `ping` must be answered with
  `pong` carrying the same event id.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosed as WebSocketClosed
from websockets.exceptions import ConnectionClosedOK, InvalidHandshake

from config.settings import Settings, get_settings
from relay.connections import BackendEvent
from relay.errors import BackendUnavailable, ConnectionClosed, MalformedFrame
from telephony.codec import transcode
from telephony.frames import AudioEncoding, Frame

LOGGER = logging.getLogger(__name__)

_CONTROL_EVENTS = {"interruption", "agent_response", "user_transcript", "agent_response_correction"}


class ElevenLabsConversation:
    """One open agent conversation; implements `BackendConnection`."""

    def __init__(
        self,
        ws: Any,
        *,
        call_id: str,
        conversation_id: str | None = None,
        input_encoding: AudioEncoding = AudioEncoding.ULAW_8000,
        output_encoding: AudioEncoding = AudioEncoding.ULAW_8000,
    ) -> None:
        self._ws = ws
        self.call_id = call_id
        self.conversation_id = conversation_id
        self.input_encoding = input_encoding
        self.output_encoding = output_encoding
        self._sequence = 0

    async def send_frame(self, frame: Frame) -> None:
        frame = transcode(frame, self.input_encoding)
        message = json.dumps({"user_audio_chunk": base64.b64encode(frame.payload).decode("ascii")})
        try:
            await self._ws.send(message)
        except WebSocketClosed as exc:
            raise _closed(exc, self.call_id) from exc

    async def receive(self) -> AsyncIterator[Frame | BackendEvent]:
        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosedOK:
                LOGGER.info("Agent conversation ended for %s", self.call_id)
                return
            except WebSocketClosed as exc:
                raise _closed(exc, self.call_id) from exc

            try:
                item = await self._handle(raw)
            except MalformedFrame as exc:
                LOGGER.warning("Ignoring agent message for %s: %s", self.call_id, exc)
                continue
            if item is not None:
                yield item

    async def close(self) -> None:
        await self._ws.close()

    async def _handle(self, raw: str | bytes) -> Frame | BackendEvent | None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedFrame(f"Invalid JSON: {exc}") from exc
        if not isinstance(message, dict):
            raise MalformedFrame("Agent message must be an object")

        kind = str(message.get("type") or "")
        if kind == "audio":
            event = message.get("audio_event") or {}
            try:
                payload = base64.b64decode(event.get("audio_base_64") or "", validate=True)
            except (binascii.Error, ValueError) as exc:
                raise MalformedFrame(f"Invalid audio payload: {exc}") from exc
            self._sequence += 1
            return Frame(payload=payload, sequence=self._sequence, encoding=self.output_encoding)

        if kind == "ping":
            event = message.get("ping_event") or {}
            try:
                await self._ws.send(json.dumps({"type": "pong", "event_id": event.get("event_id")}))
            except WebSocketClosed as exc:
                raise _closed(exc, self.call_id) from exc
            return None

        if kind in _CONTROL_EVENTS:
            return BackendEvent(kind=kind, data=message.get(f"{kind}_event") or {})

        LOGGER.debug("Unhandled agent message %r for %s", kind, self.call_id)
        return None


class ElevenLabsConnector:
    """Opens agent conversations; implements `BackendConnector`."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        if not settings.elevenlabs_agent_id:
            raise ValueError("ELEVENLABS_AGENT_ID is not configured")

        self._agent_id = settings.elevenlabs_agent_id
        self._api_key = settings.elevenlabs_api_key
        self._ws_url = settings.elevenlabs_ws_url
        self._api_url = settings.elevenlabs_api_url.rstrip("/")
        self._transport = transport

    async def connect(self, *, call_id: str, parameters: dict[str, str] | None = None) -> ElevenLabsConversation:
        url = await self._conversation_url()
        try:
            ws = await websockets.connect(url, ping_interval=20, ping_timeout=20, max_size=None)
        except (OSError, InvalidHandshake) as exc:
            raise BackendUnavailable(f"Cannot reach agent: {exc}", call_id=call_id) from exc

        try:
            await ws.send(json.dumps(_initiation_message(parameters)))
            metadata = await _await_metadata(ws)
        except WebSocketClosed as exc:
            await ws.close()
            raise BackendUnavailable(f"Agent closed during handshake: {exc}", call_id=call_id) from exc
        except (BackendUnavailable, asyncio.CancelledError):
            await ws.close()
            raise

        input_encoding = _encoding_from_format(metadata.get("user_input_audio_format"))
        output_encoding = _encoding_from_format(metadata.get("agent_output_audio_format"))
        conversation_id = metadata.get("conversation_id")
        LOGGER.info(
            "Agent conversation %s started for %s (in=%s out=%s)",
            conversation_id,
            call_id,
            input_encoding.value,
            output_encoding.value,
        )
        return ElevenLabsConversation(
            ws,
            call_id=call_id,
            conversation_id=conversation_id,
            input_encoding=input_encoding,
            output_encoding=output_encoding,
        )

    async def _conversation_url(self) -> str:
        if not self._api_key:
            return f"{self._ws_url}?{urlencode({'agent_id': self._agent_id})}"

        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            try:
                resp = await client.get(
                    f"{self._api_url}/convai/conversation/get_signed_url",
                    params={"agent_id": self._agent_id},
                    headers={"xi-api-key": self._api_key},
                )
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise BackendUnavailable(f"Signed URL request failed: {exc}") from exc

        signed_url = resp.json().get("signed_url")
        if not signed_url:
            raise BackendUnavailable("Signed URL response had no signed_url")
        return str(signed_url)


async def _await_metadata(ws: Any) -> dict[str, Any]:
    async for raw in ws:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            continue
        if isinstance(message, dict) and message.get("type") == "conversation_initiation_metadata":
            return message.get("conversation_initiation_metadata_event") or {}
        if isinstance(message, dict) and message.get("type") == "ping":
            event = message.get("ping_event") or {}
            await ws.send(json.dumps({"type": "pong", "event_id": event.get("event_id")}))
    raise BackendUnavailable("Agent closed before conversation metadata")


def _initiation_message(parameters: dict[str, str] | None) -> dict[str, Any]:
    message: dict[str, Any] = {"type": "conversation_initiation_client_data"}
    if parameters:
        message["dynamic_variables"] = dict(parameters)
    return message


def _encoding_from_format(value: Any) -> AudioEncoding:
    """Map an ElevenLabs format string (`ulaw_8000`, `pcm_16000`) to an encoding."""

    if not value:
        return AudioEncoding.ULAW_8000
    try:
        return AudioEncoding(str(value))
    except ValueError:
        LOGGER.warning("Unsupported agent audio format %r; assuming ulaw_8000", value)
        return AudioEncoding.ULAW_8000


def _closed(exc: WebSocketClosed, call_id: str) -> ConnectionClosed:
    return ConnectionClosed(f"Agent connection lost: {exc}", call_id=call_id, transient=True)
