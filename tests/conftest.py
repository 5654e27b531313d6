from __future__ import annotations

import asyncio
import base64
import json
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Must be set before anything reads Settings.
os.environ.setdefault("ELEVENLABS_AGENT_ID", "agent_test")
os.environ.setdefault("PUBLIC_BASE_URL", "https://relay.example.com")

from relay.connections import BackendEvent  # noqa: E402
from relay.errors import ConnectionClosed  # noqa: E402
from telephony.frames import AudioEncoding, Frame  # noqa: E402


# ----------------------------------------------------------------------
# Twilio message builders
# ----------------------------------------------------------------------


def start_event(call_sid: str = "CA100", stream_sid: str = "MZ100", **parameters: str) -> str:
    return json.dumps(
        {
            "event": "start",
            "sequenceNumber": "1",
            "streamSid": stream_sid,
            "start": {
                "callSid": call_sid,
                "streamSid": stream_sid,
                "tracks": ["inbound"],
                "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
                "customParameters": parameters,
            },
        }
    )


def media_event(sequence: int, payload: bytes = b"\xff" * 160, stream_sid: str = "MZ100") -> str:
    return json.dumps(
        {
            "event": "media",
            "sequenceNumber": str(sequence),
            "streamSid": stream_sid,
            "media": {
                "track": "inbound",
                "chunk": str(sequence),
                "timestamp": str(sequence * 20),
                "payload": base64.b64encode(payload).decode("ascii"),
            },
        }
    )


def stop_event(call_sid: str = "CA100", stream_sid: str = "MZ100") -> str:
    return json.dumps({"event": "stop", "streamSid": stream_sid, "stop": {"callSid": call_sid}})


# ----------------------------------------------------------------------
# In-memory connections
# ----------------------------------------------------------------------


class FakeTelephony:
    """Scripted caller side. Messages are fed through `push`; `None` hangs up."""

    def __init__(self, messages: list[str | bytes] | None = None, *, hang_up: bool = True) -> None:
        self._inbox: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        for message in messages or []:
            self._inbox.put_nowait(message)
        if hang_up:
            self._inbox.put_nowait(None)
        self.sent: list[str | bytes] = []
        self.closed_with: int | None = None

    def push(self, message: str | bytes | None) -> None:
        self._inbox.put_nowait(message)

    async def messages(self):
        while True:
            message = await self._inbox.get()
            if message is None:
                return
            yield message

    async def send(self, message: str | bytes) -> None:
        if self.closed_with is not None:
            raise ConnectionClosed("Telephony connection closed")
        self.sent.append(message)

    async def close(self, code: int = 1000) -> None:
        if self.closed_with is None:
            self.closed_with = code

    def sent_events(self, event: str) -> list[dict]:
        decoded = [json.loads(message) for message in self.sent if isinstance(message, str)]
        return [message for message in decoded if message.get("event") == event]


class FakeBackend:
    """Scripted voice-AI side.

    Items pushed with `emit` are yielded from `receive`; an exception instance
    is raised instead, and `None` ends the stream normally.
    """

    def __init__(self, *, accept_limit: int | None = None) -> None:
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._accept_limit = accept_limit
        self._blocked = asyncio.Event()
        self.received: list[Frame] = []
        self.closed = False

    def emit(self, item: Frame | BackendEvent | BaseException | None) -> None:
        self._outbox.put_nowait(item)

    async def send_frame(self, frame: Frame) -> None:
        if self._accept_limit is not None and len(self.received) >= self._accept_limit:
            await self._blocked.wait()
        self.received.append(frame)

    async def receive(self):
        while True:
            item = await self._outbox.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Hands out prepared backends in order; an exception entry is raised."""

    def __init__(self, *backends: FakeBackend | BaseException, delay: float = 0.0) -> None:
        self._backends = list(backends)
        self.delay = delay
        self.calls: list[dict] = []

    async def connect(self, *, call_id: str, parameters: dict[str, str] | None = None):
        self.calls.append({"call_id": call_id, "parameters": dict(parameters or {})})
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self._backends:
            raise ConnectionClosed("No backend available", transient=True)
        backend = self._backends.pop(0)
        if isinstance(backend, BaseException):
            raise backend
        return backend


def ulaw_frame(sequence: int = 1, samples: int = 160) -> Frame:
    return Frame(payload=b"\xff" * samples, sequence=sequence, encoding=AudioEncoding.ULAW_8000)


# ----------------------------------------------------------------------
# FastAPI app
# ----------------------------------------------------------------------


@pytest.fixture(scope="session")
def app():
    import importlib

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def controller():
    from relay.config import RelayConfig
    from relay.controller import SessionController

    return SessionController(RelayConfig(handshake_timeout_s=1.0, drain_grace_s=0.1), connector=FakeConnector())


@pytest.fixture()
def client(app, controller):
    # Inject the controller so tests never open a real agent connection.
    app.state.controller = controller

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    app.state.controller = None
