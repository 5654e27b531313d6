"""Caller → voice-AI relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from integrations.twilio_streaming import parse_stream_message
from relay.connections import BackendConnection
from relay.errors import MalformedFrame, RelayOverrun
from relay.session import Session
from telephony.codec import FrameCodec, FrameLayout
from telephony.frames import Frame

LOGGER = logging.getLogger(__name__)


class InboundRelay:
    """Pulls caller audio off the telephony stream and forwards it in order.

    Two coroutines share a FIFO buffer: `pump` decodes telephony messages and
    enqueues frames, `forward` sends them to the backend one at a time. A frame
    counts as buffered until the backend has accepted it; reaching
    `max_buffered_frames` raises `RelayOverrun`.
    """

    def __init__(
        self,
        session: Session,
        stream: AsyncIterator[str | bytes],
        codec: FrameCodec,
        *,
        max_buffered_frames: int = 50,
        max_consecutive_malformed: int = 10,
        on_media: Callable[[], None] | None = None,
    ) -> None:
        self._session = session
        self._stream = stream
        self._codec = codec
        self._max_buffered = max_buffered_frames
        self._max_malformed = max_consecutive_malformed
        self._on_media = on_media

        self._queue: asyncio.Queue[Frame] = asyncio.Queue()
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._backend: BackendConnection | None = None

        self._last_sequence: int | None = None
        self._malformed_run = 0
        self.received = 0
        self.forwarded = 0
        self.discarded = 0
        self.stopped = False

    @property
    def pending(self) -> int:
        return self._pending

    def attach(self, backend: BackendConnection) -> None:
        """Start accepting frames for `backend`. Until then caller audio is discarded."""
        self._backend = backend

    def detach(self) -> None:
        """Stop forwarding. Buffered and later caller audio is discarded until `attach`."""

        self._backend = None
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._pending -= 1
            self.discarded += 1
        if self._pending == 0:
            self._idle.set()

    async def pump(self) -> None:
        """Consume the telephony stream until it ends or Twilio sends `stop`."""

        async for raw in self._stream:
            if self._session.cancelled.is_set():
                return

            try:
                frame = self._decode(raw)
            except MalformedFrame as exc:
                self._malformed_run += 1
                LOGGER.warning("Dropping malformed frame for %s: %s", self._session.call_id, exc)
                if self._malformed_run >= self._max_malformed:
                    raise MalformedFrame(
                        f"{self._malformed_run} consecutive malformed frames",
                        call_id=self._session.call_id,
                    ) from exc
                continue

            self._malformed_run = 0
            if self.stopped:
                return
            if frame is None:
                continue

            self._session.touch()
            self.received += 1
            if self._last_sequence is not None and frame.sequence <= self._last_sequence:
                LOGGER.warning(
                    "Dropping out-of-order frame for %s: seq=%s after %s",
                    self._session.call_id,
                    frame.sequence,
                    self._last_sequence,
                )
                continue
            if self._last_sequence is not None and frame.sequence > self._last_sequence + 1:
                LOGGER.debug(
                    "Sequence gap for %s: %s -> %s",
                    self._session.call_id,
                    self._last_sequence,
                    frame.sequence,
                )
            self._last_sequence = frame.sequence
            if self._on_media is not None:
                self._on_media()

            if self._backend is None:
                self.discarded += 1
                continue

            self._enqueue(frame)
            # Let the sender run before pulling the next telephony message.
            await asyncio.sleep(0)

    async def forward(self) -> None:
        """Send buffered frames to the attached backend in arrival order."""

        while True:
            frame = await self._queue.get()
            try:
                backend = self._backend
                if backend is None:
                    continue
                await backend.send_frame(frame)
                self.forwarded += 1
            finally:
                self._pending -= 1
                if self._pending == 0:
                    self._idle.set()

    async def drain(self) -> None:
        """Wait until every buffered frame has been accepted by the backend."""
        await self._idle.wait()

    def _enqueue(self, frame: Frame) -> None:
        self._queue.put_nowait(frame)
        self._pending += 1
        self._idle.clear()
        if self._pending >= self._max_buffered:
            raise RelayOverrun(
                f"{self._pending} frames buffered for backend",
                call_id=self._session.call_id,
            )

    def _decode(self, raw: str | bytes) -> Frame | None:
        if isinstance(raw, bytes) and self._codec.layout is not FrameLayout.TWILIO_JSON:
            return self._codec.decode_inbound(raw)

        message = parse_stream_message(raw)
        if message.event == "media":
            track = (message.body.get("media") or {}).get("track")
            if track and track not in ("inbound", "inbound_track"):
                return None
            return self._codec.frame_from_media(message)

        if message.event == "stop":
            LOGGER.info("Stream stopped for %s", self._session.call_id)
            self.stopped = True
        elif message.event == "mark":
            LOGGER.debug("Mark for %s: %s", self._session.call_id, (message.body.get("mark") or {}).get("name"))
        elif message.event == "dtmf":
            LOGGER.info("DTMF for %s: %s", self._session.call_id, (message.body.get("dtmf") or {}).get("digit"))
        else:
            LOGGER.debug("Ignoring %s event for %s", message.event, self._session.call_id)
        return None
