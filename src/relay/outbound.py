"""Voice-AI → caller relay with real-time pacing."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace

from integrations.twilio_streaming import clear_message, mark_message
from relay.connections import BackendConnection, BackendEvent
from relay.session import Session
from telephony.ambience import AmbienceMixer
from telephony.codec import FrameCodec, FrameLayout, silence, transcode
from telephony.frames import Frame

LOGGER = logging.getLogger(__name__)


class OutboundRelay:
    """Writes agent audio to the caller no faster than it plays back.

    Two coroutines share a playback queue. `run` reads the backend, queues
    telephony-sized chunks and handles control events as soon as they arrive,
    so an interruption is never stuck behind queued audio. `play` releases the
    queue at playback rate: each chunk is due at the previous chunk's release
    time plus its duration, or now if the stream fell behind. Sequence numbers
    continue across backend reconnects.
    """

    def __init__(
        self,
        session: Session,
        codec: FrameCodec,
        *,
        mixer: AmbienceMixer | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._codec = codec
        self._mixer = mixer
        self._clock = clock
        self._sleep = sleep

        # Chunks waiting for release, and mark messages kept in order with them.
        self._queue: asyncio.Queue[Frame | str] = asyncio.Queue()
        self._generation = 0
        self._busy = False

        self._sequence = 0
        self._next_release: float | None = None
        self.frames_sent = 0
        self.fillers = 0
        self.interruptions = 0
        self.responses = 0

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def run(self, backend: BackendConnection) -> None:
        """Read `backend` until its stream ends or the session is cancelled."""

        async for item in backend.receive():
            if self._session.cancelled.is_set():
                return
            if isinstance(item, BackendEvent):
                await self._handle_event(item)
                continue
            self._enqueue_audio(item)

    async def play(self) -> None:
        """Release queued chunks to the caller until cancelled."""

        while True:
            item = await self._queue.get()
            self._busy = True
            try:
                if isinstance(item, str):
                    await self._session.telephony.send(item)
                else:
                    await self._release(item)
            finally:
                self._busy = False
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued chunk is released and has finished playing."""

        await self._queue.join()
        if self._next_release is None:
            return
        remaining = self._next_release - self._clock()
        if remaining > 0:
            await self._sleep(remaining)

    def fill_idle(self) -> None:
        """Queue one frame of ambience when no agent audio is playing.

        Called once per inbound caller packet, so with a mixer configured the
        caller hears background noise between agent turns at the rate Twilio
        delivers audio.
        """

        if self._mixer is None or self._busy or not self._queue.empty():
            return
        # Tolerate half a frame of backlog so packet jitter does not skip a filler.
        backlog = 0.0 if self._next_release is None else self._next_release - self._clock()
        if backlog > self._codec.frame_ms / 2000:
            return

        encoding = self._codec.telephony_encoding
        payload = silence(encoding, encoding.bytes_for(self._codec.frame_ms))
        self._queue.put_nowait(Frame(payload=payload, sequence=0, encoding=encoding))
        self.fillers += 1

    async def _handle_event(self, event: BackendEvent) -> None:
        if event.kind == "agent_response" and self._codec.layout is FrameLayout.TWILIO_JSON:
            # Twilio echoes the mark back once the caller has heard everything before it.
            self.responses += 1
            self._queue.put_nowait(mark_message(self._session.stream_sid, f"agent_response:{self.responses}"))
            return
        if event.kind != "interruption":
            LOGGER.debug("Backend %s event for %s", event.kind, self._session.call_id)
            return

        self.interruptions += 1
        dropped = self._flush()
        LOGGER.info(
            "Caller interrupted agent on %s; clearing playback (%s queued chunks dropped)",
            self._session.call_id,
            dropped,
        )
        if self._codec.layout is FrameLayout.TWILIO_JSON:
            await self._session.telephony.send(clear_message(self._session.stream_sid))

    def _flush(self) -> int:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            dropped += 1
        # A chunk already waiting for its release slot is dropped as well.
        self._generation += 1
        self._next_release = None
        return dropped

    def _enqueue_audio(self, frame: Frame) -> None:
        frame = transcode(frame, self._codec.telephony_encoding)
        for chunk in self._codec.packetize(frame, first_sequence=0):
            self._queue.put_nowait(chunk)

    async def _release(self, chunk: Frame) -> None:
        generation = self._generation
        now = self._clock()
        if self._next_release is None or self._next_release < now:
            self._next_release = now

        delay = self._next_release - now
        if delay > 0:
            await self._sleep(delay)

        if generation != self._generation:
            return
        # Nothing more reaches the caller once the session has failed.
        if self._session.error is not None or self._session.cancelled.is_set():
            return

        self._sequence += 1
        chunk = replace(chunk, sequence=self._sequence)
        if self._mixer is not None:
            chunk = self._mixer.mix(chunk)

        message = self._codec.encode_outbound(chunk, stream_sid=self._session.stream_sid)
        await self._session.telephony.send(message)
        self._session.touch()
        self._next_release += chunk.duration_s
        self.frames_sent += 1
