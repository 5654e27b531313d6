"""Session controller.

Owns every call session from the Twilio `start` event to teardown:

    CONNECTING -> ACTIVE -> CLOSING -> CLOSED
    CONNECTING -> CLOSED            (handshake failure/timeout, caller hangup)

Each session runs its own tasks (inbound pump, inbound sender, backend reader,
paced player); a failure in one session never touches another.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

import numpy as np

from integrations.twilio_streaming import StreamMessage, parse_stream_message
from relay.config import RelayConfig
from relay.connections import BackendConnection, BackendConnector, TelephonyConnection
from relay.errors import (
    BackendUnavailable,
    ConnectionClosed,
    DuplicateSession,
    HandshakeTimeout,
    MalformedFrame,
    RelayError,
    SessionNotFound,
)
from relay.inbound import InboundRelay
from relay.outbound import OutboundRelay
from relay.registry import SessionRegistry
from relay.session import Session, SessionState
from telephony.ambience import AmbienceMixer, load_ambience_wav
from telephony.codec import FrameCodec, FrameLayout

LOGGER = logging.getLogger(__name__)


class SessionController:
    def __init__(
        self,
        config: RelayConfig,
        *,
        connector: BackendConnector,
        registry: SessionRegistry | None = None,
        ambience_track: np.ndarray | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._config = config
        self._connector = connector
        self.registry = registry or SessionRegistry()
        self._codec = FrameCodec(config.frame_layout, frame_ms=config.frame_ms)
        self._ambience_track = ambience_track
        self._pacing: dict[str, Callable] = {}
        if clock is not None:
            self._pacing["clock"] = clock
        if sleep is not None:
            self._pacing["sleep"] = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def serve(self, telephony: TelephonyConnection) -> Session | None:
        """Run one telephony connection to completion.

        Returns the closed session, or None if the stream never started or
        duplicated an active call.
        """

        stream = telephony.messages()
        start = await self._await_start(stream)
        if start is None:
            LOGGER.info("Telephony stream ended before start")
            await telephony.close()
            return None

        call_id = start.call_sid or start.stream_sid or ""
        try:
            session = await self.registry.create(call_id, telephony=telephony, stream_sid=start.stream_sid)
        except DuplicateSession:
            LOGGER.warning("Rejecting second media stream for call %s", call_id)
            await telephony.close(code=1008)
            return None

        LOGGER.info("Session %s connecting (stream=%s)", call_id, start.stream_sid)
        try:
            await self._run(session, stream, start.custom_parameters)
        except Exception as exc:
            LOGGER.exception("Session %s failed unexpectedly", call_id)
            session.fail(RelayError(str(exc), call_id=call_id))
        finally:
            await self._finalize(session)
        return session

    async def terminate(self, call_id: str, *, reason: str = "terminated") -> Session:
        session = self.registry.get(call_id)
        if session is None:
            raise SessionNotFound(call_id=call_id)
        if session.close_reason is None:
            session.close_reason = reason
        session.terminate_requested.set()
        return session

    async def close_all(self) -> None:
        """Terminate every session and wait for each to tear down (for shutdown)."""
        await self.registry.close_all(self._shutdown_session)

    async def _shutdown_session(self, session: Session) -> None:
        if session.close_reason is None:
            session.close_reason = "shutdown"
        session.terminate_requested.set()
        try:
            await asyncio.wait_for(session.cancelled.wait(), timeout=self._config.drain_grace_s + 1.0)
        except asyncio.TimeoutError:
            LOGGER.warning("Session %s did not stop within the shutdown grace", session.call_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _await_start(self, stream: AsyncIterator[str | bytes]) -> StreamMessage | None:
        async for raw in stream:
            if isinstance(raw, bytes) and self._codec.layout is not FrameLayout.TWILIO_JSON:
                continue
            try:
                message = parse_stream_message(raw)
            except MalformedFrame as exc:
                LOGGER.warning("Ignoring malformed message before start: %s", exc)
                continue
            if message.event == "start":
                return message
            if message.event == "stop":
                return None
            LOGGER.debug("Pre-start %s event", message.event)
        return None

    async def _run(
        self,
        session: Session,
        stream: AsyncIterator[str | bytes],
        parameters: dict[str, str],
    ) -> None:
        config = self._config
        outbound = OutboundRelay(session, self._codec, mixer=self._new_mixer(), **self._pacing)
        inbound = InboundRelay(
            session,
            stream,
            self._codec,
            max_buffered_frames=config.inbound_queue_max_frames,
            max_consecutive_malformed=config.max_consecutive_malformed_frames,
            on_media=outbound.fill_idle,
        )

        name = session.call_id
        pump = asyncio.create_task(inbound.pump(), name=f"inbound-pump:{name}")
        terminate = asyncio.create_task(session.terminate_requested.wait(), name=f"terminate:{name}")
        tasks: set[asyncio.Task] = {pump, terminate}
        try:
            backend = await self._connect(session, pump, terminate, parameters)
            if backend is None:
                return

            session.backend = backend
            inbound.attach(backend)
            session.transition(SessionState.ACTIVE)
            LOGGER.info("Session %s active", name)

            player = asyncio.create_task(outbound.play(), name=f"outbound-play:{name}")
            forward = asyncio.create_task(inbound.forward(), name=f"inbound-forward:{name}")
            relay_out = asyncio.create_task(outbound.run(backend), name=f"outbound:{name}")
            tasks |= {player, forward, relay_out}
            reconnected = False

            while True:
                done, _ = await asyncio.wait(
                    {pump, terminate, player, forward, relay_out},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if terminate in done:
                    LOGGER.info("Session %s terminate requested (%s)", name, session.close_reason)
                    break

                if pump in done:
                    exc = pump.exception()
                    if exc is not None:
                        session.fail(_as_relay_error(exc, name))
                    session.close_reason = session.close_reason or "caller_hangup"
                    break

                if player in done:
                    exc = player.exception()
                    if exc is not None:
                        session.fail(_as_relay_error(exc, name))
                    session.close_reason = session.close_reason or "telephony_closed"
                    break

                failed = forward if forward in done else relay_out
                exc = failed.exception()
                if exc is None:
                    session.close_reason = session.close_reason or "backend_closed"
                    break

                if isinstance(exc, ConnectionClosed) and exc.transient and not reconnected:
                    reconnected = True
                    await _cancel(forward, relay_out)
                    tasks -= {forward, relay_out}
                    # Caller audio is discarded, as while CONNECTING, until the new backend is attached.
                    inbound.detach()
                    await _close_quietly(backend.close())
                    session.backend = None

                    backend = await self._reconnect(session, pump, terminate, parameters)
                    if backend is None:
                        break

                    session.backend = backend
                    inbound.attach(backend)
                    forward = asyncio.create_task(inbound.forward(), name=f"inbound-forward:{name}")
                    relay_out = asyncio.create_task(outbound.run(backend), name=f"outbound:{name}")
                    tasks |= {forward, relay_out}
                    continue

                session.fail(_as_relay_error(exc, name, default=BackendUnavailable))
                break

            session.transition(SessionState.CLOSING)
            await self._drain(session, inbound, outbound, forward)
        finally:
            session.cancelled.set()
            await _cancel(*tasks)
            if session.backend is not None:
                await _close_quietly(session.backend.close())
            await _close_quietly(session.telephony.close())

    async def _connect(
        self,
        session: Session,
        pump: asyncio.Task,
        terminate: asyncio.Task,
        parameters: dict[str, str],
    ) -> BackendConnection | None:
        """CONNECTING: race the backend handshake against caller hangup."""

        handshake = asyncio.create_task(
            asyncio.wait_for(
                self._connector.connect(call_id=session.call_id, parameters=parameters),
                timeout=self._config.handshake_timeout_s,
            ),
            name=f"handshake:{session.call_id}",
        )
        done, _ = await asyncio.wait({handshake, pump, terminate}, return_when=asyncio.FIRST_COMPLETED)

        if handshake not in done or pump in done or terminate in done:
            await _cancel(handshake)
            if handshake.done() and not handshake.cancelled() and handshake.exception() is None:
                await _close_quietly(handshake.result().close())
            if pump in done:
                exc = pump.exception()
                if exc is not None:
                    session.fail(_as_relay_error(exc, session.call_id))
                session.close_reason = session.close_reason or "caller_hangup"
            LOGGER.info("Session %s closed while connecting (%s)", session.call_id, session.close_reason)
            session.transition(SessionState.CLOSED)
            return None

        try:
            return handshake.result()
        except asyncio.TimeoutError:
            session.fail(
                HandshakeTimeout(
                    f"No handshake within {self._config.handshake_timeout_s}s",
                    call_id=session.call_id,
                )
            )
        except Exception as exc:
            session.fail(_as_relay_error(exc, session.call_id, default=BackendUnavailable))

        LOGGER.error("Backend handshake failed for %s: %s", session.call_id, session.error)
        session.close_reason = "backend_unavailable"
        session.transition(SessionState.CLOSED)
        return None

    async def _reconnect(
        self,
        session: Session,
        pump: asyncio.Task,
        terminate: asyncio.Task,
        parameters: dict[str, str],
    ) -> BackendConnection | None:
        """Reconnect once after the backoff, racing it against caller hangup and terminate."""

        LOGGER.warning(
            "Backend connection lost for %s; reconnecting in %.2fs",
            session.call_id,
            self._config.reconnect_backoff_s,
        )
        attempt = asyncio.create_task(
            self._connect_after_backoff(session, parameters),
            name=f"reconnect:{session.call_id}",
        )
        done, _ = await asyncio.wait({attempt, pump, terminate}, return_when=asyncio.FIRST_COMPLETED)

        if attempt not in done:
            await _cancel(attempt)
            if attempt.done() and not attempt.cancelled() and attempt.exception() is None:
                if attempt.result() is not None:
                    await _close_quietly(attempt.result().close())
            if pump in done:
                exc = pump.exception()
                if exc is not None:
                    session.fail(_as_relay_error(exc, session.call_id))
                session.close_reason = session.close_reason or "caller_hangup"
            LOGGER.info("Session %s closed while reconnecting (%s)", session.call_id, session.close_reason)
            return None

        backend = attempt.result()
        if backend is None:
            session.fail(BackendUnavailable("Reconnect failed", call_id=session.call_id))
            return None
        LOGGER.info("Backend reconnected for %s", session.call_id)
        return backend

    async def _connect_after_backoff(
        self,
        session: Session,
        parameters: dict[str, str],
    ) -> BackendConnection | None:
        await asyncio.sleep(self._config.reconnect_backoff_s)
        try:
            return await asyncio.wait_for(
                self._connector.connect(call_id=session.call_id, parameters=parameters),
                timeout=self._config.handshake_timeout_s,
            )
        except (asyncio.TimeoutError, RelayError, OSError) as exc:
            LOGGER.error("Reconnect failed for %s: %s", session.call_id, exc)
            return None

    async def _drain(
        self,
        session: Session,
        inbound: InboundRelay,
        outbound: OutboundRelay,
        forward: asyncio.Task,
    ) -> None:
        """CLOSING: let in-flight audio settle, bounded by the grace period."""

        if session.error is not None:
            return

        waits = [outbound.drain()]
        if not forward.done():
            waits.append(inbound.drain())
        try:
            await asyncio.wait_for(asyncio.gather(*waits), timeout=self._config.drain_grace_s)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Session %s drain exceeded %.1fs grace (%s inbound frames pending)",
                session.call_id,
                self._config.drain_grace_s,
                inbound.pending,
            )

    async def _finalize(self, session: Session) -> None:
        if session.state is SessionState.ACTIVE:
            session.transition(SessionState.CLOSING)
        if session.state is SessionState.CONNECTING:
            session.transition(SessionState.CLOSED)
        if session.state is SessionState.CLOSING:
            session.transition(SessionState.CLOSED)

        await self.registry.remove(session.call_id)
        LOGGER.info(
            "Session %s closed (reason=%s error=%s)",
            session.call_id,
            session.close_reason,
            type(session.error).__name__ if session.error else None,
        )

    def _new_mixer(self) -> AmbienceMixer | None:
        if self._ambience_track is None:
            return None
        return AmbienceMixer(self._ambience_track, gain=self._config.ambience_gain)


def create_session_controller(
    config: RelayConfig,
    *,
    connector: BackendConnector,
    registry: SessionRegistry | None = None,
) -> SessionController:
    """Build a controller, loading the ambience track once if configured."""

    track = load_ambience_wav(config.ambience_wav_path) if config.ambience_wav_path else None
    return SessionController(config, connector=connector, registry=registry, ambience_track=track)


def _as_relay_error(
    exc: BaseException,
    call_id: str,
    *,
    default: type[RelayError] = RelayError,
) -> RelayError:
    if isinstance(exc, RelayError):
        if exc.call_id is None:
            exc.call_id = call_id
        return exc
    LOGGER.error("Unexpected %s in session %s: %s", type(exc).__name__, call_id, exc)
    return default(str(exc) or type(exc).__name__, call_id=call_id)


async def _cancel(*tasks: asyncio.Task) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def _close_quietly(closing: Awaitable[None]) -> None:
    try:
        await closing
    except Exception:
        LOGGER.debug("Error while closing connection", exc_info=True)
