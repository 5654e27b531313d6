from __future__ import annotations

import asyncio
import base64

import numpy as np
import pytest

from conftest import FakeBackend, FakeConnector, FakeTelephony, media_event, start_event, ulaw_frame
from relay.config import RelayConfig
from relay.controller import SessionController
from relay.errors import (
    BackendUnavailable,
    ConnectionClosed,
    HandshakeTimeout,
    RelayOverrun,
    SessionNotFound,
)
from relay.session import SessionState

FULL_LIFECYCLE = [SessionState.CONNECTING, SessionState.ACTIVE, SessionState.CLOSING, SessionState.CLOSED]


def _controller(connector, **overrides) -> SessionController:
    config = RelayConfig(
        handshake_timeout_s=overrides.pop("handshake_timeout_s", 1.0),
        drain_grace_s=overrides.pop("drain_grace_s", 0.2),
        reconnect_backoff_s=overrides.pop("reconnect_backoff_s", 0.01),
        **overrides,
    )
    return SessionController(config, connector=connector)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


async def _active_session(controller: SessionController, telephony: FakeTelephony, call_id: str = "CA100"):
    task = asyncio.create_task(controller.serve(telephony))
    await _wait_until(
        lambda: controller.registry.get(call_id) is not None
        and controller.registry.get(call_id).state is SessionState.ACTIVE
    )
    return task, controller.registry.get(call_id)


def test_call_relays_audio_both_ways_until_caller_hangs_up():
    async def _run():
        backend = FakeBackend()
        backend.emit(ulaw_frame(1))
        connector = FakeConnector(backend)
        controller = _controller(connector)
        telephony = FakeTelephony([start_event(caller_number="+41790000000")], hang_up=False)

        task, session = await _active_session(controller, telephony)
        telephony.push(media_event(2))
        telephony.push(media_event(3))
        await _wait_until(lambda: len(backend.received) == 2 and telephony.sent_events("media"))
        telephony.push(None)

        result = await asyncio.wait_for(task, timeout=2)

        assert result is session
        assert session.history == FULL_LIFECYCLE
        assert session.error is None
        assert session.close_reason == "caller_hangup"
        assert [frame.sequence for frame in backend.received] == [2, 3]
        assert telephony.sent_events("media")[0]["streamSid"] == "MZ100"
        assert backend.closed
        assert telephony.closed_with == 1000
        assert "CA100" not in controller.registry
        assert connector.calls == [{"call_id": "CA100", "parameters": {"caller_number": "+41790000000"}}]

    asyncio.run(_run())


def test_handshake_timeout_closes_session_without_activating():
    async def _run():
        connector = FakeConnector(FakeBackend(), delay=1.0)
        controller = _controller(connector, handshake_timeout_s=0.05)
        telephony = FakeTelephony([start_event()], hang_up=False)

        session = await asyncio.wait_for(controller.serve(telephony), timeout=2)

        assert isinstance(session.error, HandshakeTimeout)
        assert session.history == [SessionState.CONNECTING, SessionState.CLOSED]
        assert telephony.closed_with == 1000
        assert controller.registry.active_count == 0

    asyncio.run(_run())


def test_unreachable_backend_closes_session():
    async def _run():
        controller = _controller(FakeConnector(BackendUnavailable("refused")))
        telephony = FakeTelephony([start_event()], hang_up=False)

        session = await asyncio.wait_for(controller.serve(telephony), timeout=2)

        assert isinstance(session.error, BackendUnavailable)
        assert not isinstance(session.error, HandshakeTimeout)
        assert session.state is SessionState.CLOSED
        assert SessionState.ACTIVE not in session.history

    asyncio.run(_run())


def test_caller_hangup_while_connecting_goes_straight_to_closed():
    async def _run():
        backend = FakeBackend()
        connector = FakeConnector(backend, delay=0.5)
        controller = _controller(connector, handshake_timeout_s=5.0)
        telephony = FakeTelephony([start_event()])

        session = await asyncio.wait_for(controller.serve(telephony), timeout=2)

        assert session.history == [SessionState.CONNECTING, SessionState.CLOSED]
        assert session.error is None
        assert session.close_reason == "caller_hangup"
        assert controller.registry.active_count == 0

    asyncio.run(_run())


def test_transient_backend_drop_reconnects_once():
    async def _run():
        first, second = FakeBackend(), FakeBackend()
        first.emit(ConnectionClosed("reset", transient=True))
        connector = FakeConnector(first, second)
        controller = _controller(connector)
        telephony = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, telephony)
        await _wait_until(lambda: session.backend is second)
        telephony.push(media_event(2))
        await _wait_until(lambda: len(second.received) == 1)
        telephony.push(None)
        await asyncio.wait_for(task, timeout=2)

        assert first.closed
        assert len(connector.calls) == 2
        assert session.error is None
        assert session.history == FULL_LIFECYCLE

    asyncio.run(_run())


def test_failed_reconnect_closes_session():
    async def _run():
        first = FakeBackend()
        first.emit(ConnectionClosed("reset", transient=True))
        connector = FakeConnector(first)
        controller = _controller(connector)
        telephony = FakeTelephony([start_event()], hang_up=False)

        session = await asyncio.wait_for(controller.serve(telephony), timeout=2)

        assert isinstance(session.error, BackendUnavailable)
        assert session.history == FULL_LIFECYCLE
        assert len(connector.calls) == 2
        assert telephony.closed_with == 1000

    asyncio.run(_run())


def test_second_transient_drop_is_not_retried():
    async def _run():
        first, second = FakeBackend(), FakeBackend()
        first.emit(ConnectionClosed("reset", transient=True))
        second.emit(ConnectionClosed("reset again", transient=True))
        connector = FakeConnector(first, second, FakeBackend())
        controller = _controller(connector)

        session = await asyncio.wait_for(controller.serve(FakeTelephony([start_event()], hang_up=False)), timeout=2)

        assert isinstance(session.error, ConnectionClosed)
        assert len(connector.calls) == 2

    asyncio.run(_run())


def test_backend_ending_conversation_closes_session_cleanly():
    async def _run():
        backend = FakeBackend()
        backend.emit(None)
        controller = _controller(FakeConnector(backend))

        session = await asyncio.wait_for(controller.serve(FakeTelephony([start_event()], hang_up=False)), timeout=2)

        assert session.error is None
        assert session.close_reason == "backend_closed"
        assert session.history == FULL_LIFECYCLE

    asyncio.run(_run())


def test_stalled_backend_overrun_ends_session():
    async def _run():
        backend = FakeBackend(accept_limit=0)
        controller = _controller(FakeConnector(backend), inbound_queue_max_frames=5)
        telephony = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, telephony)
        for sequence in range(2, 8):
            telephony.push(media_event(sequence))
        await asyncio.wait_for(task, timeout=2)

        assert isinstance(session.error, RelayOverrun)
        assert session.state is SessionState.CLOSED
        assert backend.closed

    asyncio.run(_run())


def test_terminate_closes_active_session():
    async def _run():
        controller = _controller(FakeConnector(FakeBackend()))
        telephony = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, telephony)
        await controller.terminate("CA100", reason="api")
        await asyncio.wait_for(task, timeout=2)

        assert session.close_reason == "api"
        assert session.history == FULL_LIFECYCLE
        assert telephony.closed_with == 1000

        with pytest.raises(SessionNotFound):
            await controller.terminate("CA100")

    asyncio.run(_run())


def test_duplicate_media_stream_is_rejected_without_disturbing_first():
    async def _run():
        controller = _controller(FakeConnector(FakeBackend(), FakeBackend()))
        first = FakeTelephony([start_event()], hang_up=False)
        second = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, first)
        assert await asyncio.wait_for(controller.serve(second), timeout=2) is None

        assert second.closed_with == 1008
        assert session.state is SessionState.ACTIVE

        first.push(None)
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(_run())


def test_failure_in_one_session_does_not_affect_another():
    class KeyedConnector:
        def __init__(self, backends):
            self.backends = backends

        async def connect(self, *, call_id, parameters=None):
            return self.backends[call_id]

    async def _run():
        failing, healthy = FakeBackend(), FakeBackend()
        controller = _controller(KeyedConnector({"CA1": failing, "CA2": healthy}))
        t1 = FakeTelephony([start_event("CA1", "MZ1")], hang_up=False)
        t2 = FakeTelephony([start_event("CA2", "MZ2")], hang_up=False)

        task1, s1 = await _active_session(controller, t1, "CA1")
        task2, s2 = await _active_session(controller, t2, "CA2")
        failing.emit(BackendUnavailable("agent crashed"))
        await asyncio.wait_for(task1, timeout=2)

        assert s1.state is SessionState.CLOSED
        assert s2.state is SessionState.ACTIVE
        t2.push(media_event(2, stream_sid="MZ2"))
        await _wait_until(lambda: len(healthy.received) == 1)

        await controller.close_all()
        await asyncio.wait_for(task2, timeout=2)
        assert s2.close_reason == "shutdown"

    asyncio.run(_run())


def test_stream_without_start_is_closed():
    async def _run():
        controller = _controller(FakeConnector())
        telephony = FakeTelephony([media_event(1)])

        assert await controller.serve(telephony) is None
        assert telephony.closed_with == 1000
        assert controller.registry.active_count == 0

    asyncio.run(_run())


class StaggeredConnector:
    """Hands out backends in order, waiting `delays[n]` before the n-th handshake completes."""

    def __init__(self, *backends: FakeBackend, delays: list[float]) -> None:
        self._backends = list(backends)
        self._delays = list(delays)
        self.calls: list[str] = []

    async def connect(self, *, call_id: str, parameters=None):
        self.calls.append(call_id)
        await asyncio.sleep(self._delays[len(self.calls) - 1])
        return self._backends.pop(0)


def test_caller_audio_during_slow_reconnect_is_discarded_not_buffered():
    async def _run():
        first, second = FakeBackend(), FakeBackend()
        first.emit(ConnectionClosed("reset", transient=True))
        connector = StaggeredConnector(first, second, delays=[0.0, 0.3])
        controller = _controller(connector, inbound_queue_max_frames=5)
        telephony = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, telephony)
        await _wait_until(lambda: len(connector.calls) == 2)
        # Far more than the buffer bound arrives while no backend is attached.
        for sequence in range(2, 22):
            telephony.push(media_event(sequence))
        await _wait_until(lambda: session.backend is second)
        telephony.push(media_event(22))
        await _wait_until(lambda: len(second.received) == 1)
        telephony.push(None)
        await asyncio.wait_for(task, timeout=2)

        assert session.error is None
        assert session.close_reason == "caller_hangup"
        assert [frame.sequence for frame in second.received] == [22]
        assert first.received == []

    asyncio.run(_run())


def test_caller_hangup_while_reconnecting_ends_session_promptly():
    async def _run():
        first, second = FakeBackend(), FakeBackend()
        first.emit(ConnectionClosed("reset", transient=True))
        connector = StaggeredConnector(first, second, delays=[0.0, 5.0])
        controller = _controller(connector, handshake_timeout_s=10.0)
        telephony = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, telephony)
        await _wait_until(lambda: len(connector.calls) == 2)
        telephony.push(None)
        await asyncio.wait_for(task, timeout=1)

        assert session.error is None
        assert session.close_reason == "caller_hangup"
        assert session.history == FULL_LIFECYCLE
        assert session.backend is None
        assert first.closed

    asyncio.run(_run())


def test_terminate_while_reconnecting_ends_session_promptly():
    async def _run():
        first, second = FakeBackend(), FakeBackend()
        first.emit(ConnectionClosed("reset", transient=True))
        connector = StaggeredConnector(first, second, delays=[0.0, 5.0])
        controller = _controller(connector, handshake_timeout_s=10.0)
        telephony = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, telephony)
        await _wait_until(lambda: len(connector.calls) == 2)
        await controller.terminate("CA100", reason="api")
        await asyncio.wait_for(task, timeout=1)

        assert session.error is None
        assert session.close_reason == "api"
        assert telephony.closed_with == 1000

    asyncio.run(_run())


def test_ambience_plays_for_each_caller_packet_while_agent_is_silent():
    async def _run():
        backend = FakeBackend()
        controller = SessionController(
            RelayConfig(handshake_timeout_s=1.0, drain_grace_s=0.2),
            connector=FakeConnector(backend),
            ambience_track=np.full(8000, 4000, dtype=np.int16),
        )
        telephony = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, telephony)
        for sequence in range(2, 5):
            telephony.push(media_event(sequence))
            await asyncio.sleep(0.03)
        await _wait_until(lambda: len(telephony.sent_events("media")) == 3)
        telephony.push(None)
        await asyncio.wait_for(task, timeout=2)

        media = telephony.sent_events("media")
        assert len(media) == 3
        assert [int(message["sequenceNumber"]) for message in media] == [1, 2, 3]
        assert all(base64.b64decode(message["media"]["payload"]) != b"\xff" * 160 for message in media)
        assert len(backend.received) == 3
        assert session.error is None

    asyncio.run(_run())


def test_failed_send_to_caller_ends_session():
    async def _run():
        backend = FakeBackend()
        controller = _controller(FakeConnector(backend))
        telephony = FakeTelephony([start_event()], hang_up=False)

        task, session = await _active_session(controller, telephony)
        telephony.closed_with = 1006
        backend.emit(ulaw_frame(1))
        await asyncio.wait_for(task, timeout=2)

        assert isinstance(session.error, ConnectionClosed)
        assert session.close_reason == "telephony_closed"
        assert backend.closed

    asyncio.run(_run())
