"""
Connection multiplexer tests with an in-memory transport
"""

import asyncio

import pytest

from conftest import FakeTransportFactory, settle
from services.ui.components.connection_multiplexer import (
    ConnectionMultiplexer, TransportOptions, TransportState, to_websocket_url
)


def make_multiplexer(factory, grace_period=0.05):
    options = TransportOptions(reconnection_attempts=2, reconnection_delay=0.01, connect_timeout=1.0)
    return ConnectionMultiplexer(
        backend_url="http://api.test",
        options=options,
        grace_period=grace_period,
        transport_factory=factory
    )


def test_websocket_url_mapping():
    assert to_websocket_url("http://localhost:8000/", "/ws/collaborative") == "ws://localhost:8000/ws/collaborative"
    assert to_websocket_url("https://quiz.example", "/ws") == "wss://quiz.example/ws"


@pytest.mark.asyncio
async def test_no_token_no_connection():
    factory = FakeTransportFactory()
    multiplexer = make_multiplexer(factory)

    assert multiplexer.acquire("") is None
    assert multiplexer.acquire(None) is None
    assert factory.calls == []


@pytest.mark.asyncio
async def test_single_connection_shared_by_all_callers():
    factory = FakeTransportFactory()
    multiplexer = make_multiplexer(factory)

    first = multiplexer.acquire("token-a")
    second = multiplexer.acquire("token-a")
    assert first is second

    assert await first.wait_connected(1.0)
    assert multiplexer.acquire("token-a") is first
    assert len(factory.calls) == 1

    url, headers, timeout = factory.calls[0]
    assert url == "ws://api.test/ws/collaborative"
    assert headers == {"Authorization": "Bearer token-a"}
    assert timeout == 1.0

    multiplexer.teardown()
    await settle()


@pytest.mark.asyncio
async def test_events_dispatch_by_type_and_emit_sends_frames():
    factory = FakeTransportFactory()
    multiplexer = make_multiplexer(factory)
    handle = multiplexer.acquire("token-a")
    received = []

    async def on_async(data):
        received.append(("async", data["roomId"]))

    handle.on("room_joined", lambda data: received.append(("sync", data["roomId"])))
    handle.on("room_joined", on_async)
    await handle.wait_connected(1.0)

    factory.transports[0].push({"type": "room_joined", "roomId": "ABC123"})
    await settle()
    assert received == [("sync", "ABC123"), ("async", "ABC123")]

    assert await handle.emit("suggest_answer", {"answer": 2})
    assert factory.transports[0].sent == [{"type": "suggest_answer", "answer": 2}]

    multiplexer.teardown()
    await settle()


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_others():
    factory = FakeTransportFactory()
    multiplexer = make_multiplexer(factory)
    handle = multiplexer.acquire("token-a")
    received = []

    def broken(data):
        raise ValueError("boom")

    handle.on("chat_message", broken)
    handle.on("chat_message", received.append)
    await handle.wait_connected(1.0)

    factory.transports[0].push({"type": "chat_message", "message": "hi"})
    await settle()
    assert received[0]["message"] == "hi"

    multiplexer.teardown()
    await settle()


@pytest.mark.asyncio
async def test_emit_without_connection_fails():
    multiplexer = make_multiplexer(FakeTransportFactory())
    multiplexer.options.auto_connect = False
    handle = multiplexer.acquire("token-a")

    assert handle.started is False
    assert await handle.emit("ping") is False


@pytest.mark.asyncio
async def test_registration_within_grace_period_keeps_connection():
    factory = FakeTransportFactory()
    multiplexer = make_multiplexer(factory, grace_period=0.05)
    handle = multiplexer.acquire("token-a")
    await handle.wait_connected(1.0)

    multiplexer.register_user("quiz-room")
    multiplexer.unregister_user("quiz-room")
    assert multiplexer.teardown_pending

    multiplexer.register_user("whiteboard")
    assert not multiplexer.teardown_pending

    await asyncio.sleep(0.1)
    assert multiplexer.handle is handle
    assert handle.connected
    assert len(factory.calls) == 1

    multiplexer.teardown()
    await settle()


@pytest.mark.asyncio
async def test_acquire_within_grace_period_keeps_connection():
    factory = FakeTransportFactory()
    multiplexer = make_multiplexer(factory, grace_period=0.05)
    handle = multiplexer.acquire("token-a")
    await handle.wait_connected(1.0)
    multiplexer.register_user("quiz-room")
    multiplexer.unregister_user("quiz-room")

    assert multiplexer.acquire("token-a") is handle
    assert not multiplexer.teardown_pending

    multiplexer.teardown()
    await settle()


@pytest.mark.asyncio
async def test_teardown_after_grace_period():
    factory = FakeTransportFactory()
    multiplexer = make_multiplexer(factory, grace_period=0.05)
    handle = multiplexer.acquire("token-a")
    handle.on("new_question", lambda data: None)
    await handle.wait_connected(1.0)

    multiplexer.register_user("quiz-room")
    multiplexer.register_user("chat")
    multiplexer.unregister_user("quiz-room")
    assert not multiplexer.teardown_pending

    multiplexer.unregister_user("chat")
    await asyncio.sleep(0.1)
    await settle()

    assert multiplexer.handle is None
    assert handle.closed
    assert handle.listener_count() == 0
    assert factory.transports[0].closed


@pytest.mark.asyncio
async def test_reference_count_never_goes_negative():
    multiplexer = make_multiplexer(FakeTransportFactory())

    multiplexer.unregister_user("ghost")
    multiplexer.unregister_user("ghost")

    assert multiplexer.reference_count == 0
    # Nothing to tear down yet
    assert not multiplexer.teardown_pending
    multiplexer.teardown()


@pytest.mark.asyncio
async def test_reconnects_after_server_hangs_up():
    factory = FakeTransportFactory()
    multiplexer = make_multiplexer(factory)
    handle = multiplexer.acquire("token-a")
    events = []
    handle.on("connect", lambda data: events.append("connect"))
    handle.on("disconnect", lambda data: events.append("disconnect"))
    await handle.wait_connected(1.0)

    factory.transports[0].hang_up()
    for _ in range(50):
        if len(factory.calls) == 2 and handle.connected:
            break
        await asyncio.sleep(0.01)

    assert events == ["connect", "disconnect", "connect"]
    assert multiplexer.acquire("token-a") is handle

    multiplexer.teardown()
    await settle()


@pytest.mark.asyncio
async def test_exhausted_reconnection_is_replaced_on_acquire():
    factory = FakeTransportFactory(fail=True)
    multiplexer = make_multiplexer(factory)
    handle = multiplexer.acquire("token-a")
    errors = []
    handle.on("connect_error", errors.append)

    await asyncio.wait_for(handle._task, 1.0)

    assert handle.state == TransportState.DISCONNECTED
    assert len(factory.calls) == 3
    assert len(errors) == 3
    assert errors[0]["message"] == "connection refused"

    factory.fail = False
    replacement = multiplexer.acquire("token-a")
    assert replacement is not handle
    assert handle.closed
    assert await replacement.wait_connected(1.0)

    multiplexer.teardown()
    await settle()
