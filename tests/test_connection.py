import asyncio
from typing import List

import pytest

from casambi_cloud_bridge.connection import CasambiConnection, ConnectionState
from casambi_cloud_bridge.errors import CommandTransmitFailure, ConnectionLost, WireOpenRejected
from casambi_cloud_bridge.health import HealthMonitor

from fakes import settle


def _connection(connector, scheduler, **kwargs) -> CasambiConnection:
    return CasambiConnection(
        connector,
        ping_interval=kwargs.pop("ping_interval", 30.0),
        pong_grace=kwargs.pop("pong_grace", 2.0),
        reconnect_delay=kwargs.pop("reconnect_delay", 5.0),
        wire_open_timeout=kwargs.pop("wire_open_timeout", 10.0),
        scheduler=scheduler,
        **kwargs,
    )


def _record(connection: CasambiConnection, *event_types: str) -> List[str]:
    seen: List[str] = []
    for event_type in event_types:
        connection.subscribe(event_type, lambda event: seen.append(event.event_type))
    return seen


@pytest.mark.asyncio
async def test_concurrent_ensure_open_shares_one_connect(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    seen = _record(connection, "open")

    await asyncio.gather(connection.ensure_open(), connection.ensure_open(), connection.ensure_open())

    assert connector.calls == 1
    assert connection.state is ConnectionState.OPEN
    assert seen == ["open"]
    await connection.stop()


@pytest.mark.asyncio
async def test_wire_ids_are_lowest_unused(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    await connection.ensure_open()

    first = await connection.open_wire("net-a", "session-a")
    second = await connection.open_wire("net-b", "session-b")
    await connection.close_wire(first)
    third = await connection.open_wire("net-c", "session-c")

    assert (first, second, third) == (1, 2, 1)
    assert connection.wires == {1: "net-c", 2: "net-b"}
    opens = connector.transport.frames("open")
    assert opens[0]["id"] == "net-a"
    assert opens[0]["session"] == "session-a"
    assert opens[0]["type"] == 1
    assert connector.transport.frames("close") == [{"method": "close", "wire": 1}]
    await connection.stop()


@pytest.mark.asyncio
async def test_open_rejected_by_server(connector, scheduler) -> None:
    connector.open_status = "openWireFailed"
    connection = _connection(connector, scheduler)
    seen = _record(connection, "wireStatus")

    with pytest.raises(WireOpenRejected) as excinfo:
        await connection.open_wire("net-a", "session-a")

    assert excinfo.value.reason == "openWireFailed"
    assert excinfo.value.network_id == "net-a"
    assert connection.wires == {}
    assert seen == ["wireStatus"]
    await connection.stop()


@pytest.mark.asyncio
async def test_open_times_out_on_the_scheduler(connector, scheduler) -> None:
    connector.auto_reply = False
    connection = _connection(connector, scheduler, wire_open_timeout=10.0)
    task = asyncio.create_task(connection.open_wire("net-a", "session-a"))
    await settle()
    assert not task.done()

    scheduler.advance(10.0)

    with pytest.raises(WireOpenRejected) as excinfo:
        await task
    assert excinfo.value.reason == "timeout"
    await connection.stop()


@pytest.mark.asyncio
async def test_late_success_after_timeout_closes_the_wire(connector, scheduler) -> None:
    connector.auto_reply = False
    connection = _connection(connector, scheduler)
    task = asyncio.create_task(connection.open_wire("net-a", "session-a"))
    await settle()
    scheduler.advance(10.0)
    with pytest.raises(WireOpenRejected):
        await task

    transport = connector.transport
    second = asyncio.create_task(connection.open_wire("net-b", "session-b"))
    await settle()
    assert transport.frames("open")[1]["wire"] == 2

    transport.reply_open(transport.frames("open")[0], "openWireSucceed")
    await settle()

    assert connection.wires == {}
    assert connection.is_open
    assert transport.frames("close") == [{"method": "close", "wire": 1}]
    second.cancel()
    with pytest.raises(asyncio.CancelledError):
        await second
    await connection.stop()


@pytest.mark.asyncio
async def test_late_failure_after_timeout_frees_the_wire(connector, scheduler) -> None:
    connector.auto_reply = False
    connection = _connection(connector, scheduler)
    task = asyncio.create_task(connection.open_wire("net-a", "session-a"))
    await settle()
    scheduler.advance(10.0)
    with pytest.raises(WireOpenRejected):
        await task

    transport = connector.transport
    transport.reply_open(transport.frames("open")[0], "openWireFailed")
    await settle()
    connector.auto_reply = True
    transport.auto_reply = True

    assert await connection.open_wire("net-b", "session-b") == 1
    assert transport.frames("close") == []
    await connection.stop()


@pytest.mark.asyncio
async def test_keepalive_timeout_closes_and_reconnects(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    seen = _record(connection, "open", "timeout", "close")
    await connection.ensure_open()
    await connection.open_wire("net-a", "session-a")

    scheduler.advance(31.9)
    await settle()
    assert connection.is_open
    assert len(connector.transport.pings) == 1

    scheduler.advance(0.1)
    await settle()
    assert seen == ["open", "timeout", "close"]
    assert connection.state is ConnectionState.ABSENT
    assert connection.wires == {}
    assert connection.reconnect_pending
    assert connector.transports[0].closed

    scheduler.advance(4.9)
    await settle()
    assert connector.calls == 1

    scheduler.advance(0.1)
    await settle()
    assert connector.calls == 2
    assert connection.is_open
    assert seen == ["open", "timeout", "close", "open"]
    await connection.stop()


@pytest.mark.asyncio
async def test_pong_keeps_socket_alive(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    await connection.ensure_open()

    scheduler.advance(30.0)
    await settle()
    connector.transport.pong()
    await settle()

    scheduler.advance(31.0)
    await settle()
    assert connection.is_open

    scheduler.advance(1.0)
    await settle()
    assert not connection.is_open
    await connection.stop()


@pytest.mark.asyncio
async def test_socket_drop_fails_pending_opens(connector, scheduler) -> None:
    connector.auto_reply = False
    health = HealthMonitor(("connection",), failure_threshold=3, cooldown_seconds=1.0)
    connection = _connection(connector, scheduler, health=health)
    seen = _record(connection, "close")
    task = asyncio.create_task(connection.open_wire("net-a", "session-a"))
    await settle()

    connector.transport.drop()
    await settle()

    with pytest.raises(ConnectionLost):
        await task
    assert seen == ["close"]
    assert connection.state is ConnectionState.ABSENT
    assert connection.reconnect_pending
    assert health.status("connection") == "degraded"
    await connection.stop()


@pytest.mark.asyncio
async def test_failed_reconnect_keeps_a_single_timer(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    await connection.ensure_open()
    connector.failures = 1

    connector.transport.drop()
    await settle()
    assert len(scheduler.pending()) == 1

    scheduler.advance(5.0)
    await settle()
    assert connector.calls == 2
    assert connection.state is ConnectionState.ABSENT
    assert len(scheduler.pending()) == 1

    scheduler.advance(5.0)
    await settle()
    assert connector.calls == 3
    assert connection.is_open
    await connection.stop()


@pytest.mark.asyncio
async def test_connect_failure_raises_and_schedules_retry(connector, scheduler) -> None:
    connector.failures = 1
    connection = _connection(connector, scheduler)

    with pytest.raises(ConnectionLost):
        await connection.ensure_open()

    assert connection.reconnect_pending
    scheduler.advance(5.0)
    await settle()
    assert connection.is_open
    await connection.stop()


@pytest.mark.asyncio
async def test_frames_are_routed_by_method(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    pushes = []
    messages = []
    connection.subscribe("unitChanged", pushes.append)
    connection.subscribe("message", messages.append)
    await connection.ensure_open()

    transport = connector.transport
    transport.feed("not json")
    transport.feed("[1, 2, 3]")
    transport.feed({"method": "unitChanged", "wire": 1, "id": 5, "online": True})
    await settle()

    assert connection.is_open
    assert len(pushes) == 1
    assert pushes[0].data["wire"] == 1
    assert pushes[0].data["message"].unit_id == 5
    assert len(messages) == 1
    await connection.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    ['{"x": ' + "1" * 5000 + "}", "[" * 100000 + "]" * 100000, b"\xff\xfe"],
    ids=["oversized-integer", "deep-nesting", "invalid-utf8"],
)
async def test_hostile_frames_do_not_stop_the_receive_loop(connector, scheduler, payload) -> None:
    connection = _connection(connector, scheduler)
    pushes = []
    connection.subscribe("unitChanged", pushes.append)
    await connection.ensure_open()

    connector.transport.feed(payload)
    connector.transport.feed({"method": "unitChanged", "wire": 1, "id": 5})
    await settle()

    assert connection.is_open
    assert len(pushes) == 1
    assert not connection.reconnect_pending
    await connection.stop()


@pytest.mark.asyncio
async def test_unexpected_receive_error_is_treated_as_loss(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    seen = _record(connection, "close")
    await connection.ensure_open()

    connector.transport.feed_error(RuntimeError("decoder state corrupted"))
    await settle()

    assert seen == ["close"]
    assert connection.state is ConnectionState.ABSENT
    assert connection.reconnect_pending

    scheduler.advance(5.0)
    await settle()
    assert connector.calls == 2
    assert connection.is_open
    await connection.stop()


@pytest.mark.asyncio
async def test_server_side_wire_close_unregisters_wire(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    closed = []
    connection.subscribe("wireClosed", closed.append)
    wire = await connection.open_wire("net-a", "session-a")

    connector.transport.feed({"wireStatus": "wireClosed", "wire": wire})
    await settle()

    assert connection.wires == {}
    assert closed[0].data["network_id"] == "net-a"
    assert closed[0].data["reason"] == "wireClosed"
    await connection.stop()


@pytest.mark.asyncio
async def test_stop_closes_without_reconnect(connector, scheduler) -> None:
    connection = _connection(connector, scheduler)
    seen = _record(connection, "close")
    await connection.start()
    await settle()
    assert connection.is_open

    await connection.stop()

    assert seen == ["close"]
    assert connection.state is ConnectionState.ABSENT
    assert not connection.reconnect_pending
    assert connector.transport.closed
    with pytest.raises(ConnectionLost):
        await connection.ensure_open()
    with pytest.raises(CommandTransmitFailure):
        await connection.send_frame({"method": "controlUnit"})
