import asyncio
from typing import Any, Dict, List

import httpx
import pytest

from casambi_cloud_bridge.cloud import AuthToken, CasambiCloudClient
from casambi_cloud_bridge.config import Credentials
from casambi_cloud_bridge.connection import CasambiConnection
from casambi_cloud_bridge.errors import CommandTransmitFailure, WireOpenRejected
from casambi_cloud_bridge.session import NetworkSession, login

from fakes import settle


def _cloud(handler=None) -> CasambiCloudClient:
    def _default(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    return CasambiCloudClient(
        "app-key",
        base_url="http://cloud.test/v1",
        transport=httpx.MockTransport(handler or _default),
    )


def _session(connection: CasambiConnection, network_id: str = "net-1", **kwargs: Any) -> NetworkSession:
    client = kwargs.pop("client", None) or _cloud()
    return NetworkSession(client, connection, AuthToken(network_id, f"session-{network_id}"), **kwargs)


@pytest.mark.asyncio
async def test_concurrent_opens_send_one_handshake(connector, scheduler) -> None:
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)

    wires = await asyncio.gather(
        session.ensure_wire_open(), session.ensure_wire_open(), session.ensure_wire_open()
    )

    assert wires == [1, 1, 1]
    assert len(connector.transport.frames("open")) == 1
    assert session.wire_id == 1
    await session.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_concurrent_open_failure_reaches_every_caller(connector, scheduler) -> None:
    connector.open_status = "openWireFailed"
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)

    results = await asyncio.gather(
        session.ensure_wire_open(), session.ensure_wire_open(), return_exceptions=True
    )

    assert all(isinstance(result, WireOpenRejected) for result in results)
    assert len(connector.transport.frames("open")) == 1
    assert session.wire_id == 0
    await connection.stop()


@pytest.mark.asyncio
async def test_send_control_unit_writes_frame(connector, scheduler) -> None:
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)

    await session.send_control_unit(7, {"Dimmer": {"value": 0.5}})

    assert connector.transport.frames("controlUnit") == [
        {"method": "controlUnit", "wire": 1, "id": 7, "targetControls": {"Dimmer": {"value": 0.5}}}
    ]
    await session.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_send_without_socket_is_transmit_failure(connector, scheduler) -> None:
    connector.failures = 1
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)

    with pytest.raises(CommandTransmitFailure):
        await session.send_control_unit(7, {"Dimmer": {"value": 0.5}})
    await connection.stop()


@pytest.mark.asyncio
async def test_send_with_rejected_wire_raises_rejection(connector, scheduler) -> None:
    connector.open_status = "openWireFailed"
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)

    with pytest.raises(WireOpenRejected):
        await session.send_control_unit(7, {"Dimmer": {"value": 0.5}})
    await connection.stop()


@pytest.mark.asyncio
async def test_send_times_out_when_wire_never_opens(connector, scheduler) -> None:
    connector.auto_reply = False
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection, command_timeout=0.05)

    with pytest.raises(CommandTransmitFailure):
        await session.send_control_unit(7, {"Dimmer": {"value": 0.5}})
    await session.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_events_are_isolated_by_wire(connector, scheduler) -> None:
    connection = CasambiConnection(connector, scheduler=scheduler)
    first = _session(connection, "net-a")
    second = _session(connection, "net-b")
    await first.ensure_wire_open()
    await second.ensure_wire_open()
    seen: Dict[str, List[Any]] = {"net-a": [], "net-b": []}
    first.subscribe("unitChanged", seen["net-a"].append)
    second.subscribe("unitChanged", seen["net-b"].append)

    connector.transport.feed({"method": "unitChanged", "wire": 2, "id": 3, "online": True})
    connector.transport.feed({"method": "unitChanged", "wire": 9, "id": 4, "online": True})
    await settle()

    assert seen["net-a"] == []
    assert len(seen["net-b"]) == 1
    assert seen["net-b"][0].data["network_id"] == "net-b"
    assert seen["net-b"][0].data["message"].unit_id == 3
    await first.close()
    await second.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_subscribe_unit_filters_by_unit(connector, scheduler) -> None:
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)
    await session.ensure_wire_open()
    seen: List[Any] = []
    session.subscribe_unit(3, seen.append)

    connector.transport.feed({"method": "unitChanged", "wire": 1, "id": 3})
    connector.transport.feed({"method": "unitChanged", "wire": 1, "id": 4})
    await settle()

    assert [event.data["message"].unit_id for event in seen] == [3]
    await session.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_wire_reopens_after_reconnect(connector, scheduler) -> None:
    connection = CasambiConnection(connector, scheduler=scheduler, reconnect_delay=5.0)
    session = _session(connection)
    events: List[str] = []
    session.subscribe("open", lambda event: events.append("open"))
    session.subscribe("close", lambda event: events.append("close"))
    await session.ensure_wire_open()

    connector.transport.drop()
    await settle()
    assert session.wire_id == 0
    assert events == ["close"]

    scheduler.advance(5.0)
    await settle(50)

    assert connector.calls == 2
    assert len(connector.transport.frames("open")) == 1
    assert session.wire_id == 1
    assert events == ["close", "open"]
    await session.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_push_right_behind_open_reply_is_delivered(connector, scheduler) -> None:
    connector.auto_reply = False
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)
    seen: List[Any] = []
    session.subscribe("unitChanged", seen.append)
    opening = asyncio.create_task(session.ensure_wire_open())
    await settle()

    transport = connector.transport
    transport.reply_open(transport.frames("open")[0], "openWireSucceed")
    transport.feed({"method": "unitChanged", "wire": 1, "id": 7, "online": True})
    await settle()

    assert await opening == 1
    assert [event.data["message"].unit_id for event in seen] == [7]
    await session.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_send_after_drop_opens_one_wire_first(connector, scheduler) -> None:
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)
    await session.ensure_wire_open()

    connector.transport.drop()
    await settle()
    assert session.wire_id == 0

    await session.send_control_unit(7, {"Dimmer": {"value": 0.5}})

    assert connector.calls == 2
    assert [frame["method"] for frame in connector.transport.sent] == ["open", "controlUnit"]
    assert connector.transport.frames("controlUnit")[0]["wire"] == 1
    await session.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_server_closing_wire_resets_session(connector, scheduler) -> None:
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)
    closed: List[Any] = []
    session.subscribe("wireClosed", closed.append)
    await session.ensure_wire_open()

    connector.transport.feed({"wireStatus": "wireClosed", "wire": 1})
    await settle()

    assert session.wire_id == 0
    assert closed[0].data["network_id"] == "net-1"
    await session.close()
    await connection.stop()


@pytest.mark.asyncio
async def test_close_releases_wire(connector, scheduler) -> None:
    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection)
    await session.ensure_wire_open()

    await session.close()

    assert connection.wires == {}
    assert connector.transport.frames("close") == [{"method": "close", "wire": 1}]
    await connection.stop()


@pytest.mark.asyncio
async def test_reads_carry_session_token(connector, scheduler) -> None:
    captured: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"units": {}})

    connection = CasambiConnection(connector, scheduler=scheduler)
    session = _session(connection, client=_cloud(_handler))

    await session.request_information()
    await session.request_unit_list()
    await session.request_state()
    await session.request_unit_state(4)
    await session.request_groups()
    await session.request_scenes()
    await session.request_datapoints({"sensorType": 0})

    paths = [request.url.path for request in captured]
    assert paths == [
        "/v1/networks/net-1",
        "/v1/networks/net-1/units",
        "/v1/networks/net-1/state",
        "/v1/networks/net-1/units/4/state",
        "/v1/networks/net-1/groups",
        "/v1/networks/net-1/scenes",
        "/v1/networks/net-1/datapoints",
    ]
    assert all(request.headers["X-Casambi-Session"] == "session-net-1" for request in captured)
    assert captured[0].headers["X-Casambi-Key"] == "app-key"
    assert captured[-1].url.params["sensorType"] == "0"
    await connection.stop()


@pytest.mark.asyncio
async def test_network_login_creates_sessions(connector, scheduler) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/networks/session"
        return httpx.Response(200, json={"net-1": {"sessionId": "s-1", "name": "Home"}})

    connection = CasambiConnection(connector, scheduler=scheduler)
    sessions = await login(
        _cloud(_handler), connection, Credentials("network", "home@example.com", "secret")
    )

    assert [session.network_id for session in sessions] == ["net-1"]
    assert sessions[0].name == "Home"
    assert sessions[0].token.session_id == "s-1"
    assert sessions[0].connection is connection
