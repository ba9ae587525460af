import json
from typing import List

import httpx
import pytest

from casambi_cloud_bridge.cloud import AuthToken, CasambiCloudClient
from casambi_cloud_bridge.errors import AuthRejected, CloudRequestError, TransientAuthFailure


def _client(handler) -> CasambiCloudClient:
    return CasambiCloudClient(
        "app-key", base_url="http://cloud.test/v1/", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_network_session_login() -> None:
    captured: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={"net-1": {"sessionId": "abc", "name": "Home", "role": "ADMIN", "id": "net-1"}},
        )

    async with _client(_handler) as client:
        tokens = await client.create_network_session("home@example.com", "secret")

    assert tokens == [AuthToken("net-1", "abc", "Home")]
    assert captured[0].method == "POST"
    assert captured[0].url.path == "/v1/networks/session"
    assert captured[0].headers["X-Casambi-Key"] == "app-key"
    assert json.loads(captured[0].content) == {"email": "home@example.com", "password": "secret"}


@pytest.mark.asyncio
async def test_user_session_login_lists_every_network() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/users/session"
        return httpx.Response(
            200,
            json={
                "sessionId": "user",
                "sites": {
                    "s1": {"name": "Home", "networks": {"a": {"id": "a", "name": "A"}}},
                    "s2": {"networks": {"b": {"id": 42}, "c": {"name": "C"}}},
                },
            },
        )

    async with _client(_handler) as client:
        tokens = await client.create_user_session("owner@example.com", "secret")

    assert [(t.network_id, t.site_id, t.session_id) for t in tokens] == [
        ("a", "s1", "user"),
        ("42", "s2", "user"),
        ("c", "s2", "user"),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403, 410])
async def test_rejected_credentials_are_fatal(status: int) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"message": "bad password"})

    async with _client(_handler) as client:
        with pytest.raises(AuthRejected) as excinfo:
            await client.create_network_session("home@example.com", "wrong")

    assert excinfo.value.status_code == status
    assert excinfo.value.detail == "bad password"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="oops"),
        httpx.Response(429, json={}),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json={}),
        httpx.Response(200, json={"net-1": {"name": "no session"}}),
    ],
)
async def test_transient_login_failures(response: httpx.Response) -> None:
    async with _client(lambda request: response) as client:
        with pytest.raises(TransientAuthFailure):
            await client.create_network_session("home@example.com", "secret")


@pytest.mark.asyncio
async def test_network_errors_during_login_are_transient() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    async with _client(_handler) as client:
        with pytest.raises(TransientAuthFailure):
            await client.create_user_session("owner@example.com", "secret")


@pytest.mark.asyncio
async def test_get_network_sends_session_header() -> None:
    captured: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"name": "Home"})

    async with _client(_handler) as client:
        payload = await client.get_network(AuthToken("net-1", "sess-1"))

    assert payload == {"name": "Home"}
    assert captured[0].url.path == "/v1/networks/net-1"
    assert captured[0].headers["X-Casambi-Session"] == "sess-1"


@pytest.mark.asyncio
async def test_read_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/expired"):
            return httpx.Response(401, json={"error": "session expired"})
        return httpx.Response(404)

    async with _client(_handler) as client:
        with pytest.raises(CloudRequestError) as excinfo:
            await client.get_fixture(9)
        with pytest.raises(AuthRejected):
            await client.get_json("/expired", "test")

    assert excinfo.value.status_code == 404


def test_token_repr_hides_session() -> None:
    assert "sess-secret" not in repr(AuthToken("net-1", "sess-secret"))
