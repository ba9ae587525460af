from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from casambi_cloud_bridge.api import create_app
from casambi_cloud_bridge.bridge import CasambiBridge
from casambi_cloud_bridge.cloud import CasambiCloudClient
from casambi_cloud_bridge.config import Config
from casambi_cloud_bridge.connection import CasambiConnection
from casambi_cloud_bridge.controls import FixtureInfo, UnitState, build_control_request
from casambi_cloud_bridge.errors import CommandTransmitFailure, UnknownUnitError
from casambi_cloud_bridge.health import HealthMonitor
from casambi_cloud_bridge.registry import UnitKey

KITCHEN = UnitKey("net-1", 1)


class StubBridge:
    def __init__(self) -> None:
        self.health = HealthMonitor(("login", "connection", "api"), failure_threshold=3, cooldown_seconds=1.0)
        self.ready = True
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[UnitKey, str, Any]] = []
        self._units: Dict[UnitKey, UnitState] = {
            KITCHEN: UnitState.from_payload(
                {
                    "id": 1,
                    "name": "Kitchen",
                    "online": True,
                    "fixtureId": 5,
                    "controls": [{"type": "Dimmer", "value": 1.0}],
                }
            )
        }

    def status(self) -> Dict[str, Any]:
        return {"ready": self.ready, "overall": self.health.overall()}

    def units(self) -> Dict[UnitKey, UnitState]:
        return dict(self._units)

    def state(self, key: UnitKey) -> UnitState:
        try:
            return self._units[key]
        except KeyError:
            raise UnknownUnitError(f"Unknown unit {key}") from None

    def fixture(self, key: UnitKey) -> FixtureInfo:
        self.state(key)
        return FixtureInfo(5, vendor="Acme", model="Spot", min_kelvin=2200.0, max_kelvin=6500.0)

    async def set_control(self, key: UnitKey, name: str, value: Any) -> UnitState:
        if self.error:
            raise self.error
        state = self.state(key)
        request = build_control_request(
            name, value, state=state, last_brightness=None, kelvin_bounds=(2200.0, 6500.0)
        )
        for control in request.predicted:
            state = state.with_control(control)
        self._units[key] = state
        self.calls.append((key, name, value))
        return state


def _client(bridge: StubBridge, **config: Any) -> TestClient:
    return TestClient(create_app(Config(**config), bridge))  # type: ignore[arg-type]


def test_list_units_includes_fixture_data() -> None:
    client = _client(StubBridge())

    response = client.get("/units")

    assert response.status_code == 200
    body = response.json()
    assert len(body) == 1
    unit = body[0]
    assert unit["network_id"] == "net-1"
    assert unit["unit_id"] == 1
    assert unit["name"] == "Kitchen"
    assert unit["on"] is True
    assert unit["brightness"] == 100.0
    assert (unit["min_kelvin"], unit["max_kelvin"]) == (2200.0, 6500.0)
    assert unit["vendor"] == "Acme"
    assert unit["controls"]["Dimmer"]["value"] == 1.0


def test_get_unit_and_missing_unit() -> None:
    client = _client(StubBridge())

    assert client.get("/units/net-1/1").json()["name"] == "Kitchen"
    missing = client.get("/units/net-1/9")
    assert missing.status_code == 404
    assert "net-1/9" in missing.json()["detail"]


def test_put_control_returns_predicted_state() -> None:
    bridge = StubBridge()
    client = _client(bridge)

    response = client.put("/units/net-1/1/controls", json={"name": "brightness", "value": 30})

    assert response.status_code == 200
    assert response.json()["brightness"] == 30.0
    assert bridge.calls == [(KITCHEN, "brightness", 30)]


def test_put_control_error_mapping() -> None:
    bridge = StubBridge()
    client = _client(bridge)

    assert client.put("/units/net-1/1/controls", json={"name": "brightness", "value": 130}).status_code == 400
    assert client.put("/units/net-1/1/controls", json={"name": "sparkle", "value": 1}).status_code == 400
    assert client.put("/units/net-1/1/controls", json={"value": 1}).status_code == 422
    assert client.put("/units/net-1/7/controls", json={"name": "on", "value": True}).status_code == 404

    bridge.error = CommandTransmitFailure("Connection is absent")
    failed = client.put("/units/net-1/1/controls", json={"name": "on", "value": True})
    assert failed.status_code == 503
    assert failed.json()["detail"] == "Connection is absent"


def test_health_reports_failed_login() -> None:
    bridge = StubBridge()
    client = _client(bridge)

    assert client.get("/health").json() == {"status": "ok", "ready": True}

    bridge.health.mark_fatal("login", RuntimeError("rejected"))
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "failed"


def test_status_and_metrics() -> None:
    client = _client(StubBridge())

    assert client.get("/status").json() == {"ready": True, "overall": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "casambi_api_requests_total" in metrics.text


def test_api_key_auth() -> None:
    client = _client(StubBridge(), api_token="local-key")

    assert client.get("/units").status_code == 401
    assert client.get("/units", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/units", headers={"X-API-Key": "local-key"}).status_code == 200
    assert client.get("/units", headers={"Authorization": "ApiKey local-key"}).status_code == 200
    assert client.get("/metrics").status_code == 200


def test_bearer_auth() -> None:
    client = _client(StubBridge(), api_bearer_token="tok")

    assert client.get("/status").status_code == 401
    assert client.get("/status", headers={"Authorization": "Bearer tok"}).status_code == 200


def test_docs_can_be_disabled() -> None:
    assert _client(StubBridge()).get("/openapi.json").status_code == 200
    assert _client(StubBridge(), api_docs=False).get("/openapi.json").status_code == 404


@pytest.mark.asyncio
async def test_put_control_drives_real_bridge(connector, scheduler) -> None:
    def _cloud_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/networks/session":
            return httpx.Response(200, json={"net-1": {"sessionId": "s-1"}})
        return httpx.Response(
            200,
            json={"units": {"1": {"id": 1, "name": "Kitchen", "controls": [{"type": "Dimmer", "value": 1}]}}},
        )

    config = Config(api_key="app-key", email="home@example.com", password="secret")
    bridge = CasambiBridge(
        config,
        client=CasambiCloudClient(
            "app-key", base_url="http://cloud.test/v1", transport=httpx.MockTransport(_cloud_handler)
        ),
        connection=CasambiConnection(connector, scheduler=scheduler),
        scheduler=scheduler,
    )
    await bridge.start()
    assert await bridge.wait_ready(timeout=2.0)
    app = create_app(config, bridge)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.put("/units/net-1/1/controls", json={"name": "brightness", "value": 50})
        units = await client.get("/units")

    assert response.status_code == 200
    assert response.json()["brightness"] == 50.0
    assert units.json()[0]["brightness"] == 50.0
    assert connector.transport.frames("controlUnit")[0]["targetControls"] == {"Dimmer": {"value": 0.5}}
    await bridge.stop()
