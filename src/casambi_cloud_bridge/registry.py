"""Fan-out of one login into many network sessions on a shared connection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .cloud import CasambiCloudClient
from .config import Credentials
from .connection import CasambiConnection
from .controls import FixtureInfo, UnitState
from .errors import CloudRequestError, UnknownUnitError
from .events import (
    EVENT_CLOSE,
    EVENT_OPEN,
    EVENT_WIRE_CLOSED,
    NETWORK_EVENTS,
    BridgeEvent,
    EventBus,
)
from .logging import get_logger
from .metrics import set_unit_count
from .session import NetworkSession, login


@dataclass(frozen=True, order=True)
class UnitKey:
    """Unit address; unit ids are only unique within a network."""

    network_id: str
    unit_id: int

    def __str__(self) -> str:
        return f"{self.network_id}/{self.unit_id}"

    @classmethod
    def parse(cls, value: str) -> "UnitKey":
        network_id, sep, unit_id = value.rpartition("/")
        if not sep or not network_id or not unit_id.isdigit():
            raise ValueError(f"Unit key must look like '<network_id>/<unit_id>', got {value!r}")
        return cls(network_id=network_id, unit_id=int(unit_id))


def _iter_unit_payloads(payload: Any) -> Iterable[Mapping[str, Any]]:
    units: Any = payload
    if isinstance(payload, Mapping) and "units" in payload:
        units = payload["units"]
    if isinstance(units, Mapping):
        for key, value in units.items():
            if isinstance(value, Mapping):
                yield value if "id" in value else {**value, "id": key}
    elif isinstance(units, list):
        for value in units:
            if isinstance(value, Mapping):
                yield value


class SessionRegistry:
    """Addressable namespace of units across every logged-in network.

    ``units()`` is the snapshot taken by the last ``refresh_units()``. Pushed
    changes are only forwarded on ``events``; live per-unit state belongs to
    whoever consumes them.
    """

    def __init__(
        self,
        client: CasambiCloudClient,
        connection: CasambiConnection,
        sessions: Iterable[NetworkSession],
    ) -> None:
        self.logger = get_logger("casambi.registry")
        self.events = EventBus("registry")
        self._client = client
        self._connection = connection
        self._sessions: Dict[str, NetworkSession] = {}
        self._units: Dict[UnitKey, UnitState] = {}
        self._fixtures: Dict[int, FixtureInfo] = {}
        self._unsubscribers: List[Callable[[], None]] = []
        for session in sessions:
            self._add_session(session)

    @classmethod
    async def login(
        cls,
        client: CasambiCloudClient,
        connection: CasambiConnection,
        credentials: Credentials,
        *,
        command_timeout: float = 5.0,
    ) -> "SessionRegistry":
        sessions = await login(client, connection, credentials, command_timeout=command_timeout)
        return cls(client, connection, sessions)

    def _add_session(self, session: NetworkSession) -> None:
        if session.connection is not self._connection:
            raise ValueError("All sessions in a registry must share one connection")
        self._sessions[session.network_id] = session
        for event_type in (*NETWORK_EVENTS, EVENT_OPEN, EVENT_CLOSE, EVENT_WIRE_CLOSED):
            self._unsubscribers.append(session.subscribe(event_type, self._forward))

    @property
    def connection(self) -> CasambiConnection:
        return self._connection

    @property
    def sessions(self) -> List[NetworkSession]:
        return list(self._sessions.values())

    def session(self, network_id: str) -> NetworkSession:
        try:
            return self._sessions[network_id]
        except KeyError:
            raise UnknownUnitError(f"No session for network {network_id}") from None

    def _forward(self, event: BridgeEvent) -> None:
        self.events.publish(event.event_type, event.data)

    async def refresh_units(self) -> Dict[UnitKey, UnitState]:
        """Load the full state of every network and cache fixture data."""

        for session in self.sessions:
            payload = await session.request_state()
            count = 0
            for unit_payload in _iter_unit_payloads(payload):
                try:
                    state = UnitState.from_payload(unit_payload)
                except ValueError as exc:
                    self.logger.debug(
                        "Skipping unit without id",
                        extra={"network_id": session.network_id, "error": str(exc)},
                    )
                    continue
                self._units[UnitKey(session.network_id, state.unit_id)] = state
                count += 1
                if state.fixture_id is not None:
                    await self.fixture(state.fixture_id)
            set_unit_count(session.network_id, count)
            self.logger.info(
                "Loaded units", extra={"network_id": session.network_id, "units": count}
            )
        return self.units()

    async def fixture(self, fixture_id: int) -> Optional[FixtureInfo]:
        """Fixture information, fetched once per fixture id."""

        cached = self._fixtures.get(fixture_id)
        if cached is not None:
            return cached
        try:
            payload = await self._client.get_fixture(fixture_id)
        except CloudRequestError as exc:
            self.logger.warning(
                "Fixture lookup failed", extra={"fixture_id": fixture_id, "error": str(exc)}
            )
            return None
        info = FixtureInfo.from_payload(fixture_id, payload if isinstance(payload, Mapping) else {})
        self._fixtures[fixture_id] = info
        return info

    def fixture_for(self, key: UnitKey) -> Optional[FixtureInfo]:
        state = self._units.get(key)
        if state is None or state.fixture_id is None:
            return None
        return self._fixtures.get(state.fixture_id)

    def unit(self, key: UnitKey) -> UnitState:
        try:
            return self._units[key]
        except KeyError:
            raise UnknownUnitError(f"Unknown unit {key}") from None

    def units(self) -> Dict[UnitKey, UnitState]:
        return dict(sorted(self._units.items()))

    def session_for(self, key: UnitKey) -> NetworkSession:
        if key not in self._units:
            raise UnknownUnitError(f"Unknown unit {key}")
        return self.session(key.network_id)

    async def send_control(self, key: UnitKey, target_controls: Mapping[str, Any]) -> None:
        """Route a controlUnit command to the session owning the unit."""

        await self.session_for(key).send_control_unit(key.unit_id, target_controls)

    def subscribe(self, event_type: str, callback: Callable[[BridgeEvent], Any]) -> Callable[[], None]:
        """Receive events from every session, annotated with ``network_id``."""

        return self.events.subscribe(event_type, callback)

    def subscribe_unit(self, key: UnitKey, callback: Callable[[BridgeEvent], Any]) -> Callable[[], None]:
        return self.session(key.network_id).subscribe_unit(key.unit_id, callback)

    def wire_ids(self) -> Dict[str, int]:
        return {network_id: session.wire_id for network_id, session in self._sessions.items()}

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {
                "network_id": session.network_id,
                "name": session.name,
                "site_id": session.token.site_id,
                "wire": session.wire_id,
                "units": sum(1 for key in self._units if key.network_id == session.network_id),
            }
            for session in self.sessions
        ]

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for session in self.sessions:
            await session.close()


def unit_counts(units: Mapping[UnitKey, UnitState]) -> Tuple[int, int]:
    """Return (total, online) unit counts."""

    online = sum(1 for state in units.values() if state.online)
    return len(units), online
