"""Authenticated network sessions and their wires."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Mapping, Optional, Set

from .cloud import AuthToken, CasambiCloudClient
from .config import Credentials
from .connection import CasambiConnection
from .errors import (
    AuthRejected,
    CommandTransmitFailure,
    ConnectionLost,
    TransientAuthFailure,
    WireOpenRejected,
)
from .events import (
    EVENT_CLOSE,
    EVENT_OPEN,
    EVENT_UNIT_CHANGED,
    EVENT_WIRE_CLOSED,
    EVENT_WIRE_OPENED,
    NETWORK_EVENTS,
    BridgeEvent,
    EventBus,
)
from .logging import get_logger
from .metrics import record_command, record_login
from .protocol import control_unit_frame


class NetworkSession:
    """One logged-in network: its token, its wire and its event stream.

    The wire id is 0 until a wire is opened and drops back to 0 whenever the
    connection reports the socket or the wire gone. Network events are
    republished only when their ``wire`` matches the current wire id, so
    sessions sharing a connection never see each other's traffic.
    """

    def __init__(
        self,
        client: CasambiCloudClient,
        connection: CasambiConnection,
        token: AuthToken,
        *,
        command_timeout: float = 5.0,
    ) -> None:
        self.token = token
        self.network_id = token.network_id
        self.name = token.network_name
        self.command_timeout = command_timeout
        self.events = EventBus(f"session:{token.network_id}")
        self.logger = get_logger("casambi.session")
        self._client = client
        self._connection = connection
        self._wire = 0
        self._was_open = False
        self._closed = False
        self._open_task: Optional["asyncio.Task[int]"] = None
        self._background: Set["asyncio.Task[Any]"] = set()
        self._unsubscribers: List[Callable[[], None]] = [
            connection.subscribe(event_type, self._on_network_event) for event_type in NETWORK_EVENTS
        ]
        self._unsubscribers.append(connection.subscribe(EVENT_CLOSE, self._on_connection_close))
        self._unsubscribers.append(connection.subscribe(EVENT_OPEN, self._on_connection_open))
        self._unsubscribers.append(connection.subscribe(EVENT_WIRE_CLOSED, self._on_wire_closed))
        self._unsubscribers.append(connection.subscribe(EVENT_WIRE_OPENED, self._on_wire_opened))

    def __repr__(self) -> str:
        return f"NetworkSession(network_id={self.network_id!r}, wire={self._wire})"

    @property
    def wire_id(self) -> int:
        return self._wire

    @property
    def connection(self) -> CasambiConnection:
        return self._connection

    # Plain reads

    async def request_information(self) -> Any:
        return await self._client.get_network(self.token, endpoint="network")

    async def request_unit_list(self) -> Any:
        return await self._client.get_network(self.token, "/units", endpoint="units")

    async def request_unit_state(self, unit_id: int) -> Any:
        return await self._client.get_network(
            self.token, f"/units/{unit_id}/state", endpoint="unit_state"
        )

    async def request_state(self) -> Any:
        return await self._client.get_network(self.token, "/state", endpoint="state")

    async def request_groups(self) -> Any:
        return await self._client.get_network(self.token, "/groups", endpoint="groups")

    async def request_scenes(self) -> Any:
        return await self._client.get_network(self.token, "/scenes", endpoint="scenes")

    async def request_datapoints(self, filters: Optional[Mapping[str, Any]] = None) -> Any:
        return await self._client.get_network(
            self.token, "/datapoints", endpoint="datapoints", params=filters
        )

    # Wire management

    async def ensure_wire_open(self) -> int:
        """Return the wire id, opening one if needed.

        Concurrent callers share a single open handshake and all see the same
        result, success or failure.
        """

        if self._wire:
            return self._wire
        if self._closed:
            raise ConnectionLost(f"Session for network {self.network_id} is closed")
        task = self._open_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._open_wire())
            task.add_done_callback(_consume_task_error)
            self._open_task = task
        return await asyncio.shield(task)

    async def _open_wire(self) -> int:
        wire = await self._connection.open_wire(self.network_id, self.token.session_id)
        if self._connection.wires.get(wire) != self.network_id:
            raise ConnectionLost(f"Wire {wire} for network {self.network_id} dropped while opening")
        self._wire = wire
        self._was_open = True
        return wire

    async def send_control_unit(self, unit_id: int, target_controls: Mapping[str, Any]) -> None:
        """Send a controlUnit frame; resolves once written, not once confirmed."""

        try:
            await asyncio.wait_for(
                self._send_control_unit(unit_id, target_controls), timeout=self.command_timeout
            )
        except asyncio.TimeoutError as exc:
            record_command("timeout")
            raise CommandTransmitFailure(
                f"controlUnit for unit {unit_id} not sent within {self.command_timeout}s"
            ) from exc
        except ConnectionLost as exc:
            record_command("failed")
            raise CommandTransmitFailure(str(exc)) from exc
        except (CommandTransmitFailure, WireOpenRejected):
            record_command("failed")
            raise
        record_command("sent")

    async def _send_control_unit(self, unit_id: int, target_controls: Mapping[str, Any]) -> None:
        wire = await self.ensure_wire_open()
        self.logger.debug(
            "Sending controlUnit",
            extra={"network_id": self.network_id, "wire": wire, "unit_id": unit_id},
        )
        await self._connection.send_frame(control_unit_frame(wire, unit_id, target_controls))

    # Events

    def subscribe(self, event_type: str, callback: Callable[[BridgeEvent], Any]) -> Callable[[], None]:
        return self.events.subscribe(event_type, callback)

    def subscribe_unit(
        self, unit_id: int, callback: Callable[[BridgeEvent], Any]
    ) -> Callable[[], None]:
        """Deliver only unitChanged events for one unit."""

        def _filter(event: BridgeEvent) -> None:
            message = event.data.get("message")
            if message is not None and message.unit_id == unit_id:
                callback(event)

        return self.events.subscribe(EVENT_UNIT_CHANGED, _filter)

    def _on_network_event(self, event: BridgeEvent) -> None:
        wire = event.data.get("wire")
        if not self._wire or wire != self._wire:
            return
        self.events.publish(
            event.event_type,
            {"network_id": self.network_id, "wire": wire, "message": event.data.get("message")},
        )

    def _on_connection_close(self, event: BridgeEvent) -> None:
        if self._wire:
            self.logger.info(
                "Wire dropped with connection",
                extra={"network_id": self.network_id, "wire": self._wire},
            )
        self._wire = 0
        self.events.publish(EVENT_CLOSE, {"network_id": self.network_id, **event.data})

    def _on_wire_closed(self, event: BridgeEvent) -> None:
        if self._wire and event.data.get("wire") == self._wire:
            self._wire = 0
            self.events.publish(EVENT_WIRE_CLOSED, {"network_id": self.network_id, **event.data})

    def _on_wire_opened(self, event: BridgeEvent) -> None:
        # Set before the open task resumes so pushes queued behind the reply are kept.
        task = self._open_task
        if self._closed or task is None or task.done():
            return
        if event.data.get("network_id") == self.network_id:
            self._wire = event.data["wire"]
            self._was_open = True

    def _on_connection_open(self, event: BridgeEvent) -> None:
        if self._closed or not self._was_open or self._wire:
            return
        task = asyncio.get_running_loop().create_task(self._reopen())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reopen(self) -> None:
        try:
            wire = await self.ensure_wire_open()
        except (WireOpenRejected, ConnectionLost) as exc:
            self.logger.warning(
                "Could not reopen wire after reconnect",
                extra={"network_id": self.network_id, "error": str(exc)},
            )
            return
        self.logger.info("Wire reopened", extra={"network_id": self.network_id, "wire": wire})
        self.events.publish(EVENT_OPEN, {"network_id": self.network_id, "wire": wire})

    async def close(self) -> None:
        """Close the wire and detach from the connection."""

        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        wire, self._wire = self._wire, 0
        if wire:
            await self._connection.close_wire(wire)
        self.events.clear()


async def login(
    client: CasambiCloudClient,
    connection: CasambiConnection,
    credentials: Credentials,
    *,
    command_timeout: float = 5.0,
) -> List[NetworkSession]:
    """Log in and return one session per accessible network.

    Raises AuthRejected when the credentials are refused and
    TransientAuthFailure for anything worth retrying.
    """

    logger = get_logger("casambi.session")
    try:
        if credentials.mode == "user":
            tokens = await client.create_user_session(credentials.email, credentials.password)
        else:
            tokens = await client.create_network_session(credentials.email, credentials.password)
    except AuthRejected:
        record_login(credentials.mode, "rejected")
        raise
    except TransientAuthFailure:
        record_login(credentials.mode, "transient")
        raise
    record_login(credentials.mode, "success")
    logger.info(
        "Logged in",
        extra={"mode": credentials.mode, "networks": [token.network_id for token in tokens]},
    )
    return [
        NetworkSession(client, connection, token, command_timeout=command_timeout)
        for token in tokens
    ]


def _consume_task_error(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled():
        task.exception()
