"""Persistent WebSocket connection to the Casambi cloud.

One socket carries every wire. The connection owns the socket, the keepalive
and watchdog timers, the pending open handshakes (keyed by ``ref``) and the
registry of open wire ids. Everything it learns is published on its
:class:`~casambi_cloud_bridge.events.EventBus`.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Set, Union

import websockets
from websockets.exceptions import WebSocketException
from websockets.typing import Subprotocol

from .errors import CommandTransmitFailure, ConnectionLost, FrameDecodeError, WireOpenRejected
from .events import (
    EVENT_CLOSE,
    EVENT_MESSAGE,
    EVENT_OPEN,
    EVENT_TIMEOUT,
    EVENT_WIRE_CLOSED,
    EVENT_WIRE_OPENED,
    EVENT_WIRE_STATUS,
    EventBus,
)
from .health import HealthMonitor
from .logging import get_logger
from .metrics import (
    record_frame,
    record_frame_decode_error,
    record_keepalive_timeout,
    record_reconnect,
    record_wire_open,
    set_connection_state,
    set_open_wires,
)
from .protocol import (
    EVENT_METHODS,
    WIRE_STATUS_OPEN_SUCCEED,
    InboundMessage,
    close_wire_frame,
    decode_frame,
    encode_frame,
    new_ref,
    open_wire_frame,
)
from .timers import LoopScheduler, Scheduler, TimerHandle, cancel_timer

_TRANSPORT_ERRORS = (OSError, WebSocketException, ConnectionLost)


class ConnectionState(str, enum.Enum):
    """Lifecycle of the physical socket."""

    ABSENT = "absent"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    LOST = "lost"


class Transport(Protocol):
    """Subset of a websockets client connection used by the bridge."""

    async def send(self, message: str) -> None:
        ...

    async def recv(self) -> Union[str, bytes]:
        ...

    async def ping(self) -> Awaitable[Any]:
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[], Awaitable[Transport]]


def websocket_connector(ws_url: str, api_key: str, *, open_timeout: float = 10.0) -> Connector:
    """Build the default connector: the api key travels as the subprotocol."""

    async def _connect() -> Transport:
        return await websockets.connect(
            ws_url,
            subprotocols=[Subprotocol(api_key)],
            ping_interval=None,
            open_timeout=open_timeout,
        )

    return _connect


@dataclass
class _PendingOpen:
    ref: str
    wire: int
    network_id: str
    future: "asyncio.Future[int]"
    timer: Optional[TimerHandle] = None


class CasambiConnection:
    """Owns the socket, keepalive, wire registry and reconnect policy."""

    def __init__(
        self,
        connector: Connector,
        *,
        ping_interval: float = 30.0,
        pong_grace: float = 2.0,
        reconnect_delay: float = 5.0,
        wire_open_timeout: float = 10.0,
        scheduler: Optional[Scheduler] = None,
        event_bus: Optional[EventBus] = None,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.logger = get_logger("casambi.connection")
        self.events = event_bus or EventBus("connection")
        self.ping_interval = ping_interval
        self.pong_timeout = ping_interval + pong_grace
        self.reconnect_delay = reconnect_delay
        self.wire_open_timeout = wire_open_timeout
        self._connector = connector
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self._health = health
        self._state = ConnectionState.ABSENT
        self._transport: Optional[Transport] = None
        self._connect_task: Optional["asyncio.Task[None]"] = None
        self._receive_task: Optional["asyncio.Task[None]"] = None
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._ping_handle: Optional[TimerHandle] = None
        self._watchdog_handle: Optional[TimerHandle] = None
        self._reconnect_handle: Optional[TimerHandle] = None
        self._pending: Dict[str, _PendingOpen] = {}
        self._expired: Dict[str, _PendingOpen] = {}
        self._wires: Dict[int, str] = {}
        self._send_lock = asyncio.Lock()
        self._stopped = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def wires(self) -> Mapping[int, str]:
        """Registered wire ids and the network each one belongs to."""
        return dict(self._wires)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def subscribe(self, event_type: str, callback: Callable[..., Any]) -> Callable[[], None]:
        return self.events.subscribe(event_type, callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self.logger.debug(
            "Connection state changed",
            extra={"from_state": self._state.value, "to_state": state.value},
        )
        self._state = state
        set_connection_state(state.value)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        """Connect in the background; failures are retried forever."""

        self._stopped = False
        self._start_connect()

    async def stop(self) -> None:
        """Close the socket and cancel every timer; no reconnect follows."""

        self._stopped = True
        cancel_timer(self._reconnect_handle)
        self._reconnect_handle = None
        self._cancel_keepalive()
        connect_task = self._connect_task
        if connect_task is not None and not connect_task.done():
            connect_task.cancel()
            try:
                await connect_task
            except (asyncio.CancelledError, ConnectionLost):
                pass
        was_open = self._state is ConnectionState.OPEN
        transport = self._transport
        self._transport = None
        if was_open:
            self._set_state(ConnectionState.CLOSING)
        self._fail_pending(ConnectionLost("Connection stopped"))
        self._clear_wires()
        await self._cancel_receive()
        if transport is not None:
            await self._close_transport(transport)
        self._set_state(ConnectionState.ABSENT)
        if was_open:
            self.events.publish(EVENT_CLOSE, {"reason": "stopped"})
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.logger.info("Connection stopped")

    async def ensure_open(self) -> None:
        """Return once the socket is open, sharing one in-flight connect attempt."""

        if self._state is ConnectionState.OPEN:
            return
        if self._stopped:
            raise ConnectionLost("Connection is stopped")
        task = self._start_connect()
        await asyncio.shield(task)
        if self._state is not ConnectionState.OPEN:
            raise ConnectionLost("Connection closed while opening")

    def _start_connect(self) -> "asyncio.Task[None]":
        task = self._connect_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._connect())
            task.add_done_callback(_consume_task_error)
            self._connect_task = task
        return task

    async def _connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self.logger.info("Connecting to cloud WebSocket")
        try:
            transport = await self._connector()
        except asyncio.CancelledError:
            self._set_state(ConnectionState.ABSENT)
            raise
        except (*_TRANSPORT_ERRORS, asyncio.TimeoutError) as exc:
            self.logger.warning(
                "WebSocket connect failed",
                extra={"error": str(exc), "retry_in": self.reconnect_delay},
            )
            if self._health:
                self._health.record_failure("connection", exc)
            self._set_state(ConnectionState.ABSENT)
            self._schedule_reconnect()
            raise ConnectionLost(f"Connect failed: {exc}") from exc
        if self._stopped:
            await self._close_transport(transport)
            self._set_state(ConnectionState.ABSENT)
            raise ConnectionLost("Connection stopped while connecting")
        self._transport = transport
        self._set_state(ConnectionState.OPEN)
        self._receive_task = self._spawn(self._receive_loop(transport))
        self._arm_watchdog()
        self._schedule_ping()
        if self._health:
            self._health.record_success("connection")
        self.logger.info("WebSocket connected")
        self.events.publish(EVENT_OPEN, {})

    async def _receive_loop(self, transport: Transport) -> None:
        try:
            while True:
                data = await transport.recv()
                try:
                    self._handle_frame(data)
                except Exception:
                    record_frame_decode_error()
                    self.logger.exception("Dropping frame that failed handling")
        except _TRANSPORT_ERRORS as exc:
            if transport is self._transport:
                self._handle_loss(f"socket closed: {exc}")
        except Exception as exc:
            self.logger.exception("Receive loop failed")
            if transport is self._transport:
                self._handle_loss(f"receive failed: {exc}")

    def _handle_frame(self, data: Union[str, bytes]) -> None:
        try:
            message = decode_frame(data)
        except FrameDecodeError as exc:
            record_frame_decode_error()
            self.logger.debug("Dropping undecodable frame", extra={"error": str(exc)})
            return
        record_frame("in", message.kind)
        method = message.method
        if method in EVENT_METHODS:
            self.events.publish(method, {"wire": message.wire, "message": message})
        if message.is_wire_status:
            self._handle_wire_status(message)
        self.events.publish(EVENT_MESSAGE, {"wire": message.wire, "message": message})

    def _handle_wire_status(self, message: InboundMessage) -> None:
        status = message.wire_status or "unknown"
        ref = message.ref
        pending = self._pending.pop(ref, None) if ref is not None else None
        wire = message.wire
        if pending is not None:
            cancel_timer(pending.timer)
            wire = pending.wire
            if status == WIRE_STATUS_OPEN_SUCCEED:
                self._wires[pending.wire] = pending.network_id
                set_open_wires(len(self._wires))
                record_wire_open("success")
                # Pushes may already sit behind this reply; owners must learn the id now.
                self.events.publish(
                    EVENT_WIRE_OPENED, {"wire": pending.wire, "network_id": pending.network_id}
                )
                if not pending.future.done():
                    pending.future.set_result(pending.wire)
            else:
                record_wire_open("rejected")
                if not pending.future.done():
                    pending.future.set_exception(WireOpenRejected(status, pending.network_id))
        elif ref is not None and ref in self._expired:
            expired = self._expired.pop(ref)
            wire = expired.wire
            if status == WIRE_STATUS_OPEN_SUCCEED:
                self.logger.info(
                    "Closing wire opened after its handshake expired",
                    extra={"wire": expired.wire, "network_id": expired.network_id},
                )
                self._spawn(self._send_close(expired.wire))
        elif status != WIRE_STATUS_OPEN_SUCCEED and wire is not None and wire in self._wires:
            network_id = self._wires.pop(wire)
            set_open_wires(len(self._wires))
            self.logger.warning(
                "Server closed wire",
                extra={"wire": wire, "network_id": network_id, "status": status},
            )
            self.events.publish(
                EVENT_WIRE_CLOSED, {"wire": wire, "network_id": network_id, "reason": status}
            )
        self.events.publish(
            EVENT_WIRE_STATUS, {"wire": wire, "status": status, "ref": ref, "message": message}
        )

    def _allocate_wire(self) -> int:
        in_use = set(self._wires)
        in_use.update(pending.wire for pending in self._pending.values())
        in_use.update(expired.wire for expired in self._expired.values())
        wire = 1
        while wire in in_use:
            wire += 1
        return wire

    async def open_wire(self, network_id: str, session_id: str) -> int:
        """Open a wire for a network and return its id.

        Raises WireOpenRejected when the server answers with anything other
        than success or does not answer within ``wire_open_timeout``, and
        ConnectionLost when the socket drops during the handshake.
        """

        await self.ensure_open()
        loop = asyncio.get_running_loop()
        ref = new_ref()
        wire = self._allocate_wire()
        pending = _PendingOpen(ref=ref, wire=wire, network_id=network_id, future=loop.create_future())
        pending.timer = self._scheduler.call_later(
            self.wire_open_timeout, lambda: self._expire_open(ref)
        )
        self._pending[ref] = pending
        self.logger.debug(
            "Opening wire", extra={"wire": wire, "network_id": network_id, "ref": ref}
        )
        try:
            await self.send_frame(open_wire_frame(network_id, session_id, ref, wire))
        except CommandTransmitFailure as exc:
            self._discard_pending(ref)
            raise ConnectionLost(f"Could not send open handshake: {exc}") from exc
        try:
            result = await pending.future
        finally:
            self._discard_pending(ref)
        self.logger.info("Wire open", extra={"wire": result, "network_id": network_id})
        return result

    def _expire_open(self, ref: str) -> None:
        pending = self._pending.pop(ref, None)
        if pending is None or pending.future.done():
            return
        record_wire_open("timeout")
        # The id stays reserved until the server answers or the socket goes.
        self._expired[ref] = pending
        self.logger.warning(
            "Wire open handshake timed out",
            extra={"wire": pending.wire, "network_id": pending.network_id},
        )
        pending.future.set_exception(WireOpenRejected("timeout", pending.network_id))

    def _discard_pending(self, ref: str) -> None:
        pending = self._pending.pop(ref, None)
        if pending is not None:
            cancel_timer(pending.timer)

    async def close_wire(self, wire: int) -> None:
        """Unregister a wire and tell the server when the socket is still open."""

        network_id = self._wires.pop(wire, None)
        if network_id is None:
            return
        set_open_wires(len(self._wires))
        if self._state is ConnectionState.OPEN:
            await self._send_close(wire)
        self.logger.info("Wire closed", extra={"wire": wire, "network_id": network_id})

    async def _send_close(self, wire: int) -> None:
        try:
            await self.send_frame(close_wire_frame(wire))
        except CommandTransmitFailure as exc:
            self.logger.debug("Close frame not sent", extra={"wire": wire, "error": str(exc)})

    async def send_frame(self, message: Mapping[str, Any]) -> None:
        """Write one frame; raises CommandTransmitFailure unless the socket is open."""

        text = encode_frame(message)
        async with self._send_lock:
            transport = self._transport
            if self._state is not ConnectionState.OPEN or transport is None:
                raise CommandTransmitFailure(f"Connection is {self._state.value}")
            try:
                await transport.send(text)
            except _TRANSPORT_ERRORS as exc:
                raise CommandTransmitFailure(f"Send failed: {exc}") from exc
        record_frame("out", str(message.get("method", "unknown")))

    def _schedule_ping(self) -> None:
        cancel_timer(self._ping_handle)
        self._ping_handle = self._scheduler.call_later(self.ping_interval, self._on_ping_timer)

    def _on_ping_timer(self) -> None:
        self._ping_handle = None
        transport = self._transport
        if self._state is not ConnectionState.OPEN or transport is None:
            return
        self._spawn(self._ping(transport))
        self._schedule_ping()

    async def _ping(self, transport: Transport) -> None:
        try:
            waiter = await transport.ping()
            await waiter
        except _TRANSPORT_ERRORS as exc:
            self.logger.debug("Ping failed", extra={"error": str(exc)})
            return
        if transport is self._transport:
            self._arm_watchdog()

    def _arm_watchdog(self) -> None:
        cancel_timer(self._watchdog_handle)
        self._watchdog_handle = self._scheduler.call_later(self.pong_timeout, self._on_watchdog)

    def _on_watchdog(self) -> None:
        self._watchdog_handle = None
        if self._state is not ConnectionState.OPEN:
            return
        record_keepalive_timeout()
        self.logger.warning(
            "No pong received, closing socket", extra={"timeout": self.pong_timeout}
        )
        self.events.publish(EVENT_TIMEOUT, {"timeout": self.pong_timeout})
        self._handle_loss("keepalive timeout")

    def _cancel_keepalive(self) -> None:
        cancel_timer(self._ping_handle)
        cancel_timer(self._watchdog_handle)
        self._ping_handle = None
        self._watchdog_handle = None

    def _handle_loss(self, reason: str) -> None:
        if self._state is not ConnectionState.OPEN:
            return
        transport = self._transport
        self._transport = None
        self._set_state(ConnectionState.LOST)
        self._cancel_keepalive()
        receive_task = self._receive_task
        self._receive_task = None
        if receive_task is not None and receive_task is not asyncio.current_task():
            receive_task.cancel()
        self._fail_pending(ConnectionLost(reason))
        self._clear_wires()
        if transport is not None:
            self._spawn(self._close_transport(transport))
        self.logger.warning(
            "Connection lost", extra={"reason": reason, "retry_in": self.reconnect_delay}
        )
        if self._health:
            self._health.record_failure("connection", ConnectionLost(reason))
        self._set_state(ConnectionState.ABSENT)
        self.events.publish(EVENT_CLOSE, {"reason": reason})
        self._schedule_reconnect()

    def _fail_pending(self, error: BaseException) -> None:
        pending_opens = list(self._pending.values())
        self._pending.clear()
        for pending in pending_opens:
            cancel_timer(pending.timer)
            if not pending.future.done():
                pending.future.set_exception(error)

    def _clear_wires(self) -> None:
        self._wires.clear()
        self._expired.clear()
        set_open_wires(0)

    def _schedule_reconnect(self) -> None:
        if self._stopped or self._reconnect_handle is not None:
            return
        self._reconnect_handle = self._scheduler.call_later(
            self.reconnect_delay, self._on_reconnect_timer
        )

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if self._stopped or self._state is not ConnectionState.ABSENT:
            return
        record_reconnect()
        self.logger.info("Reconnecting to cloud WebSocket")
        self._start_connect()

    async def _cancel_receive(self) -> None:
        task = self._receive_task
        self._receive_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_transport(self, transport: Transport) -> None:
        try:
            await transport.close()
        except _TRANSPORT_ERRORS as exc:
            self.logger.debug("Error closing socket", extra={"error": str(exc)})


def _consume_task_error(task: "asyncio.Task[Any]") -> None:
    # Background connects report through logs and reconnects; awaiters get the error themselves.
    if not task.cancelled():
        task.exception()
