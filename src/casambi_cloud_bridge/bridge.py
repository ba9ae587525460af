"""Top-level bridge: login, sessions, reconcilers and the consumer contract."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Callable, Dict, Optional, Set

from .cloud import CasambiCloudClient
from .config import Config, Credentials
from .connection import CasambiConnection, websocket_connector
from .controls import FixtureInfo, UnitState
from .errors import (
    AuthRejected,
    CloudRequestError,
    ConnectionLost,
    TransientAuthFailure,
    UnknownUnitError,
    WireOpenRejected,
)
from .events import EVENT_OPEN, BridgeEvent, EventBus
from .health import BackoffPolicy, HealthMonitor
from .logging import get_logger
from .reconciler import EchoPolicy, StateCallback, UnitReconciler
from .registry import SessionRegistry, UnitKey, unit_counts
from .timers import LoopScheduler, Scheduler

HEALTH_SUBSYSTEMS = ("login", "connection", "api")


class CasambiBridge:
    """Everything a consumer needs to read and drive Casambi units.

    ``start`` returns immediately; login runs in the background and is
    retried after ``login_retry_cooldown`` until it succeeds or the cloud
    rejects the credentials. ``wait_ready`` blocks until units are loaded.
    """

    def __init__(
        self,
        config: Config,
        *,
        client: Optional[CasambiCloudClient] = None,
        connection: Optional[CasambiConnection] = None,
        scheduler: Optional[Scheduler] = None,
        health: Optional[HealthMonitor] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        if not config.api_key:
            raise ValueError("api_key is required")
        self.config = config
        self.logger = get_logger("casambi")
        self.events = event_bus or EventBus("bridge")
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self.health = health or HealthMonitor(
            HEALTH_SUBSYSTEMS,
            failure_threshold=config.subsystem_failure_threshold,
            cooldown_seconds=config.subsystem_failure_cooldown,
            event_bus=self.events,
        )
        self.client = client or CasambiCloudClient(
            config.api_key, base_url=config.api_base_url, timeout=config.http_timeout
        )
        self.connection = connection or CasambiConnection(
            websocket_connector(config.ws_url, config.api_key, open_timeout=config.wire_open_timeout),
            ping_interval=config.ping_interval,
            pong_grace=config.pong_grace,
            reconnect_delay=config.reconnect_delay,
            wire_open_timeout=config.wire_open_timeout,
            scheduler=self.scheduler,
            health=self.health,
        )
        self.registry: Optional[SessionRegistry] = None
        self.auth_error: Optional[AuthRejected] = None
        self._reconcilers: Dict[UnitKey, UnitReconciler] = {}
        self._login_task: Optional["asyncio.Task[None]"] = None
        self._background: Set["asyncio.Task[Any]"] = set()
        self._stop_event: Optional[asyncio.Event] = None
        self._ready: Optional[asyncio.Event] = None
        self._unsubscribe_open: Optional[Callable[[], None]] = None

    @property
    def ready(self) -> bool:
        return self._ready is not None and self._ready.is_set()

    async def start(self) -> None:
        credentials = self.config.credentials()
        self._stop_event = asyncio.Event()
        self._ready = asyncio.Event()
        self._unsubscribe_open = self.connection.subscribe(EVENT_OPEN, self._on_connection_open)
        await self.connection.start()
        self._login_task = asyncio.create_task(self._login_loop(credentials))
        self.logger.info(
            "Bridge started",
            extra={"auth_mode": self.config.auth_mode, "echo_policy": self.config.echo_policy},
        )

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for login and unit discovery; False on timeout or fatal auth."""

        if self._ready is None or self._login_task is None:
            raise RuntimeError("Bridge has not been started")
        waiter = asyncio.ensure_future(self._ready.wait())
        done, _ = await asyncio.wait({waiter, self._login_task}, timeout=timeout)
        if waiter not in done:
            waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await waiter
        return self._ready.is_set()

    async def _login_loop(self, credentials: Credentials) -> None:
        assert self._stop_event is not None
        backoff = BackoffPolicy.fixed(self.config.login_retry_cooldown)
        failures = 0
        while not self._stop_event.is_set():
            registry: Optional[SessionRegistry] = None
            try:
                registry = await SessionRegistry.login(
                    self.client,
                    self.connection,
                    credentials,
                    command_timeout=self.config.command_timeout,
                )
                await registry.refresh_units()
            except AuthRejected as exc:
                if registry is not None:
                    await registry.close()
                self.auth_error = exc
                self.health.mark_fatal("login", exc)
                self.logger.error(
                    "Cloud rejected the credentials; not retrying",
                    extra={"status_code": exc.status_code, "mode": credentials.mode},
                )
                return
            except (TransientAuthFailure, CloudRequestError) as exc:
                if registry is not None:
                    await registry.close()
                failures += 1
                delay = backoff.delay(failures)
                self.health.record_failure("login", exc)
                self.logger.warning(
                    "Login failed; will retry",
                    extra={"error": str(exc), "failures": failures, "retry_in": delay},
                )
                await _wait_or_stop(self._stop_event, delay)
                continue
            self._install(registry)
            self.health.record_success("login")
            return

    def _install(self, registry: SessionRegistry) -> None:
        config = self.config
        policy = EchoPolicy(config.echo_policy)
        for key, state in registry.units().items():
            self._reconcilers[key] = UnitReconciler(
                registry.session(key.network_id),
                state,
                scheduler=self.scheduler,
                policy=policy,
                debounce_delay=config.debounce_delay,
                suppression_window=config.suppression_window,
                fixture=registry.fixture_for(key),
                default_kelvin_bounds=(config.default_min_kelvin, config.default_max_kelvin),
            )
        self.registry = registry
        total, online = unit_counts(registry.units())
        self.logger.info(
            "Units ready",
            extra={"networks": len(registry.sessions), "units": total, "online": online},
        )
        if self._ready is not None:
            self._ready.set()
        if self.connection.is_open:
            self._spawn(self._open_wires())

    def _on_connection_open(self, event: BridgeEvent) -> None:
        if self.registry is not None:
            self._spawn(self._open_wires())

    async def _open_wires(self) -> None:
        # Pushes only flow on an open wire, so every session keeps one.
        registry = self.registry
        if registry is None:
            return
        for session in registry.sessions:
            try:
                await session.ensure_wire_open()
            except (WireOpenRejected, ConnectionLost) as exc:
                self.logger.warning(
                    "Wire open failed",
                    extra={"network_id": session.network_id, "error": str(exc)},
                )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Consumer contract

    def _reconciler(self, key: UnitKey) -> UnitReconciler:
        try:
            return self._reconcilers[key]
        except KeyError:
            raise UnknownUnitError(f"Unknown unit {key}") from None

    def units(self) -> Dict[UnitKey, UnitState]:
        """Visible state of every known unit."""

        return {key: self._reconcilers[key].state for key in sorted(self._reconcilers)}

    def state(self, key: UnitKey) -> UnitState:
        return self._reconciler(key).state

    def fixture(self, key: UnitKey) -> Optional[FixtureInfo]:
        return self._reconciler(key).fixture

    def subscribe(self, key: UnitKey, callback: StateCallback) -> Callable[[], None]:
        """Call ``callback`` with the new state whenever the visible state changes."""

        return self._reconciler(key).subscribe(callback)

    async def set_control(self, key: UnitKey, name: str, value: Any) -> UnitState:
        """Send one control change and return the locally predicted state."""

        reconciler = self._reconciler(key)
        await reconciler.set_control(name, value)
        return reconciler.state

    def status(self) -> Dict[str, Any]:
        total, online = unit_counts(self.units())
        return {
            "ready": self.ready,
            "auth_mode": self.config.auth_mode,
            "auth_error": str(self.auth_error) if self.auth_error else None,
            "echo_policy": self.config.echo_policy,
            "connection": {
                "state": self.connection.state.value,
                "wires": {str(wire): network for wire, network in self.connection.wires.items()},
                "reconnect_pending": self.connection.reconnect_pending,
            },
            "networks": self.registry.describe() if self.registry else [],
            "units": {"total": total, "online": online},
            "health": dict(self.health.snapshot()),
            "overall": self.health.overall(),
        }

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._unsubscribe_open is not None:
            self._unsubscribe_open()
            self._unsubscribe_open = None
        tasks = [task for task in (self._login_task, *self._background) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for reconciler in self._reconcilers.values():
            reconciler.close()
        self._reconcilers.clear()
        if self.registry is not None:
            await self.registry.close()
            self.registry = None
        await self.connection.stop()
        await self.client.close()
        self.logger.info("Bridge stopped")


async def _wait_or_stop(stop_event: asyncio.Event, delay: float) -> None:
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
