"""Reconcile local commands with state pushed back by the cloud.

Every command a unit receives comes back later as an ordinary
``unitChanged`` push, usually several of them while a slider is dragged.
Two policies keep that echo from fighting the user:

``debounce``
    Every push restarts a short timer and only the last push of a burst is
    applied. Works without correlating pushes to commands, but delays every
    external update by the debounce delay.

``suppress``
    Each command arms a suppression window and counts one expected echo.
    Pushes inside the window consume those expectations and are dropped;
    anything else applies immediately. An expectation that is never met is
    reported as an unconfirmed command when the window closes.

In both modes the locally predicted state is shown as soon as the command is
written to the socket.
"""

from __future__ import annotations

import asyncio
import enum
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar

from .controls import (
    DEFAULT_MAX_KELVIN,
    DEFAULT_MIN_KELVIN,
    FixtureInfo,
    UnitState,
    build_control_request,
    resolve_kelvin_bounds,
)
from .events import EVENT_UNIT_STATE, BridgeEvent, EventBus
from .logging import get_logger
from .metrics import record_echo_outcome
from .session import NetworkSession
from .timers import Scheduler, TimerHandle, cancel_timer

T = TypeVar("T")


class EchoPolicy(str, enum.Enum):
    DEBOUNCE = "debounce"
    SUPPRESS = "suppress"


class CommandOutcome(str, enum.Enum):
    """How a command was resolved against the pushes that followed it."""

    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"


class StateCell(Generic[T]):
    """Holds back pushed values according to an echo policy."""

    def __init__(
        self,
        policy: EchoPolicy,
        window: float,
        scheduler: Scheduler,
        on_apply: Callable[[T], None],
        on_outcome: Optional[Callable[[CommandOutcome, int], None]] = None,
    ) -> None:
        self.policy = EchoPolicy(policy)
        self.window = window
        self._scheduler = scheduler
        self._on_apply = on_apply
        self._on_outcome = on_outcome
        self._timer: Optional[TimerHandle] = None
        self._latest: Optional[T] = None
        self._has_latest = False
        self._expected = 0
        self.last_command_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        """True while a debounce timer or suppression window is running."""
        return self._timer is not None

    @property
    def expected_echoes(self) -> int:
        return self._expected

    def push(self, value: T) -> None:
        if self.policy is EchoPolicy.DEBOUNCE:
            self._latest = value
            self._has_latest = True
            cancel_timer(self._timer)
            self._timer = self._scheduler.call_later(self.window, self._flush)
            return
        if self._timer is not None and self._expected > 0:
            self._expected -= 1
            record_echo_outcome("suppressed")
            self._report(CommandOutcome.CONFIRMED, 1)
            return
        record_echo_outcome("applied")
        self._on_apply(value)

    def expect(self) -> None:
        """Note that a command was just sent; only meaningful when suppressing."""

        if self.policy is not EchoPolicy.SUPPRESS:
            return
        self._expected += 1
        self.last_command_at = self._scheduler.now()
        cancel_timer(self._timer)
        self._timer = self._scheduler.call_later(self.window, self._expire)

    def _flush(self) -> None:
        self._timer = None
        if not self._has_latest:
            return
        value = self._latest
        self._latest = None
        self._has_latest = False
        record_echo_outcome("debounced")
        self._on_apply(value)  # type: ignore[arg-type]

    def _expire(self) -> None:
        self._timer = None
        missed, self._expected = self._expected, 0
        if missed:
            self._report(CommandOutcome.UNCONFIRMED, missed)

    def _report(self, outcome: CommandOutcome, count: int) -> None:
        record_echo_outcome(outcome.value)
        if self._on_outcome is not None:
            self._on_outcome(outcome, count)

    def cancel(self) -> None:
        cancel_timer(self._timer)
        self._timer = None
        self._latest = None
        self._has_latest = False
        self._expected = 0


StateCallback = Callable[[UnitState], Any]


class UnitReconciler:
    """Visible state of one unit plus its command path."""

    def __init__(
        self,
        session: NetworkSession,
        initial: UnitState,
        *,
        scheduler: Scheduler,
        policy: EchoPolicy = EchoPolicy.DEBOUNCE,
        debounce_delay: float = 0.5,
        suppression_window: float = 3.0,
        fixture: Optional[FixtureInfo] = None,
        default_kelvin_bounds: Tuple[float, float] = (DEFAULT_MIN_KELVIN, DEFAULT_MAX_KELVIN),
    ) -> None:
        self.unit_id = initial.unit_id
        self.network_id = session.network_id
        self.logger = get_logger("casambi.reconciler")
        self.fixture = fixture
        self.default_kelvin_bounds = default_kelvin_bounds
        self.last_outcome: Optional[CommandOutcome] = None
        self._session = session
        self._state = initial
        self._last_brightness: Optional[float] = None
        self._remember_brightness(initial)
        policy = EchoPolicy(policy)
        window = debounce_delay if policy is EchoPolicy.DEBOUNCE else suppression_window
        self._cell: StateCell[UnitState] = StateCell(
            policy, window, scheduler, self._apply_push, self._on_outcome
        )
        self._bus = EventBus(f"unit:{self.network_id}/{self.unit_id}")
        self._unsubscribe_session = session.subscribe_unit(self.unit_id, self._on_push)

    @property
    def state(self) -> UnitState:
        return self._state

    @property
    def policy(self) -> EchoPolicy:
        return self._cell.policy

    @property
    def cell(self) -> StateCell[UnitState]:
        return self._cell

    def kelvin_bounds(self) -> Tuple[float, float]:
        return resolve_kelvin_bounds(self._state, self.fixture, self.default_kelvin_bounds)

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Call ``callback`` with the new state on every visible transition."""

        if asyncio.iscoroutinefunction(callback):

            async def _deliver_async(event: BridgeEvent) -> None:
                await callback(event.data["state"])

            return self._bus.subscribe(EVENT_UNIT_STATE, _deliver_async)

        def _deliver(event: BridgeEvent) -> None:
            callback(event.data["state"])

        return self._bus.subscribe(EVENT_UNIT_STATE, _deliver)

    async def set_control(self, name: str, value: Any) -> None:
        """Validate, send and locally apply one control change.

        Raises UnsupportedControlError for bad input and
        CommandTransmitFailure or WireOpenRejected when the frame could not
        be sent; the visible state is untouched in those cases.
        """

        request = build_control_request(
            name,
            value,
            state=self._state,
            last_brightness=self._last_brightness,
            kelvin_bounds=self.kelvin_bounds(),
        )
        await self._session.send_control_unit(self.unit_id, request.target_controls)
        self._cell.expect()
        predicted = self._state
        for control in request.predicted:
            predicted = predicted.with_control(control)
        self.logger.debug(
            "Applied predicted state",
            extra={
                "network_id": self.network_id,
                "unit_id": self.unit_id,
                "control": name,
                "target_controls": dict(request.target_controls),
            },
        )
        self._set_state(predicted)

    def _on_push(self, event: BridgeEvent) -> None:
        message = event.data.get("message")
        if message is None:
            return
        try:
            update = UnitState.from_payload(message.raw)
        except ValueError:
            return
        self._cell.push(update)

    def _apply_push(self, update: UnitState) -> None:
        self._set_state(self._state.merged(update))

    def _on_outcome(self, outcome: CommandOutcome, count: int) -> None:
        self.last_outcome = outcome
        self.logger.debug(
            "Command outcome",
            extra={
                "network_id": self.network_id,
                "unit_id": self.unit_id,
                "outcome": outcome.value,
                "commands": count,
            },
        )

    def _remember_brightness(self, state: UnitState) -> None:
        brightness = state.brightness
        if brightness is not None and brightness > 0:
            self._last_brightness = brightness

    def _set_state(self, state: UnitState) -> None:
        if state == self._state:
            return
        self._state = state
        self._remember_brightness(state)
        self._bus.publish(EVENT_UNIT_STATE, {"state": state})

    def close(self) -> None:
        self._unsubscribe_session()
        self._cell.cancel()
        self._bus.clear()

