"""Shared retry, backoff, and health tracking utilities."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .events import EVENT_HEALTH_STATUS_CHANGED, EventBus
from .metrics import record_subsystem_failure, record_subsystem_status


@dataclass
class BackoffPolicy:
    """Backoff parameters; a factor of 1.0 gives a fixed delay."""

    base: float
    factor: float
    maximum: float

    @classmethod
    def fixed(cls, delay: float) -> "BackoffPolicy":
        return cls(base=delay, factor=1.0, maximum=delay)

    def delay(self, failures: int) -> float:
        """Calculate the delay for the given failure count."""

        if failures <= 0:
            return 0.0
        backoff = max(0.0, self.base)
        for _ in range(failures - 1):
            backoff = min(
                self.maximum,
                max(backoff * self.factor, self.base),
            )
        return backoff


@dataclass
class SubsystemState:
    """Mutable health status for a subsystem."""

    name: str
    status: str = "ok"
    failures: int = 0
    suppressions: int = 0
    suppressed_until: Optional[float] = None
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None

    def as_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        remaining = None
        if self.suppressed_until is not None:
            remaining = max(0.0, self.suppressed_until - (now or time.monotonic()))
        return {
            "status": self.status,
            "failures": self.failures,
            "suppressions": self.suppressions,
            "suppressed_for": remaining,
            "last_error": self.last_error,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
        }


class HealthMonitor:
    """Track subsystem health with a simple circuit breaker.

    Status moves ok -> degraded on the first failure and to suppressed once
    `failure_threshold` consecutive failures accumulate. `mark_fatal` pins a
    subsystem to failed (used when credentials are rejected).
    """

    def __init__(
        self,
        subsystem_names: Tuple[str, ...],
        failure_threshold: int,
        cooldown_seconds: float,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._states: Dict[str, SubsystemState] = {
            name: SubsystemState(name=name) for name in subsystem_names
        }
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._event_bus = event_bus
        for name in subsystem_names:
            record_subsystem_status(name, "ok")

    def _state(self, subsystem: str) -> SubsystemState:
        state = self._states.get(subsystem)
        if state is None:
            state = self._states[subsystem] = SubsystemState(name=subsystem)
        return state

    def _publish(self, subsystem: str, status: str, previous: str, failures: int) -> None:
        if self._event_bus and status != previous:
            self._event_bus.publish(
                EVENT_HEALTH_STATUS_CHANGED,
                {
                    "subsystem": subsystem,
                    "status": status,
                    "previous_status": previous,
                    "failure_count": failures,
                },
            )

    def record_success(self, subsystem: str) -> None:
        """Mark a successful attempt for a subsystem."""

        state = self._state(subsystem)
        old_status = state.status
        state.status = "ok"
        state.failures = 0
        state.last_error = None
        state.suppressed_until = None
        state.last_success = time.monotonic()
        record_subsystem_status(subsystem, "ok")
        self._publish(subsystem, "ok", old_status, 0)

    def record_failure(self, subsystem: str, error: Optional[BaseException] = None) -> None:
        """Record a failure and potentially open the circuit."""

        state = self._state(subsystem)
        old_status = state.status
        state.failures += 1
        state.last_failure = time.monotonic()
        state.last_error = str(error) if error else state.last_error
        if state.failures >= self._failure_threshold:
            if state.status != "suppressed":
                state.suppressions += 1
                record_subsystem_failure(subsystem)
            state.status = "suppressed"
            state.suppressed_until = state.last_failure + self._cooldown
        elif state.status != "failed":
            state.status = "degraded"
        record_subsystem_status(subsystem, state.status)
        self._publish(subsystem, state.status, old_status, state.failures)

    def mark_fatal(self, subsystem: str, error: BaseException) -> None:
        """Pin a subsystem to failed until the next success."""

        state = self._state(subsystem)
        old_status = state.status
        state.status = "failed"
        state.failures += 1
        state.last_error = str(error)
        state.last_failure = time.monotonic()
        record_subsystem_status(subsystem, "failed")
        record_subsystem_failure(subsystem)
        self._publish(subsystem, "failed", old_status, state.failures)

    def status(self, subsystem: str) -> str:
        return self._state(subsystem).status

    def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        """Return a copy of the subsystem health state."""

        now = time.monotonic()
        return {name: state.as_dict(now) for name, state in self._states.items()}

    def overall(self) -> str:
        statuses = {state.status for state in self._states.values()}
        if "failed" in statuses:
            return "failed"
        if statuses <= {"ok"}:
            return "ok"
        return "degraded"
