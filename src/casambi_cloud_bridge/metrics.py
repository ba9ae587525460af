"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "casambi_api_request_duration_seconds",
    "Time spent processing local API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "casambi_api_requests_total",
    "HTTP requests processed by the local API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
CLOUD_REQUESTS = Counter(
    "casambi_cloud_requests_total",
    "REST requests sent to the Casambi cloud",
    ["endpoint", "result"],
    registry=_REGISTRY,
)
CLOUD_REQUEST_DURATION = Histogram(
    "casambi_cloud_request_duration_seconds",
    "Time spent waiting for Casambi cloud REST responses",
    ["endpoint"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
LOGIN_ATTEMPTS = Counter(
    "casambi_login_attempts_total",
    "Login attempts by outcome",
    ["mode", "result"],
    registry=_REGISTRY,
)
CONNECTION_STATE = Gauge(
    "casambi_connection_state",
    "WebSocket state (0=absent,1=connecting,2=open,3=closing,4=lost)",
    registry=_REGISTRY,
)
RECONNECTS = Counter(
    "casambi_reconnects_total",
    "Reconnect attempts after the socket was lost",
    registry=_REGISTRY,
)
KEEPALIVE_TIMEOUTS = Counter(
    "casambi_keepalive_timeouts_total",
    "Sockets force-closed because no pong arrived in time",
    registry=_REGISTRY,
)
FRAMES = Counter(
    "casambi_frames_total",
    "WebSocket frames by direction and kind",
    ["direction", "kind"],
    registry=_REGISTRY,
)
FRAME_DECODE_ERRORS = Counter(
    "casambi_frame_decode_errors_total",
    "Inbound frames dropped because they could not be decoded",
    registry=_REGISTRY,
)
WIRE_OPENS = Counter(
    "casambi_wire_opens_total",
    "Wire open handshakes by outcome",
    ["result"],
    registry=_REGISTRY,
)
OPEN_WIRES = Gauge(
    "casambi_open_wires",
    "Wires currently registered on the connection",
    registry=_REGISTRY,
)
COMMANDS = Counter(
    "casambi_commands_total",
    "controlUnit commands by transmit outcome",
    ["result"],
    registry=_REGISTRY,
)
ECHO_OUTCOMES = Counter(
    "casambi_echo_outcomes_total",
    "How pushed state was reconciled with local commands",
    ["outcome"],
    registry=_REGISTRY,
)
SUBSYSTEM_FAILURES = Counter(
    "casambi_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "casambi_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)
UNITS = Gauge(
    "casambi_units",
    "Units known per network",
    ["network_id"],
    registry=_REGISTRY,
)

_CONNECTION_STATE_CODES = {"absent": 0, "connecting": 1, "open": 2, "closing": 3, "lost": 4}


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record local API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def observe_cloud_request(endpoint: str, result: str, duration_seconds: float) -> None:
    CLOUD_REQUESTS.labels(endpoint=endpoint, result=result).inc()
    CLOUD_REQUEST_DURATION.labels(endpoint=endpoint).observe(duration_seconds)


def record_login(mode: str, result: str) -> None:
    LOGIN_ATTEMPTS.labels(mode=mode, result=result).inc()


def set_connection_state(state: str) -> None:
    CONNECTION_STATE.set(_CONNECTION_STATE_CODES.get(state, 0))


def record_reconnect() -> None:
    RECONNECTS.inc()


def record_keepalive_timeout() -> None:
    KEEPALIVE_TIMEOUTS.inc()


def record_frame(direction: str, kind: str) -> None:
    """Record a frame sent or received, keyed by method or status."""

    FRAMES.labels(direction=direction, kind=kind).inc()


def record_frame_decode_error() -> None:
    FRAME_DECODE_ERRORS.inc()


def record_wire_open(result: str) -> None:
    WIRE_OPENS.labels(result=result).inc()


def set_open_wires(count: int) -> None:
    OPEN_WIRES.set(count)


def record_command(result: str) -> None:
    COMMANDS.labels(result=result).inc()


def record_echo_outcome(outcome: str) -> None:
    """Record an echo decision (applied, suppressed, confirmed, unconfirmed, debounced)."""

    ECHO_OUTCOMES.labels(outcome=outcome).inc()


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)


def set_unit_count(network_id: str, count: int) -> None:
    UNITS.labels(network_id=network_id).set(count)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
