"""Configuration loading for the Casambi cloud bridge."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "CASAMBI_BRIDGE_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

AUTH_MODES = ("network", "user")
ECHO_POLICIES = ("debounce", "suppress")

_INT_FIELDS = {
    "api_port",
    "subsystem_failure_threshold",
    "default_min_kelvin",
    "default_max_kelvin",
    "config_version",
}
_FLOAT_FIELDS = {
    "http_timeout",
    "ping_interval",
    "pong_grace",
    "reconnect_delay",
    "wire_open_timeout",
    "login_retry_cooldown",
    "command_timeout",
    "debounce_delay",
    "suppression_window",
    "subsystem_failure_cooldown",
}
_BOOL_FIELDS = {"api_enabled", "api_docs"}
_LEVEL_FIELDS = {"connection_log_level", "session_log_level", "api_log_level"}


@dataclass(frozen=True)
class Credentials:
    """Login identity for the cloud."""

    mode: str
    email: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(mode={self.mode!r}, email={self.email!r}, password='***')"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_key: Optional[str] = None
    auth_mode: str = "network"
    email: Optional[str] = None
    password: Optional[str] = None
    api_base_url: str = "https://door.casambi.com/v1"
    ws_url: str = "wss://door.casambi.com/v1/bridge/"
    http_timeout: float = 10.0
    ping_interval: float = 30.0
    pong_grace: float = 2.0
    reconnect_delay: float = 5.0
    wire_open_timeout: float = 10.0
    login_retry_cooldown: float = 30.0
    command_timeout: float = 5.0
    echo_policy: str = "debounce"
    debounce_delay: float = 0.5
    suppression_window: float = 3.0
    default_min_kelvin: int = 2700
    default_max_kelvin: int = 4000
    api_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    api_token: Optional[str] = None
    api_bearer_token: Optional[str] = None
    api_docs: bool = True
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    log_format: str = "plain"
    log_level: str = "INFO"
    connection_log_level: Optional[str] = None
    session_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    @property
    def pong_timeout(self) -> float:
        """Watchdog deadline after the last liveness acknowledgment."""

        return self.ping_interval + self.pong_grace

    def credentials(self) -> Credentials:
        """Return the login identity, failing if it is incomplete."""

        if not self.email or not self.password:
            raise ValueError("email and password are required to log in")
        return Credentials(mode=self.auth_mode, email=self.email, password=self.password)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        masked_keys = {
            "api_key": "***REDACTED***" if self.api_key else None,
            "password": "***REDACTED***" if self.password else None,
            "api_token": "***REDACTED***" if self.api_token else None,
            "api_bearer_token": "***REDACTED***" if self.api_bearer_token else None,
        }
        base: Dict[str, Any] = {
            "config_version": self.config_version,
            "auth_mode": self.auth_mode,
            "email": self.email,
            "api_base_url": self.api_base_url,
            "ws_url": self.ws_url,
            "http_timeout": self.http_timeout,
            "ping_interval": self.ping_interval,
            "pong_grace": self.pong_grace,
            "reconnect_delay": self.reconnect_delay,
            "wire_open_timeout": self.wire_open_timeout,
            "login_retry_cooldown": self.login_retry_cooldown,
            "command_timeout": self.command_timeout,
            "echo_policy": self.echo_policy,
            "debounce_delay": self.debounce_delay,
            "suppression_window": self.suppression_window,
            "default_min_kelvin": self.default_min_kelvin,
            "default_max_kelvin": self.default_max_kelvin,
            "api_enabled": self.api_enabled,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_docs": self.api_docs,
            "subsystem_failure_threshold": self.subsystem_failure_threshold,
            "subsystem_failure_cooldown": self.subsystem_failure_cooldown,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "connection_log_level": self.connection_log_level,
            "session_log_level": self.session_log_level,
            "api_log_level": self.api_log_level,
        }
        base.update(masked_keys)
        return base

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        merged: Dict[str, Any] = {}
        merged.update(file_config)
        merged.update(env_config)
        merged.update(cli_config)
        return _apply_mapping(cls(), merged)


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    if config.auth_mode not in AUTH_MODES:
        raise ValueError(f"auth_mode must be one of {list(AUTH_MODES)}; got {config.auth_mode}.")
    if config.echo_policy not in ECHO_POLICIES:
        raise ValueError(
            f"echo_policy must be one of {list(ECHO_POLICIES)}; got {config.echo_policy}."
        )
    _validate_range("http_timeout", config.http_timeout, 0.1, 300.0)
    _validate_range("ping_interval", config.ping_interval, 0.1, 3600.0)
    _validate_range("pong_grace", config.pong_grace, 0.0, 600.0)
    _validate_range("reconnect_delay", config.reconnect_delay, 0.0, 3600.0)
    _validate_range("wire_open_timeout", config.wire_open_timeout, 0.1, 600.0)
    _validate_range("login_retry_cooldown", config.login_retry_cooldown, 0.0, 86400.0)
    _validate_range("command_timeout", config.command_timeout, 0.1, 600.0)
    _validate_range("debounce_delay", config.debounce_delay, 0.0, 60.0)
    _validate_range("suppression_window", config.suppression_window, 0.0, 600.0)
    _validate_range("default_min_kelvin", config.default_min_kelvin, 1000, 20000)
    _validate_range("default_max_kelvin", config.default_max_kelvin, 1000, 20000)
    if config.default_min_kelvin > config.default_max_kelvin:
        raise ValueError("default_min_kelvin must not exceed default_max_kelvin.")
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("connection_log_level", config.connection_log_level),
        ("session_log_level", config.session_log_level),
        ("api_log_level", config.api_log_level),
    ):
        _validate_log_level_value(value, field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the bridge."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="casambi-bridge",
        description="Run the Casambi cloud bridge.",
    )
    levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-key", type=str, help="Casambi developer API key (X-Casambi-Key).")
    parser.add_argument(
        "--auth-mode",
        choices=list(AUTH_MODES),
        help="Log in to a single network or as a site user owning several networks.",
    )
    parser.add_argument("--email", type=str, help="Network or user email address.")
    parser.add_argument("--password", type=str, help="Network or user password.")
    parser.add_argument("--api-base-url", type=str, help="Base URL of the Casambi REST API.")
    parser.add_argument("--ws-url", type=str, help="URL of the Casambi WebSocket bridge.")
    parser.add_argument("--http-timeout", type=float, help="Seconds to wait for REST responses.")
    parser.add_argument("--ping-interval", type=float, help="Seconds between liveness pings.")
    parser.add_argument(
        "--pong-grace",
        type=float,
        help="Extra seconds past the ping interval before the socket is declared dead.",
    )
    parser.add_argument(
        "--reconnect-delay", type=float, help="Seconds to wait before reconnecting a lost socket."
    )
    parser.add_argument(
        "--wire-open-timeout", type=float, help="Seconds to wait for a wire open reply."
    )
    parser.add_argument(
        "--login-retry-cooldown",
        type=float,
        help="Seconds to wait before retrying a login that failed transiently.",
    )
    parser.add_argument(
        "--command-timeout", type=float, help="Seconds allowed for a control command to be sent."
    )
    parser.add_argument(
        "--echo-policy",
        choices=list(ECHO_POLICIES),
        help="How pushed state is reconciled with locally issued commands.",
    )
    parser.add_argument(
        "--debounce-delay", type=float, help="Quiet period before a pushed state is applied."
    )
    parser.add_argument(
        "--suppression-window",
        type=float,
        help="Seconds after a command during which its echo is expected.",
    )
    parser.add_argument(
        "--default-min-kelvin", type=int, help="Lower color temperature bound when unreported."
    )
    parser.add_argument(
        "--default-max-kelvin", type=int, help="Upper color temperature bound when unreported."
    )
    parser.add_argument("--no-api", action="store_true", help="Do not start the local HTTP API.")
    parser.add_argument("--api-host", type=str, help="Interface for the local HTTP API.")
    parser.add_argument("--api-port", type=int, help="TCP port for the local HTTP API.")
    parser.add_argument(
        "--api-token",
        type=str,
        help="Key required via X-API-Key or Authorization: ApiKey <key> on the local API.",
    )
    parser.add_argument(
        "--api-bearer-token",
        type=str,
        help="Bearer token required via Authorization: Bearer <token> on the local API.",
    )
    parser.add_argument("--no-api-docs", action="store_true", help="Disable interactive API docs.")
    parser.add_argument(
        "--subsystem-failure-threshold",
        type=int,
        help="Consecutive failures before a subsystem is reported as suppressed.",
    )
    parser.add_argument(
        "--subsystem-failure-cooldown",
        type=float,
        help="Seconds a suppressed subsystem stays suppressed.",
    )
    parser.add_argument("--log-format", choices=["plain", "json"], help="Structured logging format.")
    parser.add_argument("--log-level", choices=levels, help="Log verbosity level.")
    parser.add_argument(
        "--connection-log-level", choices=levels, help="Log verbosity for the WebSocket connection."
    )
    parser.add_argument(
        "--session-log-level", choices=levels, help="Log verbosity for sessions and reconcilers."
    )
    parser.add_argument("--api-log-level", choices=levels, help="Log verbosity for the local API.")
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    mapping = {
        k: v
        for k, v in vars(args).items()
        if k not in ("config", "no_api", "no_api_docs") and v is not None
    }
    if args.no_api:
        mapping["api_enabled"] = False
    if args.no_api_docs:
        mapping["api_docs"] = False
    return mapping


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        if key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key == "log_level" or key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key in {"log_format", "auth_mode", "echo_policy"}:
            data[key] = str(value).lower()
        else:
            data[key] = str(value)
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
