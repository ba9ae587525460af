"""Command-line client for the bridge's local HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterable, MutableMapping, Optional

import httpx
import yaml

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
ENV_PREFIX = "CASAMBI_BRIDGE_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    api_key: Optional[str]
    api_bearer_token: Optional[str]
    output: str
    timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="casambi-bridge-cli",
        description=(
            "CLI for the Casambi cloud bridge API. Uses CASAMBI_BRIDGE_* env vars "
            "for defaults and prints JSON (default) or YAML. Examples: "
            "`casambi-bridge-cli units list`, `casambi-bridge-cli units set "
            "<network_id> <unit_id> brightness 40`."
        ),
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=f"Base URL for the bridge API (env: {ENV_PREFIX}SERVER_URL).",
    )
    parser.add_argument(
        "--api-key",
        default=_env("API_TOKEN"),
        help=(
            f"API key for the local API (env: {ENV_PREFIX}API_TOKEN). Sets both "
            "'X-API-Key' and 'Authorization: ApiKey <key>' headers when provided."
        ),
    )
    parser.add_argument(
        "--api-bearer-token",
        default=_env("API_BEARER_TOKEN"),
        help=(
            f"Bearer token for the local API (env: {ENV_PREFIX}API_BEARER_TOKEN). "
            "Overrides the Authorization header when set."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format (env: {ENV_PREFIX}OUTPUT). Defaults to 'json'.",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)
    _add_status_commands(subparsers)
    _add_unit_commands(subparsers)
    return parser


def _add_status_commands(subparsers: "argparse._SubParsersAction[argparse.ArgumentParser]") -> None:
    health = subparsers.add_parser(
        "health",
        help="Check bridge health (GET /health)",
        description="Prints the overall health status and whether units are loaded.",
    )
    health.set_defaults(func=_cmd_health)

    status = subparsers.add_parser(
        "status",
        help="Show connection, wire and subsystem status (GET /status)",
        description="Returns connection state, open wires, networks and health details.",
    )
    status.set_defaults(func=_cmd_status)


def _add_unit_commands(subparsers: "argparse._SubParsersAction[argparse.ArgumentParser]") -> None:
    units = subparsers.add_parser(
        "units",
        help="Unit commands (list/get/set)",
        description="Inspect and drive units across every logged-in network.",
    )
    unit_sub = units.add_subparsers(dest="unit_command", required=True)

    list_cmd = unit_sub.add_parser("list", help="List units (GET /units)")
    list_cmd.set_defaults(func=_cmd_units_list)

    get = unit_sub.add_parser("get", help="Show one unit (GET /units/{network_id}/{unit_id})")
    get.add_argument("network_id", help="Network identifier")
    get.add_argument("unit_id", type=int, help="Unit identifier within the network")
    get.set_defaults(func=_cmd_units_get)

    set_cmd = unit_sub.add_parser(
        "set",
        help="Change a control (PUT /units/{network_id}/{unit_id}/controls)",
        description=(
            "Controls: on (on/off), brightness (0-100), color_temperature (mired), "
            "vertical (0-100). Color temperature is clamped to the fixture's range."
        ),
    )
    set_cmd.add_argument("network_id", help="Network identifier")
    set_cmd.add_argument("unit_id", type=int, help="Unit identifier within the network")
    set_cmd.add_argument(
        "control",
        choices=["on", "brightness", "color_temperature", "vertical"],
        help="Control name",
    )
    set_cmd.add_argument("value", help="New value")
    set_cmd.set_defaults(func=_cmd_units_set)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")

    return ClientConfig(
        server_url=args.server_url,
        api_key=args.api_key,
        api_bearer_token=args.api_bearer_token,
        output=output,
    )


def _build_client(config: ClientConfig) -> httpx.Client:
    headers: MutableMapping[str, str] = {}
    if config.api_key:
        headers["X-API-Key"] = config.api_key
        headers.setdefault("Authorization", f"ApiKey {config.api_key}")
    if config.api_bearer_token:
        headers["Authorization"] = f"Bearer {config.api_bearer_token}"

    return httpx.Client(base_url=config.server_url, headers=headers, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _parse_control_value(control: str, raw: str) -> Any:
    if control == "on":
        lowered = raw.strip().lower()
        if lowered in {"on", "true", "1", "yes"}:
            return True
        if lowered in {"off", "false", "0", "no"}:
            return False
        raise CliError("on expects on/off, true/false, yes/no or 1/0.")
    try:
        value = float(raw)
    except ValueError as exc:
        raise CliError(f"{control} expects a number, got {raw!r}.") from exc
    if control in {"brightness", "vertical"} and not 0 <= value <= 100:
        raise CliError(f"{control.capitalize()} must be between 0 and 100.")
    if control == "color_temperature" and value <= 0:
        raise CliError("Color temperature must be a positive mired value.")
    return value


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    response = client.get("/health")
    if response.status_code == 503:
        _print_output(response.json(), config.output)
        raise CliError("Bridge reports a failed subsystem")
    _print_output(_handle_response(response), config.output)


def _cmd_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/status"))
    _print_output(data, config.output)


def _cmd_units_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/units"))
    _print_output(data, config.output)


def _cmd_units_get(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get(f"/units/{args.network_id}/{args.unit_id}"))
    _print_output(data, config.output)


def _cmd_units_set(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    value = _parse_control_value(args.control, args.value)
    data = _handle_response(
        client.put(
            f"/units/{args.network_id}/{args.unit_id}/controls",
            json={"name": args.control, "value": value},
        )
    )
    _print_output(data, config.output)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = _load_config(args)
        client = _build_client(config)
        with client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
