"""Command-line client for the sync service HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import string
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterable, MutableMapping, Optional, Sequence

import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text


DEFAULT_SERVER_URL = "http://127.0.0.1:8056"
ENV_PREFIX = "LIFX_SYNC_"
ALL_MODES = 100
U16_MAX = 65535


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
        description=(
            "CLI for the LIFX LAN sync API. Uses LIFX_SYNC_* env vars for defaults "
            "and prints JSON (default), YAML or a table. Examples: "
            "`lifx-sync devices list`, `lifx-sync update --mode 100 --color ff0000`."
        )
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=(
            f"Base URL for the sync API (env: {ENV_PREFIX}SERVER_URL). "
            f"Defaults to {DEFAULT_SERVER_URL}."
        ),
    )
    parser.add_argument(
        "--api-key",
        default=_env("API_KEY"),
        help=(
            f"API key for authentication (env: {ENV_PREFIX}API_KEY). Sets both "
            "'X-API-Key' and 'Authorization: ApiKey <key>' headers when provided."
        ),
    )
    parser.add_argument(
        "--api-bearer-token",
        default=_env("API_BEARER_TOKEN"),
        help=(
            f"Bearer token for authentication (env: {ENV_PREFIX}API_BEARER_TOKEN). "
            "Overrides Authorization header when set."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml", "table"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT). Defaults to 'json'.",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)
    _add_status_commands(subparsers)
    _add_device_commands(subparsers)
    _add_update_commands(subparsers)
    return parser


def _add_status_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    health = subparsers.add_parser(
        "health",
        help="Check API health (GET /health returns {'status': 'ok'} when healthy)",
    )
    health.set_defaults(func=_cmd_health)

    status = subparsers.add_parser(
        "status",
        help="Show subsystem status (GET /status: active bulbs, updates in flight)",
    )
    status.set_defaults(func=_cmd_status)


def _add_device_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    devices = subparsers.add_parser(
        "devices",
        help="Bulb commands (list/show/set-mode/enable/disable)",
        description=(
            "Inspect registered bulbs and change their persisted mode and enabled "
            "flag. Bulbs are keyed by MAC address, e.g. d0:73:d5:00:a1:b2."
        ),
    )
    device_sub = devices.add_subparsers(dest="device_command", required=True)

    list_cmd = device_sub.add_parser("list", help="List registered bulbs (GET /devices)")
    list_cmd.set_defaults(func=_cmd_devices_list)

    show = device_sub.add_parser("show", help="Show one bulb (GET /devices/{address})")
    show.add_argument("address", help="Bulb MAC address")
    show.set_defaults(func=_cmd_devices_show)

    set_mode = device_sub.add_parser(
        "set-mode",
        help="Assign a bulb to a mode (PATCH /devices/{address})",
        description="Updates require a mode in 0..99; 100 is reserved for 'all modes'.",
    )
    set_mode.add_argument("address", help="Bulb MAC address")
    set_mode.add_argument("mode", type=int, help="Mode number (0-99)")
    set_mode.set_defaults(func=_cmd_devices_set_mode)

    enable = device_sub.add_parser("enable", help="Enable updates for a bulb")
    enable.add_argument("address", help="Bulb MAC address")
    enable.set_defaults(func=_cmd_devices_enable)

    disable = device_sub.add_parser("disable", help="Disable updates for a bulb")
    disable.add_argument("address", help="Bulb MAC address")
    disable.set_defaults(func=_cmd_devices_disable)


def _add_update_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    update = subparsers.add_parser(
        "update",
        help="Request a colour update (POST /update)",
        description="Sets every bulb in --mode (or all bulbs with --mode 100) to --color.",
    )
    update.add_argument("--mode", type=int, default=ALL_MODES, help="Target mode (default: all)")
    update.add_argument("--color", required=True, help="Hex colour like ff3366")
    update.add_argument("--transition-ms", type=int, default=0, help="Fade time in milliseconds")
    update.set_defaults(func=_cmd_update)

    brightness = subparsers.add_parser(
        "update-brightness",
        help="Request a colour update with explicit brightness (POST /update/brightness)",
    )
    brightness.add_argument("--mode", type=int, default=ALL_MODES, help="Target mode (default: all)")
    brightness.add_argument("--color", required=True, help="Hex colour like ff3366")
    brightness.add_argument(
        "--brightness", type=int, required=True, help=f"Brightness (0-{U16_MAX})"
    )
    brightness.add_argument("--transition-ms", type=int, default=0, help="Fade time in milliseconds")
    brightness.set_defaults(func=_cmd_update_brightness)

    restore = subparsers.add_parser(
        "restore",
        help="Restore every bulb to its state at discovery (POST /restore)",
    )
    restore.add_argument(
        "--transition-ms", type=int, help="Fade time in milliseconds (default: server setting)"
    )
    restore.set_defaults(func=_cmd_restore)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml", "table"}:
        raise CliError("Output format must be 'json', 'yaml' or 'table'")

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
    elif output == "table":
        _print_table(data)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _print_table(data: Any) -> None:
    console = Console()
    if isinstance(data, list):
        console.print(_devices_table(data))
        return
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Field", style="bold cyan", width=20)
    table.add_column("Value", style="white")
    for key, value in (data or {}).items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items())
        table.add_row(str(key), str(value))
    console.print(table)


def _devices_table(rows: Sequence[Any]) -> Table:
    table = Table(
        title=Text("Bulbs", justify="center"),
        show_header=True,
        header_style="bold cyan",
        box=box.ROUNDED,
    )
    table.add_column("Address", style="cyan", no_wrap=True)
    table.add_column("IP Address", style="green")
    table.add_column("Label", style="blue")
    table.add_column("Product", style="yellow")
    table.add_column("Mode", style="white", justify="right")
    table.add_column("Enabled", style="white", justify="center")
    for row in rows:
        enabled = row.get("enabled")
        table.add_row(
            str(row.get("address", "")),
            str(row.get("ip", "")),
            str(row.get("label", "")),
            str(row.get("product") or "unknown"),
            str(row.get("mode", "")),
            "[green]yes[/]" if enabled else "[red]no[/]",
        )
    return table


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:  # pragma: no cover - CLI feedback path
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/health"))
    _print_output(data, config.output)


def _cmd_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/status"))
    _print_output(data, config.output)


def _cmd_devices_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/devices"))
    _print_output(data, config.output)


def _cmd_devices_show(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get(f"/devices/{args.address}"))
    _print_output(data, config.output)


def _cmd_devices_set_mode(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    if not 0 <= args.mode < ALL_MODES:
        raise CliError(f"Mode must be between 0 and {ALL_MODES - 1}.")
    data = _handle_response(client.patch(f"/devices/{args.address}", json={"mode": args.mode}))
    _print_output(data, config.output)


def _cmd_devices_enable(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.patch(f"/devices/{args.address}", json={"enabled": True}))
    _print_output(data, config.output)


def _cmd_devices_disable(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.patch(f"/devices/{args.address}", json={"enabled": False}))
    _print_output(data, config.output)


def _cmd_update(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload = _update_payload(args)
    data = _handle_response(client.post("/update", json=payload))
    _print_output(data, config.output)


def _cmd_update_brightness(
    config: ClientConfig, client: httpx.Client, args: argparse.Namespace
) -> None:
    if not 0 <= args.brightness <= U16_MAX:
        raise CliError(f"Brightness must be between 0 and {U16_MAX}.")
    payload = _update_payload(args)
    payload["brightness"] = args.brightness
    data = _handle_response(client.post("/update/brightness", json=payload))
    _print_output(data, config.output)


def _cmd_restore(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload: MutableMapping[str, Any] = {}
    if args.transition_ms is not None:
        _validate_transition(args.transition_ms)
        payload["transition_ms"] = args.transition_ms
    data = _handle_response(client.post("/restore", json=payload))
    _print_output(data, config.output)


def _update_payload(args: argparse.Namespace) -> MutableMapping[str, Any]:
    if not 0 <= args.mode <= ALL_MODES:
        raise CliError(f"Mode must be between 0 and {ALL_MODES}.")
    _validate_transition(args.transition_ms)
    return {
        "mode": args.mode,
        "color": _normalize_color_hex(args.color),
        "transition_ms": args.transition_ms,
    }


def _validate_transition(value: int) -> None:
    if value < 0:
        raise CliError("Transition time cannot be negative.")


def _normalize_color_hex(value: str) -> str:
    normalized = value.strip()
    if normalized.startswith("#"):
        normalized = normalized[1:]
    if len(normalized) == 3:
        normalized = "".join(ch * 2 for ch in normalized)
    if len(normalized) != 6 or any(ch not in string.hexdigits for ch in normalized):
        raise CliError("Color must be a hex value like ff3366 or #ff3366.")
    return normalized.lower()


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    try:
        config = _load_config(args)
        if not args.command:
            parser.print_help()
            sys.exit(1)

        client = _build_client(config)
        with client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
