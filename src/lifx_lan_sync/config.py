"""Configuration loading for the LIFX LAN sync service."""

from __future__ import annotations

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional


CONFIG_ENV_PREFIX = "LIFX_SYNC_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _default_db_path() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "lifx-lan-sync" / "devices.sqlite3"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8056
    api_key: Optional[str] = None
    api_bearer_token: Optional[str] = None
    api_docs: bool = True
    db_path: Path = _default_db_path()
    lifx_port: int = 56700
    discovery_broadcast_address: str = "255.255.255.255"
    discovery_interval: float = 10.0
    discovery_stale_after: float = 45.0
    device_request_timeout: float = 1.0
    device_request_retries: int = 3
    rate_limit_per_second: float = 20.0
    default_kelvin: int = 2700
    cool_kelvin: int = 6000
    restore_transition_ms: int = 1000
    restore_on_shutdown: bool = True
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    updates_log_level: Optional[str] = None
    transport_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    migrate_only: bool = False
    dry_run: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    @property
    def rate_floor(self) -> float:
        """Minimum seconds spent on each per-device dispatch."""

        return 1.0 / self.rate_limit_per_second

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "api_enabled": self.api_enabled,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_docs": self.api_docs,
            "api_key": "***REDACTED***" if self.api_key else None,
            "api_bearer_token": "***REDACTED***" if self.api_bearer_token else None,
            "db_path": str(self.db_path),
            "lifx_port": self.lifx_port,
            "discovery_broadcast_address": self.discovery_broadcast_address,
            "discovery_interval": self.discovery_interval,
            "discovery_stale_after": self.discovery_stale_after,
            "device_request_timeout": self.device_request_timeout,
            "device_request_retries": self.device_request_retries,
            "rate_limit_per_second": self.rate_limit_per_second,
            "default_kelvin": self.default_kelvin,
            "cool_kelvin": self.cool_kelvin,
            "restore_transition_ms": self.restore_transition_ms,
            "restore_on_shutdown": self.restore_on_shutdown,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "discovery_log_level": self.discovery_log_level,
            "updates_log_level": self.updates_log_level,
            "transport_log_level": self.transport_log_level,
            "api_log_level": self.api_log_level,
            "migrate_only": self.migrate_only,
            "dry_run": self.dry_run,
        }

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

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("lifx_port", config.lifx_port, 1, 65535)
    _validate_range("discovery_interval", config.discovery_interval, 0.5, 3600.0)
    _validate_range("discovery_stale_after", config.discovery_stale_after, 1.0, 86400.0)
    if config.discovery_stale_after <= config.discovery_interval:
        raise ValueError(
            "discovery_stale_after must be greater than discovery_interval; "
            f"got {config.discovery_stale_after} <= {config.discovery_interval}."
        )
    _validate_range("device_request_timeout", config.device_request_timeout, 0.05, 60.0)
    _validate_range("device_request_retries", config.device_request_retries, 1, 20)
    _validate_range("rate_limit_per_second", config.rate_limit_per_second, 0.1, 1000.0)
    _validate_range("default_kelvin", config.default_kelvin, 1500, 9000)
    _validate_range("cool_kelvin", config.cool_kelvin, 1500, 9000)
    _validate_range("restore_transition_ms", config.restore_transition_ms, 0, 3600000)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("discovery_log_level", config.discovery_log_level),
        ("updates_log_level", config.updates_log_level),
        ("transport_log_level", config.transport_log_level),
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
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(_LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="lifx-sync-server",
        description="Run the LIFX LAN sync service.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-host", type=str, help="Interface the HTTP API binds to.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP API.")
    parser.add_argument(
        "--api-key",
        type=str,
        help="API key required via X-API-Key or Authorization: ApiKey <key>.",
    )
    parser.add_argument(
        "--api-bearer-token",
        type=str,
        help="Bearer token required via Authorization: Bearer <token>.",
    )
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Do not start the HTTP API.",
    )
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument("--db-path", type=Path, help="Path to the SQLite settings database.")
    parser.add_argument("--lifx-port", type=int, help="UDP port bulbs listen on.")
    parser.add_argument(
        "--discovery-broadcast-address",
        type=str,
        help="Broadcast address used for discovery probes.",
    )
    parser.add_argument(
        "--discovery-interval",
        type=float,
        help="Seconds between discovery broadcasts.",
    )
    parser.add_argument(
        "--discovery-stale-after",
        type=float,
        help="Seconds without a reply before a bulb is reported lost.",
    )
    parser.add_argument(
        "--device-request-timeout",
        type=float,
        help="Seconds to wait for a bulb to answer a request.",
    )
    parser.add_argument(
        "--device-request-retries",
        type=int,
        help="Attempts made for state and version queries.",
    )
    parser.add_argument(
        "--rate-limit-per-second",
        type=float,
        help="Maximum per-device dispatches per second during an update cycle.",
    )
    parser.add_argument("--default-kelvin", type=int, help="Colour temperature for colour updates.")
    parser.add_argument("--cool-kelvin", type=int, help="Colour temperature used by the cool-white mode.")
    parser.add_argument(
        "--restore-transition-ms",
        type=int,
        help="Transition used when restoring bulbs to their captured state.",
    )
    parser.add_argument(
        "--no-restore-on-shutdown",
        action="store_true",
        help="Leave bulbs as they are when the service stops.",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument("--log-level", choices=_LOG_LEVELS, help="Log verbosity level.")
    parser.add_argument("--discovery-log-level", choices=_LOG_LEVELS, help="Log verbosity for discovery.")
    parser.add_argument("--updates-log-level", choices=_LOG_LEVELS, help="Log verbosity for update cycles.")
    parser.add_argument("--transport-log-level", choices=_LOG_LEVELS, help="Log verbosity for the LAN transport.")
    parser.add_argument("--api-log-level", choices=_LOG_LEVELS, help="Log verbosity for the HTTP API.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Discover bulbs but log colour changes instead of sending them.",
    )
    parser.add_argument(
        "--migrate-only",
        action="store_true",
        help="Run database migrations and exit without starting services.",
    )
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
    skip = {"config", "no_api", "no_api_docs", "no_restore_on_shutdown", "dry_run", "migrate_only"}
    mapping = {k: v for k, v in vars(args).items() if k not in skip and v is not None}
    if args.no_api:
        mapping["api_enabled"] = False
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.no_restore_on_shutdown:
        mapping["restore_on_shutdown"] = False
    if args.dry_run:
        mapping["dry_run"] = True
    if args.migrate_only:
        mapping["migrate_only"] = True
    return mapping


_INT_FIELDS = {
    "api_port",
    "lifx_port",
    "device_request_retries",
    "default_kelvin",
    "cool_kelvin",
    "restore_transition_ms",
    "config_version",
}
_FLOAT_FIELDS = {
    "discovery_interval",
    "discovery_stale_after",
    "device_request_timeout",
    "rate_limit_per_second",
}
_BOOL_FIELDS = {"api_enabled", "api_docs", "restore_on_shutdown", "migrate_only", "dry_run"}
_LEVEL_FIELDS = {
    "log_level",
    "discovery_log_level",
    "updates_log_level",
    "transport_log_level",
    "api_log_level",
}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        if key == "db_path":
            data[key] = _coerce_path(value)
        elif key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key == "log_format":
            data[key] = str(value).lower()
        else:
            data[key] = value
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
