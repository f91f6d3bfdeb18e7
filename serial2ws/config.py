"""Configuration and command-line argument parsing for the serial-to-WebSocket bridge."""

import argparse
import json
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

from serial2ws.errors import ConfigError


DEFAULT_PORT = "COM1"
DEFAULT_BAUD = 9600
DEFAULT_LISTEN = "0.0.0.0"
DEFAULT_WS_PORT = 58081
DEFAULT_SETTLE_DELAY = 1.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class BridgeConfig:
    """Validated settings for one bridge instance."""

    device_path: str = DEFAULT_PORT
    baud_rate: int = DEFAULT_BAUD
    listen_port: int = DEFAULT_WS_PORT
    serial_enabled: bool = True
    listen_host: str = DEFAULT_LISTEN

    def __post_init__(self):
        _validate(self)


def parse_int(name: str, value: Any) -> int:
    """Parse an int that may arrive as a string; raise ConfigError otherwise."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 10)
        except ValueError:
            pass
    raise ConfigError(f"{name} must be an integer, got {value!r}")


def parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
        return value.strip().lower() in _TRUE
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def parse_baud_rate(value: Any) -> int:
    baud = parse_int("baud_rate", value)
    if baud <= 0:
        raise ConfigError("Baud rate must be positive")
    return baud


def parse_listen_port(value: Any) -> int:
    port = parse_int("listen_port", value)
    if not (1 <= port <= 65535):
        raise ConfigError("Listen port must be between 1 and 65535")
    return port


def parse_config(settings: Mapping[str, Any], base: Optional[BridgeConfig] = None) -> BridgeConfig:
    """Build a BridgeConfig from loosely typed settings.

    Keys missing from ``settings`` keep their value from ``base`` (or the
    defaults). Unknown keys are rejected so typos do not pass silently.
    """
    base = base or BridgeConfig()
    known = {f.name for f in fields(BridgeConfig)}
    unknown = set(settings) - known
    if unknown:
        raise ConfigError(f"Unknown setting(s): {', '.join(sorted(unknown))}")

    changes = {}
    if "device_path" in settings:
        if not isinstance(settings["device_path"], str):
            raise ConfigError("device_path must be a string")
        changes["device_path"] = settings["device_path"]
    if "baud_rate" in settings:
        changes["baud_rate"] = parse_baud_rate(settings["baud_rate"])
    if "listen_port" in settings:
        changes["listen_port"] = parse_listen_port(settings["listen_port"])
    if "serial_enabled" in settings:
        changes["serial_enabled"] = parse_bool("serial_enabled", settings["serial_enabled"])
    if "listen_host" in settings:
        if not isinstance(settings["listen_host"], str):
            raise ConfigError("listen_host must be a string")
        changes["listen_host"] = settings["listen_host"]
    return replace(base, **changes)


def load_settings(path) -> dict:
    """Read a JSON settings object from ``path``."""
    with open(path, encoding="utf-8") as f:
        settings = json.load(f)
    if not isinstance(settings, dict):
        raise ConfigError(f"Settings file {path} must contain a JSON object")
    return settings


def parse_args(argv=None):
    """Parse command-line arguments and return a validated namespace."""
    parser = argparse.ArgumentParser(
        description="Bridge a local serial port (e.g. COM1) to WebSocket clients."
    )
    parser.add_argument(
        "--port",
        default=DEFAULT_PORT,
        help=f"Serial port name (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--baud",
        type=int,
        default=DEFAULT_BAUD,
        help=f"Baud rate (default: {DEFAULT_BAUD})",
    )
    parser.add_argument(
        "--listen",
        default=DEFAULT_LISTEN,
        help=f"WebSocket listen address (default: {DEFAULT_LISTEN})",
    )
    parser.add_argument(
        "--ws-port",
        type=int,
        default=DEFAULT_WS_PORT,
        help=f"WebSocket listen port (default: {DEFAULT_WS_PORT})",
    )
    parser.add_argument(
        "--no-serial",
        action="store_true",
        help="Run the WebSocket side only, without opening a serial port",
    )
    parser.add_argument(
        "--settle-delay",
        type=float,
        default=DEFAULT_SETTLE_DELAY,
        help=f"Seconds to wait between teardown and rebuild on a settings change "
        f"(default: {DEFAULT_SETTLE_DELAY})",
    )
    parser.add_argument(
        "--settings",
        metavar="FILE",
        help="JSON settings file applied at startup and re-applied on SIGHUP",
    )
    parser.add_argument(
        "--list-ports",
        action="store_true",
        help="List available serial ports and exit",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (connection events, errors)",
    )
    args = parser.parse_args(argv)
    if args.settle_delay < 0:
        raise ValueError("Settle delay (--settle-delay) must not be negative")
    return args


def config_from_args(args) -> BridgeConfig:
    """Build the startup configuration from parsed arguments."""
    return BridgeConfig(
        device_path=args.port,
        baud_rate=args.baud,
        listen_port=args.ws_port,
        serial_enabled=not args.no_serial,
        listen_host=args.listen,
    )


def _validate(config: BridgeConfig):
    """Validate a configuration; raise ConfigError on invalid values."""
    if config.serial_enabled and not (config.device_path and config.device_path.strip()):
        raise ConfigError("Serial port (--port) must be non-empty")
    if isinstance(config.baud_rate, bool) or not isinstance(config.baud_rate, int):
        raise ConfigError("Baud rate (--baud) must be an integer")
    if config.baud_rate <= 0:
        raise ConfigError("Baud rate (--baud) must be positive")
    if isinstance(config.listen_port, bool) or not isinstance(config.listen_port, int):
        raise ConfigError("WebSocket port (--ws-port) must be an integer")
    if not (1 <= config.listen_port <= 65535):
        raise ConfigError("WebSocket port (--ws-port) must be between 1 and 65535")
