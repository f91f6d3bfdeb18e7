"""Error types raised by the serial-to-WebSocket bridge."""


class BridgeError(Exception):
    """Base class for bridge errors."""


class OpenError(BridgeError):
    """The serial device could not be claimed (busy, missing, permission denied)."""


class WriteError(BridgeError):
    """A write was attempted on a closed or absent serial connection."""


class BindError(BridgeError):
    """The listen port is already in use."""


class CloseError(BridgeError):
    """Tearing down a serial connection or socket server failed."""


class ConfigError(BridgeError, ValueError):
    """Configuration input is malformed."""


class BridgeStoppedError(RuntimeError):
    """A controller was used after it had been fully stopped."""
