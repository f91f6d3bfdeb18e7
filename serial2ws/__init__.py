"""Serial-to-WebSocket bridge: fan a local serial port (e.g. COM1) out to WebSocket clients."""

from serial2ws.bridge import BridgeController, BridgeState, PortInfo
from serial2ws.config import BridgeConfig, parse_config
from serial2ws.events import EventKind, Status, Subscription
from serial2ws.service import BridgeService, run_bridge

__all__ = [
    "BridgeConfig",
    "BridgeController",
    "BridgeService",
    "BridgeState",
    "EventKind",
    "PortInfo",
    "Status",
    "Subscription",
    "parse_config",
    "run_bridge",
]
