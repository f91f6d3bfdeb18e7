"""Bridge controller: owns the serial endpoint and the WebSocket server and wires them together."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from serial.tools import list_ports

from serial2ws.config import BridgeConfig, parse_baud_rate, parse_listen_port
from serial2ws.errors import (
    BindError,
    BridgeStoppedError,
    CloseError,
    ConfigError,
    OpenError,
    WriteError,
)
from serial2ws.events import EventKind, EventRegistry, Status, Subscription
from serial2ws.serial_endpoint import SerialEndpoint, SerialFactory, open_serial
from serial2ws.server import BroadcastServer

logger = logging.getLogger("serial2ws")

PORT_DISCONNECTED = "disconnected"


class BridgeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    RECONFIGURING = "reconfiguring"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PortInfo:
    """A serial device as reported by the host platform."""

    device: str
    description: Optional[str] = None
    manufacturer: Optional[str] = None
    vid: Optional[int] = None
    pid: Optional[int] = None
    serial_number: Optional[str] = None
    hwid: Optional[str] = None

    @classmethod
    def from_list_port_info(cls, info) -> "PortInfo":
        return cls(
            device=info.device,
            description=info.description,
            manufacturer=info.manufacturer,
            vid=info.vid,
            pid=info.pid,
            serial_number=info.serial_number,
            hwid=info.hwid,
        )


async def list_available_ports(port_lister: Callable[[], Iterable[Any]] = list_ports.comports) -> List[PortInfo]:
    """Enumerate host serial devices in the order the platform reports them."""
    ports = await asyncio.to_thread(lambda: list(port_lister()))
    return [PortInfo.from_list_port_info(info) for info in ports]


class BridgeController:
    """Multiplex one serial line to many WebSocket clients.

    Serial lines are raised as ``data`` events and broadcast to every open
    client. Client messages are written to the serial line, newline-terminated.
    Lifecycle transitions and leaf failures are raised as ``status`` events;
    a failing leaf is left absent rather than taking the controller down.

    Transitions are serialized: a reconfiguration requested while another one
    is running is rejected with a ``bridge busy`` status, and close() waits
    for the running one to finish.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        serial_factory: SerialFactory = open_serial,
        port_lister: Callable[[], Iterable[Any]] = list_ports.comports,
    ):
        self._config = config
        self._serial_factory = serial_factory
        self._port_lister = port_lister
        self._events = EventRegistry()
        self._server: Optional[BroadcastServer] = None
        self._endpoint: Optional[SerialEndpoint] = None
        self._state = BridgeState.UNINITIALIZED
        self._lock = asyncio.Lock()

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def server(self) -> Optional[BroadcastServer]:
        return self._server

    @property
    def serial_endpoint(self) -> Optional[SerialEndpoint]:
        return self._endpoint

    @property
    def client_count(self) -> int:
        return self._server.client_count if self._server is not None else 0

    def subscribe(self, kind, callback: Callable[[Any], None]) -> Subscription:
        return self._events.subscribe(kind, callback)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self._events.unsubscribe(subscription)

    async def start(self):
        """Start the WebSocket server, then the serial side if it is enabled."""
        async with self._lock:
            self._check_alive()
            if self._state is not BridgeState.UNINITIALIZED:
                return
            if self._server is None:
                await self._start_server()
            if self._endpoint is None:
                await self._start_serial()
            self._state = BridgeState.RUNNING

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def set_listen_port(self, port) -> bool:
        """Move the WebSocket server to ``port``; return False if nothing was done."""
        port = parse_listen_port(port)
        if port == self._config.listen_port and self._server is not None:
            return False
        async with self._reconfiguring() as accepted:
            if not accepted:
                return False
            self._config = replace(self._config, listen_port=port)
            await self._stop_server()
            await self._start_server()
        return True

    async def set_baud_rate(self, baud_rate) -> bool:
        baud_rate = parse_baud_rate(baud_rate)
        if baud_rate == self._config.baud_rate:
            return False
        return await self._reopen_serial(replace(self._config, baud_rate=baud_rate))

    async def set_device_and_baud_rate(self, device_path: str, baud_rate) -> bool:
        """Change device and baud rate together with a single close/open cycle."""
        if not isinstance(device_path, str) or not device_path.strip():
            raise ConfigError("device_path must be a non-empty string")
        baud_rate = parse_baud_rate(baud_rate)
        if device_path == self._config.device_path and baud_rate == self._config.baud_rate:
            return False
        return await self._reopen_serial(
            replace(self._config, device_path=device_path, baud_rate=baud_rate)
        )

    async def close_serial(self) -> bool:
        """Close the serial side and leave the server running."""
        async with self._reconfiguring() as accepted:
            if not accepted:
                return False
            error = await self._stop_serial()
        if error is not None:
            logger.error("%s", error)
        return True

    async def open_serial(self) -> bool:
        """(Re)open the serial side with the current configuration."""
        if not self._config.serial_enabled:
            logger.warning("Serial port usage is disabled. Not opening %s", self._config.device_path)
            return False
        async with self._reconfiguring() as accepted:
            if not accepted:
                return False
            await self._stop_serial()
            await self._start_serial()
        return self._endpoint is not None and self._endpoint.is_open

    async def close(self) -> List[CloseError]:
        """Stop both sides; both are attempted even if one fails. Idempotent."""
        async with self._lock:
            if self._state is BridgeState.STOPPED:
                return []
            errors = []
            for stop in (self._stop_serial, self._stop_server):
                error = await stop()
                if error is not None:
                    errors.append(error)
            self._state = BridgeState.STOPPED
        for error in errors:
            logger.error("Teardown error: %s", error)
        self._emit_status(Status("bridge", "stopped"))
        return errors

    async def get_available_ports(self) -> List[PortInfo]:
        return await list_available_ports(self._port_lister)

    def get_port_status(self) -> str:
        if self._endpoint is None:
            return PORT_DISCONNECTED
        return self._endpoint.state.value

    async def _reopen_serial(self, config: BridgeConfig) -> bool:
        async with self._reconfiguring() as accepted:
            if not accepted:
                return False
            self._config = config
            await self._stop_serial()
            await self._start_serial()
        return True

    @asynccontextmanager
    async def _reconfiguring(self):
        self._check_alive()
        if self._lock.locked():
            logger.warning("Reconfiguration already in progress; request ignored")
            self._emit_status(Status("bridge", "busy", "reconfiguration already in progress"))
            yield False
            return
        async with self._lock:
            self._check_alive()
            previous, self._state = self._state, BridgeState.RECONFIGURING
            try:
                yield True
            finally:
                self._state = previous

    async def _start_server(self):
        server = BroadcastServer(self._on_client_message, self._emit_status, host=self._config.listen_host)
        try:
            await server.listen(self._config.listen_port)
        except BindError as exc:
            logger.error("WebSocket server unavailable: %s", exc)
            return
        self._server = server

    async def _stop_server(self) -> Optional[CloseError]:
        server, self._server = self._server, None
        if server is None:
            return None
        try:
            await server.stop()
        except CloseError as exc:
            return exc
        return None

    async def _start_serial(self):
        if not self._config.serial_enabled:
            logger.info("Serial port usage is disabled. Skipping initialization.")
            return
        endpoint = SerialEndpoint(self._on_serial_line, self._emit_status, self._serial_factory)
        try:
            await endpoint.open(self._config.device_path, self._config.baud_rate)
        except OpenError as exc:
            logger.error("Serial side unavailable: %s", exc)
            return
        self._endpoint = endpoint

    async def _stop_serial(self) -> Optional[CloseError]:
        endpoint, self._endpoint = self._endpoint, None
        if endpoint is None:
            return None
        try:
            await endpoint.close()
        except CloseError as exc:
            return exc
        return None

    def _on_serial_line(self, line: str):
        self._events.emit(EventKind.DATA, line)
        server = self._server
        if server is None or server.broadcast(line) == 0:
            logger.debug("No WebSocket clients connected. Data not sent.")
            return
        logger.debug("Sent to clients: %s", line)

    async def _on_client_message(self, message: str):
        endpoint = self._endpoint
        if endpoint is None or not endpoint.is_open:
            logger.warning("Serial port not open. Dropping message: %r", message)
            return
        try:
            await endpoint.write_line(message)
        except WriteError as exc:
            logger.warning("Dropping message %r: %s", message, exc)

    def _emit_status(self, status: Status):
        logger.debug("Status: %s", status)
        self._events.emit(EventKind.STATUS, status)

    def _check_alive(self):
        if self._state is BridgeState.STOPPED:
            raise BridgeStoppedError("Bridge controller has been stopped")
