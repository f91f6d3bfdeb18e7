"""One serial connection: line-delimited reads and newline-terminated writes."""

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional, Union

import serial

from serial2ws.errors import CloseError, OpenError, WriteError
from serial2ws.events import Status

logger = logging.getLogger("serial2ws.serial")

POLL_INTERVAL = 0.01

SerialFactory = Callable[[str, int], serial.Serial]


class SerialState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


def open_serial(port: str, baud: int) -> serial.Serial:
    """Open the serial port with the given settings."""
    return serial.Serial(port=port, baudrate=baud)


class LineBuffer:
    """Accumulate bytes and split them into lines on ``\\n``.

    A ``\\r`` directly before the ``\\n`` is treated as part of the terminator.
    Incomplete trailing data stays buffered until the next feed().
    """

    def __init__(self, encoding: str = "utf-8"):
        self._encoding = encoding
        self._pending = bytearray()

    @property
    def pending(self) -> bytes:
        return bytes(self._pending)

    def feed(self, data: bytes) -> List[str]:
        self._pending.extend(data)
        lines = []
        while True:
            index = self._pending.find(b"\n")
            if index < 0:
                break
            raw = bytes(self._pending[:index])
            del self._pending[: index + 1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            lines.append(raw.decode(self._encoding, errors="replace"))
        return lines


class SerialEndpoint:
    """Own a single serial connection for its whole open/close cycle.

    Parsed lines are passed to ``on_line``; every lifecycle transition and
    I/O error is passed to ``on_status``. The endpoint never reopens itself.
    """

    def __init__(
        self,
        on_line: Callable[[str], None],
        on_status: Callable[[Status], None],
        serial_factory: SerialFactory = open_serial,
        encoding: str = "utf-8",
    ):
        self._on_line = on_line
        self._on_status = on_status
        self._serial_factory = serial_factory
        self._encoding = encoding
        self._serial: Optional[serial.Serial] = None
        self._buffer: Optional[LineBuffer] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Task] = None
        self._generation = 0
        self._write_lock = asyncio.Lock()
        self._state = SerialState.CLOSED
        self.device_path: Optional[str] = None
        self.baud_rate: Optional[int] = None

    @property
    def state(self) -> SerialState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SerialState.OPEN

    async def open(self, device_path: str, baud_rate: int):
        """Claim the device and start reading lines from it."""
        if self._state is not SerialState.CLOSED or self._closing is not None:
            raise OpenError(f"Serial endpoint is already {self._state.value}")
        self.device_path = device_path
        self.baud_rate = baud_rate
        self._generation += 1
        generation = self._generation
        self._set_state(SerialState.OPENING)
        try:
            ser = await asyncio.to_thread(self._serial_factory, device_path, baud_rate)
        except (serial.SerialException, OSError, ValueError) as exc:
            if generation == self._generation:
                self._state = SerialState.CLOSED
                logger.error("Failed to open serial port %s: %s", device_path, exc)
                self._on_status(Status("serial", "error", f"cannot open {device_path}: {exc}"))
            raise OpenError(f"Cannot open {device_path} @ {baud_rate} baud: {exc}") from exc
        if generation != self._generation:
            # close() ran while the device was being claimed
            await _discard(ser)
            raise OpenError(f"{device_path} was closed while opening")
        self._serial = ser
        self._buffer = LineBuffer(self._encoding)
        self._set_state(SerialState.OPEN)
        logger.info("Serial opened: %s @ %s baud", device_path, baud_rate)
        self._reader_task = asyncio.create_task(self._read_loop(), name=f"serial-reader-{device_path}")

    async def write_line(self, data: Union[str, bytes]):
        """Write ``data`` followed by ``\\n``; raise WriteError unless open."""
        payload = data.encode(self._encoding) if isinstance(data, str) else bytes(data)
        payload += b"\n"
        error = None
        async with self._write_lock:
            ser = self._serial
            if self._state is not SerialState.OPEN or ser is None:
                raise WriteError(f"Serial port {self.device_path} is not open")
            try:
                await asyncio.to_thread(ser.write, payload)
            except (serial.SerialException, OSError) as exc:
                error = exc
        if error is not None:
            release = self._fail(error)
            if release is not None:
                await asyncio.shield(release)
            raise WriteError(f"Write to {self.device_path} failed: {error}") from error
        logger.debug("Sent to serial port: %r", payload)

    async def close(self):
        """Stop reading and release the device handle.

        Concurrent callers all wait for the same release. Closing a closed
        endpoint is a no-op.
        """
        if self._closing is None:
            if self._state is SerialState.CLOSED:
                return
            self._set_state(SerialState.CLOSING)
            self._closing = asyncio.create_task(self._release(failed=False))
        await asyncio.shield(self._closing)

    async def _read_loop(self):
        ser = self._serial
        try:
            while True:
                n = ser.in_waiting
                if n > 0:
                    data = await asyncio.to_thread(ser.read, n)
                    for line in self._buffer.feed(data):
                        logger.debug("Received data from serial port: %s", line)
                        self._on_line(line)
                else:
                    await asyncio.sleep(POLL_INTERVAL)
        except (serial.SerialException, OSError) as exc:
            logger.error("Error on serial port %s: %s", self.device_path, exc)
            self._fail(exc)

    def _fail(self, exc: Exception) -> Optional[asyncio.Task]:
        """Report an I/O failure and start releasing the handle."""
        if self._state is not SerialState.OPEN:
            return self._closing
        self._state = SerialState.CLOSING
        self._on_status(Status("serial", "error", str(exc)))
        self._closing = asyncio.create_task(self._release(failed=True))
        return self._closing

    async def _release(self, failed: bool):
        self._generation += 1
        task, self._reader_task = self._reader_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        error = None
        async with self._write_lock:
            ser, self._serial = self._serial, None
            self._buffer = None
            if ser is not None:
                try:
                    await asyncio.to_thread(ser.close)
                except (serial.SerialException, OSError) as exc:
                    error = exc
        self._closing = None
        if failed:
            self._state = SerialState.CLOSED
            if error is not None:
                logger.debug("Failed to close serial port cleanly: %s", error)
            return
        self._set_state(SerialState.CLOSED)
        if error is not None:
            self._on_status(Status("serial", "error", f"close failed: {error}"))
            raise CloseError(f"Failed to close {self.device_path}: {error}") from error
        logger.info("Serial closed: %s", self.device_path)

    def _set_state(self, state: SerialState):
        self._state = state
        detail = f"{self.device_path} @ {self.baud_rate}" if state is SerialState.OPEN else self.device_path
        self._on_status(Status("serial", state.value, detail))


async def _discard(ser: serial.Serial):
    try:
        await asyncio.to_thread(ser.close)
    except (serial.SerialException, OSError):
        logger.debug("Failed to close serial port cleanly")
