"""Shared test doubles for the bridge tests."""

import asyncio
import socket
import threading
from typing import List, Optional

import serial


def run(coro):
    """Helper to run an async coroutine in a new event loop."""
    return asyncio.run(coro)


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


class FakeSerial:
    """In-memory stand-in for serial.Serial."""

    def __init__(self, port: str, baudrate: int):
        self.port = port
        self.baudrate = baudrate
        self.is_open = True
        self.written: List[bytes] = []
        self.read_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.write_gate: Optional[threading.Event] = None
        self.close_gate: Optional[threading.Event] = None
        self.writing = False
        self._incoming = bytearray()
        self._lock = threading.Lock()

    def feed(self, data: bytes):
        with self._lock:
            self._incoming.extend(data)

    @property
    def in_waiting(self) -> int:
        if not self.is_open:
            raise serial.SerialException("Attempting to use a port that is not open")
        if self.read_error is not None:
            raise self.read_error
        with self._lock:
            return len(self._incoming)

    def read(self, size: int = 1) -> bytes:
        with self._lock:
            data = bytes(self._incoming[:size])
            del self._incoming[:size]
        return data

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise serial.SerialException("Attempting to use a port that is not open")
        self.writing = True
        if self.write_gate is not None:
            self.write_gate.wait(5)
        if self.write_error is not None:
            raise self.write_error
        self.written.append(bytes(data))
        return len(data)

    def close(self):
        if self.close_gate is not None:
            self.close_gate.wait(5)
        self.is_open = False
        if self.close_error is not None:
            raise self.close_error


class FakeSerialFactory:
    """Serial factory that records every FakeSerial it hands out."""

    def __init__(self):
        self.opened: List[FakeSerial] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None

    def __call__(self, port: str, baudrate: int) -> FakeSerial:
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        fake = FakeSerial(port, baudrate)
        self.opened.append(fake)
        return fake

    @property
    def latest(self) -> FakeSerial:
        return self.opened[-1]
