"""WebSocket server that fans text out to every connected client."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.asyncio.server import broadcast as send_to_all
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from serial2ws.config import DEFAULT_LISTEN
from serial2ws.errors import BindError, CloseError
from serial2ws.events import Status

logger = logging.getLogger("serial2ws.server")

MessageSink = Callable[[str], Awaitable[None]]


class BroadcastServer:
    """Accept any number of WebSocket clients on one listening port.

    Inbound text from every client is awaited through ``on_message``; the
    server does not look at message content.
    """

    def __init__(
        self,
        on_message: MessageSink,
        on_status: Callable[[Status], None],
        host: str = DEFAULT_LISTEN,
    ):
        self._on_message = on_message
        self._on_status = on_status
        self._host = host
        self._server: Optional[Server] = None
        self._clients: Set[ServerConnection] = set()
        self._closing: Set[asyncio.Task] = set()

    @property
    def is_listening(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        """Port actually bound, or None when not listening."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    @property
    def client_count(self) -> int:
        return sum(1 for connection in self._clients if connection.state is State.OPEN)

    async def listen(self, port: int):
        if self._server is not None:
            raise BindError(f"Already listening on port {self.port}")
        try:
            self._server = await serve(self._handle_client, self._host, port)
        except OSError as exc:
            logger.error("Cannot listen on %s:%s: %s", self._host, port, exc)
            self._on_status(Status("server", "error", f"cannot listen on {self._host}:{port}: {exc}"))
            raise BindError(f"Port {port} is not available: {exc}") from exc
        logger.info("WebSocket server started on %s:%s", self._host, self.port)
        self._on_status(Status("server", "listening", f"{self._host}:{self.port}"))

    def broadcast(self, message: str) -> int:
        """Send ``message`` to every open client; return how many were addressed."""
        recipients = [connection for connection in self._clients if connection.state is State.OPEN]
        if not recipients:
            return 0
        send_to_all(recipients, message)
        return len(recipients)

    def close_all(self):
        """Start a graceful close of every open client without waiting for it."""
        for connection in list(self._clients):
            if connection.state is State.OPEN:
                task = asyncio.create_task(connection.close())
                self._closing.add(task)
                task.add_done_callback(self._closing.discard)

    async def stop(self):
        """Disconnect all clients and release the listening port."""
        if self._server is None:
            return
        port = self.port
        server, self._server = self._server, None
        self.close_all()
        try:
            server.close()
            await server.wait_closed()
        except OSError as exc:
            self._on_status(Status("server", "error", f"stop failed: {exc}"))
            raise CloseError(f"Failed to stop WebSocket server: {exc}") from exc
        logger.info("WebSocket server stopped (port %s)", port)
        self._on_status(Status("server", "stopped", f"{self._host}:{port}"))

    async def _handle_client(self, connection: ServerConnection):
        peer = connection.remote_address
        self._clients.add(connection)
        logger.info("WebSocket client connected: %s", peer)
        try:
            async for message in connection:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                await self._on_message(message)
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(connection)
            logger.info("WebSocket client disconnected: %s", peer)
