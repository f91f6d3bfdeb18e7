"""Owner of the running bridge: full-rebuild settings updates and the process entry loop."""

import asyncio
import logging
import signal
import socket
from typing import Any, Callable, List, Mapping, Optional

from serial2ws.bridge import BridgeController, PortInfo, PORT_DISCONNECTED, list_available_ports
from serial2ws.config import DEFAULT_SETTLE_DELAY, BridgeConfig, load_settings, parse_config
from serial2ws.errors import CloseError
from serial2ws.events import EventKind, EventRegistry, Status, Subscription

logger = logging.getLogger("serial2ws")

DEFAULT_RELEASE_TIMEOUT = 5.0
RELEASE_POLL_INTERVAL = 0.05


def port_is_free(host: str, port: int) -> bool:
    """Return True if a listener could bind ``host:port`` right now."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class BridgeService:
    """Own exactly one BridgeController and rebuild it when settings change.

    Subscribers registered here outlive individual controllers. Every
    apply_settings() call takes the conservative path: the current controller
    is closed and discarded, the listen port is polled until it can be bound
    again, ``settle_delay`` seconds pass for the serial driver to let go of the
    device, and a fresh controller is started. There is no completion signal
    for device release, so the delay is a heuristic.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        release_timeout: float = DEFAULT_RELEASE_TIMEOUT,
        controller_factory: Callable[[BridgeConfig], BridgeController] = BridgeController,
    ):
        self._config = config
        self._settle_delay = settle_delay
        self._release_timeout = release_timeout
        self._controller_factory = controller_factory
        self._controller: Optional[BridgeController] = None
        self._events = EventRegistry()
        self._lock = asyncio.Lock()

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def controller(self) -> Optional[BridgeController]:
        return self._controller

    def subscribe(self, kind, callback: Callable[[Any], None]) -> Subscription:
        return self._events.subscribe(kind, callback)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self._events.unsubscribe(subscription)

    async def start(self):
        async with self._lock:
            if self._controller is None:
                await self._build()

    async def apply_settings(self, settings: Mapping[str, Any]) -> bool:
        """Apply any subset of settings by tearing down and rebuilding the bridge.

        Invalid settings raise ConfigError before anything is torn down.
        Returns False if another update is still in progress.
        """
        config = parse_config(settings, base=self._config)
        if self._lock.locked():
            logger.warning("Settings update already in progress; request ignored")
            self._events.emit(EventKind.STATUS, Status("bridge", "busy", "settings update already in progress"))
            return False
        async with self._lock:
            logger.info("Updating settings: %s", config)
            self._config = config
            await self._teardown()
            logger.info("Bridge stopped. Reinitializing...")
            await self._wait_for_release(config)
            await self._build()
        return True

    async def close(self) -> List[CloseError]:
        async with self._lock:
            return await self._teardown()

    def get_port_status(self) -> str:
        if self._controller is None:
            return PORT_DISCONNECTED
        return self._controller.get_port_status()

    async def get_available_ports(self) -> List[PortInfo]:
        if self._controller is None:
            return await list_available_ports()
        return await self._controller.get_available_ports()

    async def _build(self):
        controller = self._controller_factory(self._config)
        controller.subscribe(EventKind.DATA, self._forward_data)
        controller.subscribe(EventKind.STATUS, self._forward_status)
        self._controller = controller
        await controller.start()

    async def _teardown(self) -> List[CloseError]:
        controller, self._controller = self._controller, None
        if controller is None:
            return []
        return await controller.close()

    async def _wait_for_release(self, config: BridgeConfig):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._release_timeout
        while not port_is_free(config.listen_host, config.listen_port):
            if loop.time() >= deadline:
                logger.warning(
                    "Port %s still in use after %.1fs; starting anyway",
                    config.listen_port,
                    self._release_timeout,
                )
                break
            await asyncio.sleep(RELEASE_POLL_INTERVAL)
        if self._settle_delay > 0:
            await asyncio.sleep(self._settle_delay)

    def _forward_data(self, line: str):
        self._events.emit(EventKind.DATA, line)

    def _forward_status(self, status: Status):
        self._events.emit(EventKind.STATUS, status)


async def reload_settings(service: BridgeService, path: str) -> bool:
    """Re-read ``path`` and apply it; a bad file leaves the running bridge alone."""
    try:
        settings = load_settings(path)
        return await service.apply_settings(settings)
    except (OSError, ValueError) as e:
        logger.error("Settings reload from %s failed: %s", path, e)
        return False


async def run_bridge_async(
    config: BridgeConfig,
    settings_path: Optional[str] = None,
    settle_delay: float = DEFAULT_SETTLE_DELAY,
):
    """Start the bridge and keep it running; SIGHUP re-applies the settings file."""
    if settings_path:
        config = parse_config(load_settings(settings_path), base=config)
    service = BridgeService(config, settle_delay=settle_delay)
    service.subscribe(EventKind.DATA, lambda line: logger.info("Received data: %s", line))
    service.subscribe(EventKind.STATUS, lambda status: logger.info("Port status: %s", status))
    await service.start()

    loop = asyncio.get_running_loop()
    reloads = set()

    def on_sighup():
        task = loop.create_task(reload_settings(service, settings_path))
        reloads.add(task)
        task.add_done_callback(reloads.discard)

    if settings_path and hasattr(signal, "SIGHUP"):
        loop.add_signal_handler(signal.SIGHUP, on_sighup)
    try:
        await asyncio.Future()
    finally:
        if settings_path and hasattr(signal, "SIGHUP"):
            loop.remove_signal_handler(signal.SIGHUP)
        await service.close()


def run_bridge(
    config: BridgeConfig,
    verbose: bool = False,
    settings_path: Optional[str] = None,
    settle_delay: float = DEFAULT_SETTLE_DELAY,
):
    """Synchronous entry: run the asyncio bridge until interrupted."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(run_bridge_async(config, settings_path=settings_path, settle_delay=settle_delay))
    except KeyboardInterrupt:
        pass
