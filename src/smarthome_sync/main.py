from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import signal
from pathlib import Path

import dotenv
import uvloop

from smarthome_sync import const
from smarthome_sync.config import AppConfig, load_config
from smarthome_sync.controller import SmartHomeController
from smarthome_sync.correlation import correlation_context, ensure_correlation_id
from smarthome_sync.devices.persistence import FileKeyValueStore
from smarthome_sync.exceptions import ConfigurationError, SmartHomeSyncError
from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.metrics import start_metrics_server
from smarthome_sync.network.platform import PlatformNetworkMonitor

logger = get_logger(__name__)

# Quieten the paho client underneath aiomqtt.
mqtt_logger = logging.getLogger("mqtt")
mqtt_logger.setLevel(logging.ERROR)
mqtt_logger.propagate = False


class SyncService:
    """Headless service: one controller, the platform network monitor and signal handling."""

    lp: str = "SyncService:"

    def __init__(self, config: AppConfig, config_path: Path | None = None) -> None:
        self.config: AppConfig = config
        self.config_path: Path | None = config_path
        self.monitor: PlatformNetworkMonitor = PlatformNetworkMonitor()
        self.stop_event: asyncio.Event = asyncio.Event()
        self.controller: SmartHomeController | None = None

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._on_stop_signal, signum)
        loop.add_signal_handler(signal.SIGHUP, self.reload)
        logger.debug("%s signal handlers configured for SIGINT, SIGTERM & SIGHUP", self.lp)

    def _on_stop_signal(self, signum: int) -> None:
        logger.info("%s intercepted signal: %s", self.lp, signal.Signals(signum).name)
        self.stop_event.set()

    def reload(self) -> None:
        lp = f"{self.lp}reload:"
        if self.controller is None:
            return
        try:
            config = load_config(self.config_path)
        except ConfigurationError:
            logger.exception("%s keeping current configuration", lp)
            return
        self.config = config
        self.controller.reload_config(config)

    async def run(self) -> None:
        lp = f"{self.lp}run:"
        _ = ensure_correlation_id()
        self._install_signal_handlers(asyncio.get_running_loop())

        if const.ENABLE_METRICS:
            start_metrics_server(const.METRICS_PORT)

        kv_store = FileKeyValueStore(const.PERSISTENT_BASE_DIR)
        self.controller = controller = SmartHomeController(self.config, kv_store=kv_store)
        try:
            devices = await controller.load_configured_devices()
        except ConfigurationError:
            # The stored blob is left as is for inspection.
            logger.exception("%s stored device set is unreadable, starting with no devices", lp)
            devices = []
        logger.info("%s %d configured devices", lp, len(devices))

        first_signal = await asyncio.to_thread(self.monitor.read_signal)
        _ = controller.initialize_connectivity(first_signal)
        monitor_task = asyncio.create_task(
            self.monitor.run(controller.handle_connectivity_signal, const.NETWORK_POLL_SECONDS, self.stop_event),
        )
        try:
            _ = await self.stop_event.wait()
        finally:
            self.stop_event.set()
            _ = await asyncio.wait([monitor_task])
            await controller.stop()
            logger.info("%s stopped", lp)


def _load_env_file(env_file: Path) -> None:
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return
    if dotenv.load_dotenv(env_path, override=True):
        logger.info("Environment variables loaded", extra={"source": str(env_path)})
        # Module level settings are read from the environment at import time.
        _ = importlib.reload(const)
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Smart-home dual broker sync service")
    _ = parser.add_argument("-c", "--config", type=Path, default=None, help="Path to the YAML config file")
    _ = parser.add_argument("--env", type=Path, default=None, help="Path to the environment file")
    _ = parser.add_argument("-D", "--debug", action="store_true", help="Enable debug mode")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the sync service."""
    with correlation_context():
        logger.info("Starting smarthome-sync", extra={"version": const.SMARTHOME_VERSION})
        args = parse_cli(argv)
        if args.env:
            _load_env_file(args.env)

        try:
            config = load_config(args.config)
        except ConfigurationError:
            logger.exception("Refusing to start with an invalid configuration")
            return 2

        if args.debug or config.debug.enabled:
            logger.set_level(logging.DEBUG)
            logger.info("Debug mode enabled")

        service = SyncService(config, args.config)
        try:
            uvloop.run(service.run())
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except SmartHomeSyncError:
            logger.exception("Fatal error in main loop")
            return 1
        logger.info("smarthome-sync shutdown complete")
        return 0
