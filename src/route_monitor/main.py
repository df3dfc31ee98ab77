"""Main entry point for the route monitor."""

import asyncio
import signal
import sys
import threading
from typing import Any

import structlog
from prometheus_client import REGISTRY, start_http_server as start_metrics_server
from prometheus_client.registry import CollectorRegistry

from . import __version__
from .collector import RouteCollector
from .config import AppSettings, ConfigError, Settings, TracingSettings, load_settings
from .descriptors import build_descriptors
from .logging import setup_logging
from .metrics import SERVICE_INFO
from .multiwatch import MultiClusterWatcher
from .prober import Prober
from .tracing import setup_tracing, shutdown_tracing

logger = structlog.get_logger(__name__)

# Bounded wait for watcher threads on shutdown; they are daemons either way.
WATCHER_JOIN_TIMEOUT = 5.0
WATCHDOG_INTERVAL = 5.0


class ExpositionServerError(Exception):
    """Raised when the metrics server stops while the service is running."""


class RouteMonitorService:
    """Owns the cluster watchers, the collector and the metrics server."""

    def __init__(
        self,
        settings: Settings,
        registry: CollectorRegistry = REGISTRY,
        watcher: MultiClusterWatcher | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._watcher = watcher
        self._collector: RouteCollector | None = None
        self._stop_watchers = threading.Event()
        self._watch_thread: threading.Thread | None = None
        self._server: Any = None
        self._server_thread: threading.Thread | None = None
        self._shutdown_event = asyncio.Event()
        self._watchdog_task: asyncio.Task | None = None
        self._failure: Exception | None = None

    async def start(self) -> None:
        """Start watchers and the metrics server.

        Raises:
            Exception: Any error building the watchers or binding the metrics
                port. These are fatal.
        """
        logger.info("service_starting", version=__version__, targets=len(self._settings.targets))
        SERVICE_INFO.info({"version": __version__})

        if self._watcher is None:
            self._watcher = MultiClusterWatcher.from_settings(self._settings)

        self._watch_thread = threading.Thread(
            target=self._watcher.watch,
            args=(self._stop_watchers,),
            name="multi-watch",
            daemon=True,
        )
        self._watch_thread.start()

        monitor = self._settings.monitor
        collector = RouteCollector(
            self._watcher,
            build_descriptors(),
            prober=Prober(),
            probe_timeout=monitor.probe_timeout_seconds,
        )
        self._registry.register(collector)
        self._collector = collector

        self._server, self._server_thread = start_metrics_server(
            port=monitor.port,
            addr=monitor.host,
            registry=self._registry,
        )
        logger.info("prometheus_metrics_started", host=monitor.host, port=monitor.port)

        self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        logger.info("service_started")

    async def stop(self) -> None:
        """Stop watchers and the metrics server."""
        logger.info("service_stopping")

        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass

        self._stop_watchers.set()
        if self._watcher:
            self._watcher.stop()
        if self._watch_thread:
            await asyncio.to_thread(self._watch_thread.join, WATCHER_JOIN_TIMEOUT)
            if self._watch_thread.is_alive():
                logger.warning("watchers_still_running", timeout=WATCHER_JOIN_TIMEOUT)

        if self._server:
            try:
                await asyncio.to_thread(self._server.shutdown)
                self._server.server_close()
            except OSError as e:
                logger.error("metrics_server_shutdown_error", error=str(e))

        if self._collector:
            self._registry.unregister(self._collector)
            self._collector = None

        shutdown_tracing()
        logger.info("service_stopped")

    async def _watchdog_loop(self) -> None:
        """Ends the service if the metrics server thread dies."""
        while True:
            try:
                await asyncio.sleep(WATCHDOG_INTERVAL)
                if self._server_thread and not self._server_thread.is_alive():
                    self._failure = ExpositionServerError("metrics server thread exited")
                    logger.error("metrics_server_died")
                    self.request_shutdown()
                    return
            except asyncio.CancelledError:
                break

    async def run_until_shutdown(self) -> None:
        """Run the service until shutdown is requested.

        Raises:
            ExpositionServerError: If the metrics server died.
        """
        await self._shutdown_event.wait()
        if self._failure:
            raise self._failure

    def request_shutdown(self) -> None:
        """Request service shutdown."""
        self._shutdown_event.set()


async def main() -> int:
    """Main entry point. Returns the process exit status."""
    app_settings = AppSettings()
    setup_logging(app_settings)
    setup_tracing(TracingSettings())

    try:
        settings = load_settings(app_settings.config_file)
    except ConfigError as e:
        logger.error("config_error", error=str(e), path=app_settings.config_file)
        return 1
    logger.info("config_loaded", path=app_settings.config_file)

    service = RouteMonitorService(settings)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        service.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await service.start()
    except Exception as e:
        logger.exception("service_start_failed", error=str(e))
        await service.stop()
        return 1

    try:
        await service.run_until_shutdown()
    except ExpositionServerError as e:
        logger.error("service_error", error=str(e))
        return 1
    finally:
        await service.stop()

    logger.info("bye")
    return 0


def run() -> None:
    """Entry point for the CLI."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
