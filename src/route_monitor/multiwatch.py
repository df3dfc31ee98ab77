"""Watch several clusters at once and expose their routes as one list."""

import threading
from collections.abc import Sequence

import structlog

from .config import Settings
from .route import Route
from .watcher import ClusterWatcher

logger = structlog.get_logger(__name__)


class MultiClusterWatcher:
    """Runs one :class:`ClusterWatcher` thread per cluster."""

    def __init__(self, watchers: Sequence[ClusterWatcher]) -> None:
        self._watchers = list(watchers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MultiClusterWatcher":
        """Build a watcher for every configured target.

        Raises:
            Exception: Whatever the Kubernetes client raises for an unusable
                kubeconfig; callers treat this as fatal.
        """
        monitor = settings.monitor
        watchers = [
            ClusterWatcher.from_settings(
                target,
                backoff=monitor.watch_backoff_seconds,
                resync_period=monitor.resync_period_seconds,
            )
            for target in settings.targets
        ]
        for watcher in watchers:
            logger.info("watcher_configured", cluster=watcher.cluster)
        return cls(watchers)

    @property
    def watchers(self) -> list[ClusterWatcher]:
        return list(self._watchers)

    def watch(self, stop: threading.Event) -> None:
        """Run every watcher and block until all of them have stopped."""
        threads = [
            threading.Thread(
                target=watcher.watch,
                args=(stop,),
                name=f"watch-{watcher.cluster}",
                daemon=True,
            )
            for watcher in self._watchers
        ]
        for thread in threads:
            thread.start()
        logger.info("watchers_started", count=len(threads))
        for thread in threads:
            thread.join()
        logger.info("watchers_stopped", count=len(threads))

    def stop(self) -> None:
        """Stop every watcher, interrupting streams blocked on an idle cluster."""
        for watcher in self._watchers:
            watcher.stop()

    def list(self) -> list[Route]:
        """Routes of every cluster, in watcher order."""
        routes: list[Route] = []
        for watcher in self._watchers:
            routes.extend(watcher.list())
        return routes
