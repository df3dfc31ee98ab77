"""Restart-resilient route cache for one cluster.

A :class:`ClusterWatcher` lists every route once, then applies watch events
to its cache. The server closes the watch at the resync period, which
triggers a full re-list. Any stream failure moves the watcher to
``RESTARTING`` and, after a fixed backoff, it lists and watches again, for
as long as the process lives.
"""

import json
import re
import threading
from collections.abc import Iterator
from enum import Enum
from typing import Protocol
from urllib.parse import urlparse

import structlog
import urllib3
from kubernetes import client, config
from kubernetes.watch.watch import iter_resp_lines

from .config import TargetSettings
from .metrics import ROUTES, WATCH_EVENTS, WATCH_RESTARTS
from .route import Route
from .types import JSONObject, WatchEvent

logger = structlog.get_logger(__name__)

ROUTE_GROUP = "route.openshift.io"
ROUTE_VERSION = "v1"
ROUTE_PLURAL = "routes"

DEFAULT_BACKOFF_SECONDS = 10.0
DEFAULT_RESYNC_SECONDS = 600


class WatcherState(Enum):
    """Cluster watcher lifecycle states."""

    STARTING = "starting"
    WATCHING = "watching"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class WatchStreamError(Exception):
    """Raised when the watch stream reports an error event."""


class RouteSource(Protocol):
    """List/watch access to the routes of one cluster."""

    @property
    def cluster(self) -> str:
        """Identifier of the cluster (API endpoint ``host[:port]``)."""
        ...

    def list(self) -> tuple[list[JSONObject], str]:
        """Return every route object and the list's resource version."""
        ...

    def watch(self, resource_version: str, timeout_seconds: int) -> Iterator[WatchEvent]:
        """Stream events after ``resource_version`` until the server closes the watch."""
        ...

    def stop(self) -> None:
        """End a running ``watch`` now; later watches end immediately."""
        ...


class KubernetesRouteSource:
    """Route list/watch on top of the official kubernetes client."""

    def __init__(self, api: client.CustomObjectsApi, label_selector: str = "") -> None:
        self._api = api
        self._cluster = urlparse(api.api_client.configuration.host).netloc
        self._label_selector = label_selector
        self._lock = threading.Lock()
        self._response: urllib3.BaseHTTPResponse | None = None
        self._stopped = False

    @classmethod
    def from_kubeconfig(
        cls, kubeconfig: str = "", label_selector: str = ""
    ) -> "KubernetesRouteSource":
        """Build the API client.

        Args:
            kubeconfig: Path to a kubeconfig file. Empty loads the in-cluster
                service account configuration.
            label_selector: Selector restricting the watched routes.

        Raises:
            kubernetes.config.ConfigException: If no usable configuration exists.
        """
        if kubeconfig:
            api_client = config.new_client_from_config(config_file=kubeconfig)
        else:
            configuration = client.Configuration()
            config.load_incluster_config(client_configuration=configuration)
            api_client = client.ApiClient(configuration)
        return cls(client.CustomObjectsApi(api_client), label_selector=label_selector)

    @property
    def cluster(self) -> str:
        return self._cluster

    def list(self) -> tuple[list[JSONObject], str]:
        result = self._api.list_cluster_custom_object(
            ROUTE_GROUP,
            ROUTE_VERSION,
            ROUTE_PLURAL,
            label_selector=self._label_selector,
        )
        metadata = result.get("metadata") or {}
        return list(result.get("items") or []), metadata.get("resourceVersion", "")

    def watch(self, resource_version: str, timeout_seconds: int) -> Iterator[WatchEvent]:
        # Raw response so stop() can shut the socket under a blocked read.
        response = self._api.list_cluster_custom_object(
            ROUTE_GROUP,
            ROUTE_VERSION,
            ROUTE_PLURAL,
            label_selector=self._label_selector,
            resource_version=resource_version,
            allow_watch_bookmarks=True,
            timeout_seconds=timeout_seconds,
            watch=True,
            _preload_content=False,
        )
        with self._lock:
            self._response = response
            stopped = self._stopped
        try:
            if stopped:
                return
            for line in iter_resp_lines(response):
                if line:
                    yield json.loads(line)
        finally:
            with self._lock:
                self._response = None
            response.close()
            response.release_conn()

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            response = self._response
        if response is None:
            return
        try:
            response.shutdown()
        except (OSError, RuntimeError, ValueError) as e:
            logger.debug("watch_shutdown_failed", cluster=self._cluster, error=str(e))


class ClusterWatcher:
    """Keeps the routes of one cluster in a local cache."""

    def __init__(
        self,
        source: RouteSource,
        namespace_blacklist_regex: str = "^$",
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        resync_period: int = DEFAULT_RESYNC_SECONDS,
    ) -> None:
        """Initialize the watcher.

        Args:
            source: List/watch access to the cluster's routes.
            namespace_blacklist_regex: Namespaces matching this are hidden from ``list``.
            backoff: Seconds to wait before restarting a failed watch.
            resync_period: Seconds after which the server closes the watch
                and the cache is rebuilt from a full list.
        """
        self._source = source
        self._namespace_blacklist = re.compile(namespace_blacklist_regex or "^$")
        self._backoff = backoff
        self._resync_period = resync_period
        self._cache: dict[str, Route] = {}
        self._lock = threading.Lock()
        self._resource_version = ""
        self._state = WatcherState.STARTING
        self._stop: threading.Event | None = None

    @classmethod
    def from_settings(
        cls,
        target: TargetSettings,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        resync_period: int = DEFAULT_RESYNC_SECONDS,
    ) -> "ClusterWatcher":
        """Build a watcher backed by the Kubernetes API for one configured target."""
        source = KubernetesRouteSource.from_kubeconfig(
            kubeconfig=target.kubeconfig,
            label_selector=target.label_selector,
        )
        return cls(
            source,
            namespace_blacklist_regex=target.namespace_blacklist_regex,
            backoff=backoff,
            resync_period=resync_period,
        )

    @property
    def cluster(self) -> str:
        return self._source.cluster

    @property
    def state(self) -> WatcherState:
        return self._state

    def watch(self, stop: threading.Event) -> None:
        """Run until ``stop`` is set, restarting the watch after every failure."""
        self._stop = stop
        log = logger.bind(cluster=self.cluster)
        while not stop.is_set():
            try:
                self._list_and_watch(stop)
            except Exception as e:
                if stop.is_set():
                    # stream torn down by stop()
                    break
                log.error("watch_failed", error=str(e), error_type=type(e).__name__)
            else:
                if not stop.is_set():
                    log.warning("watch_stream_ended")

            if stop.is_set():
                break
            self._state = WatcherState.RESTARTING
            WATCH_RESTARTS.labels(cluster=self.cluster).inc()
            log.info("watch_restarting", backoff_seconds=self._backoff)
            if stop.wait(self._backoff):
                break

        self._state = WatcherState.STOPPED
        log.info("watch_stopped")

    def stop(self) -> None:
        """Set the running ``watch``'s stop event and end its open stream."""
        if self._stop is not None:
            self._stop.set()
        self._source.stop()

    def _list_and_watch(self, stop: threading.Event) -> None:
        """List, then watch; re-list whenever the server closes the watch.

        Returns when ``stop`` is set. Raises on any stream failure.
        """
        while not stop.is_set():
            items, resource_version = self._source.list()
            self.replace(items, resource_version)
            if self._state != WatcherState.WATCHING:
                logger.info(
                    "watch_established",
                    cluster=self.cluster,
                    routes=len(items),
                    resource_version=resource_version,
                )
            self._state = WatcherState.WATCHING

            for event in self._source.watch(self._resource_version, self._resync_period):
                self.handle_event(event)
                if stop.is_set():
                    self._source.stop()
                    return
            logger.debug("watch_resync", cluster=self.cluster)

    def replace(self, items: list[JSONObject], resource_version: str) -> None:
        """Replace the whole cache with the result of a list call."""
        routes = [Route.from_object(item, self.cluster) for item in items]
        with self._lock:
            self._cache = {route.key: route for route in routes}
            self._resource_version = resource_version
            size = len(self._cache)
        ROUTES.labels(cluster=self.cluster).set(size)

    def handle_event(self, event: WatchEvent) -> None:
        """Apply one watch event to the cache.

        Raises:
            WatchStreamError: For ``ERROR`` events, e.g. an expired resource version.
        """
        event_type = event["type"]
        obj = event["object"]
        WATCH_EVENTS.labels(cluster=self.cluster, type=event_type).inc()

        if event_type == "ERROR":
            message = obj.get("message", "") if isinstance(obj, dict) else str(obj)
            code = obj.get("code", "") if isinstance(obj, dict) else ""
            raise WatchStreamError(f"watch error {code}: {message}".strip())

        resource_version = (obj.get("metadata") or {}).get("resourceVersion", "")
        with self._lock:
            if resource_version:
                self._resource_version = resource_version
            if event_type in ("ADDED", "MODIFIED"):
                route = Route.from_object(obj, self.cluster)
                self._cache[route.key] = route
            elif event_type == "DELETED":
                route = Route.from_object(obj, self.cluster)
                self._cache.pop(route.key, None)
            size = len(self._cache)
        ROUTES.labels(cluster=self.cluster).set(size)

    def list(self) -> list[Route]:
        """Snapshot of the cached routes outside blacklisted namespaces."""
        with self._lock:
            routes = list(self._cache.values())
        return [
            route for route in routes if not self._namespace_blacklist.search(route.namespace)
        ]
