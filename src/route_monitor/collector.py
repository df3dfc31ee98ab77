"""Prometheus collector probing every known route on each scrape."""

import asyncio
import time
from collections.abc import Iterator, Mapping
from typing import Protocol

import structlog
from opentelemetry import trace
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from .descriptors import MetricDescriptor
from .metrics import COLLECT_DURATION
from .prober import DEFAULT_PROBE_TIMEOUT, Measurement, Prober
from .route import Route

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class RouteLister(Protocol):
    """Anything returning the current route snapshot."""

    def list(self) -> list[Route]: ...


class RouteCollector(Collector):
    """Emits one gauge sample per (route, descriptor) on every collection.

    Probes run concurrently, one asyncio task per route, each bounded by its
    own deadline so a hanging endpoint only delays the scrape up to that
    deadline. The route cache is only read.
    """

    def __init__(
        self,
        routes: RouteLister,
        descriptors: Mapping[str, MetricDescriptor],
        prober: Prober | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self._routes = routes
        self._descriptors = descriptors
        self._prober = prober or Prober()
        self._probe_timeout = probe_timeout

    def describe(self) -> list[GaugeMetricFamily]:
        """Families without samples, so registering does not trigger probes."""
        return [descriptor.family() for descriptor in self._descriptors.values()]

    def collect(self) -> Iterator[GaugeMetricFamily]:
        routes = self._routes.list()
        start = time.perf_counter()
        measurements = asyncio.run(self.probe_all(routes))
        duration = time.perf_counter() - start
        COLLECT_DURATION.observe(duration)
        logger.debug(
            "collect_complete",
            routes=len(routes),
            measurements=len(measurements),
            duration_seconds=round(duration, 3),
        )
        yield from self.families(measurements)

    async def probe_all(self, routes: list[Route]) -> list[Measurement]:
        """Probe every route concurrently and return the non-skipped measurements."""
        with tracer.start_as_current_span("routes.collect") as span:
            span.set_attribute("routes.count", len(routes))
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(self._probe(route)) for route in routes]
        return [m for m in (task.result() for task in tasks) if m is not None]

    async def _probe(self, route: Route) -> Measurement | None:
        try:
            return await self._prober.probe(route, timeout=self._probe_timeout)
        except Exception as e:
            logger.exception(
                "probe_crashed",
                cluster=route.cluster,
                host=route.host,
                namespace=route.namespace,
                name=route.name,
                error=str(e),
            )
            return None

    def families(self, measurements: list[Measurement]) -> list[GaugeMetricFamily]:
        """Turn measurements into one gauge family per descriptor."""
        families = []
        for key, descriptor in self._descriptors.items():
            family = descriptor.family()
            for m in measurements:
                try:
                    label_values, value = descriptor.sample(m)
                except Exception as e:
                    logger.debug(
                        "descriptor_skipped",
                        descriptor=key,
                        cluster=m.spec.cluster,
                        host=m.spec.host,
                        error=str(e),
                    )
                    continue
                family.add_metric(label_values, value)
            families.append(family)
        return families
