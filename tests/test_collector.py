"""Tests for the scrape-time route collector."""

import asyncio

import httpx
import pytest
from prometheus_client import CollectorRegistry, generate_latest

from route_monitor.collector import RouteCollector
from route_monitor.descriptors import DESCRIPTOR_TABLE, DescriptorSpec, build_descriptors
from route_monitor.prober import Prober
from route_monitor.route import ANNOTATION_SKIP, Route


async def fake_resolve(host: str, port: int) -> None:
    return None


class FakeLister:
    def __init__(self, routes: list[Route]) -> None:
        self.routes = routes
        self.calls = 0

    def list(self) -> list[Route]:
        self.calls += 1
        return list(self.routes)


def make_route(name: str, annotations: dict | None = None) -> Route:
    return Route(
        cluster="c1",
        namespace="prod",
        name=name,
        uid=f"uid-{name}",
        host=f"{name}.example.com",
        annotations=annotations or {},
    )


def handler(request: httpx.Request) -> httpx.Response:
    host = request.url.host
    if host.startswith("down."):
        raise httpx.ConnectError("connection refused", request=request)
    if host.startswith("teapot."):
        return httpx.Response(418, text="short and stout")
    return httpx.Response(200, text="ok")


def make_collector(routes: list[Route], descriptors=None, prober=None, **kwargs) -> RouteCollector:
    prober = prober or Prober(transport=httpx.MockTransport(handler), resolver=fake_resolve)
    return RouteCollector(
        FakeLister(routes), descriptors or build_descriptors(), prober=prober, **kwargs
    )


def samples_by_name(families) -> dict[str, dict[str, float]]:
    """``{metric name: {route name label: value}}``."""
    result: dict[str, dict[str, float]] = {}
    for family in families:
        result[family.name] = {s.labels["name"]: s.value for s in family.samples}
    return result


def test_one_sample_per_route_and_descriptor():
    routes = [make_route("up"), make_route("down"), make_route("teapot")]
    families = list(make_collector(routes).collect())

    assert len(families) == len(DESCRIPTOR_TABLE)
    for family in families:
        assert family.type == "gauge"
        assert sorted(s.labels["name"] for s in family.samples) == ["down", "teapot", "up"]

    samples = samples_by_name(families)
    assert samples["ormon_connection_error"] == {"up": 0.0, "down": 1.0, "teapot": 0.0}
    assert samples["ormon_invalid_statuscode_error"] == {"up": 0.0, "down": 0.0, "teapot": 1.0}
    assert samples["ormon_status_code"] == {"up": 200.0, "down": 0.0, "teapot": 418.0}


def test_skipped_routes_contribute_no_samples():
    routes = [make_route("up"), make_route("quiet", {ANNOTATION_SKIP: "true"})]
    samples = samples_by_name(make_collector(routes).collect())

    assert all(set(values) == {"up"} for values in samples.values())


def test_no_routes_yields_empty_families():
    families = list(make_collector([]).collect())

    assert len(families) == len(DESCRIPTOR_TABLE)
    assert all(family.samples == [] for family in families)


def test_describe_does_not_probe():
    lister = FakeLister([make_route("up")])
    collector = RouteCollector(lister, build_descriptors())

    names = {family.name for family in collector.describe()}

    assert "ormon_connection_error" in names
    assert lister.calls == 0


def test_failing_descriptor_only_skips_its_sample():
    def explode(m):
        raise ZeroDivisionError("bad extractor")

    table = (
        DescriptorSpec("exploding", "always fails", explode),
        DescriptorSpec("redirect_count", "number of http redirects", lambda m: (m.redirect_count, ())),
    )
    collector = make_collector([make_route("up")], descriptors=build_descriptors(table))

    samples = samples_by_name(collector.collect())

    assert samples["ormon_exploding"] == {}
    assert samples["ormon_redirect_count"] == {"up": 0.0}


def test_crashing_probe_does_not_cancel_others():
    class CrashingProber(Prober):
        async def probe(self, route, timeout=9.0):
            if route.name == "cursed":
                raise RuntimeError("unexpected")
            return await super().probe(route, timeout)

    prober = CrashingProber(transport=httpx.MockTransport(handler), resolver=fake_resolve)
    collector = make_collector([make_route("cursed"), make_route("up")], prober=prober)

    samples = samples_by_name(collector.collect())

    assert samples["ormon_connection_error"] == {"up": 0.0}


def test_slow_route_is_bounded_by_probe_timeout():
    async def slow_handler(request):
        if request.url.host.startswith("slow."):
            await asyncio.sleep(5)
        return httpx.Response(200, text="ok")

    prober = Prober(transport=httpx.MockTransport(slow_handler), resolver=fake_resolve)
    collector = make_collector(
        [make_route("slow"), make_route("fast")], prober=prober, probe_timeout=0.1
    )

    samples = samples_by_name(collector.collect())

    assert samples["ormon_connection_error"] == {"slow": 1.0, "fast": 0.0}


@pytest.mark.asyncio
async def test_probes_run_concurrently():
    """Every route is in flight at the same time."""
    in_flight = 0
    peak = 0

    async def counting_handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.05)
        in_flight -= 1
        return httpx.Response(200, text="ok")

    prober = Prober(transport=httpx.MockTransport(counting_handler), resolver=fake_resolve)
    collector = make_collector([make_route(f"r{i}") for i in range(8)], prober=prober)

    measurements = await collector.probe_all([make_route(f"r{i}") for i in range(8)])

    assert len(measurements) == 8
    assert peak == 8


def test_collect_does_not_touch_route_cache():
    routes = [make_route("up")]
    lister = FakeLister(routes)
    prober = Prober(transport=httpx.MockTransport(handler), resolver=fake_resolve)
    collector = RouteCollector(lister, build_descriptors(), prober=prober)

    list(collector.collect())
    list(collector.collect())

    assert lister.routes == routes
    assert lister.calls == 2


def test_exposition_output():
    registry = CollectorRegistry()
    registry.register(make_collector([make_route("up")]))

    output = generate_latest(registry).decode()

    assert "# TYPE ormon_connection_error gauge" in output
    assert (
        'ormon_connection_error{host="up.example.com",path="",ssl="false",cluster="c1",'
        'uid="uid-up",namespace="prod",name="up"} 0.0'
    ) in output
