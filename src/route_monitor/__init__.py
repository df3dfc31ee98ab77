"""OpenShift route monitor.

A Prometheus exporter that discovers routes across one or more OpenShift
clusters and probes every route's HTTP(S) endpoint on each scrape, exposing
phase timings, certificate expiry and validation errors as gauges.

Modules:
    config: YAML and environment configuration using pydantic
    route: Route entity and probe spec extraction from annotations
    prober: Instrumented HTTP probe producing a Measurement
    watcher: Restart-resilient list/watch cache of routes for one cluster
    multiwatch: Fan-in of several cluster watchers
    descriptors: Static table of gauge descriptors
    collector: prometheus_client collector probing all routes per scrape

Example:
    Run the exporter::

        $ CONFIG=./config.yml uv run route-monitor
"""

__version__ = "0.1.0"

from .config import AppSettings, Settings, load_settings

__all__ = ["AppSettings", "Settings", "load_settings", "__version__"]
