"""Prometheus self-metrics for the route monitor.

Per-route probe gauges are produced by :mod:`route_monitor.collector`; the
metrics here describe the exporter itself.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# -- Service info --
SERVICE_INFO = Info("ormon", "Route monitor build info")

# -- Watchers --
WATCH_RESTARTS = Counter(
    "ormon_watch_restarts_total",
    "Total route watch restarts after a failed or closed stream",
    ["cluster"],
)
WATCH_EVENTS = Counter(
    "ormon_watch_events_total",
    "Total route watch events applied to the cache",
    ["cluster", "type"],
)
ROUTES = Gauge(
    "ormon_routes",
    "Routes currently held in the watch cache",
    ["cluster"],
)

# -- Collection --
COLLECT_DURATION = Histogram(
    "ormon_collect_duration_seconds",
    "Time to probe every route during one scrape",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)
