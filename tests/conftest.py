"""Pytest configuration and fixtures."""

from pathlib import Path
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


def make_route_object(
    name: str = "svc",
    namespace: str = "prod",
    host: str = "svc.example.com",
    path: str = "",
    tls: bool = False,
    annotations: dict | None = None,
    uid: str | None = None,
    resource_version: str = "1",
) -> dict:
    """A Route resource as returned by the OpenShift API."""
    spec: dict = {"host": host, "to": {"kind": "Service", "name": name}}
    if path:
        spec["path"] = path
    if tls:
        spec["tls"] = {"termination": "edge"}
    return {
        "apiVersion": "route.openshift.io/v1",
        "kind": "Route",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": uid or f"uid-{namespace}-{name}",
            "resourceVersion": resource_version,
            "annotations": annotations or {},
        },
        "spec": spec,
    }


@pytest.fixture
def route_object():
    """Factory for raw Route resources."""
    return make_route_object


@pytest.fixture
def sample_route():
    """A plain HTTP route in the prod namespace."""
    from route_monitor.route import Route

    return Route.from_object(make_route_object(), cluster="c1")


@pytest.fixture
def sample_tls_route():
    """An edge-terminated route with a configured path."""
    from route_monitor.route import Route

    return Route.from_object(
        make_route_object(name="web", host="web.example.com", path="/app", tls=True),
        cluster="c1",
    )
