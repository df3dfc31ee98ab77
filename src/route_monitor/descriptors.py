"""Gauge descriptors computed from probe measurements.

Every entry of :data:`DESCRIPTOR_TABLE` becomes one gauge. Each probed route
contributes one sample per gauge, labeled with the route's identity plus any
extra labels the value function returns.
"""

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType

from prometheus_client.core import GaugeMetricFamily

from .prober import Measurement

NAMESPACE = "ormon"

BASE_LABELS = ("host", "path", "ssl", "cluster", "uid", "namespace", "name")

ValueFunc = Callable[[Measurement], tuple[float, Sequence[str]]]


@dataclass(frozen=True)
class DescriptorSpec:
    """One row of the static descriptor table."""

    name: str
    documentation: str
    value: ValueFunc
    extra_labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class MetricDescriptor:
    """A named gauge and the function computing its value."""

    name: str
    documentation: str
    labels: tuple[str, ...]
    value: ValueFunc

    def family(self) -> GaugeMetricFamily:
        """An empty gauge family for this descriptor."""
        return GaugeMetricFamily(self.name, self.documentation, labels=self.labels)

    def sample(self, m: Measurement) -> tuple[list[str], float]:
        """Label values and value for one measurement.

        Raises:
            ValueError: If the label values do not match the label names.
        """
        value, extra = self.value(m)
        spec = m.spec
        label_values = [
            spec.host,
            spec.path,
            "true" if spec.ssl else "false",
            spec.cluster,
            spec.uid,
            spec.namespace,
            spec.name,
            *extra,
        ]
        if len(label_values) != len(self.labels):
            raise ValueError(
                f"{self.name}: got {len(label_values)} label values for {len(self.labels)} labels"
            )
        return label_values, float(value)


def _flag(attr: str) -> ValueFunc:
    def value(m: Measurement) -> tuple[float, Sequence[str]]:
        return (1.0 if getattr(m, attr) else 0.0), ()

    return value


def _seconds(attr: str) -> ValueFunc:
    def value(m: Measurement) -> tuple[float, Sequence[str]]:
        return getattr(m, attr), ()

    return value


def _ssl_expires(m: Measurement) -> tuple[float, Sequence[str]]:
    if m.expires is None:
        # no certificate
        return -1.0, ()
    return (m.expires - datetime.now(UTC)).total_seconds(), ()


DESCRIPTOR_TABLE: tuple[DescriptorSpec, ...] = (
    DescriptorSpec("resolved_seconds", "time to resolve hostname", _seconds("resolved")),
    DescriptorSpec("connected_seconds", "time to open the connection", _seconds("connected")),
    DescriptorSpec(
        "wrote_request_seconds", "time until the full request was sent", _seconds("wrote_request")
    ),
    DescriptorSpec(
        "read_first_byte_seconds", "time until first byte was read", _seconds("read_first_byte")
    ),
    DescriptorSpec("read_body_seconds", "time until full body was read", _seconds("read_body")),
    DescriptorSpec("ssl_expires_seconds", "seconds until the ssl expires", _ssl_expires),
    DescriptorSpec(
        "redirect_count", "number of http redirects", lambda m: (float(m.redirect_count), ())
    ),
    DescriptorSpec("body_size_bytes", "size of the downloaded body", lambda m: (float(m.size), ())),
    DescriptorSpec(
        "status_code", "http status code of the final response", lambda m: (float(m.status_code), ())
    ),
    DescriptorSpec("invalid_route_error", "route cannot be probed", _flag("invalid_route_err")),
    DescriptorSpec("invalid_request_error", "errors during request", _flag("invalid_request_err")),
    DescriptorSpec("connection_error", "errors during connection opening", _flag("connection_err")),
    DescriptorSpec("body_download_error", "errors during body download", _flag("body_download_err")),
    DescriptorSpec("invalid_statuscode_error", "invalid statuscode", _flag("invalid_status_code_err")),
    DescriptorSpec("invalid_body_regex_error", "invalid regex", _flag("invalid_body_regex_err")),
    DescriptorSpec("invalid_body_error", "invalid body", _flag("invalid_body_err")),
)


def build_descriptors(
    table: Iterable[DescriptorSpec] = DESCRIPTOR_TABLE,
    namespace: str = NAMESPACE,
) -> Mapping[str, MetricDescriptor]:
    """Build the descriptors once, keyed by their short name.

    Raises:
        ValueError: On duplicate names in ``table``.
    """
    descriptors: dict[str, MetricDescriptor] = {}
    for row in table:
        if row.name in descriptors:
            raise ValueError(f"Duplicate descriptor '{row.name}'")
        descriptors[row.name] = MetricDescriptor(
            name=f"{namespace}_{row.name}",
            documentation=row.documentation,
            labels=BASE_LABELS + row.extra_labels,
            value=row.value,
        )
    return MappingProxyType(descriptors)
