"""Route entity and probe spec extraction.

A :class:`Route` is the slice of an OpenShift ``route.openshift.io/v1``
object the monitor cares about. :func:`probe_spec` turns it into the
:class:`ProbeSpec` a probe runs against, honouring the ``thobits.com/ormon-*``
annotations.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from .types import JSONObject

ANNOTATION_SKIP = "thobits.com/ormon-skip"
ANNOTATION_METHOD = "thobits.com/ormon-method"
ANNOTATION_VALID_STATUS_CODES = "thobits.com/ormon-valid-statuscodes"
ANNOTATION_BODY_REGEX = "thobits.com/ormon-body-regex"

ACME_CHALLENGE_PREFIX = "/.well-known/acme-challenge/"

DEFAULT_METHOD = "GET"
DEFAULT_VALID_STATUS_CODES = ("200",)

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}


@dataclass(frozen=True)
class Route:
    """An externally exposed route discovered in a cluster."""

    cluster: str
    namespace: str
    name: str
    uid: str
    host: str
    path: str = ""
    tls: bool = False
    annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Cache key, unique per cluster."""
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_object(cls, obj: JSONObject, cluster: str) -> "Route":
        """Build a Route from a raw Route object as returned by the API.

        Args:
            obj: Deserialized ``Route`` resource.
            cluster: Identifier of the cluster the object came from.
        """
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        annotations = metadata.get("annotations") or {}
        return cls(
            cluster=cluster,
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            uid=metadata.get("uid") or "",
            host=spec.get("host") or "",
            path=spec.get("path") or "",
            tls=spec.get("tls") is not None,
            annotations={str(k): str(v) for k, v in annotations.items()},
        )


@dataclass(frozen=True)
class ProbeSpec:
    """What to probe for one route and how to judge the response."""

    skip: bool
    ssl: bool
    host: str
    proto: str
    path: str
    url: str
    method: str
    valid_status_codes: tuple[str, ...]
    body_regex: str
    cluster: str
    uid: str
    namespace: str
    name: str


def parse_bool(value: str) -> bool:
    """Parse a boolean annotation; unrecognised values are false."""
    return value in _TRUE_VALUES


def probe_spec(route: Route) -> ProbeSpec:
    """Derive the probe spec for a route.

    The URL carries no path: every route is probed at ``/`` of
    its host while ``path`` is only reported as a label.
    """
    annotations = route.annotations
    ssl = route.tls
    proto = "https" if ssl else "http"

    if route.path.startswith(ACME_CHALLENGE_PREFIX):
        skip = True
    else:
        skip = parse_bool(annotations.get(ANNOTATION_SKIP, "false"))

    method = annotations.get(ANNOTATION_METHOD, "").strip().upper() or DEFAULT_METHOD

    # Blank entries are dropped; nothing left means the default.
    codes = annotations.get(ANNOTATION_VALID_STATUS_CODES, "").split(",")
    valid_status_codes = (
        tuple(code.strip() for code in codes if code.strip()) or DEFAULT_VALID_STATUS_CODES
    )

    return ProbeSpec(
        skip=skip,
        ssl=ssl,
        host=route.host,
        proto=proto,
        path=route.path,
        url=f"{proto}://{route.host}",
        method=method,
        valid_status_codes=valid_status_codes,
        body_regex=annotations.get(ANNOTATION_BODY_REGEX, ""),
        cluster=route.cluster,
        uid=route.uid,
        namespace=route.namespace,
        name=route.name,
    )
