"""Instrumented HTTP probe for a single route.

One probe resolves the route's host, issues the request through a fresh
``httpx.AsyncClient`` and records when each phase finished, how many
redirects were followed, how much body was read, the earliest certificate
expiry in the peer chain and which validations failed.
"""

import asyncio
import re
import socket
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from cryptography import x509
from opentelemetry import trace
from opentelemetry.trace import SpanKind

from .route import ProbeSpec, Route, probe_spec

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

MAX_REDIRECTS = 10
DEFAULT_PROBE_TIMEOUT = 9.0

_leaf_only_warned = False

# RFC 9110 token
_METHOD_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

Resolver = Callable[[str, int], Awaitable[Any]]


async def resolve_host(host: str, port: int) -> None:
    """Resolve ``host`` through the event loop's resolver."""
    loop = asyncio.get_running_loop()
    await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)


@dataclass
class Measurement:
    """Result of probing one route.

    Phase markers are seconds since the probe started. Error flags are
    independent of each other; several can be set for the same probe.
    """

    spec: ProbeSpec
    start: datetime | None = None
    resolved: float = 0.0
    connected: float = 0.0
    wrote_request: float = 0.0
    read_first_byte: float = 0.0
    read_body: float = 0.0
    expires: datetime | None = None
    size: int = 0
    redirect_count: int = 0
    status_code: int = 0

    invalid_route_err: bool = False
    invalid_request_err: bool = False
    connection_err: bool = False
    body_download_err: bool = False
    invalid_status_code_err: bool = False
    invalid_body_regex_err: bool = False
    invalid_body_err: bool = False


def expires_first(not_afters: Iterable[datetime | None]) -> datetime | None:
    """Return the earliest expiry, ignoring certificates without one."""
    earliest: datetime | None = None
    for not_after in not_afters:
        if not_after is None:
            continue
        if earliest is None or not_after < earliest:
            earliest = not_after
    return earliest


def _not_after(der: bytes) -> datetime | None:
    try:
        return x509.load_der_x509_certificate(der).not_valid_after_utc
    except ValueError as e:
        logger.warning("certificate_parse_failed", error=str(e))
        return None


def peer_certificate_expiry(response: httpx.Response) -> datetime | None:
    """Earliest ``not_after`` in the TLS peer chain of ``response``.

    Returns None for plain HTTP responses or transports that do not expose a
    network stream. Interpreters without ``get_unverified_chain`` only give
    access to the leaf certificate, which is logged once per process.
    """
    stream = response.extensions.get("network_stream")
    if stream is None:
        return None
    ssl_object = stream.get_extra_info("ssl_object")
    if ssl_object is None:
        return None

    if hasattr(ssl_object, "get_unverified_chain"):
        chain = ssl_object.get_unverified_chain() or []
    else:
        _warn_leaf_only()
        leaf = ssl_object.getpeercert(binary_form=True)
        chain = [leaf] if leaf else []
    return expires_first(_not_after(der) for der in chain)


def _warn_leaf_only() -> None:
    global _leaf_only_warned
    if _leaf_only_warned:
        return
    _leaf_only_warned = True
    logger.warning(
        "peer_chain_unavailable",
        detail="ssl_expires_seconds reflects the leaf certificate only; "
        "intermediates are checked on Python 3.13+",
    )


class Prober:
    """Probes routes over HTTP(S) without verifying certificate chains."""

    def __init__(
        self,
        *,
        max_redirects: int = MAX_REDIRECTS,
        transport: httpx.AsyncBaseTransport | None = None,
        resolver: Resolver = resolve_host,
    ) -> None:
        """Initialize the prober.

        Args:
            max_redirects: Redirect hops followed before giving up.
            transport: Transport handed to every client; closed with it.
            resolver: Coroutine resolving ``(host, port)``; raises on failure.
        """
        self._max_redirects = max_redirects
        self._transport = transport
        self._resolver = resolver

    async def probe(
        self, route: Route, timeout: float = DEFAULT_PROBE_TIMEOUT
    ) -> Measurement | None:
        """Probe a route.

        Args:
            route: Route to probe.
            timeout: Deadline for the whole probe, body download included.

        Returns:
            The measurement, or None when the route is marked as skipped.
        """
        spec = probe_spec(route)
        if spec.skip:
            logger.debug("probe_skipped", cluster=spec.cluster, host=spec.host, path=spec.path)
            return None

        measurement = Measurement(spec=spec)
        with tracer.start_as_current_span("route.probe", kind=SpanKind.CLIENT) as span:
            span.set_attribute("http.request.method", spec.method)
            span.set_attribute("url.full", spec.url)
            span.set_attribute("route.cluster", spec.cluster)
            span.set_attribute("route.namespace", spec.namespace)
            span.set_attribute("route.name", spec.name)
            await self._run(measurement, timeout)
            span.set_attribute("http.response.status_code", measurement.status_code)
            span.set_attribute("route.redirect_count", measurement.redirect_count)
        return measurement

    async def _run(self, m: Measurement, timeout: float) -> None:
        spec = m.spec
        if not spec.host:
            m.invalid_route_err = True
            self._log_error(m, "probe_invalid_route", "route has no host")
            return

        try:
            if not _METHOD_RE.match(spec.method):
                raise ValueError(f"invalid method {spec.method!r}")
            url = httpx.URL(spec.url)
            if not url.host:
                raise ValueError(f"no host in {spec.url!r}")
        except (httpx.InvalidURL, ValueError) as e:
            m.invalid_request_err = True
            self._log_error(m, "probe_invalid_request", str(e))
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        m.start = datetime.now(UTC)
        started = time.perf_counter()

        def elapsed() -> float:
            return time.perf_counter() - started

        async def on_trace(event_name: str, info: dict[str, Any]) -> None:
            if event_name.endswith(("connect_tcp.complete", "start_tls.complete")):
                m.connected = elapsed()
            elif event_name.endswith("send_request_body.complete"):
                m.wrote_request = elapsed()
            elif event_name.endswith("receive_response_headers.complete"):
                m.read_first_byte = elapsed()

        async def on_response(response: httpx.Response) -> None:
            if response.has_redirect_location:
                m.redirect_count += 1

        async with httpx.AsyncClient(
            verify=False,
            follow_redirects=True,
            max_redirects=self._max_redirects,
            timeout=timeout,
            transport=self._transport,
            event_hooks={"response": [on_response]},
        ) as client:
            request = client.build_request(spec.method, url, extensions={"trace": on_trace})

            try:
                async with asyncio.timeout_at(deadline):
                    await self._resolver(url.host, url.port or (443 if spec.ssl else 80))
                    m.resolved = elapsed()
                    response = await client.send(request, stream=True)
            except (httpx.HTTPError, OSError, UnicodeError, TimeoutError) as e:
                m.connection_err = True
                self._log_error(m, "probe_connection_error", str(e) or type(e).__name__)
                return

            try:
                await self._read_response(m, response, deadline, elapsed)
            finally:
                await response.aclose()

    async def _read_response(
        self,
        m: Measurement,
        response: httpx.Response,
        deadline: float,
        elapsed: Callable[[], float],
    ) -> None:
        spec = m.spec
        m.status_code = response.status_code
        if str(response.status_code) not in spec.valid_status_codes:
            m.invalid_status_code_err = True
            self._log_error(
                m,
                "probe_invalid_status_code",
                f"statuscode {response.status_code} not in {','.join(spec.valid_status_codes)}",
            )

        # The stream is only guaranteed to be open before the body is drained.
        expires = peer_certificate_expiry(response)

        body = bytearray()
        try:
            async with asyncio.timeout_at(deadline):
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
        except (httpx.HTTPError, OSError, TimeoutError) as e:
            m.size = len(body)
            m.body_download_err = True
            self._log_error(m, "probe_body_download_error", str(e) or type(e).__name__)
            return
        m.size = len(body)
        m.read_body = elapsed()

        try:
            pattern = re.compile(spec.body_regex.encode("utf-8"))
        except re.error as e:
            m.invalid_body_regex_err = True
            self._log_error(m, "probe_invalid_body_regex", str(e))
            return
        if pattern.search(body) is None:
            m.invalid_body_err = True
            self._log_error(m, "probe_invalid_body", "body regex does not match")
            return

        m.expires = expires

    @staticmethod
    def _log_error(m: Measurement, event: str, error: str) -> None:
        logger.error(
            event,
            error=error,
            cluster=m.spec.cluster,
            host=m.spec.host,
            namespace=m.spec.namespace,
            name=m.spec.name,
        )
