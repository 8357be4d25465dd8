"""Writing canaried metrics over OTLP and reading them back from a Prometheus API."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

import httpx

from .config import ConfigError, TLSConfig
from .otlp import CanaryGauge, MeterProvider, OTLPMetricExporter, Resource, init_otlp_meter_provider
from .tlsutil import build_ssl_context

CANARY_METRIC = "o11y_canary_canaried_metric_total"
QUERY_PATH = "/api/v1/query"

log = logging.getLogger(__name__)

T = TypeVar("T")


class CanaryError(Exception):
    """Raised when a canary write or query fails."""


class _Timeout(Exception):
    pass


def build_query(request_id: str) -> str:
    """PromQL selecting the canaried series for one request ID."""
    return f'{CANARY_METRIC}{{canary="true", canary_request_id="{request_id}"}}'


def _format_duration(seconds: float) -> str:
    for scale, unit in ((1, "s"), (1e-3, "ms"), (1e-6, "µs")):
        if seconds == 0 or seconds >= scale:
            return f"{seconds / scale:g}{unit}"
    return f"{seconds * 1e9:g}ns"


def _run_with_timeout(func: Callable[[], T], timeout: float) -> T:
    """Run ``func`` in a worker thread, raising _Timeout if it takes too long."""
    outcome: dict[str, Any] = {}

    def worker() -> None:
        try:
            outcome["value"] = func()
        except BaseException as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    thread.join(timeout)
    if thread.is_alive():
        raise _Timeout()
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


@dataclass
class CanaryClient:
    """An OTLP meter provider bound to one ingest target, with its gauge."""

    target: str
    provider: MeterProvider
    gauge: CanaryGauge
    http_client: httpx.Client

    def close(self) -> None:
        """Shut down the provider and release the connection."""
        try:
            self.provider.shutdown()
        except Exception as exc:
            log.error("Failed to shut down meter provider target=%s error=%s", self.target, exc)
        finally:
            self.http_client.close()

    def __enter__(self) -> CanaryClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


@dataclass
class Canary:
    """State shared by the series of one canary.

    ``insertion_timestamps`` maps request IDs to the monotonic time of their
    write, or to the error that ended it.
    """

    transport: httpx.BaseTransport | None = None
    insertion_timestamps: dict[str, float | Exception] = field(default_factory=dict)
    active_request_ids: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _http_client(self, tls_config: TLSConfig | None, **kwargs: Any) -> tuple[httpx.Client, Any]:
        try:
            context = build_ssl_context(tls_config)
        except ConfigError as exc:
            raise CanaryError(str(exc)) from exc
        verify = context if context is not None else True
        return httpx.Client(verify=verify, transport=self.transport, **kwargs), verify

    def init_client(
        self, resource: Resource, target: str, interval: float, timeout: float, tls_config: TLSConfig | None
    ) -> CanaryClient:
        """Create a meter provider exporting to ``target`` and its canary gauge."""
        log.debug("Setting up OTLP client target=%s tls_enabled=%s", target, bool(tls_config and tls_config.enabled))
        http_client, verify = self._http_client(tls_config)
        try:
            exporter = OTLPMetricExporter(target, timeout=timeout, verify=verify, client=http_client)
            provider = init_otlp_meter_provider(resource, exporter, timeout)
        except Exception as exc:
            http_client.close()
            raise CanaryError(f"failed to create meter provider: {exc}") from exc
        gauge = provider.gauge(CANARY_METRIC, "o11y canary test metric for canarying")
        return CanaryClient(target=target, provider=provider, gauge=gauge, http_client=http_client)

    def write(self, client: CanaryClient, targets: list[str], request_id: str, write_timeout: float) -> None:
        """Record the canaried metric for each target and flush it."""

        def work() -> None:
            for target in targets:
                labels = {"target": target, "canary": "true", "canary_request_id": request_id}
                client.gauge.record(float(random.randrange(100)), labels)
                try:
                    client.provider.force_flush()
                except Exception as exc:
                    log.error("Failed to force flush metrics error=%s", exc)

        try:
            _run_with_timeout(work, write_timeout)
        except _Timeout:
            error = CanaryError(f"write operation timed out after {_format_duration(write_timeout)}")
            log.error("Write timeout canary_request_id=%s", request_id)
            self.insertion_timestamps[request_id] = error
            raise error from None

    def _query_one(self, target: str, request_id: str, query_timeout: float, tls_config: TLSConfig | None) -> None:
        http_client, verify = self._http_client(tls_config, timeout=query_timeout)
        params = {"query": build_query(request_id), "time": f"{time.time():.3f}"}
        base = target if "://" in target else ("http://" if verify is True else "https://") + target
        url = base.rstrip("/") + QUERY_PATH
        with http_client:
            try:
                response = http_client.post(url, data=params)
                if response.status_code in (405, 501):
                    response = http_client.get(url, params=params)
            except httpx.HTTPError as exc:
                raise CanaryError(f"query to {target} failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise CanaryError(f"query to {target} returned an unreadable body (status {response.status_code})") from exc
        if not isinstance(body, dict):
            raise CanaryError(f"query to {target} returned an unexpected body")
        if response.status_code >= 300 or body.get("status") != "success":
            detail = body.get("error") or f"status {response.status_code}"
            kind = body.get("errorType")
            raise CanaryError(f"{kind}: {detail}" if kind else str(detail))
        if body.get("warnings"):
            log.info("Warning when querying target target=%s warnings=%s", target, body["warnings"])
        data = body.get("data")
        if not (isinstance(data, dict) and data.get("result")):
            log.warning("Metric not found in query result target=%s canary_request_id=%s", target, request_id)
            raise CanaryError(f"metric not found in query result for target {target} with request ID {request_id}")

    def query(
        self, query_targets: list[str], request_id: str, query_timeout: float, tls_config: TLSConfig | None
    ) -> None:
        """Query every target for the request's series; raise the last failure."""

        def work() -> None:
            last_error: CanaryError | None = None
            for target in query_targets:
                try:
                    self._query_one(target, request_id, query_timeout, tls_config)
                except CanaryError as exc:
                    if isinstance(exc.__cause__, ConfigError):
                        raise
                    last_error = exc
            if last_error is not None:
                raise last_error

        try:
            _run_with_timeout(work, query_timeout)
        except _Timeout:
            error = CanaryError(f"query operation timed out after {_format_duration(query_timeout)}")
            self.insertion_timestamps[request_id] = error
            log.error("Query timeout canary_request_id=%s", request_id)
            raise error from None

    def next_request_id(self, candidate: str, series_index: int, max_active_series: int) -> str:
        """Use ``candidate`` while below the limit, else reuse a rotating active ID."""
        with self._lock:
            if len(self.active_request_ids) < max_active_series:
                self.active_request_ids.append(candidate)
                return candidate
            return self.active_request_ids[series_index % max_active_series]