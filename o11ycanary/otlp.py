"""Resource description and OTLP/HTTP metric export."""

from __future__ import annotations

import logging
import ssl
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

SERVICE_STRING = "o11y-canary"
EXPORT_INTERVAL_BUFFER = 5.0

log = logging.getLogger(__name__)


def _encode_value(value: Any) -> dict:
    if isinstance(value, bool):
        return {"boolValue": value}
    if isinstance(value, int):
        return {"intValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [_encode_value(v) for v in value]}}
    return {"stringValue": str(value)}


def _encode_attributes(attributes: Mapping[str, Any]) -> list[dict]:
    return [{"key": k, "value": _encode_value(v)} for k, v in attributes.items()]


def _endpoint_url(endpoint: str, path: str, secure: bool) -> str:
    url = endpoint if "://" in endpoint else ("https://" if secure else "http://") + endpoint
    url = url.rstrip("/")
    return url if url.endswith(path) else url + path


def _post(client: httpx.Client, url: str, payload: dict, timeout: float) -> None:
    try:
        response = client.post(url, json=payload, timeout=timeout)
    except httpx.HTTPError as exc:
        raise ConnectionError(f"export to {url} failed: {exc}") from exc
    if response.status_code >= 300:
        raise ConnectionError(f"export to {url} failed with status {response.status_code}")


@dataclass(frozen=True)
class Resource:
    """Attributes describing the entity that produces telemetry."""

    attributes: dict[str, Any] = field(default_factory=dict)

    def to_otlp(self) -> dict:
        return {"attributes": _encode_attributes(self.attributes)}


def initialize_resource(version: str, service_name: str = SERVICE_STRING) -> Resource:
    """Resource with service name, namespace and version."""
    return Resource(
        {"service.name": service_name, "service.namespace": SERVICE_STRING, "service.version": version}
    )


class OTLPMetricExporter:
    """Sends metrics as OTLP JSON over HTTP."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        verify: ssl.SSLContext | bool = True,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = _endpoint_url(endpoint, "/v1/metrics", isinstance(verify, ssl.SSLContext))
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(verify=verify)

    def export(self, resource: Resource, points: list[dict]) -> None:
        scope = {"scope": {"name": "o11y-canary-exported-data"}, "metrics": points}
        payload = {"resourceMetrics": [{"resource": resource.to_otlp(), "scopeMetrics": [scope]}]}
        _post(self._client, self.url, payload, self.timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class CanaryGauge:
    """A gauge that keeps the last value for each attribute set."""

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._lock = threading.Lock()
        self._points: dict[tuple, tuple[float, int]] = {}

    def record(self, value: float, attributes: Mapping[str, Any] | None = None) -> None:
        key = tuple(sorted((attributes or {}).items()))
        with self._lock:
            self._points[key] = (float(value), time.time_ns())

    def _to_otlp(self) -> dict | None:
        with self._lock:
            points = list(self._points.items())
        if not points:
            return None
        data = [
            {"attributes": _encode_attributes(dict(k)), "timeUnixNano": str(ts), "asDouble": v}
            for k, (v, ts) in points
        ]
        return {"name": self.name, "description": self.description, "gauge": {"dataPoints": data}}


class MeterProvider:
    """Owns gauges and exports them periodically and on demand."""

    def __init__(self, resource: Resource, exporter: OTLPMetricExporter, interval: float = 60.0) -> None:
        self.resource = resource
        self.exporter = exporter
        self.interval = interval
        self._gauges: dict[str, CanaryGauge] = {}
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._closed = False

    def gauge(self, name: str, description: str = "") -> CanaryGauge:
        with self._lock:
            return self._gauges.setdefault(name, CanaryGauge(name, description))

    def collect(self) -> list[dict]:
        with self._lock:
            gauges = list(self._gauges.values())
        return [m for m in (g._to_otlp() for g in gauges) if m is not None]

    def force_flush(self) -> bool:
        """Export current values; returns whether anything was sent."""
        if self._closed:
            raise RuntimeError("meter provider is shut down")
        metrics = self.collect()
        if not metrics:
            return False
        with self._flush_lock:
            self.exporter.export(self.resource, metrics)
        return True

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.force_flush()
            except Exception as exc:
                log.error("periodic metric export failed: %s", exc)

    def start(self) -> None:
        if self._thread is None and not self._closed:
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()

    def shutdown(self) -> None:
        if self._closed:
            return
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        try:
            self.force_flush()
        finally:
            self._closed = True
            self.exporter.close()


def init_otlp_meter_provider(resource: Resource, exporter: OTLPMetricExporter, timeout: float) -> MeterProvider:
    """Start a provider exporting every ``timeout`` plus a small buffer."""
    exporter.timeout = timeout
    provider = MeterProvider(resource, exporter, interval=timeout + EXPORT_INTERVAL_BUFFER)
    provider.start()
    return provider