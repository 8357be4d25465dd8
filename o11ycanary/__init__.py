"""Metrics pipeline canary: configuration, OTLP metric writes, Prometheus queries and a metrics server."""

__version__ = "0.1.0"