"""Canary configuration model and YAML loading."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, IO

import yaml

DEFAULT_MAX_ACTIVE_SERIES = 50
DEFAULT_INTERVAL = 5.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_QUERY_TIMEOUT = 60.0
DEFAULT_TYPE = "metrics"

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class ConfigError(ValueError):
    """Raised when a configuration cannot be read or is malformed."""


def parse_duration(text: Any) -> float:
    """Parse a duration such as ``5m`` or ``1h30m`` into seconds.

    Bare integers are taken as nanoseconds.
    """
    if isinstance(text, bool):
        raise ConfigError(f"invalid duration: {text!r}")
    if isinstance(text, (int, float)):
        return text / 1e9
    if not isinstance(text, str):
        raise ConfigError(f"invalid duration: {text!r}")
    s = text.strip()
    sign = 1.0
    if s[:1] in ("+", "-"):
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ConfigError(f"invalid duration: {text!r}")
    total = 0.0
    pos = 0
    while pos < len(s):
        match = _PART.match(s, pos)
        if match is None:
            raise ConfigError(f"invalid duration: {text!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def _mapping(value: Any, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: expected a mapping")
    return value


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ConfigError(f"{where}: expected a string")
    return str(value)


def _boolean(value: Any, where: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigError(f"{where}: expected a boolean")
    return value


def _integer(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}: expected an integer")
    return value


@dataclass
class TLSConfig:
    """TLS settings for a connection."""

    enabled: bool = False
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    server_name: str = ""
    insecure_skip_verify: bool = False

    @classmethod
    def _from_dict(cls, data: Any, where: str) -> TLSConfig | None:
        if data is None:
            return None
        data = _mapping(data, where)
        return cls(
            enabled=_boolean(data.get("enabled"), f"{where}.enabled"),
            ca_file=_string(data.get("ca_file"), f"{where}.ca_file"),
            cert_file=_string(data.get("cert_file"), f"{where}.cert_file"),
            key_file=_string(data.get("key_file"), f"{where}.key_file"),
            server_name=_string(data.get("server_name"), f"{where}.server_name"),
            insecure_skip_verify=_boolean(
                data.get("insecure_skip_verify"), f"{where}.insecure_skip_verify"
            ),
        )


@dataclass
class Endpoint:
    """An endpoint URL with optional TLS settings of its own."""

    url: str = ""
    tls: TLSConfig | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str) -> Endpoint:
        data = _mapping(data, where)
        return cls(
            url=_string(data.get("url"), f"{where}.url"),
            tls=TLSConfig._from_dict(data.get("tls"), f"{where}.tls"),
        )


def _endpoints(value: Any, where: str) -> list[Endpoint]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{where}: expected a list")
    return [Endpoint._from_dict(item, f"{where}[{i}]") for i, item in enumerate(value)]


@dataclass
class CanaryConfig:
    """Configuration of a single canary; durations are in seconds."""

    type: str = ""
    tls: TLSConfig | None = None
    ingest: list[Endpoint] = field(default_factory=list)
    query: list[Endpoint] = field(default_factory=list)
    additional_labels: dict[str, str] = field(default_factory=dict)
    interval: float = 0.0
    write_timeout: float = 0.0
    query_timeout: float = 0.0
    max_active_series: int = 0

    @classmethod
    def _from_dict(cls, data: Any, where: str) -> CanaryConfig:
        data = _mapping(data, where)
        labels = _mapping(data.get("additional_labels"), f"{where}.additional_labels")

        def duration(key: str) -> float:
            value = data.get(key)
            return 0.0 if value is None else parse_duration(value)

        return cls(
            type=_string(data.get("type"), f"{where}.type"),
            tls=TLSConfig._from_dict(data.get("tls"), f"{where}.tls"),
            ingest=_endpoints(data.get("ingest"), f"{where}.ingest"),
            query=_endpoints(data.get("query"), f"{where}.query"),
            additional_labels={str(k): _string(v, f"{where}.additional_labels") for k, v in labels.items()},
            interval=duration("interval"),
            write_timeout=duration("write_timeout"),
            query_timeout=duration("query_timeout"),
            max_active_series=_integer(
                data.get("max_active_canaried_series"), f"{where}.max_active_canaried_series"
            ),
        )

    def with_defaults(self) -> CanaryConfig:
        """Return a copy with unset fields filled by their defaults."""
        return replace(
            self,
            max_active_series=self.max_active_series or DEFAULT_MAX_ACTIVE_SERIES,
            interval=self.interval or DEFAULT_INTERVAL,
            write_timeout=self.write_timeout or DEFAULT_WRITE_TIMEOUT,
            query_timeout=self.query_timeout or DEFAULT_QUERY_TIMEOUT,
            type=self.type or DEFAULT_TYPE,
        )

    def resolve_tls(self, endpoint: Endpoint) -> TLSConfig | None:
        """TLS settings for an endpoint, falling back to the canary's own."""
        return endpoint.tls if endpoint.tls is not None else self.tls


@dataclass
class CanariesConfig:
    """All configured canaries by name."""

    canaries: dict[str, CanaryConfig] = field(default_factory=dict)


def parse_config(data: Any) -> CanariesConfig:
    """Build a configuration from an already decoded YAML document."""
    data = _mapping(data, "config")
    canaries = _mapping(data.get("canary"), "canary")
    return CanariesConfig(
        canaries={
            str(name): CanaryConfig._from_dict(body, f"canary.{name}")
            for name, body in canaries.items()
        }
    )


def load_config(stream: IO[str] | str) -> CanariesConfig:
    """Read a YAML configuration from a stream or string."""
    try:
        data = yaml.safe_load(stream)
    except yaml.YAMLError as exc:
        raise ConfigError(f"error decoding YAML: {exc}") from exc
    return parse_config(data)