"""A small in-process metric registry with Prometheus text rendering."""

from __future__ import annotations

import bisect
import math
import threading
from typing import Iterable, Mapping

DEFAULT_BUCKETS = (0.01, 0.1, 0.2, 0.5, 1, 2, 5, 10, 15, 30, 60, 120, 240, 480)

_LabelKey = tuple


def _key(labels: Mapping[str, str] | None) -> _LabelKey:
    return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _labels(key: Iterable[tuple[str, str]]) -> str:
    pairs = list(key)
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape(v)}"' for k, v in pairs) + "}"


def _fmt(value: float) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "+Inf" if value > 0 else "-Inf"
        if value.is_integer() and abs(value) < 1e15:
            return str(int(value))
        return repr(value)
    return str(value)


class _Instrument:
    kind = ""

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]


class Counter(_Instrument):
    """A monotonically increasing value per label set."""

    kind = "counter"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._values: dict[_LabelKey, float] = {}

    def add(self, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        if value < 0:
            raise ValueError("counter cannot decrease")
        key = _key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value

    def value(self, labels: Mapping[str, str] | None = None) -> float:
        with self._lock:
            return self._values.get(_key(labels), 0)

    def _render(self) -> list[str]:
        with self._lock:
            items = sorted(self._values.items())
        return self._header() + [f"{self.name}{_labels(k)} {_fmt(v)}" for k, v in items]


class Gauge(_Instrument):
    """The last recorded value per label set."""

    kind = "gauge"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._values: dict[_LabelKey, float] = {}

    def set(self, value: float, labels: Mapping[str, str] | None = None) -> None:
        with self._lock:
            self._values[_key(labels)] = value

    def value(self, labels: Mapping[str, str] | None = None) -> float | None:
        with self._lock:
            return self._values.get(_key(labels))

    def _render(self) -> list[str]:
        with self._lock:
            items = sorted(self._values.items())
        return self._header() + [f"{self.name}{_labels(k)} {_fmt(v)}" for k, v in items]


class Histogram(_Instrument):
    """Distribution of observations over fixed bucket boundaries."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: Iterable[float] = DEFAULT_BUCKETS,
        unit: str = "",
    ) -> None:
        super().__init__(name, description)
        bounds = [float(b) for b in buckets]
        if any(b >= a for a, b in zip(bounds[1:], bounds)):
            raise ValueError("bucket boundaries must be strictly increasing")
        self.buckets = tuple(bounds)
        self.unit = unit
        self._state: dict[_LabelKey, tuple[list[int], float, int]] = {}

    def record(self, value: float, labels: Mapping[str, str] | None = None) -> None:
        key = _key(labels)
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            counts, total, count = self._state.get(key, ([0] * (len(self.buckets) + 1), 0.0, 0))
            counts[index] += 1
            self._state[key] = (counts, total + value, count + 1)

    def count(self, labels: Mapping[str, str] | None = None) -> int:
        with self._lock:
            state = self._state.get(_key(labels))
        return state[2] if state else 0

    def _render(self) -> list[str]:
        with self._lock:
            items = sorted((k, (list(c), s, n)) for k, (c, s, n) in self._state.items())
        lines = self._header()
        for key, (counts, total, count) in items:
            running = 0
            for bound, n in zip(self.buckets + (math.inf,), counts):
                running += n
                lines.append(f"{self.name}_bucket{_labels(key + (('le', _fmt(bound)),))} {running}")
            lines.append(f"{self.name}_sum{_labels(key)} {_fmt(total)}")
            lines.append(f"{self.name}_count{_labels(key)} {count}")
        return lines


class Registry:
    """Holds named instruments and renders them in the Prometheus text format."""

    def __init__(self) -> None:
        self._instruments: dict[str, _Instrument] = {}
        self._lock = threading.Lock()

    def _register(self, cls: type, name: str, factory) -> _Instrument:
        with self._lock:
            existing = self._instruments.get(name)
            if existing is not None:
                if not isinstance(existing, cls):
                    raise ValueError(f"metric {name!r} already registered as {existing.kind}")
                return existing
            instrument = factory()
            self._instruments[name] = instrument
            return instrument

    def counter(self, name: str, description: str = "") -> Counter:
        return self._register(Counter, name, lambda: Counter(name, description))

    def gauge(self, name: str, description: str = "") -> Gauge:
        return self._register(Gauge, name, lambda: Gauge(name, description))

    def histogram(
        self,
        name: str,
        description: str = "",
        buckets: Iterable[float] = DEFAULT_BUCKETS,
        unit: str = "",
    ) -> Histogram:
        return self._register(Histogram, name, lambda: Histogram(name, description, buckets, unit))

    def render(self) -> str:
        with self._lock:
            instruments = sorted(self._instruments.items())
        lines: list[str] = []
        for _, instrument in instruments:
            lines.extend(instrument._render())
        return "\n".join(lines) + "\n" if lines else ""