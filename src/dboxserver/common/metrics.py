"""In-process counters rendered in the Prometheus text exposition format."""

from __future__ import annotations

from typing import Callable, Dict, Protocol


class Metric(Protocol):
    name: str

    def render(self) -> str: ...


def _header(name: str, description: str, kind: str) -> list[str]:
    return [f"# HELP {name} {description}", f"# TYPE {name} {kind}"]


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only move forward")
        self._value += amount

    def render(self) -> str:
        lines = _header(self.name, self.description, "counter")
        lines.append(f"{self.name} {self._value}")
        return "\n".join(lines) + "\n"


class Gauge:
    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    @property
    def value(self) -> float:
        return self._supplier() if self._supplier else self._value

    def set(self, value: float) -> None:
        self._value = value

    def render(self) -> str:
        lines = _header(self.name, self.description, "gauge")
        lines.append(f"{self.name} {self.value}")
        return "\n".join(lines) + "\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._bounds = sorted(buckets) + [float("inf")]
        self._counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bound in enumerate(self._bounds):
            if value <= bound:
                self._counts[index] += 1

    def render(self) -> str:
        lines = _header(self.name, self.description, "histogram")
        for bound, count in zip(self._bounds, self._counts):
            label = "+Inf" if bound == float("inf") else bound
            lines.append(f'{self.name}_bucket{{le="{label}"}} {count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}

    def register(self, metric):
        # Re-registering a name replaces the earlier metric; app factories rebuild gauges.
        self._metrics[metric.name] = metric
        return metric

    def get(self, name: str) -> Metric | None:
        return self._metrics.get(name)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
