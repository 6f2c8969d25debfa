"""In-process counters and timing histograms for the margin guard."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from statistics import fmean
from typing import Any, Dict, List, Mapping, MutableMapping, Tuple

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass
class MetricRegistry:
    """Prometheus-style collector keyed by metric name and sorted labels."""

    counters: MutableMapping[MetricKey, float] = field(default_factory=lambda: defaultdict(float))
    histograms: MutableMapping[MetricKey, List[float]] = field(default_factory=lambda: defaultdict(list))

    def inc(self, name: str, *, labels: Mapping[str, str] | None = None, amount: float = 1.0) -> None:
        self.counters[self._key(name, labels)] += amount

    def observe(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        self.histograms[self._key(name, labels)].append(value)

    def counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        return self.counters.get(self._key(name, labels), 0.0)

    def observations(self, name: str, *, labels: Mapping[str, str] | None = None) -> List[float]:
        return list(self.histograms.get(self._key(name, labels), []))

    def snapshot(self) -> Dict[str, Any]:
        """Flatten counters and histogram summaries for JSON output."""

        counters = {
            _render_key(key): value for key, value in sorted(self.counters.items())
        }
        histograms = {
            _render_key(key): {
                "count": len(values),
                "mean": fmean(values) if values else 0.0,
                "max": max(values) if values else 0.0,
            }
            for key, values in sorted(self.histograms.items())
        }
        return {"counters": counters, "histograms": histograms}

    def _key(self, name: str, labels: Mapping[str, str] | None) -> MetricKey:
        return name, tuple(sorted((labels or {}).items()))


def _render_key(key: MetricKey) -> str:
    name, labels = key
    if not labels:
        return name
    rendered = ",".join(f"{label}={value}" for label, value in labels)
    return f"{name}{{{rendered}}}"


class Timer:
    """Context manager recording elapsed seconds into a histogram."""

    def __init__(self, registry: MetricRegistry, name: str, *, labels: Mapping[str, str] | None = None) -> None:
        self._registry = registry
        self._name = name
        self._labels = labels
        self._start: float | None = None
        self.elapsed: float = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._start is None:
            return
        self.elapsed = time.perf_counter() - self._start
        self._registry.observe(self._name, self.elapsed, labels=self._labels)
