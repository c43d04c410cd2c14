"""In-process metrics registry shared by the controllers.

Counters and histograms are keyed by metric name and a sorted tuple of label
pairs. Exporting the values is left to the embedding process.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field

__all__ = [
    "MetricsRegistry",
    "HistogramValue",
]

REPOSITORY_SYNC_DURATION = "helm_repository_sync_duration_seconds"
REPOSITORY_SYNC_TOTAL = "helm_repository_sync_total"
REPOSITORY_SYNC_ERRORS = "helm_repository_sync_errors_total"
REPOSITORY_CHARTS = "helm_repository_charts_discovered"
RELEASE_OPERATION_DURATION = "helm_release_operation_duration_seconds"
RELEASE_OPERATION_TOTAL = "helm_release_operation_total"
RELEASE_OPERATION_ERRORS = "helm_release_operation_errors_total"
RELEASE_ROLLBACKS = "helm_release_rollbacks_total"
CACHE_ARTIFACTS_GENERATED = "helm_values_configmaps_generated_total"
CACHE_ARTIFACTS_CLEANED = "helm_values_configmaps_cleaned_total"
RECONCILE_TOTAL = "helm_operator_reconcile_total"
RECONCILE_DURATION = "helm_operator_reconcile_duration_seconds"
RECONCILE_ERRORS = "helm_operator_reconcile_errors_total"

LabelKey = tuple[tuple[str, str], ...]


def _key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted(labels.items()))


@dataclass
class HistogramValue:
    """Running summary of observed values."""

    count: int = 0
    total: float = 0.0
    values: list[float] = field(default_factory=list)


class MetricsRegistry:
    """Thread safe counters, gauges and histograms."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[LabelKey, float]] = defaultdict(dict)
        self._gauges: dict[str, dict[LabelKey, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[LabelKey, HistogramValue]] = defaultdict(
            dict
        )

    def inc(self, name: str, value: float = 1.0, **labels: str) -> None:
        """Increment a counter."""
        key = _key(labels)
        with self._lock:
            series = self._counters[name]
            series[key] = series.get(key, 0.0) + value

    def set(self, name: str, value: float, **labels: str) -> None:
        """Set a gauge."""
        with self._lock:
            self._gauges[name][_key(labels)] = value

    def observe(self, name: str, value: float, **labels: str) -> None:
        """Record a histogram observation."""
        key = _key(labels)
        with self._lock:
            hist = self._histograms[name].setdefault(key, HistogramValue())
            hist.count += 1
            hist.total += value
            hist.values.append(value)

    def counter(self, name: str, **labels: str) -> float:
        """Return the current value of a counter."""
        with self._lock:
            return self._counters[name].get(_key(labels), 0.0)

    def gauge(self, name: str, **labels: str) -> float | None:
        """Return the current value of a gauge."""
        with self._lock:
            return self._gauges[name].get(_key(labels))

    def histogram(self, name: str, **labels: str) -> HistogramValue:
        """Return a copy of a histogram."""
        with self._lock:
            hist = self._histograms[name].get(_key(labels), HistogramValue())
            return HistogramValue(hist.count, hist.total, list(hist.values))
