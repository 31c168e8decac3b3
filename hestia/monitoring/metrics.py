"""Metrics emitter backed by a private Prometheus collector registry."""

from collections.abc import Mapping

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

LATENCY_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)


class InMemoryMetricsEmitter:
    """Counters and histograms kept in process and rendered as Prometheus text.

    Metric families are created on first use; the label names of that first call
    are fixed for the lifetime of the family.
    """

    def __init__(self, namespace: str = "hestia") -> None:
        self.namespace = namespace
        self.registry = CollectorRegistry()
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

    def increment(
        self,
        name: str,
        value: float = 1.0,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        counter = self._counters.get(name)
        if counter is None:
            counter = Counter(
                name,
                f"Counter {name}",
                labelnames=sorted(labels or {}),
                namespace=self.namespace,
                registry=self.registry,
            )
            self._counters[name] = counter
        (counter.labels(**labels) if labels else counter).inc(value)

    def observe(
        self,
        name: str,
        value: float,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        histogram = self._histograms.get(name)
        if histogram is None:
            histogram = Histogram(
                name,
                f"Histogram {name}",
                labelnames=sorted(labels or {}),
                namespace=self.namespace,
                registry=self.registry,
                buckets=LATENCY_BUCKETS_MS,
            )
            self._histograms[name] = histogram
        (histogram.labels(**labels) if labels else histogram).observe(value)

    def counter_value(self, name: str, labels: Mapping[str, str] | None = None) -> float:
        """Current value of a counter, 0 when it was never incremented."""
        base = name.removesuffix("_total")
        value = self.registry.get_sample_value(
            f"{self.namespace}_{base}_total", dict(labels or {}))
        return value or 0.0

    def observation_count(self, name: str, labels: Mapping[str, str] | None = None) -> int:
        value = self.registry.get_sample_value(
            f"{self.namespace}_{name}_count", dict(labels or {}))
        return int(value or 0)

    def render(self) -> str:
        """Prometheus text exposition of every metric."""
        return generate_latest(self.registry).decode("utf-8")
