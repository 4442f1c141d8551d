"""
Construction metrics collection.

Tracks:
- Per-stage latency percentiles (P50, P95, P99)
- Request outcomes and degradation kinds
- Prompt token counts

Stages write into a request-scoped `RequestMetrics`; the pipeline merges it
into the shared sink once per request, so the hot path never contends on
the sink's lock.
"""

import logging
import threading
from collections import Counter as TallyCounter
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Protocol

from prometheus_client import CollectorRegistry, Counter, Histogram

logger = logging.getLogger(__name__)


@dataclass
class RequestMetrics:
    """Metrics accumulated for a single request."""

    request_id: Optional[str] = None
    stage_ms: Dict[str, float] = field(default_factory=dict)
    degradations: List[str] = field(default_factory=list)
    total_ms: float = 0.0
    prompt_tokens: Optional[int] = None
    outcome: str = "success"

    def record_stage(self, stage: str, duration_ms: float) -> None:
        self.stage_ms[stage] = self.stage_ms.get(stage, 0.0) + duration_ms

    def record_degradation(self, kind: str) -> None:
        self.degradations.append(kind)


class MetricsSink(Protocol):
    """Destination for finished request metrics."""

    def merge(self, metrics: RequestMetrics) -> None: ...


def percentiles(values: List[float]) -> Dict[str, float]:
    if not values:
        return {"p50": 0.0, "p95": 0.0, "p99": 0.0}

    sorted_values = sorted(values)
    n = len(sorted_values)
    return {
        "p50": sorted_values[int(n * 0.50)],
        "p95": sorted_values[min(n - 1, int(n * 0.95))],
        "p99": sorted_values[min(n - 1, int(n * 0.99))],
        "mean": sum(sorted_values) / n,
        "min": sorted_values[0],
        "max": sorted_values[-1],
    }


class InMemoryMetricsSink:
    """
    Collect and summarize construction metrics in memory.

    Maintains rolling windows for percentile calculations.
    """

    def __init__(self, window_size: int = 1000):
        """
        Args:
            window_size: Number of recent requests to keep for percentiles
        """
        self.window_size = window_size
        self._lock = threading.Lock()
        self._totals: Deque[float] = deque(maxlen=window_size)
        self._stages: Dict[str, Deque[float]] = {}
        self._tokens: Deque[int] = deque(maxlen=window_size)
        self.outcomes: TallyCounter = TallyCounter()
        self.degradations: TallyCounter = TallyCounter()

    def merge(self, metrics: RequestMetrics) -> None:
        """Record one finished request."""
        with self._lock:
            self._totals.append(metrics.total_ms)
            for stage, duration in metrics.stage_ms.items():
                self._stages.setdefault(stage, deque(maxlen=self.window_size)).append(duration)
            if metrics.prompt_tokens is not None:
                self._tokens.append(metrics.prompt_tokens)
            self.outcomes[metrics.outcome] += 1
            self.degradations.update(metrics.degradations)

    def get_percentiles(self, stage: Optional[str] = None) -> Dict[str, float]:
        """
        Get latency percentiles.

        Args:
            stage: Stage name, or None for total request latency

        Returns:
            Dict with p50, p95, p99 values
        """
        with self._lock:
            values = list(self._stages.get(stage, ())) if stage else list(self._totals)
        return percentiles(values)

    def get_summary(self) -> Dict:
        """Get comprehensive metrics summary."""
        with self._lock:
            stages = list(self._stages)
            tokens = list(self._tokens)
            outcomes = dict(self.outcomes)
            degradations = dict(self.degradations)

        return {
            "total": self.get_percentiles(),
            "stages": {stage: self.get_percentiles(stage) for stage in stages},
            "prompt_tokens": percentiles([float(t) for t in tokens]),
            "outcomes": outcomes,
            "degradations": degradations,
        }

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._totals.clear()
            self._stages.clear()
            self._tokens.clear()
            self.outcomes.clear()
            self.degradations.clear()


class PrometheusMetricsSink:
    """Expose construction metrics through prometheus_client on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry(auto_describe=True)

        self.requests_total = Counter(
            "prompt_construction_requests_total",
            "Total prompt construction requests",
            ["outcome"],
            registry=self.registry,
        )
        self.request_latency = Histogram(
            "prompt_construction_latency_seconds",
            "End-to-end prompt construction latency in seconds",
            registry=self.registry,
        )
        self.stage_latency = Histogram(
            "prompt_construction_stage_latency_seconds",
            "Per-stage latency in seconds",
            ["stage"],
            registry=self.registry,
        )
        self.degradations_total = Counter(
            "prompt_construction_degradations_total",
            "Recovered degradations by kind",
            ["kind"],
            registry=self.registry,
        )
        self.prompt_tokens = Histogram(
            "prompt_construction_prompt_tokens",
            "Token count of constructed prompts",
            buckets=(256, 512, 1024, 2048, 4096, 8192, 16384, 32768),
            registry=self.registry,
        )

    def merge(self, metrics: RequestMetrics) -> None:
        self.requests_total.labels(outcome=metrics.outcome).inc()
        self.request_latency.observe(metrics.total_ms / 1000)
        for stage, duration in metrics.stage_ms.items():
            self.stage_latency.labels(stage=stage).observe(duration / 1000)
        for kind in metrics.degradations:
            self.degradations_total.labels(kind=kind).inc()
        if metrics.prompt_tokens is not None:
            self.prompt_tokens.observe(metrics.prompt_tokens)


def get_metrics_sink(backend: str = "memory") -> MetricsSink:
    """
    Build the configured metrics sink.

    Raises:
        ValueError: Unknown backend name
    """
    if backend == "memory":
        return InMemoryMetricsSink()
    if backend == "prometheus":
        return PrometheusMetricsSink()
    raise ValueError(f"Unknown metrics backend: {backend}")
