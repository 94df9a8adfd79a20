"""Governance engine metrics for Prometheus.

Admission:
1. governance_admission_decisions_total{decision}   allowed | degraded | denied | fail_open
2. governance_admission_duration_seconds             can_afford latency

Metering:
3. governance_usage_records_total{outcome}           recorded | dropped
4. governance_telemetry_ewma_latency_ms{provider,model}
5. governance_telemetry_ewma_error_rate{provider,model}

Adaptation:
6. governance_adaptation_runs_total{outcome}          success | failed | skipped
7. governance_adaptation_changes_total{kind}          alpha | disable | enable
"""

from __future__ import annotations

import time
from collections.abc import Generator  # noqa: TC003 -- used at runtime by contextmanager
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

# Admission latency buckets: 1ms to 2.5s (store timeout ceiling)
_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)


def _histogram(
    name: str,
    documentation: str,
    registry: CollectorRegistry | None,
) -> Histogram:
    """Create a Histogram with optional registry."""
    if registry is not None:
        return Histogram(name, documentation, buckets=_LATENCY_BUCKETS, registry=registry)
    return Histogram(name, documentation, buckets=_LATENCY_BUCKETS)


def _counter(
    name: str,
    documentation: str,
    labelnames: list[str],
    registry: CollectorRegistry | None,
) -> Counter:
    """Create a Counter with optional registry."""
    if registry is not None:
        return Counter(name, documentation, labelnames, registry=registry)
    return Counter(name, documentation, labelnames)


def _gauge(
    name: str,
    documentation: str,
    labelnames: list[str],
    registry: CollectorRegistry | None,
) -> Gauge:
    """Create a Gauge with optional registry."""
    if registry is not None:
        return Gauge(name, documentation, labelnames, registry=registry)
    return Gauge(name, documentation, labelnames)


class GovernanceMetrics:
    """Central registry for governance metrics.

    Pass a custom CollectorRegistry for testing isolation.
    In production, use the default global registry (registry=None).
    """

    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self.admission_decisions = _counter(
            "governance_admission_decisions_total",
            "Budget admission decisions by outcome",
            ["decision"],
            registry,
        )
        self.admission_duration = _histogram(
            "governance_admission_duration_seconds",
            "Time spent deciding one admission check",
            registry,
        )
        self.usage_records = _counter(
            "governance_usage_records_total",
            "Usage ledger writes by outcome",
            ["outcome"],
            registry,
        )
        self.ewma_latency = _gauge(
            "governance_telemetry_ewma_latency_ms",
            "Smoothed call latency per provider/model",
            ["provider", "model"],
            registry,
        )
        self.ewma_error_rate = _gauge(
            "governance_telemetry_ewma_error_rate",
            "Smoothed error rate per provider/model",
            ["provider", "model"],
            registry,
        )
        self.adaptation_runs = _counter(
            "governance_adaptation_runs_total",
            "Per-organization adaptation runs by outcome",
            ["outcome"],
            registry,
        )
        self.adaptation_changes = _counter(
            "governance_adaptation_changes_total",
            "Policy changes applied by the adaptation loop",
            ["kind"],
            registry,
        )

    @contextmanager
    def timer(self, histogram: Histogram) -> Generator[None, None, None]:
        """Observe elapsed time on a histogram, even if the block raises."""
        start = time.monotonic()
        try:
            yield
        finally:
            histogram.observe(time.monotonic() - start)
