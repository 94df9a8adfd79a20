"""Provider/model health from live telemetry and ledger history.

Two views are combined:
- Live: the EWMA state held by TelemetryTracker
- Baseline: average latency and failure ratio for the same pair over the
  trailing ``baseline_days`` of ledger records

Classification for each live pair, given deviation threshold ``t``:

    critical  error > 0.5  or  latency deviation > 2t
    warning   error > 0.3  or  error deviation > t  or  latency deviation > t
    healthy   otherwise

A pair without enough history is reported healthy with a recommendation
saying so. Deviation is relative: (current - baseline) / baseline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from src.shared.errors import InvalidInputError
from src.shared.timeout import collect_with_timeout
from src.shared.types import (
    AggregatedMetrics,
    BaselineMetrics,
    CategoryCost,
    HealthState,
    HealthStatus,
    HourlyAggregate,
    MetricsSummary,
    ProviderModelKey,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from uuid import UUID

    from src.ports.usage_ledger_port import UsageLedgerPort
    from src.shared.types import TelemetryState, UsageRecord
    from src.tool.llm.telemetry import TelemetryTracker

logger = logging.getLogger(__name__)

CRITICAL_ERROR_RATE = 0.5
WARNING_ERROR_RATE = 0.3
TREND_CHANGE = 0.1

PERIOD_HOURS = {"1h": 1, "24h": 24, "7d": 168, "30d": 720}

_ZERO = Decimal("0")


# -- Pure functions --


def latency_deviation(current: float, baseline: float) -> float:
    if baseline > 0:
        return (current - baseline) / baseline
    return 0.0


def error_rate_deviation(current: float, baseline: float) -> float:
    if baseline > 0:
        return (current - baseline) / baseline
    return 1.0 if current > 0 else 0.0


def classify_provider_health(
    state: TelemetryState,
    baseline: BaselineMetrics | None,
    deviation_threshold: float = 0.2,
) -> HealthStatus:
    """Classify one live pair against its baseline."""
    if baseline is None:
        return HealthStatus(
            provider=state.provider,
            model=state.model,
            status=HealthState.HEALTHY,
            current_latency_ms=state.ewma_latency_ms,
            baseline_latency_ms=None,
            latency_deviation=0.0,
            current_error_rate=state.ewma_error_rate,
            baseline_error_rate=None,
            error_rate_deviation=0.0,
            recommendations=["Insufficient historical data for baseline comparison"],
        )

    lat_dev = latency_deviation(state.ewma_latency_ms, baseline.latency_ms)
    err_dev = error_rate_deviation(state.ewma_error_rate, baseline.error_rate)
    error = state.ewma_error_rate
    recommendations: list[str] = []
    status = HealthState.HEALTHY

    if error > CRITICAL_ERROR_RATE:
        status = HealthState.CRITICAL
        recommendations.append("Error rate exceeds 50% - provider may be circuit-broken")
    elif error > WARNING_ERROR_RATE or err_dev > deviation_threshold:
        status = HealthState.WARNING
        recommendations.append(f"Error rate {err_dev * 100:.0f}% above baseline")

    if lat_dev > deviation_threshold * 2:
        status = HealthState.CRITICAL
        recommendations.append(f"Latency {lat_dev * 100:.0f}% above baseline")
    elif lat_dev > deviation_threshold:
        if status is HealthState.HEALTHY:
            status = HealthState.WARNING
        recommendations.append(f"Latency {lat_dev * 100:.0f}% above baseline")

    if not recommendations:
        recommendations.append("All metrics within normal range")

    return HealthStatus(
        provider=state.provider,
        model=state.model,
        status=status,
        current_latency_ms=state.ewma_latency_ms,
        baseline_latency_ms=baseline.latency_ms,
        latency_deviation=lat_dev,
        current_error_rate=error,
        baseline_error_rate=baseline.error_rate,
        error_rate_deviation=err_dev,
        recommendations=recommendations,
    )


def trend(first: float, second: float) -> str:
    """increasing | decreasing | stable, using a +/-10% relative change."""
    if first == 0 or second == 0:
        return "stable"
    change = (second - first) / first
    if change > TREND_CHANGE:
        return "increasing"
    if change < -TREND_CHANGE:
        return "decreasing"
    return "stable"


@dataclass
class _Accumulator:
    """Running totals for one aggregation bucket."""

    requests: int = 0
    failures: int = 0
    cost: Decimal = _ZERO
    latency_sum: float = 0.0
    latency_count: int = 0

    def add(self, record: UsageRecord) -> None:
        self.requests += 1
        self.cost += record.estimated_cost
        if not record.success:
            self.failures += 1
        if record.latency_ms is not None:
            self.latency_sum += record.latency_ms
            self.latency_count += 1

    @property
    def avg_latency_ms(self) -> float:
        return self.latency_sum / self.latency_count if self.latency_count else 0.0

    @property
    def error_rate(self) -> float:
        return self.failures / self.requests if self.requests else 0.0


# -- Aggregator --


class HealthAggregator:
    """Aggregates, baselines and health classification.

    Args:
        ledger: Historical source for aggregates and baselines.
        telemetry: Live EWMA state.
        baseline_days: Trailing window for baselines.
        baseline_min_samples: Fewer ledger records than this means no baseline.
        store_timeout_s: Deadline for draining one ledger query.
        clock: Source of "now".
    """

    def __init__(
        self,
        *,
        ledger: UsageLedgerPort,
        telemetry: TelemetryTracker,
        baseline_days: int = 7,
        baseline_min_samples: int = 5,
        telemetry_max_age: timedelta | None = None,
        store_timeout_s: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._telemetry = telemetry
        self._baseline_days = baseline_days
        self._baseline_min_samples = baseline_min_samples
        self._telemetry_max_age = telemetry_max_age
        self._store_timeout_s = store_timeout_s
        self._clock = clock

    async def _records(
        self,
        org_id: UUID | None,
        start: datetime,
        end: datetime,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> list[UsageRecord]:
        return await collect_with_timeout(
            self._ledger.query(org_id, start, end, provider=provider, model=model),
            store_name="usage_ledger",
            timeout_seconds=self._store_timeout_s,
        )

    async def aggregate(
        self,
        start: datetime,
        end: datetime,
        org_id: UUID | None = None,
    ) -> dict[ProviderModelKey, AggregatedMetrics]:
        """Per-(provider, model) totals over [start, end)."""
        buckets: dict[ProviderModelKey, _Accumulator] = {}
        for record in await self._records(org_id, start, end):
            buckets.setdefault((record.provider, record.model), _Accumulator()).add(record)

        return {
            key: AggregatedMetrics(
                provider=key[0],
                model=key[1],
                period_start=start,
                period_end=end,
                request_count=acc.requests,
                total_cost=acc.cost,
                avg_latency_ms=acc.avg_latency_ms,
                error_rate=acc.error_rate,
                avg_cost_per_request=acc.cost / acc.requests if acc.requests else _ZERO,
            )
            for key, acc in buckets.items()
        }

    async def get_baseline(
        self,
        provider: str,
        model: str,
        days: int | None = None,
    ) -> BaselineMetrics | None:
        """Historical latency and failure ratio across all orgs, or None if too sparse."""
        window = days or self._baseline_days
        end = self._clock()
        start = end - timedelta(days=window)
        acc = _Accumulator()
        for record in await self._records(None, start, end, provider=provider, model=model):
            acc.add(record)

        if acc.requests < self._baseline_min_samples:
            logger.debug(
                "No baseline for %s/%s: %d samples < %d",
                provider,
                model,
                acc.requests,
                self._baseline_min_samples,
            )
            return None

        return BaselineMetrics(
            provider=provider,
            model=model,
            latency_ms=acc.avg_latency_ms,
            error_rate=acc.error_rate,
            sample_count=acc.requests,
            window_days=window,
        )

    async def classify_health(self, deviation_threshold: float = 0.2) -> list[HealthStatus]:
        """Health of every live pair, ordered critical, warning, healthy."""
        if deviation_threshold <= 0:
            raise InvalidInputError("deviation_threshold must be > 0", field="deviation_threshold")
        order = {state: i for i, state in enumerate(HealthState)}
        results: list[HealthStatus] = []
        for state in self._telemetry.get_all_recent(self._telemetry_max_age).values():
            baseline = await self.get_baseline(state.provider, state.model)
            results.append(classify_provider_health(state, baseline, deviation_threshold))
        results.sort(key=lambda h: (order[h.status], h.provider, h.model))
        return results

    async def get_hourly_aggregates(
        self,
        hours: int = 24,
        org_id: UUID | None = None,
    ) -> list[HourlyAggregate]:
        """Per-provider totals bucketed by UTC hour, oldest first."""
        if hours < 1:
            raise InvalidInputError("hours must be >= 1", field="hours")
        end = self._clock()
        start = end - timedelta(hours=hours)
        buckets: dict[tuple[datetime, str], _Accumulator] = {}
        for record in await self._records(org_id, start, end):
            hour = record.created_at.replace(minute=0, second=0, microsecond=0)
            buckets.setdefault((hour, record.provider), _Accumulator()).add(record)

        return [
            HourlyAggregate(
                hour=hour,
                provider=provider,
                request_count=acc.requests,
                total_cost=acc.cost,
                avg_latency_ms=acc.avg_latency_ms,
                error_rate=acc.error_rate,
            )
            for (hour, provider), acc in sorted(buckets.items())
        ]

    async def get_metrics_summary(
        self,
        period: str = "24h",
        org_id: UUID | None = None,
    ) -> MetricsSummary:
        """Totals for the period plus first-half vs second-half trends."""
        hours = PERIOD_HOURS.get(period)
        if hours is None:
            raise InvalidInputError(
                f"period must be one of {sorted(PERIOD_HOURS)}, got {period!r}",
                field="period",
            )
        end = self._clock()
        start = end - timedelta(hours=hours)
        mid = start + (end - start) / 2

        total = _Accumulator()
        first = _Accumulator()
        second = _Accumulator()
        provider_cost: dict[str, Decimal] = {}
        for record in await self._records(org_id, start, end):
            total.add(record)
            (first if record.created_at < mid else second).add(record)
            provider_cost[record.provider] = provider_cost.get(record.provider, _ZERO) + record.estimated_cost

        return MetricsSummary(
            period=period,
            total_requests=total.requests,
            total_cost=total.cost,
            avg_latency_ms=total.avg_latency_ms,
            error_rate=total.error_rate,
            cost_trend=trend(float(first.cost), float(second.cost)),
            latency_trend=trend(first.avg_latency_ms, second.avg_latency_ms),
            error_trend=trend(first.error_rate, second.error_rate),
            top_providers=sorted(provider_cost, key=lambda p: provider_cost[p], reverse=True),
        )

    async def get_cost_by_task_category(
        self,
        start: datetime,
        end: datetime,
        org_id: UUID | None = None,
    ) -> list[CategoryCost]:
        """Spend per task category, most expensive first. Untagged records count as "unknown"."""
        buckets: dict[str, _Accumulator] = {}
        for record in await self._records(org_id, start, end):
            buckets.setdefault(record.task_category or "unknown", _Accumulator()).add(record)

        categories = [
            CategoryCost(
                task_category=name,
                total_cost=acc.cost,
                request_count=acc.requests,
                avg_cost_per_request=acc.cost / acc.requests,
            )
            for name, acc in buckets.items()
        ]
        categories.sort(key=lambda c: c.total_cost, reverse=True)
        return categories
