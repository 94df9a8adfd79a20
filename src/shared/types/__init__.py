"""Shared domain types used across layers.

These types flow through Port interfaces and must remain stable.
Every record validates itself on construction and raises
InvalidInputError, so rows read back from a store are re-validated
on their way into the domain.

Costs are Decimal (currency units); timestamps are timezone-aware UTC.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from src.shared.errors import InvalidInputError

if TYPE_CHECKING:
    from collections.abc import Mapping

ProviderModelKey = tuple[str, str]


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_day_bounds(day: date) -> tuple[datetime, datetime]:
    """[start, end) of a UTC calendar day."""
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


def to_decimal(value: object, field_name: str) -> Decimal:
    """Coerce an int/float/str/Decimal cost into a finite Decimal."""
    if isinstance(value, bool):
        raise InvalidInputError(f"{field_name} must be numeric", field=field_name)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidInputError(f"{field_name} is not a number: {value!r}", field=field_name) from exc
    if not result.is_finite():
        raise InvalidInputError(f"{field_name} must be finite, got {value!r}", field=field_name)
    return result


def _require_non_negative(value: float, field_name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise InvalidInputError(f"{field_name} must be numeric", field=field_name)
    if math.isnan(value) or math.isinf(value) or value < 0:
        raise InvalidInputError(
            f"{field_name} must be a finite non-negative number, got {value!r}",
            field=field_name,
        )


def _require_aware(value: datetime, field_name: str) -> None:
    if value.tzinfo is None:
        raise InvalidInputError(f"{field_name} must be timezone-aware", field=field_name)


def _require_name(value: str, field_name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{field_name} must be a non-empty string", field=field_name)


# -- Enumerations --


class BudgetStatus(enum.Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


class HealthState(enum.Enum):
    """Provider/model health classification.

    Declaration order is the display order: critical first.
    """

    CRITICAL = "critical"
    WARNING = "warning"
    HEALTHY = "healthy"


# -- Ledger --


@dataclass(frozen=True)
class UsageRecord:
    """Immutable ledger entry for one completed (or failed) LLM call attempt."""

    org_id: UUID
    provider: str
    model: str
    estimated_cost: Decimal
    input_tokens: int = 0
    output_tokens: int = 0
    success: bool = True
    latency_ms: float | None = None
    task_category: str | None = None
    agent_type: str | None = None
    user_id: UUID | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        _require_name(self.provider, "provider")
        _require_name(self.model, "model")
        cost = to_decimal(self.estimated_cost, "estimated_cost")
        if cost < 0:
            raise InvalidInputError("estimated_cost must be >= 0", field="estimated_cost")
        object.__setattr__(self, "estimated_cost", cost)
        _require_non_negative(self.input_tokens, "input_tokens")
        _require_non_negative(self.output_tokens, "output_tokens")
        if self.latency_ms is not None:
            _require_non_negative(self.latency_ms, "latency_ms")
        _require_aware(self.created_at, "created_at")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# -- Telemetry --


@dataclass(frozen=True)
class TelemetryState:
    """Snapshot of the smoothed statistics for one (provider, model) pair.

    ``tuned_at_count`` is the request_count observed when alpha was last
    evaluated by the adaptation loop.
    """

    provider: str
    model: str
    ewma_latency_ms: float
    ewma_error_rate: float
    alpha: float
    request_count: int
    last_updated: datetime
    tuned_at_count: int = 0

    @property
    def key(self) -> ProviderModelKey:
        return (self.provider, self.model)


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Point-in-time export of every live telemetry state."""

    states: list[TelemetryState]
    average_latency_ms: float
    average_error_rate: float
    taken_at: datetime


# -- Policy --


@dataclass(frozen=True)
class TaskOverride:
    """Quality floor and preferred models for one task category."""

    min_performance: float
    preferred_models: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if isinstance(self.min_performance, bool) or not 0 <= self.min_performance <= 1:
            raise InvalidInputError(
                f"min_performance must be in [0, 1], got {self.min_performance}",
                field="min_performance",
            )
        object.__setattr__(self, "preferred_models", tuple(self.preferred_models))

    def to_dict(self) -> dict[str, object]:
        return {"min_performance": self.min_performance, "preferred_models": list(self.preferred_models)}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskOverride:
        raw = data.get("min_performance")
        if isinstance(raw, bool) or not isinstance(raw, int | float):
            raise InvalidInputError("task override needs a numeric min_performance", field="task_overrides")
        models = data.get("preferred_models") or ()
        if not isinstance(models, list | tuple):
            raise InvalidInputError("preferred_models must be a list of model names", field="task_overrides")
        return cls(min_performance=float(raw), preferred_models=tuple(str(m) for m in models))


@dataclass(frozen=True)
class Policy:
    """Per-organization admission policy.

    Replaced wholesale on every change; readers never observe a partial update.
    """

    org_id: UUID
    max_request_cost: Decimal
    max_daily_cost: Decimal
    allowed_providers: frozenset[str]
    min_alpha: float = 0.1
    max_alpha: float = 0.5
    task_overrides: Mapping[str, TaskOverride] = field(default_factory=dict, hash=False)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        for name in ("max_request_cost", "max_daily_cost"):
            value = to_decimal(getattr(self, name), name)
            if value <= 0:
                raise InvalidInputError(f"{name} must be > 0", field=name)
            object.__setattr__(self, name, value)
        object.__setattr__(self, "allowed_providers", frozenset(self.allowed_providers))
        if not 0 < self.min_alpha <= self.max_alpha <= 1:
            raise InvalidInputError(
                f"alpha bounds must satisfy 0 < min <= max <= 1, "
                f"got [{self.min_alpha}, {self.max_alpha}]",
                field="min_alpha",
            )
        if any(not isinstance(k, str) or not k.strip() for k in self.task_overrides):
            raise InvalidInputError("task override categories must be non-empty strings", field="task_overrides")
        if not all(isinstance(v, TaskOverride) for v in self.task_overrides.values()):
            raise InvalidInputError("task override values must be TaskOverride", field="task_overrides")
        object.__setattr__(self, "task_overrides", dict(self.task_overrides))
        _require_aware(self.updated_at, "updated_at")

    def with_providers(self, providers: frozenset[str]) -> Policy:
        return replace(self, allowed_providers=frozenset(providers), updated_at=utc_now())

    def get_task_override(self, task_category: str | None) -> TaskOverride | None:
        if task_category is None:
            return None
        return self.task_overrides.get(task_category)


# -- Admission --


@dataclass(frozen=True)
class BudgetCheckResult:
    allowed: bool
    force_cheapest: bool
    reason: str
    remaining_budget: Decimal
    daily_spend: Decimal
    max_daily_budget: Decimal


@dataclass(frozen=True)
class BudgetState:
    daily_cost: Decimal
    max_daily_cost: Decimal
    remaining_budget: Decimal
    usage_percent: float
    status: BudgetStatus


@dataclass(frozen=True)
class PolicyWithUsage:
    """An org's effective policy together with today's spend against it."""

    policy: Policy
    budget: BudgetState


@dataclass(frozen=True)
class ComplianceReport:
    compliant: bool
    violations: list[str]
    warnings: list[str]


@dataclass(frozen=True)
class CostBreakdown:
    cost: Decimal
    requests: int


@dataclass(frozen=True)
class UsageSummary:
    total_cost: Decimal
    total_tokens: int
    total_requests: int
    success_rate: float
    avg_latency_ms: float
    by_provider: dict[str, CostBreakdown]
    by_model: dict[str, CostBreakdown]


@dataclass(frozen=True)
class DailyUsage:
    day: str
    cost: Decimal
    requests: int


# -- Health --


@dataclass(frozen=True)
class BaselineMetrics:
    provider: str
    model: str
    latency_ms: float
    error_rate: float
    sample_count: int
    window_days: int


@dataclass(frozen=True)
class AggregatedMetrics:
    provider: str
    model: str
    period_start: datetime
    period_end: datetime
    request_count: int
    total_cost: Decimal
    avg_latency_ms: float
    error_rate: float
    avg_cost_per_request: Decimal

    @property
    def success_rate(self) -> float:
        return 1.0 - self.error_rate if self.request_count else 0.0


@dataclass(frozen=True)
class HourlyAggregate:
    hour: datetime
    provider: str
    request_count: int
    total_cost: Decimal
    avg_latency_ms: float
    error_rate: float


@dataclass(frozen=True)
class HealthStatus:
    provider: str
    model: str
    status: HealthState
    current_latency_ms: float
    baseline_latency_ms: float | None
    latency_deviation: float
    current_error_rate: float
    baseline_error_rate: float | None
    error_rate_deviation: float
    recommendations: list[str]


@dataclass(frozen=True)
class MetricsSummary:
    period: str
    total_requests: int
    total_cost: Decimal
    avg_latency_ms: float
    error_rate: float
    cost_trend: str
    latency_trend: str
    error_trend: str
    top_providers: list[str]


@dataclass(frozen=True)
class CategoryCost:
    task_category: str
    total_cost: Decimal
    request_count: int
    avg_cost_per_request: Decimal


# -- Adaptation --


@dataclass(frozen=True)
class AlphaAdjustment:
    provider: str
    model: str
    old_alpha: float
    new_alpha: float
    reason: str


@dataclass(frozen=True)
class ProviderDisablement:
    provider: str
    model: str
    reason: str
    error_rate: float
    threshold: float


@dataclass(frozen=True)
class ProviderEnablement:
    provider: str
    reason: str
    error_rate: float
    threshold: float


@dataclass(frozen=True)
class AdaptationResult:
    """Audit artifact for one adaptation run of one organization."""

    org_id: UUID
    alpha_adjustments: list[AlphaAdjustment] = field(default_factory=list)
    disablements: list[ProviderDisablement] = field(default_factory=list)
    enablements: list[ProviderEnablement] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    id: UUID = field(default_factory=uuid4)

    @property
    def changed(self) -> bool:
        return bool(self.alpha_adjustments or self.disablements or self.enablements)


__all__ = [
    "AdaptationResult",
    "AggregatedMetrics",
    "AlphaAdjustment",
    "BaselineMetrics",
    "BudgetCheckResult",
    "BudgetState",
    "BudgetStatus",
    "CategoryCost",
    "ComplianceReport",
    "CostBreakdown",
    "DailyUsage",
    "HealthState",
    "HealthStatus",
    "HourlyAggregate",
    "MetricsSummary",
    "Policy",
    "PolicyWithUsage",
    "ProviderDisablement",
    "ProviderEnablement",
    "ProviderModelKey",
    "TelemetrySnapshot",
    "TaskOverride",
    "TelemetryState",
    "UsageRecord",
    "UsageSummary",
    "to_decimal",
    "utc_day_bounds",
    "utc_now",
]
