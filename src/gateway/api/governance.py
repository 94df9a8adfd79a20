"""Governance API -- admission, metering, budget, health, policy, adaptation.

All routes live under /api/v1/governance and require a JWT. Routes that
name an org (path or body) are scoped to the token's org; policy writes
and manual adaptation runs need the admin role.

Telemetry and health routes report provider-level state shared by all
orgs and only need read access.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta  # noqa: TC003 - datetime needed at runtime by FastAPI query params
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID  # noqa: TC003 - needed at runtime by FastAPI path params

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from src.gateway.middleware.rbac import Permission, require_org_scope, require_permission
from src.shared.errors import InvalidInputError
from src.shared.timeout import call_with_timeout
from src.shared.types import Policy, TaskOverride

if TYPE_CHECKING:
    from src.brain.adaptation.policy_loop import PolicyAdaptationLoop
    from src.brain.budget.admission import BudgetAdmissionController
    from src.brain.health.aggregator import HealthAggregator
    from src.ports.adaptation_log_port import AdaptationLogPort
    from src.ports.policy_store_port import PolicyStorePort
    from src.shared.config import GovernanceSettings
    from src.shared.types import AdaptationResult, BudgetState, TelemetryState
    from src.tool.llm.telemetry import TelemetryTracker
    from src.tool.llm.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)


# -- Request models --


class AdmissionCheckRequest(BaseModel):
    org_id: UUID
    estimated_cost: Decimal


class UsageRequest(BaseModel):
    org_id: UUID
    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)
    estimated_cost: Decimal
    success: bool = True
    latency_ms: float | None = None
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    task_category: str | None = None
    agent_type: str | None = None
    error_message: str | None = None


class TaskOverrideModel(BaseModel):
    min_performance: float = Field(ge=0, le=1)
    preferred_models: list[str] = Field(default_factory=list)


class PolicyUpdateRequest(BaseModel):
    max_request_cost: Decimal
    max_daily_cost: Decimal
    allowed_providers: list[str]
    min_alpha: float = 0.1
    max_alpha: float = 0.5
    task_overrides: dict[str, TaskOverrideModel] = Field(default_factory=dict)


# -- Response models --


class AdmissionCheckResponse(BaseModel):
    allowed: bool
    force_cheapest: bool
    reason: str
    remaining_budget: float
    daily_spend: float
    max_daily_budget: float


class UsageAcceptedResponse(BaseModel):
    id: UUID
    status: str = "accepted"


class BudgetStateResponse(BaseModel):
    daily_cost: float
    max_daily_cost: float
    remaining_budget: float
    usage_percent: float
    status: str


class AmountResponse(BaseModel):
    org_id: UUID
    amount: float


class CostBreakdownResponse(BaseModel):
    cost: float
    requests: int


class UsageSummaryResponse(BaseModel):
    total_cost: float
    total_tokens: int
    total_requests: int
    success_rate: float
    avg_latency_ms: float
    by_provider: dict[str, CostBreakdownResponse]
    by_model: dict[str, CostBreakdownResponse]


class DailyUsageResponse(BaseModel):
    date: str
    cost: float
    requests: int


class HourlyAggregateResponse(BaseModel):
    hour: datetime
    provider: str
    request_count: int
    total_cost: float
    avg_latency_ms: float
    error_rate: float


class MetricsSummaryResponse(BaseModel):
    period: str
    total_requests: int
    total_cost: float
    avg_latency_ms: float
    error_rate: float
    cost_trend: str
    latency_trend: str
    error_trend: str
    top_providers: list[str]


class CategoryCostResponse(BaseModel):
    task_category: str
    total_cost: float
    request_count: int
    avg_cost_per_request: float


class HealthStatusResponse(BaseModel):
    provider: str
    model: str
    status: str
    current_latency_ms: float
    baseline_latency_ms: float | None
    latency_deviation: float
    current_error_rate: float
    baseline_error_rate: float | None
    error_rate_deviation: float
    recommendations: list[str]


class BaselineResponse(BaseModel):
    provider: str
    model: str
    latency_ms: float
    error_rate: float
    sample_count: int
    window_days: int


class TelemetryStateResponse(BaseModel):
    provider: str
    model: str
    ewma_latency_ms: float
    ewma_error_rate: float
    alpha: float
    request_count: int
    last_updated: datetime


class ProviderModelStateResponse(TelemetryStateResponse):
    circuit_broken: bool


class ProviderTelemetryResponse(BaseModel):
    provider: str
    models: list[ProviderModelStateResponse]


class TelemetrySnapshotResponse(BaseModel):
    states: list[TelemetryStateResponse]
    average_latency_ms: float
    average_error_rate: float
    taken_at: datetime


class PolicyResponse(BaseModel):
    org_id: UUID
    max_request_cost: float
    max_daily_cost: float
    allowed_providers: list[str]
    min_alpha: float
    max_alpha: float
    task_overrides: dict[str, TaskOverrideModel]
    updated_at: datetime


class PolicyWithUsageResponse(BaseModel):
    policy: PolicyResponse
    usage: BudgetStateResponse


class PolicySummaryResponse(BaseModel):
    org_id: UUID
    max_daily_cost: float
    max_request_cost: float
    allowed_providers: list[str]
    task_override_count: int


class ComplianceResponse(BaseModel):
    compliant: bool
    violations: list[str]
    warnings: list[str]


class AlphaAdjustmentResponse(BaseModel):
    provider: str
    model: str
    old_alpha: float
    new_alpha: float
    reason: str


class DisablementResponse(BaseModel):
    provider: str
    model: str
    reason: str
    error_rate: float
    threshold: float


class EnablementResponse(BaseModel):
    provider: str
    reason: str
    error_rate: float
    threshold: float


class AdaptationResultResponse(BaseModel):
    id: UUID
    org_id: UUID
    alpha_adjustments: list[AlphaAdjustmentResponse]
    disablements: list[DisablementResponse]
    enablements: list[EnablementResponse]
    recommendations: list[str]
    created_at: datetime


# -- Converters --


def _require_aware(value: datetime | None, name: str) -> None:
    if value is not None and value.tzinfo is None:
        raise InvalidInputError(f"{name} must include a timezone offset", field=name)


def _state_response(state: TelemetryState) -> TelemetryStateResponse:
    return TelemetryStateResponse(
        provider=state.provider,
        model=state.model,
        ewma_latency_ms=state.ewma_latency_ms,
        ewma_error_rate=state.ewma_error_rate,
        alpha=state.alpha,
        request_count=state.request_count,
        last_updated=state.last_updated,
    )


def _policy_response(policy: Policy) -> PolicyResponse:
    return PolicyResponse(
        org_id=policy.org_id,
        max_request_cost=float(policy.max_request_cost),
        max_daily_cost=float(policy.max_daily_cost),
        allowed_providers=sorted(policy.allowed_providers),
        min_alpha=policy.min_alpha,
        max_alpha=policy.max_alpha,
        task_overrides={k: _override_model(v) for k, v in sorted(policy.task_overrides.items())},
        updated_at=policy.updated_at,
    )


def _override_model(override: TaskOverride) -> TaskOverrideModel:
    return TaskOverrideModel(
        min_performance=override.min_performance,
        preferred_models=list(override.preferred_models),
    )


def _budget_response(state: BudgetState) -> BudgetStateResponse:
    return BudgetStateResponse(
        daily_cost=float(state.daily_cost),
        max_daily_cost=float(state.max_daily_cost),
        remaining_budget=float(state.remaining_budget),
        usage_percent=state.usage_percent,
        status=state.status.value,
    )


def _adaptation_response(result: AdaptationResult) -> AdaptationResultResponse:
    return AdaptationResultResponse(
        id=result.id,
        org_id=result.org_id,
        alpha_adjustments=[
            AlphaAdjustmentResponse(
                provider=a.provider,
                model=a.model,
                old_alpha=a.old_alpha,
                new_alpha=a.new_alpha,
                reason=a.reason,
            )
            for a in result.alpha_adjustments
        ],
        disablements=[
            DisablementResponse(
                provider=d.provider,
                model=d.model,
                reason=d.reason,
                error_rate=d.error_rate,
                threshold=d.threshold,
            )
            for d in result.disablements
        ],
        enablements=[
            EnablementResponse(
                provider=e.provider,
                reason=e.reason,
                error_rate=e.error_rate,
                threshold=e.threshold,
            )
            for e in result.enablements
        ],
        recommendations=list(result.recommendations),
        created_at=result.created_at,
    )


def create_governance_router(
    *,
    admission: BudgetAdmissionController,
    recorder: UsageRecorder,
    health: HealthAggregator,
    telemetry: TelemetryTracker,
    policy_store: PolicyStorePort,
    adaptation: PolicyAdaptationLoop,
    adaptation_log: AdaptationLogPort,
    settings: GovernanceSettings,
) -> APIRouter:
    """Create governance API router."""
    router = APIRouter(prefix="/api/v1/governance", tags=["governance"])

    # -- Admission & metering --

    @router.post("/admission/check", response_model=AdmissionCheckResponse)
    async def check_admission(body: AdmissionCheckRequest, request: Request) -> AdmissionCheckResponse:
        require_org_scope(request, body.org_id, Permission.READ)
        result = await admission.can_afford(body.org_id, body.estimated_cost)
        return AdmissionCheckResponse(
            allowed=result.allowed,
            force_cheapest=result.force_cheapest,
            reason=result.reason,
            remaining_budget=float(result.remaining_budget),
            daily_spend=float(result.daily_spend),
            max_daily_budget=float(result.max_daily_budget),
        )

    @router.post("/usage", response_model=UsageAcceptedResponse, status_code=202)
    async def record_usage(body: UsageRequest, request: Request) -> UsageAcceptedResponse:
        require_org_scope(request, body.org_id, Permission.WRITE)
        record = await recorder.record(
            org_id=body.org_id,
            provider=body.provider,
            model=body.model,
            estimated_cost=body.estimated_cost,
            success=body.success,
            latency_ms=body.latency_ms,
            input_tokens=body.input_tokens,
            output_tokens=body.output_tokens,
            task_category=body.task_category,
            agent_type=body.agent_type,
            user_id=request.state.user_id,
            error_message=body.error_message,
        )
        return UsageAcceptedResponse(id=record.id)

    # -- Budget --

    @router.get("/budget/{org_id}/state", response_model=BudgetStateResponse)
    async def budget_state(org_id: UUID, request: Request) -> BudgetStateResponse:
        require_org_scope(request, org_id)
        return _budget_response(await admission.get_budget_state(org_id))

    @router.get("/budget/{org_id}/daily-spend", response_model=AmountResponse)
    async def daily_spend(org_id: UUID, request: Request) -> AmountResponse:
        require_org_scope(request, org_id)
        spend = await admission.get_daily_spend(org_id)
        return AmountResponse(org_id=org_id, amount=float(spend))

    @router.get("/budget/{org_id}/remaining", response_model=AmountResponse)
    async def remaining_budget(org_id: UUID, request: Request) -> AmountResponse:
        require_org_scope(request, org_id)
        remaining = await admission.get_remaining_budget(org_id)
        return AmountResponse(org_id=org_id, amount=float(remaining))

    # -- Usage analytics --

    @router.get("/usage/{org_id}/summary", response_model=UsageSummaryResponse)
    async def usage_summary(
        org_id: UUID,
        request: Request,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageSummaryResponse:
        require_org_scope(request, org_id)
        _require_aware(start, "start")
        _require_aware(end, "end")
        summary = await admission.get_usage_summary(org_id, start, end)
        return UsageSummaryResponse(
            total_cost=float(summary.total_cost),
            total_tokens=summary.total_tokens,
            total_requests=summary.total_requests,
            success_rate=summary.success_rate,
            avg_latency_ms=summary.avg_latency_ms,
            by_provider={
                k: CostBreakdownResponse(cost=float(v.cost), requests=v.requests)
                for k, v in summary.by_provider.items()
            },
            by_model={
                k: CostBreakdownResponse(cost=float(v.cost), requests=v.requests)
                for k, v in summary.by_model.items()
            },
        )

    @router.get("/usage/{org_id}/trend", response_model=list[DailyUsageResponse])
    async def usage_trend(
        org_id: UUID,
        request: Request,
        days: int = Query(default=7, ge=1, le=90),
    ) -> list[DailyUsageResponse]:
        require_org_scope(request, org_id)
        trend = await admission.get_usage_trend(org_id, days)
        return [DailyUsageResponse(date=d.day, cost=float(d.cost), requests=d.requests) for d in trend]

    @router.get("/usage/{org_id}/hourly", response_model=list[HourlyAggregateResponse])
    async def usage_hourly(
        org_id: UUID,
        request: Request,
        hours: int = Query(default=24, ge=1, le=720),
    ) -> list[HourlyAggregateResponse]:
        require_org_scope(request, org_id)
        buckets = await health.get_hourly_aggregates(hours, org_id)
        return [
            HourlyAggregateResponse(
                hour=b.hour,
                provider=b.provider,
                request_count=b.request_count,
                total_cost=float(b.total_cost),
                avg_latency_ms=b.avg_latency_ms,
                error_rate=b.error_rate,
            )
            for b in buckets
        ]

    @router.get("/usage/{org_id}/metrics", response_model=MetricsSummaryResponse)
    async def usage_metrics(
        org_id: UUID,
        request: Request,
        period: str = "24h",
    ) -> MetricsSummaryResponse:
        require_org_scope(request, org_id)
        summary = await health.get_metrics_summary(period, org_id)
        return MetricsSummaryResponse(
            period=summary.period,
            total_requests=summary.total_requests,
            total_cost=float(summary.total_cost),
            avg_latency_ms=summary.avg_latency_ms,
            error_rate=summary.error_rate,
            cost_trend=summary.cost_trend,
            latency_trend=summary.latency_trend,
            error_trend=summary.error_trend,
            top_providers=summary.top_providers,
        )

    @router.get("/usage/{org_id}/categories", response_model=list[CategoryCostResponse])
    async def usage_categories(
        org_id: UUID,
        start: datetime,
        end: datetime,
        request: Request,
    ) -> list[CategoryCostResponse]:
        require_org_scope(request, org_id)
        _require_aware(start, "start")
        _require_aware(end, "end")
        if end <= start:
            raise InvalidInputError("end must be after start", field="end")
        categories = await health.get_cost_by_task_category(start, end, org_id)
        return [
            CategoryCostResponse(
                task_category=c.task_category,
                total_cost=float(c.total_cost),
                request_count=c.request_count,
                avg_cost_per_request=float(c.avg_cost_per_request),
            )
            for c in categories
        ]

    # -- Health & telemetry --

    @router.get("/health/providers", response_model=list[HealthStatusResponse])
    async def provider_health(
        request: Request,
        deviation_threshold: float | None = None,
    ) -> list[HealthStatusResponse]:
        require_permission(request, Permission.READ)
        threshold = settings.health_deviation_threshold if deviation_threshold is None else deviation_threshold
        statuses = await health.classify_health(threshold)
        return [
            HealthStatusResponse(
                provider=s.provider,
                model=s.model,
                status=s.status.value,
                current_latency_ms=s.current_latency_ms,
                baseline_latency_ms=s.baseline_latency_ms,
                latency_deviation=s.latency_deviation,
                current_error_rate=s.current_error_rate,
                baseline_error_rate=s.baseline_error_rate,
                error_rate_deviation=s.error_rate_deviation,
                recommendations=s.recommendations,
            )
            for s in statuses
        ]

    @router.get("/health/baseline/{provider}/{model}", response_model=BaselineResponse | None)
    async def provider_baseline(
        provider: str,
        model: str,
        request: Request,
        days: int = Query(default=settings.baseline_days, ge=1, le=90),
    ) -> BaselineResponse | None:
        require_permission(request, Permission.READ)
        baseline = await health.get_baseline(provider, model, days)
        if baseline is None:
            return None
        return BaselineResponse(
            provider=baseline.provider,
            model=baseline.model,
            latency_ms=baseline.latency_ms,
            error_rate=baseline.error_rate,
            sample_count=baseline.sample_count,
            window_days=baseline.window_days,
        )

    @router.get("/telemetry/recent", response_model=list[TelemetryStateResponse])
    async def telemetry_recent(
        request: Request,
        max_age_s: float | None = Query(default=None, gt=0),
    ) -> list[TelemetryStateResponse]:
        require_permission(request, Permission.READ)
        max_age = timedelta(seconds=max_age_s) if max_age_s is not None else None
        states = telemetry.get_all_recent(max_age)
        return [_state_response(states[key]) for key in sorted(states)]

    @router.get("/telemetry/snapshot", response_model=TelemetrySnapshotResponse)
    async def telemetry_snapshot(request: Request) -> TelemetrySnapshotResponse:
        require_permission(request, Permission.READ)
        snapshot = telemetry.snapshot()
        return TelemetrySnapshotResponse(
            states=[_state_response(s) for s in snapshot.states],
            average_latency_ms=snapshot.average_latency_ms,
            average_error_rate=snapshot.average_error_rate,
            taken_at=snapshot.taken_at,
        )

    @router.get("/telemetry/provider/{provider}", response_model=ProviderTelemetryResponse)
    async def telemetry_provider(provider: str, request: Request) -> ProviderTelemetryResponse:
        require_permission(request, Permission.READ)
        states = sorted(telemetry.get_provider_states(provider), key=lambda s: s.model)
        return ProviderTelemetryResponse(
            provider=provider,
            models=[
                ProviderModelStateResponse(
                    **_state_response(s).model_dump(),
                    circuit_broken=telemetry.should_circuit_break(
                        s.provider,
                        s.model,
                        threshold=settings.circuit_break_threshold,
                        min_requests=settings.circuit_break_min_requests,
                    ),
                )
                for s in states
            ],
        )

    @router.get("/telemetry/circuit-broken", response_model=list[TelemetryStateResponse])
    async def telemetry_circuit_broken(
        request: Request,
        threshold: float | None = Query(default=None, ge=0, le=1),
        min_requests: int | None = Query(default=None, ge=1),
    ) -> list[TelemetryStateResponse]:
        require_permission(request, Permission.READ)
        states = telemetry.circuit_broken(
            threshold=settings.circuit_break_threshold if threshold is None else threshold,
            min_requests=settings.circuit_break_min_requests if min_requests is None else min_requests,
        )
        return [_state_response(s) for s in states]

    # -- Policy --

    @router.get("/policy/{org_id}", response_model=PolicyResponse)
    async def get_policy(org_id: UUID, request: Request) -> PolicyResponse:
        require_org_scope(request, org_id)
        return _policy_response(await admission.get_policy(org_id))

    @router.put("/policy/{org_id}", response_model=PolicyResponse)
    async def put_policy(org_id: UUID, body: PolicyUpdateRequest, request: Request) -> PolicyResponse:
        require_org_scope(request, org_id, Permission.POLICY_ADMIN)
        providers = frozenset(p.strip().lower() for p in body.allowed_providers if p.strip())
        known = settings.known_providers
        if known and not providers <= known:
            unknown = ", ".join(sorted(providers - known))
            raise InvalidInputError(f"Unknown providers: {unknown}", field="allowed_providers")
        policy = Policy(
            org_id=org_id,
            max_request_cost=body.max_request_cost,
            max_daily_cost=body.max_daily_cost,
            allowed_providers=providers,
            min_alpha=body.min_alpha,
            max_alpha=body.max_alpha,
            task_overrides={
                category.strip(): TaskOverride(
                    min_performance=override.min_performance,
                    preferred_models=tuple(override.preferred_models),
                )
                for category, override in body.task_overrides.items()
            },
        )
        await call_with_timeout(
            policy_store.save(policy),
            store_name="policy_store",
            timeout_seconds=settings.store_timeout_s,
        )
        logger.info("Policy updated: org=%s by user=%s", org_id, request.state.user_id)
        return _policy_response(policy)

    @router.get("/policy/{org_id}/with-usage", response_model=PolicyWithUsageResponse)
    async def get_policy_with_usage(org_id: UUID, request: Request) -> PolicyWithUsageResponse:
        require_org_scope(request, org_id)
        combined = await admission.get_policy_with_usage(org_id)
        return PolicyWithUsageResponse(
            policy=_policy_response(combined.policy),
            usage=_budget_response(combined.budget),
        )

    @router.get("/policy/{org_id}/summary", response_model=PolicySummaryResponse)
    async def get_policy_summary(org_id: UUID, request: Request) -> PolicySummaryResponse:
        require_org_scope(request, org_id)
        policy = await admission.get_policy(org_id)
        return PolicySummaryResponse(
            org_id=policy.org_id,
            max_daily_cost=float(policy.max_daily_cost),
            max_request_cost=float(policy.max_request_cost),
            allowed_providers=sorted(policy.allowed_providers),
            task_override_count=len(policy.task_overrides),
        )

    @router.get("/policy/{org_id}/task-overrides/{task_category}", response_model=TaskOverrideModel | None)
    async def get_task_override(org_id: UUID, task_category: str, request: Request) -> TaskOverrideModel | None:
        require_org_scope(request, org_id)
        override = await admission.get_task_override(org_id, task_category)
        return _override_model(override) if override is not None else None

    @router.get("/policy/{org_id}/compliance", response_model=ComplianceResponse)
    async def policy_compliance(org_id: UUID, request: Request) -> ComplianceResponse:
        require_org_scope(request, org_id)
        report = await admission.check_compliance(org_id)
        return ComplianceResponse(
            compliant=report.compliant,
            violations=report.violations,
            warnings=report.warnings,
        )

    # -- Adaptation --

    @router.post("/adaptation/{org_id}/run", response_model=AdaptationResultResponse)
    async def run_adaptation(org_id: UUID, request: Request) -> AdaptationResultResponse:
        require_org_scope(request, org_id, Permission.POLICY_ADMIN)
        result = await adaptation.run_adaptation(org_id)
        return _adaptation_response(result)

    @router.get("/adaptation/{org_id}/history", response_model=list[AdaptationResultResponse])
    async def adaptation_history(
        org_id: UUID,
        request: Request,
        limit: int = Query(default=20, ge=1, le=100),
    ) -> list[AdaptationResultResponse]:
        require_org_scope(request, org_id)
        results = await call_with_timeout(
            adaptation_log.list_recent(org_id, limit),
            store_name="adaptation_log",
            timeout_seconds=settings.store_timeout_s,
        )
        return [_adaptation_response(r) for r in results]

    return router
