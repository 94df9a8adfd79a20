"""Budget admission control for outbound LLM requests.

Every request is checked once before it leaves the platform. Rules, first
decisive rule wins:

1. Load the org policy (missing policy -> system defaults, never a deny)
2. estimated_cost > max_request_cost                 -> deny
3. spend + cost > max_daily and usage >= 100%        -> deny
4. spend + cost > max_daily                          -> allow, force cheapest
5. usage >= 95%                                      -> allow, force cheapest
6. usage >= 80%                                      -> allow, force cheapest
7. otherwise                                         -> allow

Any internal failure (store error, timeout) fails open: allow and force the
cheapest models. Malformed input is rejected before that fallback applies.

Spend is read, not reserved. Concurrent requests that each fit individually
can together overshoot max_daily_cost by up to (concurrency - 1) requests.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from src.shared.errors import InvalidInputError, PolicyNotFoundError
from src.shared.logging.error_handler import log_structured_error
from src.shared.timeout import call_with_timeout, collect_with_timeout
from src.shared.types import (
    BudgetCheckResult,
    BudgetState,
    BudgetStatus,
    ComplianceReport,
    CostBreakdown,
    DailyUsage,
    Policy,
    PolicyWithUsage,
    UsageSummary,
    to_decimal,
    utc_day_bounds,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import date, datetime
    from uuid import UUID

    from src.brain.metrics.governance import GovernanceMetrics
    from src.ports.policy_store_port import PolicyStorePort
    from src.ports.usage_ledger_port import UsageLedgerPort
    from src.shared.config import GovernanceSettings
    from src.shared.types import TaskOverride

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
WARNING_PERCENT = Decimal("80")
CRITICAL_PERCENT = Decimal("95")
EXCEEDED_PERCENT = Decimal("100")

FAIL_OPEN_REASON = "Budget check failed, defaulting to cheapest models"
WITHIN_BUDGET_REASON = "Within budget"


# -- Pure decision functions --


def usage_percent(daily_spend: Decimal, max_daily_cost: Decimal) -> Decimal:
    return daily_spend / max_daily_cost * _HUNDRED


def classify_budget_status(percent: Decimal) -> BudgetStatus:
    if percent >= EXCEEDED_PERCENT:
        return BudgetStatus.EXCEEDED
    if percent >= CRITICAL_PERCENT:
        return BudgetStatus.CRITICAL
    if percent >= WARNING_PERCENT:
        return BudgetStatus.WARNING
    return BudgetStatus.NORMAL


def decide_admission(
    *,
    estimated_cost: Decimal,
    daily_spend: Decimal | None,
    policy: Policy,
) -> BudgetCheckResult:
    """Apply the admission rules to already-loaded inputs.

    daily_spend may be None only when the per-request cap alone decides
    the outcome; the caller skips the ledger read in that case.
    """
    max_daily = policy.max_daily_cost

    if estimated_cost > policy.max_request_cost:
        return BudgetCheckResult(
            allowed=False,
            force_cheapest=False,
            reason=(
                f"Request cost (${estimated_cost:.4f}) exceeds max per-request "
                f"limit (${policy.max_request_cost:.4f})"
            ),
            remaining_budget=_ZERO,
            daily_spend=daily_spend if daily_spend is not None else _ZERO,
            max_daily_budget=max_daily,
        )

    if daily_spend is None:
        msg = "daily_spend is required once the per-request cap passes"
        raise ValueError(msg)

    percent = usage_percent(daily_spend, max_daily)
    remaining = max(_ZERO, max_daily - daily_spend)

    if daily_spend + estimated_cost > max_daily:
        if percent >= EXCEEDED_PERCENT:
            return BudgetCheckResult(
                allowed=False,
                force_cheapest=False,
                reason=f"Daily budget exceeded (${daily_spend:.2f} / ${max_daily:.2f})",
                remaining_budget=_ZERO,
                daily_spend=daily_spend,
                max_daily_budget=max_daily,
            )
        return _degraded(f"Near budget limit ({percent:.1f}%)", remaining, daily_spend, max_daily)

    if percent >= CRITICAL_PERCENT:
        return _degraded(f"Critical budget usage ({percent:.1f}%)", remaining, daily_spend, max_daily)
    if percent >= WARNING_PERCENT:
        return _degraded(f"High budget usage ({percent:.1f}%)", remaining, daily_spend, max_daily)

    return BudgetCheckResult(
        allowed=True,
        force_cheapest=False,
        reason=WITHIN_BUDGET_REASON,
        remaining_budget=remaining,
        daily_spend=daily_spend,
        max_daily_budget=max_daily,
    )


def _degraded(
    prefix: str,
    remaining: Decimal,
    daily_spend: Decimal,
    max_daily: Decimal,
) -> BudgetCheckResult:
    return BudgetCheckResult(
        allowed=True,
        force_cheapest=True,
        reason=f"{prefix}, forcing cheapest models",
        remaining_budget=remaining,
        daily_spend=daily_spend,
        max_daily_budget=max_daily,
    )


def fail_open_result() -> BudgetCheckResult:
    return BudgetCheckResult(
        allowed=True,
        force_cheapest=True,
        reason=FAIL_OPEN_REASON,
        remaining_budget=_ZERO,
        daily_spend=_ZERO,
        max_daily_budget=_ZERO,
    )


def validate_estimated_cost(estimated_cost: object) -> Decimal:
    """Boundary check: finite and non-negative, else InvalidInputError."""
    cost = to_decimal(estimated_cost, "estimated_cost")
    if cost < 0:
        raise InvalidInputError("estimated_cost must be >= 0", field="estimated_cost")
    return cost


# -- Controller --


class BudgetAdmissionController:
    """Admission decisions and budget read models for one deployment.

    Args:
        ledger: Source of daily spend.
        policy_store: Per-org policies.
        settings: System defaults used when an org has no policy.
        metrics: Optional Prometheus metrics.
        clock: Source of "now"; daily spend is computed for clock().date() in UTC.
    """

    def __init__(
        self,
        *,
        ledger: UsageLedgerPort,
        policy_store: PolicyStorePort,
        settings: GovernanceSettings,
        metrics: GovernanceMetrics | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._policy_store = policy_store
        self._settings = settings
        self._metrics = metrics
        self._clock = clock

    async def get_policy(self, org_id: UUID) -> Policy:
        """Stored policy, or system defaults when none exists. Never None.

        Raises:
            StoreUnavailableError: The policy store failed or timed out.
        """
        try:
            return await call_with_timeout(
                self._policy_store.get(org_id),
                store_name="policy_store",
                timeout_seconds=self._settings.store_timeout_s,
            )
        except PolicyNotFoundError:
            logger.debug("No policy for org=%s, using system defaults", org_id)
            return self._settings.default_policy(org_id)

    async def get_daily_spend(self, org_id: UUID, day: date | None = None) -> Decimal:
        return await call_with_timeout(
            self._ledger.sum_cost(org_id, day or self._clock().date()),
            store_name="usage_ledger",
            timeout_seconds=self._settings.store_timeout_s,
        )

    async def can_afford(self, org_id: UUID, estimated_cost: Decimal | float) -> BudgetCheckResult:
        """Decide whether an outbound request may proceed.

        Raises:
            InvalidInputError: estimated_cost is negative, NaN or infinite.
        """
        cost = validate_estimated_cost(estimated_cost)

        if self._metrics is not None:
            with self._metrics.timer(self._metrics.admission_duration):
                result, decision = await self._decide(org_id, cost)
            self._metrics.admission_decisions.labels(decision=decision).inc()
        else:
            result, decision = await self._decide(org_id, cost)

        if not result.allowed:
            logger.info("Admission denied: org=%s cost=%s reason=%s", org_id, cost, result.reason)
        elif result.force_cheapest:
            logger.info("Admission degraded: org=%s cost=%s reason=%s", org_id, cost, result.reason)
        return result

    async def _decide(self, org_id: UUID, cost: Decimal) -> tuple[BudgetCheckResult, str]:
        try:
            policy = await self.get_policy(org_id)
            if cost > policy.max_request_cost:
                result = decide_admission(estimated_cost=cost, daily_spend=None, policy=policy)
            else:
                spend = await self.get_daily_spend(org_id)
                result = decide_admission(estimated_cost=cost, daily_spend=spend, policy=policy)
        except Exception as exc:
            log_structured_error(
                logger,
                exc,
                component="budget_admission",
                org_id=org_id,
                outcome="fail_open",
                context={"estimated_cost": str(cost)},
            )
            return fail_open_result(), "fail_open"

        if not result.allowed:
            return result, "denied"
        return result, "degraded" if result.force_cheapest else "allowed"

    # -- Read models --

    async def get_budget_state(self, org_id: UUID) -> BudgetState:
        """Current spend against the daily cap.

        Raises:
            StoreUnavailableError: The policy store or ledger failed.
        """
        return (await self.get_policy_with_usage(org_id)).budget

    async def get_policy_with_usage(self, org_id: UUID) -> PolicyWithUsage:
        """Effective policy and today's budget state, read together."""
        policy = await self.get_policy(org_id)
        spend = await self.get_daily_spend(org_id)
        percent = usage_percent(spend, policy.max_daily_cost)
        budget = BudgetState(
            daily_cost=spend,
            max_daily_cost=policy.max_daily_cost,
            remaining_budget=max(_ZERO, policy.max_daily_cost - spend),
            usage_percent=float(percent),
            status=classify_budget_status(percent),
        )
        return PolicyWithUsage(policy=policy, budget=budget)

    async def get_task_override(self, org_id: UUID, task_category: str) -> TaskOverride | None:
        """The org's override for one task category, or None if it has none."""
        return (await self.get_policy(org_id)).get_task_override(task_category)

    async def get_remaining_budget(self, org_id: UUID) -> Decimal:
        return (await self.get_budget_state(org_id)).remaining_budget

    async def check_compliance(self, org_id: UUID) -> ComplianceReport:
        """Aggregate compliance of today's usage against the org policy.

        Per-request caps are enforced at admission time and are not re-checked here.
        """
        policy = await self.get_policy(org_id)
        spend = await self.get_daily_spend(org_id)
        violations: list[str] = []
        warnings: list[str] = []

        if spend > policy.max_daily_cost:
            violations.append(
                f"Daily spend (${spend:.2f}) exceeds limit (${policy.max_daily_cost:.2f})"
            )
        else:
            status = classify_budget_status(usage_percent(spend, policy.max_daily_cost))
            if status is not BudgetStatus.NORMAL:
                warnings.append(
                    f"Daily spend (${spend:.2f}) is at {status.value} level "
                    f"of limit (${policy.max_daily_cost:.2f})"
                )

        if not policy.allowed_providers:
            warnings.append("No providers are allowed; every request will fail to route")
        known = self._settings.known_providers
        if known and not policy.allowed_providers <= known:
            unknown = ", ".join(sorted(policy.allowed_providers - known))
            warnings.append(f"Allowed providers not in catalog: {unknown}")

        return ComplianceReport(compliant=not violations, violations=violations, warnings=warnings)

    async def get_usage_summary(
        self,
        org_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageSummary:
        """Totals and per-provider/per-model breakdown over [start, end).

        Defaults to the current UTC day.
        """
        now = self._clock()
        if start is None:
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if end is None:
            end = now + timedelta(microseconds=1)

        total_cost = _ZERO
        total_tokens = 0
        total = 0
        succeeded = 0
        latency_sum = 0.0
        latency_count = 0
        by_provider: dict[str, CostBreakdown] = {}
        by_model: dict[str, CostBreakdown] = {}

        records = await collect_with_timeout(
            self._ledger.query(org_id, start, end),
            store_name="usage_ledger",
            timeout_seconds=self._settings.store_timeout_s,
        )
        for record in records:
            total += 1
            total_cost += record.estimated_cost
            total_tokens += record.total_tokens
            if record.success:
                succeeded += 1
            if record.latency_ms is not None:
                latency_sum += record.latency_ms
                latency_count += 1
            _accumulate(by_provider, record.provider, record.estimated_cost)
            _accumulate(by_model, f"{record.provider}:{record.model}", record.estimated_cost)

        return UsageSummary(
            total_cost=total_cost,
            total_tokens=total_tokens,
            total_requests=total,
            success_rate=succeeded / total if total else 0.0,
            avg_latency_ms=latency_sum / latency_count if latency_count else 0.0,
            by_provider=by_provider,
            by_model=by_model,
        )

    async def get_usage_trend(self, org_id: UUID, days: int = 7) -> list[DailyUsage]:
        """Spend and request count per UTC day, oldest first, ending today."""
        if days < 1:
            raise InvalidInputError("days must be >= 1", field="days")
        today = self._clock().date()
        trend: list[DailyUsage] = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            spend = await self.get_daily_spend(org_id, day)
            start, end = utc_day_bounds(day)
            requests = await call_with_timeout(
                self._ledger.count(org_id, start, end),
                store_name="usage_ledger",
                timeout_seconds=self._settings.store_timeout_s,
            )
            trend.append(DailyUsage(day=day.isoformat(), cost=spend, requests=requests))
        return trend


def _accumulate(bucket: dict[str, CostBreakdown], key: str, cost: Decimal) -> None:
    prior = bucket.get(key)
    if prior is None:
        bucket[key] = CostBreakdown(cost=cost, requests=1)
    else:
        bucket[key] = CostBreakdown(cost=prior.cost + cost, requests=prior.requests + 1)
