"""Nightly policy adaptation.

One run per organization, three independent adjustments planned from the
same telemetry snapshot:

1. Alpha tuning: live error rate stands in for signal variance.
   error > target      -> alpha + step (more reactive), capped at max
   error < target / 2  -> alpha - step (more smoothing), floored at min
   An alpha already outside the bounds is clamped before stepping.
   A pair is only re-evaluated once new samples have arrived.
2. Disablement: an allowed provider with a model at or above error_threshold
   (and enough requests) is removed from the org's allowed set.
3. Re-enablement: a provider outside the allowed set whose average error
   across models has dropped to recovery_threshold or below is re-added.

recovery_threshold < error_threshold gives hysteresis: a disabled provider
stays disabled for any error rate in [recovery, error_threshold).

Planning is pure; side effects happen in run_adaptation in a fixed order
(policy write, alpha writes, audit log) so a failed policy write leaves
nothing half-applied.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from src.shared.errors import PolicyNotFoundError, StoreUnavailableError
from src.shared.logging.error_handler import log_structured_error
from src.shared.timeout import call_with_timeout
from src.shared.types import (
    AdaptationResult,
    AlphaAdjustment,
    ProviderDisablement,
    ProviderEnablement,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from uuid import UUID

    from src.brain.metrics.governance import GovernanceMetrics
    from src.ports.adaptation_log_port import AdaptationLogPort
    from src.ports.policy_store_port import PolicyStorePort
    from src.shared.config import AlphaTuningConfig, DisablementConfig, GovernanceSettings
    from src.shared.types import Policy, TelemetryState
    from src.tool.llm.telemetry import TelemetryTracker

logger = logging.getLogger(__name__)

NO_CHANGES_RECOMMENDATION = "No policy adaptations needed - all metrics within normal ranges"


# -- Pure planners --


def effective_alpha_bounds(config: AlphaTuningConfig, policy: Policy | None = None) -> tuple[float, float]:
    """Intersection of the tuning config and the org's alpha bounds.

    Falls back to the config bounds when the two ranges do not overlap.
    """
    if policy is None:
        return config.min_alpha, config.max_alpha
    low = max(config.min_alpha, policy.min_alpha)
    high = min(config.max_alpha, policy.max_alpha)
    if low > high:
        logger.warning(
            "Policy alpha bounds [%.3f, %.3f] do not overlap tuning bounds [%.3f, %.3f]; using tuning bounds",
            policy.min_alpha,
            policy.max_alpha,
            config.min_alpha,
            config.max_alpha,
        )
        return config.min_alpha, config.max_alpha
    return low, high


def needs_alpha_evaluation(state: TelemetryState, config: AlphaTuningConfig) -> bool:
    return state.request_count >= config.min_samples and state.request_count != state.tuned_at_count


def plan_alpha_adjustment(
    state: TelemetryState,
    config: AlphaTuningConfig,
    bounds: tuple[float, float] | None = None,
) -> AlphaAdjustment | None:
    """Next alpha for one pair, or None if it should stay as is."""
    if not needs_alpha_evaluation(state, config):
        return None
    min_alpha, max_alpha = bounds or (config.min_alpha, config.max_alpha)
    proxy = state.ewma_error_rate
    current = state.alpha
    # Bounds may have narrowed since the last run; step from inside them.
    clamped = min(max(current, min_alpha), max_alpha)

    if proxy > config.target_variance:
        new_alpha = min(clamped + config.adjustment_step, max_alpha)
        reason = f"High variance ({proxy:.3f}) - increasing reactivity"
    elif proxy < config.target_variance / 2:
        new_alpha = max(clamped - config.adjustment_step, min_alpha)
        reason = f"Low variance ({proxy:.3f}) - increasing smoothing"
    else:
        new_alpha = clamped
        reason = ""

    # Float steps drift (0.3 + 0.05 != 0.35); round before comparing.
    new_alpha = round(new_alpha, 6)
    if new_alpha == round(current, 6):
        return None
    if new_alpha == round(clamped, 6):
        reason = f"Alpha {current:.3f} outside bounds [{min_alpha:.3f}, {max_alpha:.3f}] - clamped to bounds"
    return AlphaAdjustment(
        provider=state.provider,
        model=state.model,
        old_alpha=current,
        new_alpha=new_alpha,
        reason=reason,
    )


def plan_disablements(
    states: Iterable[TelemetryState],
    allowed: frozenset[str],
    config: DisablementConfig,
) -> list[ProviderDisablement]:
    """One disablement per allowed provider, reported against its worst model."""
    worst: dict[str, TelemetryState] = {}
    for state in states:
        if state.provider not in allowed:
            continue
        if state.request_count < config.min_requests_before_disable:
            continue
        if state.ewma_error_rate < config.error_threshold:
            continue
        prior = worst.get(state.provider)
        if prior is None or state.ewma_error_rate > prior.ewma_error_rate:
            worst[state.provider] = state

    return [
        ProviderDisablement(
            provider=provider,
            model=state.model,
            reason=(
                f"Error rate {state.ewma_error_rate * 100:.1f}% exceeds threshold "
                f"{config.error_threshold * 100:.1f}%"
            ),
            error_rate=state.ewma_error_rate,
            threshold=config.error_threshold,
        )
        for provider, state in sorted(worst.items())
    ]


def plan_enablements(
    states: Iterable[TelemetryState],
    allowed: frozenset[str],
    candidates: frozenset[str],
    config: DisablementConfig,
    *,
    just_disabled: frozenset[str] = frozenset(),
) -> list[ProviderEnablement]:
    """Re-enable disabled candidates whose average error has recovered."""
    by_provider: dict[str, list[TelemetryState]] = {}
    for state in states:
        by_provider.setdefault(state.provider, []).append(state)

    enablements: list[ProviderEnablement] = []
    for provider in sorted(candidates - allowed - just_disabled):
        provider_states = by_provider.get(provider)
        if not provider_states:
            continue
        total_requests = sum(s.request_count for s in provider_states)
        if total_requests < config.min_requests_before_enable:
            continue
        if any(
            s.request_count >= config.min_requests_before_disable and s.ewma_error_rate >= config.error_threshold
            for s in provider_states
        ):
            continue
        avg_error = sum(s.ewma_error_rate for s in provider_states) / len(provider_states)
        if avg_error <= config.recovery_threshold:
            enablements.append(
                ProviderEnablement(
                    provider=provider,
                    reason=(
                        f"Error rate {avg_error * 100:.1f}% below recovery threshold "
                        f"{config.recovery_threshold * 100:.1f}%"
                    ),
                    error_rate=avg_error,
                    threshold=config.recovery_threshold,
                )
            )
    return enablements


def build_recommendations(
    alpha_adjustments: list[AlphaAdjustment],
    disablements: list[ProviderDisablement],
    enablements: list[ProviderEnablement],
) -> list[str]:
    recommendations: list[str] = []
    if alpha_adjustments:
        recommendations.append(
            f"Adjusted EWMA α for {len(alpha_adjustments)} models to improve tracking accuracy"
        )
    if disablements:
        recommendations.append(
            f"Disabled {len(disablements)} providers due to high error rates - monitor for recovery"
        )
    if enablements:
        recommendations.append(f"Re-enabled {len(enablements)} providers after error rates recovered")
    if not recommendations:
        recommendations.append(NO_CHANGES_RECOMMENDATION)
    return recommendations


# -- Loop --


class PolicyAdaptationLoop:
    """Applies nightly adjustments to telemetry alpha and org policies.

    Args:
        telemetry: Live EWMA state; alpha is written back here.
        policy_store: Per-org policies.
        adaptation_log: Audit sink for AdaptationResult.
        settings: Tuning configs, store timeout, catalog and concurrency.
        metrics: Optional Prometheus metrics.
    """

    def __init__(
        self,
        *,
        telemetry: TelemetryTracker,
        policy_store: PolicyStorePort,
        adaptation_log: AdaptationLogPort,
        settings: GovernanceSettings,
        metrics: GovernanceMetrics | None = None,
    ) -> None:
        self._telemetry = telemetry
        self._policy_store = policy_store
        self._adaptation_log = adaptation_log
        self._settings = settings
        self._metrics = metrics
        self._org_locks: dict[UUID, asyncio.Lock] = {}

    # -- Single-concern entry points --

    def auto_tune_alpha(self, provider: str, model: str) -> AlphaAdjustment | None:
        """Tune one pair against the config bounds and apply the result."""
        state = self._telemetry.get_state(provider, model)
        if state is None:
            return None
        adjustment = plan_alpha_adjustment(state, self._settings.alpha_tuning)
        applied = self._apply_alpha([adjustment] if adjustment else [], [state])
        return applied[0] if applied else None

    async def check_and_disable_providers(self, org_id: UUID) -> list[ProviderDisablement]:
        async with self._lock_for(org_id):
            policy = await self._load_policy(org_id)
            states = self._live_states()
            disablements = plan_disablements(states, policy.allowed_providers, self._settings.disablement)
            await self._save_providers(policy, disablements, [])
        self._log_disablements(org_id, disablements)
        return disablements

    async def check_and_enable_providers(self, org_id: UUID) -> list[ProviderEnablement]:
        async with self._lock_for(org_id):
            policy = await self._load_policy(org_id)
            states = self._live_states()
            enablements = plan_enablements(
                states,
                policy.allowed_providers,
                self._candidates(states),
                self._settings.disablement,
            )
            await self._save_providers(policy, [], enablements)
        self._log_enablements(org_id, enablements)
        return enablements

    # -- Full run --

    async def run_adaptation(self, org_id: UUID) -> AdaptationResult:
        """Plan and apply every adjustment for one org.

        Raises:
            StoreUnavailableError: Loading or saving the policy failed. Nothing
                was applied.
        """
        async with self._lock_for(org_id):
            policy = await self._load_policy(org_id)
            states = self._live_states()
            tuning = self._settings.alpha_tuning
            disable_cfg = self._settings.disablement

            bounds = effective_alpha_bounds(tuning, policy)
            planned_alpha = [
                adj for adj in (plan_alpha_adjustment(s, tuning, bounds) for s in states) if adj is not None
            ]
            disablements = plan_disablements(states, policy.allowed_providers, disable_cfg)
            remaining = policy.allowed_providers - {d.provider for d in disablements}
            enablements = plan_enablements(
                states,
                remaining,
                self._candidates(states),
                disable_cfg,
                just_disabled=frozenset(d.provider for d in disablements),
            )

            await self._save_providers(policy, disablements, enablements)
            alpha_adjustments = self._apply_alpha(planned_alpha, states)

            result = AdaptationResult(
                org_id=org_id,
                alpha_adjustments=alpha_adjustments,
                disablements=disablements,
                enablements=enablements,
                recommendations=build_recommendations(alpha_adjustments, disablements, enablements),
            )
            await self._write_result(result)

        self._log_disablements(org_id, disablements)
        self._log_enablements(org_id, enablements)
        if self._metrics is not None:
            self._metrics.adaptation_runs.labels(outcome="success").inc()
            if alpha_adjustments:
                self._metrics.adaptation_changes.labels(kind="alpha").inc(len(alpha_adjustments))
            if disablements:
                self._metrics.adaptation_changes.labels(kind="disable").inc(len(disablements))
            if enablements:
                self._metrics.adaptation_changes.labels(kind="enable").inc(len(enablements))
        logger.info(
            "Adaptation complete: org=%s alpha=%d disabled=%d enabled=%d",
            org_id,
            len(alpha_adjustments),
            len(disablements),
            len(enablements),
        )
        return result

    async def run_nightly(
        self,
        org_ids: Iterable[UUID],
        should_stop: Callable[[], bool] | None = None,
    ) -> list[AdaptationResult]:
        """Adapt many orgs with bounded parallelism.

        A failing org is logged and skipped; it is not retried until the next
        run. should_stop is polled before each org starts.
        """
        semaphore = asyncio.Semaphore(self._settings.adaptation_concurrency)

        async def _one(org_id: UUID) -> AdaptationResult | None:
            async with semaphore:
                if should_stop is not None and should_stop():
                    if self._metrics is not None:
                        self._metrics.adaptation_runs.labels(outcome="skipped").inc()
                    return None
                try:
                    return await self.run_adaptation(org_id)
                except Exception as exc:
                    log_structured_error(
                        logger,
                        exc,
                        component="policy_adaptation",
                        org_id=org_id,
                        outcome="skip_org",
                    )
                    if self._metrics is not None:
                        self._metrics.adaptation_runs.labels(outcome="failed").inc()
                    return None

        results = await asyncio.gather(*(_one(org_id) for org_id in org_ids))
        completed = [r for r in results if r is not None]
        logger.info("Nightly adaptation finished: %d/%d orgs adapted", len(completed), len(results))
        return completed

    # -- Internal --

    def _lock_for(self, org_id: UUID) -> asyncio.Lock:
        lock = self._org_locks.get(org_id)
        if lock is None:
            lock = self._org_locks.setdefault(org_id, asyncio.Lock())
        return lock

    def _live_states(self) -> list[TelemetryState]:
        max_age_s = self._settings.telemetry_max_age_s
        max_age = timedelta(seconds=max_age_s) if max_age_s is not None else None
        return sorted(self._telemetry.get_all_recent(max_age).values(), key=lambda s: s.key)

    def _candidates(self, states: Iterable[TelemetryState]) -> frozenset[str]:
        return self._settings.provider_catalog | {s.provider for s in states}

    async def _load_policy(self, org_id: UUID) -> Policy:
        try:
            return await call_with_timeout(
                self._policy_store.get(org_id),
                store_name="policy_store",
                timeout_seconds=self._settings.store_timeout_s,
            )
        except PolicyNotFoundError:
            return self._settings.default_policy(org_id)

    async def _save_providers(
        self,
        policy: Policy,
        disablements: list[ProviderDisablement],
        enablements: list[ProviderEnablement],
    ) -> None:
        if not disablements and not enablements:
            return
        providers = (policy.allowed_providers - {d.provider for d in disablements}) | {
            e.provider for e in enablements
        }
        if providers == policy.allowed_providers:
            return
        await call_with_timeout(
            self._policy_store.save(policy.with_providers(providers)),
            store_name="policy_store",
            timeout_seconds=self._settings.store_timeout_s,
        )

    def _apply_alpha(
        self,
        planned: list[AlphaAdjustment],
        states: Iterable[TelemetryState],
    ) -> list[AlphaAdjustment]:
        """Write planned alphas, then mark every evaluated pair as tuned."""
        tuning = self._settings.alpha_tuning
        by_key = {s.key: s for s in states}
        applied: list[AlphaAdjustment] = []
        for adj in planned:
            state = by_key[(adj.provider, adj.model)]
            if self._telemetry.set_alpha(
                adj.provider,
                adj.model,
                adj.new_alpha,
                tuned_at_count=state.request_count,
                expected_tuned_at=state.tuned_at_count,
            ):
                applied.append(adj)
        touched = {(a.provider, a.model) for a in planned}
        for key, state in by_key.items():
            if key not in touched and needs_alpha_evaluation(state, tuning):
                self._telemetry.mark_tuned(state.provider, state.model, state.request_count)
        return applied

    async def _write_result(self, result: AdaptationResult) -> None:
        try:
            await call_with_timeout(
                self._adaptation_log.write(result),
                store_name="adaptation_log",
                timeout_seconds=self._settings.store_timeout_s,
            )
        except StoreUnavailableError as exc:
            # Changes are already applied; losing the audit row must not undo them.
            log_structured_error(
                logger,
                exc,
                component="adaptation_log",
                org_id=result.org_id,
                outcome="audit_dropped",
                level=logging.WARNING,
            )

    def _log_disablements(self, org_id: UUID, disablements: list[ProviderDisablement]) -> None:
        for d in disablements:
            logger.warning(
                "Auto-disabled provider: org=%s provider=%s model=%s error_rate=%.3f threshold=%.3f",
                org_id,
                d.provider,
                d.model,
                d.error_rate,
                d.threshold,
            )

    def _log_enablements(self, org_id: UUID, enablements: list[ProviderEnablement]) -> None:
        for e in enablements:
            logger.info(
                "Auto-enabled provider: org=%s provider=%s avg_error_rate=%.3f threshold=%.3f",
                org_id,
                e.provider,
                e.error_rate,
                e.threshold,
            )
