"""Post-call metering: one outcome -> telemetry sample + ledger record.

Called after every LLM call attempt, successful or not.
- Input is validated at the boundary (InvalidInputError propagates)
- Telemetry is updated in-process first; it cannot fail on valid input
- Ledger write failures never reach the caller: they are logged,
  counted as metering loss and dropped
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from src.shared.errors import InvalidInputError, StoreUnavailableError
from src.shared.logging.error_handler import log_structured_error
from src.shared.timeout import call_with_timeout
from src.shared.types import UsageRecord

if TYPE_CHECKING:
    from decimal import Decimal
    from uuid import UUID

    from src.brain.metrics.governance import GovernanceMetrics
    from src.ports.usage_ledger_port import UsageLedgerPort
    from src.tool.llm.telemetry import TelemetryTracker

logger = logging.getLogger(__name__)


@dataclass
class MeteringLossTracker:
    """Counts ledger writes that were dropped.

    Every drop is logged at ERROR. The count should stay 0 in a healthy
    deployment; non-zero means daily spend is under-reported. Only the most
    recent ``max_failures`` drops are kept for inspection.
    """

    max_failures: int = 1000
    lost_count: int = 0
    _failures: deque[dict[str, str]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_failures < 1:
            raise InvalidInputError("max_failures must be >= 1", field="max_failures")
        self._failures = deque(maxlen=self.max_failures)

    def record_failure(
        self,
        *,
        org_id: UUID,
        provider: str,
        model: str,
        cost: Decimal,
        reason: str,
    ) -> None:
        self.lost_count += 1
        self._failures.append(
            {
                "org_id": str(org_id),
                "provider": provider,
                "model": model,
                "cost": str(cost),
                "reason": reason,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.error(
            "METERING LOSS: org=%s %s/%s cost=%s reason=%s (total_lost=%d)",
            org_id,
            provider,
            model,
            cost,
            reason,
            self.lost_count,
        )

    @property
    def failures(self) -> list[dict[str, str]]:
        return list(self._failures)


class UsageRecorder:
    """Records the outcome of one LLM call into telemetry and the ledger."""

    def __init__(
        self,
        *,
        ledger: UsageLedgerPort,
        telemetry: TelemetryTracker,
        metering_loss: MeteringLossTracker | None = None,
        metrics: GovernanceMetrics | None = None,
        store_timeout_s: float = 2.0,
        known_providers: frozenset[str] = frozenset(),
    ) -> None:
        self._ledger = ledger
        self._known_providers = known_providers
        self._telemetry = telemetry
        self.metering_loss = metering_loss or MeteringLossTracker()
        self._metrics = metrics
        self._store_timeout_s = store_timeout_s

    async def record(
        self,
        *,
        org_id: UUID,
        provider: str,
        model: str,
        estimated_cost: Decimal | float,
        success: bool,
        latency_ms: float | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        task_category: str | None = None,
        agent_type: str | None = None,
        user_id: UUID | None = None,
        error_message: str | None = None,
    ) -> UsageRecord:
        """Record one call outcome.

        Returns the UsageRecord even when the ledger write was dropped.
        A call with no measured latency updates the ledger only.

        Raises:
            InvalidInputError: Malformed outcome (negative cost or latency,
                unknown provider when a catalog is configured).
        """
        if self._known_providers and provider not in self._known_providers:
            raise InvalidInputError(f"Unknown provider: {provider}", field="provider")
        record = UsageRecord(
            org_id=org_id,
            provider=provider,
            model=model,
            estimated_cost=estimated_cost,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            success=success,
            latency_ms=latency_ms,
            task_category=task_category,
            agent_type=agent_type,
            user_id=user_id,
            error_message=error_message,
        )

        if latency_ms is not None:
            state = self._telemetry.record_sample(provider, model, latency_ms, success)
            if self._metrics is not None:
                self._metrics.ewma_latency.labels(provider=provider, model=model).set(
                    state.ewma_latency_ms
                )
                self._metrics.ewma_error_rate.labels(provider=provider, model=model).set(
                    state.ewma_error_rate
                )

        try:
            await call_with_timeout(
                self._ledger.append(record),
                store_name="usage_ledger",
                timeout_seconds=self._store_timeout_s,
            )
        except StoreUnavailableError as exc:
            self.metering_loss.record_failure(
                org_id=org_id,
                provider=provider,
                model=model,
                cost=record.estimated_cost,
                reason=exc.code,
            )
            log_structured_error(
                logger,
                exc,
                component="usage_recorder",
                org_id=org_id,
                outcome="dropped",
                context={"provider": provider, "model": model, "record_id": str(record.id)},
                level=logging.WARNING,
            )
            self._count("dropped")
            return record

        self._count("recorded")
        logger.debug(
            "Recorded usage: org=%s %s/%s cost=%s tokens=%d success=%s",
            org_id,
            provider,
            model,
            record.estimated_cost,
            record.total_tokens,
            success,
        )
        return record

    def _count(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.usage_records.labels(outcome=outcome).inc()
