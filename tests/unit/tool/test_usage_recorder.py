"""Tests for post-call metering.

Validates:
- Each outcome reaches both telemetry and the ledger
- Ledger failures are absorbed and counted as metering loss
- Input validation happens before anything is written
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from src.shared.errors import InvalidInputError
from src.tool.llm.usage_recorder import MeteringLossTracker, UsageRecorder
from tests.fakes import FailingUsageLedger, SlowUsageLedger

if TYPE_CHECKING:
    from uuid import UUID

    from prometheus_client import CollectorRegistry

    from src.brain.metrics.governance import GovernanceMetrics
    from src.infra.billing import InMemoryUsageLedger
    from src.tool.llm.telemetry import TelemetryTracker


@pytest.mark.unit
class TestUsageRecorder:
    @pytest.fixture
    def recorder(
        self,
        ledger: InMemoryUsageLedger,
        telemetry: TelemetryTracker,
        metrics: GovernanceMetrics,
    ) -> UsageRecorder:
        return UsageRecorder(ledger=ledger, telemetry=telemetry, metrics=metrics)

    @pytest.mark.asyncio
    async def test_records_ledger_and_telemetry(
        self,
        recorder: UsageRecorder,
        ledger: InMemoryUsageLedger,
        telemetry: TelemetryTracker,
        sample_org_id: UUID,
        registry: CollectorRegistry,
    ) -> None:
        record = await recorder.record(
            org_id=sample_org_id,
            provider="openai",
            model="gpt-4o",
            estimated_cost=Decimal("0.02"),
            success=True,
            latency_ms=120.0,
            input_tokens=100,
            output_tokens=40,
        )
        assert record.total_tokens == 140
        assert len(ledger) == 1
        state = telemetry.get_state("openai", "gpt-4o")
        assert state.request_count == 1
        assert state.ewma_latency_ms == 120.0
        assert registry.get_sample_value("governance_usage_records_total", {"outcome": "recorded"}) == 1.0
        assert (
            registry.get_sample_value(
                "governance_telemetry_ewma_latency_ms",
                {"provider": "openai", "model": "gpt-4o"},
            )
            == 120.0
        )

    @pytest.mark.asyncio
    async def test_no_latency_updates_ledger_only(
        self,
        recorder: UsageRecorder,
        ledger: InMemoryUsageLedger,
        telemetry: TelemetryTracker,
        sample_org_id: UUID,
    ) -> None:
        await recorder.record(
            org_id=sample_org_id,
            provider="openai",
            model="gpt-4o",
            estimated_cost=0,
            success=False,
            error_message="timeout before first byte",
        )
        assert len(ledger) == 1
        assert telemetry.get_state("openai", "gpt-4o") is None

    @pytest.mark.asyncio
    async def test_ledger_failure_is_metering_loss(
        self,
        telemetry: TelemetryTracker,
        metrics: GovernanceMetrics,
        registry: CollectorRegistry,
        sample_org_id: UUID,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        failing = FailingUsageLedger()
        loss = MeteringLossTracker()
        recorder = UsageRecorder(ledger=failing, telemetry=telemetry, metering_loss=loss, metrics=metrics)

        with caplog.at_level(logging.ERROR, logger="src.tool.llm.usage_recorder"):
            record = await recorder.record(
                org_id=sample_org_id,
                provider="openai",
                model="gpt-4o",
                estimated_cost=Decimal("0.05"),
                success=True,
                latency_ms=80.0,
            )

        assert record.estimated_cost == Decimal("0.05")
        assert failing.append_attempts == 1
        assert loss.lost_count == 1
        assert loss.failures[0]["cost"] == "0.05"
        assert loss.failures[0]["reason"] == "STORE_UNAVAILABLE"
        assert any("METERING LOSS" in r.getMessage() for r in caplog.records)
        # Telemetry still saw the call.
        assert telemetry.get_state("openai", "gpt-4o").request_count == 1
        assert registry.get_sample_value("governance_usage_records_total", {"outcome": "dropped"}) == 1.0

    @pytest.mark.asyncio
    async def test_slow_ledger_times_out_as_loss(self, telemetry: TelemetryTracker, sample_org_id: UUID) -> None:
        recorder = UsageRecorder(ledger=SlowUsageLedger(delay=1.0), telemetry=telemetry, store_timeout_s=0.01)
        await recorder.record(
            org_id=sample_org_id,
            provider="openai",
            model="gpt-4o",
            estimated_cost=Decimal("0.01"),
            success=True,
        )
        assert recorder.metering_loss.lost_count == 1
        assert recorder.metering_loss.failures[0]["reason"] == "STORE_TIMEOUT"

    @pytest.mark.asyncio
    async def test_negative_cost_rejected_before_write(
        self,
        recorder: UsageRecorder,
        ledger: InMemoryUsageLedger,
        telemetry: TelemetryTracker,
        sample_org_id: UUID,
    ) -> None:
        with pytest.raises(InvalidInputError, match="estimated_cost"):
            await recorder.record(
                org_id=sample_org_id,
                provider="openai",
                model="gpt-4o",
                estimated_cost=Decimal("-0.01"),
                success=True,
                latency_ms=10.0,
            )
        assert len(ledger) == 0
        assert len(telemetry) == 0

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(
        self,
        ledger: InMemoryUsageLedger,
        telemetry: TelemetryTracker,
        sample_org_id: UUID,
    ) -> None:
        recorder = UsageRecorder(ledger=ledger, telemetry=telemetry, known_providers=frozenset({"openai"}))
        with pytest.raises(InvalidInputError, match="Unknown provider: acme"):
            await recorder.record(
                org_id=sample_org_id,
                provider="acme",
                model="m",
                estimated_cost=0,
                success=True,
                latency_ms=10.0,
            )
        assert len(ledger) == 0


@pytest.mark.unit
class TestMeteringLossTracker:
    def test_keeps_only_recent_failures(self, sample_org_id: UUID) -> None:
        loss = MeteringLossTracker(max_failures=3)
        for i in range(5):
            loss.record_failure(
                org_id=sample_org_id,
                provider="openai",
                model="gpt-4o",
                cost=Decimal(f"0.0{i}"),
                reason="STORE_UNAVAILABLE",
            )
        assert loss.lost_count == 5
        assert [f["cost"] for f in loss.failures] == ["0.02", "0.03", "0.04"]

    def test_rejects_empty_buffer(self) -> None:
        with pytest.raises(InvalidInputError):
            MeteringLossTracker(max_failures=0)
