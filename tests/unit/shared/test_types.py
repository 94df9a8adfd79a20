"""Tests for domain type validation."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from src.shared.errors import InvalidInputError
from src.shared.types import (
    AdaptationResult,
    AlphaAdjustment,
    Policy,
    TaskOverride,
    UsageRecord,
    to_decimal,
    utc_day_bounds,
)


@pytest.mark.unit
class TestToDecimal:
    def test_float_goes_through_str(self) -> None:
        assert to_decimal(0.1, "cost") == Decimal("0.1")

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), "abc", True])
    def test_rejects(self, value: object) -> None:
        with pytest.raises(InvalidInputError):
            to_decimal(value, "cost")


@pytest.mark.unit
class TestUtcDayBounds:
    def test_half_open_day(self) -> None:
        start, end = utc_day_bounds(date(2026, 3, 10))
        assert start == datetime(2026, 3, 10, tzinfo=UTC)
        assert end == datetime(2026, 3, 11, tzinfo=UTC)


@pytest.mark.unit
class TestUsageRecord:
    def test_coerces_cost_and_totals_tokens(self) -> None:
        record = UsageRecord(
            org_id=uuid4(),
            provider="openai",
            model="gpt-4o",
            estimated_cost=0.02,
            input_tokens=100,
            output_tokens=50,
        )
        assert record.estimated_cost == Decimal("0.02")
        assert record.total_tokens == 150
        assert record.created_at.tzinfo is not None

    def test_rejects_negative_cost(self) -> None:
        with pytest.raises(InvalidInputError, match="estimated_cost"):
            UsageRecord(org_id=uuid4(), provider="openai", model="m", estimated_cost=-1)

    def test_rejects_nan_latency(self) -> None:
        with pytest.raises(InvalidInputError, match="latency_ms"):
            UsageRecord(
                org_id=uuid4(),
                provider="openai",
                model="m",
                estimated_cost=0,
                latency_ms=float("nan"),
            )

    def test_rejects_blank_provider(self) -> None:
        with pytest.raises(InvalidInputError, match="provider"):
            UsageRecord(org_id=uuid4(), provider=" ", model="m", estimated_cost=0)

    def test_rejects_naive_timestamp(self) -> None:
        with pytest.raises(InvalidInputError, match="timezone-aware"):
            UsageRecord(
                org_id=uuid4(),
                provider="openai",
                model="m",
                estimated_cost=0,
                created_at=datetime(2026, 1, 1),  # noqa: DTZ001 - deliberately naive
            )


@pytest.mark.unit
class TestPolicy:
    def test_rejects_zero_cap(self) -> None:
        with pytest.raises(InvalidInputError, match="max_daily_cost"):
            Policy(
                org_id=uuid4(),
                max_request_cost=Decimal("0.5"),
                max_daily_cost=Decimal("0"),
                allowed_providers=frozenset(),
            )

    def test_rejects_inverted_alpha_bounds(self) -> None:
        with pytest.raises(InvalidInputError, match="alpha bounds"):
            Policy(
                org_id=uuid4(),
                max_request_cost=1,
                max_daily_cost=10,
                allowed_providers=frozenset(),
                min_alpha=0.4,
                max_alpha=0.2,
            )

    def test_with_providers_replaces_wholesale(self, sample_policy: Policy) -> None:
        updated = sample_policy.with_providers(frozenset({"openai"}))
        assert updated.allowed_providers == frozenset({"openai"})
        assert sample_policy.allowed_providers == frozenset({"openai", "anthropic"})
        assert updated.max_daily_cost == sample_policy.max_daily_cost
        assert updated.updated_at >= sample_policy.updated_at

    def test_task_override_lookup(self) -> None:
        policy = Policy(
            org_id=uuid4(),
            max_request_cost=1,
            max_daily_cost=10,
            allowed_providers=frozenset({"openai"}),
            task_overrides={"code": TaskOverride(min_performance=0.8, preferred_models=["gpt-4o"])},
        )
        assert policy.get_task_override("code") == TaskOverride(0.8, ("gpt-4o",))
        assert policy.get_task_override("chat") is None
        assert policy.get_task_override(None) is None
        # Provider changes keep the overrides.
        assert policy.with_providers(frozenset({"anthropic"})).task_overrides == policy.task_overrides

    def test_rejects_blank_override_category(self) -> None:
        with pytest.raises(InvalidInputError, match="task override"):
            Policy(
                org_id=uuid4(),
                max_request_cost=1,
                max_daily_cost=10,
                allowed_providers=frozenset(),
                task_overrides={" ": TaskOverride(min_performance=0.5)},
            )


@pytest.mark.unit
class TestTaskOverride:
    def test_rejects_out_of_range_floor(self) -> None:
        with pytest.raises(InvalidInputError, match="min_performance"):
            TaskOverride(min_performance=1.2)

    def test_from_dict(self) -> None:
        override = TaskOverride.from_dict({"min_performance": 1, "preferred_models": ["a", "b"]})
        assert override == TaskOverride(1.0, ("a", "b"))
        assert override.to_dict() == {"min_performance": 1.0, "preferred_models": ["a", "b"]}

    @pytest.mark.parametrize(
        "data",
        [{}, {"min_performance": "high"}, {"min_performance": 0.5, "preferred_models": "gpt-4o"}],
    )
    def test_from_dict_rejects_malformed(self, data: dict[str, object]) -> None:
        with pytest.raises(InvalidInputError):
            TaskOverride.from_dict(data)


@pytest.mark.unit
class TestAdaptationResult:
    def test_changed(self) -> None:
        org_id = uuid4()
        assert not AdaptationResult(org_id=org_id).changed
        adj = AlphaAdjustment(provider="p", model="m", old_alpha=0.3, new_alpha=0.35, reason="r")
        assert AdaptationResult(org_id=org_id, alpha_adjustments=[adj]).changed
