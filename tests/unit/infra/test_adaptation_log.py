"""Tests for adaptation log adapters."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from src.infra.billing import InMemoryAdaptationLog, PgAdaptationLog
from src.infra.models import AdaptationRunModel
from src.shared.errors import StoreUnavailableError
from src.shared.types import AdaptationResult, AlphaAdjustment, ProviderDisablement
from tests.fakes import FakeAsyncSession, FakeOrmRow, FakeSessionFactory

if TYPE_CHECKING:
    from uuid import UUID

_T0 = datetime(2026, 3, 10, 3, 0, tzinfo=UTC)


def _result(org_id: UUID, at: datetime) -> AdaptationResult:
    return AdaptationResult(
        org_id=org_id,
        alpha_adjustments=[
            AlphaAdjustment(provider="openai", model="gpt-4o", old_alpha=0.3, new_alpha=0.35, reason="r"),
        ],
        disablements=[
            ProviderDisablement(provider="acme", model="m", reason="r", error_rate=0.6, threshold=0.5),
        ],
        recommendations=["Disabled 1 providers due to high error rates"],
        created_at=at,
    )


@pytest.mark.unit
class TestInMemoryAdaptationLog:
    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, adaptation_log: InMemoryAdaptationLog, sample_org_id: UUID) -> None:
        old = _result(sample_org_id, _T0)
        new = _result(sample_org_id, _T0 + timedelta(days=1))
        await adaptation_log.write(old)
        await adaptation_log.write(new)
        await adaptation_log.write(_result(uuid4(), _T0))

        recent = await adaptation_log.list_recent(sample_org_id)
        assert [r.id for r in recent] == [new.id, old.id]
        assert len(await adaptation_log.list_recent(sample_org_id, limit=1)) == 1


@pytest.mark.unit
class TestPgAdaptationLog:
    @pytest.mark.asyncio
    async def test_write_serializes_nested_lists(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        log = PgAdaptationLog(session_factory=FakeSessionFactory(session))
        result = _result(sample_org_id, _T0)

        await log.write(result)

        row = session.added[0]
        assert isinstance(row, AdaptationRunModel)
        assert row.alpha_adjustments[0]["new_alpha"] == 0.35
        assert row.disablements[0]["provider"] == "acme"
        assert row.enablements == []
        assert session.committed

    @pytest.mark.asyncio
    async def test_list_recent_rebuilds_results(self, sample_org_id: UUID) -> None:
        row = FakeOrmRow(
            id=uuid4(),
            org_id=sample_org_id,
            alpha_adjustments=[
                {"provider": "openai", "model": "gpt-4o", "old_alpha": 0.3, "new_alpha": 0.35, "reason": "r"},
            ],
            disablements=[],
            enablements=[{"provider": "acme", "reason": "r", "error_rate": 0.1, "threshold": 0.2}],
            recommendations=["Re-enabled 1 providers after recovery"],
            created_at=_T0,
        )
        session = FakeAsyncSession()
        session.set_scalars_result([row])
        log = PgAdaptationLog(session_factory=FakeSessionFactory(session))

        [result] = await log.list_recent(sample_org_id)
        assert result.alpha_adjustments[0].new_alpha == 0.35
        assert result.enablements[0].provider == "acme"
        assert result.changed

    @pytest.mark.asyncio
    async def test_failures_wrapped(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession(fail_with=OperationalError("INSERT", {}, Exception("down")))
        log = PgAdaptationLog(session_factory=FakeSessionFactory(session))
        with pytest.raises(StoreUnavailableError) as exc_info:
            await log.write(_result(sample_org_id, _T0))
        assert exc_info.value.store_name == "adaptation_log"
        with pytest.raises(StoreUnavailableError):
            await log.list_recent(sample_org_id)
