"""Tests for usage ledger adapters.

InMemoryUsageLedger: day-bounded sums, half-open queries, filters.
PgUsageLedger: ORM mapping and StoreUnavailableError wrapping, via FakeAsyncSession.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from src.infra.billing import InMemoryUsageLedger, PgUsageLedger
from src.infra.models import UsageLedgerModel
from src.shared.errors import StoreUnavailableError
from src.shared.types import UsageRecord
from tests.fakes import FakeAsyncSession, FakeOrmRow, FakeSessionFactory

if TYPE_CHECKING:
    from uuid import UUID

_DAY = date(2026, 3, 10)
_NOON = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _record(org_id: UUID, cost: str, at: datetime, *, provider: str = "openai", model: str = "gpt-4o") -> UsageRecord:
    return UsageRecord(
        org_id=org_id,
        provider=provider,
        model=model,
        estimated_cost=Decimal(cost),
        created_at=at,
    )


async def _collect(ledger: InMemoryUsageLedger | PgUsageLedger, *args: object, **kwargs: object) -> list[UsageRecord]:
    return [r async for r in ledger.query(*args, **kwargs)]


# -- InMemoryUsageLedger --


@pytest.mark.unit
class TestInMemoryUsageLedger:
    @pytest.mark.asyncio
    async def test_sum_cost_is_day_bounded(self, ledger: InMemoryUsageLedger, sample_org_id: UUID) -> None:
        day_start = datetime(2026, 3, 10, tzinfo=UTC)
        await ledger.append(_record(sample_org_id, "1.00", day_start))
        await ledger.append(_record(sample_org_id, "2.50", _NOON))
        await ledger.append(_record(sample_org_id, "7.00", day_start + timedelta(days=1)))
        await ledger.append(_record(sample_org_id, "9.00", day_start - timedelta(microseconds=1)))
        assert await ledger.sum_cost(sample_org_id, _DAY) == Decimal("3.50")

    @pytest.mark.asyncio
    async def test_sum_cost_isolates_orgs(self, ledger: InMemoryUsageLedger, sample_org_id: UUID) -> None:
        await ledger.append(_record(uuid4(), "5.00", _NOON))
        assert await ledger.sum_cost(sample_org_id, _DAY) == Decimal("0")

    @pytest.mark.asyncio
    async def test_query_half_open_and_ordered(self, ledger: InMemoryUsageLedger, sample_org_id: UUID) -> None:
        later = _record(sample_org_id, "0.02", _NOON + timedelta(minutes=5))
        earlier = _record(sample_org_id, "0.01", _NOON)
        at_end = _record(sample_org_id, "0.03", _NOON + timedelta(hours=1))
        for r in (later, earlier, at_end):
            await ledger.append(r)

        rows = await _collect(ledger, sample_org_id, _NOON, _NOON + timedelta(hours=1))
        assert [r.id for r in rows] == [earlier.id, later.id]

    @pytest.mark.asyncio
    async def test_query_filters(self, ledger: InMemoryUsageLedger, sample_org_id: UUID) -> None:
        await ledger.append(_record(sample_org_id, "0.01", _NOON, provider="openai"))
        await ledger.append(_record(sample_org_id, "0.01", _NOON, provider="anthropic", model="claude"))
        await ledger.append(_record(uuid4(), "0.01", _NOON, provider="anthropic", model="claude"))

        end = _NOON + timedelta(hours=1)
        assert len(await _collect(ledger, sample_org_id, _NOON, end, provider="anthropic")) == 1
        assert len(await _collect(ledger, None, _NOON, end, model="claude")) == 2

    @pytest.mark.asyncio
    async def test_count(self, ledger: InMemoryUsageLedger, sample_org_id: UUID) -> None:
        await ledger.append(_record(sample_org_id, "0.01", _NOON))
        await ledger.append(_record(sample_org_id, "0.01", _NOON + timedelta(hours=3)))
        assert await ledger.count(sample_org_id, _NOON, _NOON + timedelta(hours=1)) == 1


# -- PgUsageLedger --


@pytest.mark.unit
class TestPgUsageLedger:
    @pytest.mark.asyncio
    async def test_append_maps_record(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        ledger = PgUsageLedger(session_factory=FakeSessionFactory(session))
        record = _record(sample_org_id, "0.02", _NOON)

        await ledger.append(record)

        assert session.committed
        row = session.added[0]
        assert isinstance(row, UsageLedgerModel)
        assert row.id == record.id
        assert row.estimated_cost == Decimal("0.02")
        assert row.provider == "openai"

    @pytest.mark.asyncio
    async def test_sum_cost_converts_to_decimal(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        session.set_execute_result(scalar_value=Decimal("4.25"))
        ledger = PgUsageLedger(session_factory=FakeSessionFactory(session))
        assert await ledger.sum_cost(sample_org_id, _DAY) == Decimal("4.25")

    @pytest.mark.asyncio
    async def test_sum_cost_null_is_zero(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        session.set_execute_result(scalar_value=None)
        ledger = PgUsageLedger(session_factory=FakeSessionFactory(session))
        assert await ledger.sum_cost(sample_org_id, _DAY) == Decimal("0")

    @pytest.mark.asyncio
    async def test_query_revalidates_rows(self, sample_org_id: UUID) -> None:
        row = FakeOrmRow(
            id=uuid4(),
            org_id=sample_org_id,
            user_id=None,
            provider="openai",
            model="gpt-4o",
            task_category="chat",
            agent_type=None,
            input_tokens=10,
            output_tokens=None,
            estimated_cost=Decimal("0.01"),
            latency_ms=120.0,
            success=True,
            error_message=None,
            created_at=_NOON,
        )
        session = FakeAsyncSession()
        session.set_scalars_result([row])
        ledger = PgUsageLedger(session_factory=FakeSessionFactory(session))

        rows = await _collect(ledger, sample_org_id, _NOON, _NOON + timedelta(hours=1))
        assert len(rows) == 1
        assert rows[0].output_tokens == 0
        assert rows[0].task_category == "chat"

    @pytest.mark.asyncio
    async def test_count(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        session.set_execute_result(scalar_value=3)
        ledger = PgUsageLedger(session_factory=FakeSessionFactory(session))
        assert await ledger.count(sample_org_id, _NOON, _NOON + timedelta(hours=1)) == 3

    @pytest.mark.asyncio
    async def test_driver_errors_become_store_unavailable(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession(fail_with=OperationalError("SELECT 1", {}, Exception("down")))
        ledger = PgUsageLedger(session_factory=FakeSessionFactory(session))

        with pytest.raises(StoreUnavailableError) as exc_info:
            await ledger.append(_record(sample_org_id, "0.01", _NOON))
        assert exc_info.value.store_name == "usage_ledger"

        with pytest.raises(StoreUnavailableError):
            await ledger.sum_cost(sample_org_id, _DAY)
        with pytest.raises(StoreUnavailableError):
            await _collect(ledger, sample_org_id, _NOON, _NOON + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_os_errors_become_store_unavailable(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession(fail_with=ConnectionRefusedError("refused"))
        ledger = PgUsageLedger(session_factory=FakeSessionFactory(session))
        with pytest.raises(StoreUnavailableError):
            await ledger.count(sample_org_id, _NOON, _NOON + timedelta(hours=1))
