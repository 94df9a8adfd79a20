"""Usage ledger adapters.

- InMemoryUsageLedger: process-local list, for unit tests and single-process dev
- PgUsageLedger: ai_usage_ledger table via SQLAlchemy async

Both satisfy UsageLedgerPort. Rows are re-validated into UsageRecord on
read, so a corrupt row surfaces as InvalidInputError rather than bad math.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from src.ports.usage_ledger_port import UsageLedgerPort
from src.shared.errors import StoreUnavailableError
from src.shared.types import UsageRecord, utc_day_bounds

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import date, datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from src.infra.models import UsageLedgerModel

logger = logging.getLogger(__name__)

_STORE_NAME = "usage_ledger"


class InMemoryUsageLedger(UsageLedgerPort):
    """In-memory ledger. Production uses PgUsageLedger."""

    def __init__(self) -> None:
        self._records: list[UsageRecord] = []

    async def append(self, record: UsageRecord) -> None:
        self._records.append(record)

    async def sum_cost(self, org_id: UUID, day: date) -> Decimal:
        start, end = utc_day_bounds(day)
        return sum(
            (
                r.estimated_cost
                for r in self._records
                if r.org_id == org_id and start <= r.created_at < end
            ),
            Decimal("0"),
        )

    async def query(
        self,
        org_id: UUID | None,
        start: datetime,
        end: datetime,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator[UsageRecord]:
        # Snapshot before yielding: appends during iteration are not visible.
        matching = [
            r
            for r in self._records
            if (org_id is None or r.org_id == org_id)
            and start <= r.created_at < end
            and (provider is None or r.provider == provider)
            and (model is None or r.model == model)
        ]
        matching.sort(key=lambda r: r.created_at)
        for record in matching:
            yield record

    async def count(self, org_id: UUID, start: datetime, end: datetime) -> int:
        return sum(1 for r in self._records if r.org_id == org_id and start <= r.created_at < end)

    def __len__(self) -> int:
        return len(self._records)


class PgUsageLedger(UsageLedgerPort):
    """PostgreSQL-backed ledger using SQLAlchemy.

    Driver and SQL errors are wrapped in StoreUnavailableError so callers
    handle a single failure type regardless of backend.
    """

    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, record: UsageRecord) -> None:
        from src.infra.models import UsageLedgerModel

        row = UsageLedgerModel(
            id=record.id,
            org_id=record.org_id,
            user_id=record.user_id,
            provider=record.provider,
            model=record.model,
            task_category=record.task_category,
            agent_type=record.agent_type,
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            estimated_cost=record.estimated_cost,
            latency_ms=record.latency_ms,
            success=record.success,
            error_message=record.error_message,
            created_at=record.created_at,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"ledger append failed: {exc}") from exc

    async def sum_cost(self, org_id: UUID, day: date) -> Decimal:
        from src.infra.models import UsageLedgerModel

        start, end = utc_day_bounds(day)
        stmt = sa.select(sa.func.coalesce(sa.func.sum(UsageLedgerModel.estimated_cost), 0)).where(
            UsageLedgerModel.org_id == org_id,
            UsageLedgerModel.created_at >= start,
            UsageLedgerModel.created_at < end,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                total = result.scalar_one()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"ledger sum failed: {exc}") from exc
        return Decimal(str(total or 0))

    async def query(
        self,
        org_id: UUID | None,
        start: datetime,
        end: datetime,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator[UsageRecord]:
        from src.infra.models import UsageLedgerModel

        stmt = sa.select(UsageLedgerModel).where(
            UsageLedgerModel.created_at >= start,
            UsageLedgerModel.created_at < end,
        )
        if org_id is not None:
            stmt = stmt.where(UsageLedgerModel.org_id == org_id)
        if provider is not None:
            stmt = stmt.where(UsageLedgerModel.provider == provider)
        if model is not None:
            stmt = stmt.where(UsageLedgerModel.model == model)
        stmt = stmt.order_by(UsageLedgerModel.created_at, UsageLedgerModel.id)

        try:
            async with self._session_factory() as session:
                result = await session.scalars(stmt)
                rows = result.all()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"ledger query failed: {exc}") from exc

        for row in rows:
            yield _orm_to_domain(row)

    async def count(self, org_id: UUID, start: datetime, end: datetime) -> int:
        from src.infra.models import UsageLedgerModel

        stmt = (
            sa.select(sa.func.count())
            .select_from(UsageLedgerModel)
            .where(
                UsageLedgerModel.org_id == org_id,
                UsageLedgerModel.created_at >= start,
                UsageLedgerModel.created_at < end,
            )
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return int(result.scalar_one() or 0)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"ledger count failed: {exc}") from exc


def _orm_to_domain(row: UsageLedgerModel) -> UsageRecord:
    """Convert a UsageLedgerModel ORM row to a validated UsageRecord."""
    return UsageRecord(
        id=row.id,
        org_id=row.org_id,
        user_id=row.user_id,
        provider=row.provider,
        model=row.model,
        task_category=row.task_category,
        agent_type=row.agent_type,
        input_tokens=row.input_tokens or 0,
        output_tokens=row.output_tokens or 0,
        estimated_cost=row.estimated_cost,
        latency_ms=row.latency_ms,
        success=row.success,
        error_message=row.error_message,
        created_at=row.created_at,
    )
