"""Adaptation run audit log adapters.

- InMemoryAdaptationLog: list of results, newest last
- PgAdaptationLog: ai_adaptation_runs table, nested lists stored as JSONB
"""

from __future__ import annotations

from dataclasses import asdict
from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from src.ports.adaptation_log_port import AdaptationLogPort
from src.shared.errors import StoreUnavailableError
from src.shared.types import (
    AdaptationResult,
    AlphaAdjustment,
    ProviderDisablement,
    ProviderEnablement,
)

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from src.infra.models import AdaptationRunModel

_STORE_NAME = "adaptation_log"


class InMemoryAdaptationLog(AdaptationLogPort):
    """In-memory adaptation log for unit testing."""

    def __init__(self) -> None:
        self._results: list[AdaptationResult] = []

    async def write(self, result: AdaptationResult) -> None:
        self._results.append(result)

    async def list_recent(self, org_id: UUID, limit: int = 20) -> list[AdaptationResult]:
        matching = [r for r in self._results if r.org_id == org_id]
        matching.sort(key=lambda r: r.created_at, reverse=True)
        return matching[:limit]


class PgAdaptationLog(AdaptationLogPort):
    """PostgreSQL-backed adaptation log using SQLAlchemy."""

    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def write(self, result: AdaptationResult) -> None:
        from src.infra.models import AdaptationRunModel

        row = AdaptationRunModel(
            id=result.id,
            org_id=result.org_id,
            alpha_adjustments=[asdict(a) for a in result.alpha_adjustments],
            disablements=[asdict(d) for d in result.disablements],
            enablements=[asdict(e) for e in result.enablements],
            recommendations=list(result.recommendations),
            created_at=result.created_at,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"adaptation log write failed: {exc}") from exc

    async def list_recent(self, org_id: UUID, limit: int = 20) -> list[AdaptationResult]:
        from src.infra.models import AdaptationRunModel

        stmt = (
            sa.select(AdaptationRunModel)
            .where(AdaptationRunModel.org_id == org_id)
            .order_by(AdaptationRunModel.created_at.desc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                result = await session.scalars(stmt)
                rows = result.all()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"adaptation log read failed: {exc}") from exc
        return [_orm_to_domain(row) for row in rows]


def _orm_to_domain(row: AdaptationRunModel) -> AdaptationResult:
    """Convert an AdaptationRunModel ORM row to an AdaptationResult."""
    return AdaptationResult(
        id=row.id,
        org_id=row.org_id,
        alpha_adjustments=[AlphaAdjustment(**a) for a in row.alpha_adjustments or []],
        disablements=[ProviderDisablement(**d) for d in row.disablements or []],
        enablements=[ProviderEnablement(**e) for e in row.enablements or []],
        recommendations=list(row.recommendations or []),
        created_at=row.created_at,
    )
