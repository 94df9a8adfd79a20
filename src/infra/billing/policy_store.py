"""Per-organization policy store adapters.

- InMemoryPolicyStore: dict of immutable Policy objects
- PgPolicyStore: ai_policy table, upsert on save

Policies are replaced wholesale. Concurrent writers resolve last-writer-wins.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from src.ports.policy_store_port import PolicyStorePort
from src.shared.errors import PolicyNotFoundError, StoreUnavailableError
from src.shared.types import Policy, TaskOverride

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from src.infra.models import PolicyModel

_STORE_NAME = "policy_store"


class InMemoryPolicyStore(PolicyStorePort):
    """In-memory policy store for unit testing."""

    def __init__(self, policies: list[Policy] | None = None) -> None:
        self._policies: dict[UUID, Policy] = {p.org_id: p for p in policies or []}

    async def get(self, org_id: UUID) -> Policy:
        policy = self._policies.get(org_id)
        if policy is None:
            raise PolicyNotFoundError(org_id)
        return policy

    async def save(self, policy: Policy) -> None:
        self._policies[policy.org_id] = policy

    async def list_org_ids(self) -> list[UUID]:
        return list(self._policies)


class PgPolicyStore(PolicyStorePort):
    """PostgreSQL-backed policy store using SQLAlchemy."""

    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, org_id: UUID) -> Policy:
        from src.infra.models import PolicyModel

        stmt = sa.select(PolicyModel).where(PolicyModel.org_id == org_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"policy read failed: {exc}") from exc

        if row is None:
            raise PolicyNotFoundError(org_id)
        return _orm_to_domain(row)

    async def save(self, policy: Policy) -> None:
        from src.infra.models import PolicyModel

        values = {
            "org_id": policy.org_id,
            "max_request_cost": policy.max_request_cost,
            "max_daily_cost": policy.max_daily_cost,
            "allowed_providers": sorted(policy.allowed_providers),
            "min_alpha": policy.min_alpha,
            "max_alpha": policy.max_alpha,
            "task_overrides": {k: v.to_dict() for k, v in policy.task_overrides.items()},
            "updated_at": policy.updated_at,
        }
        stmt = pg_insert(PolicyModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[PolicyModel.org_id],
            set_={k: v for k, v in values.items() if k != "org_id"},
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"policy write failed: {exc}") from exc

    async def list_org_ids(self) -> list[UUID]:
        from src.infra.models import PolicyModel

        stmt = sa.select(PolicyModel.org_id).order_by(PolicyModel.org_id)
        try:
            async with self._session_factory() as session:
                result = await session.scalars(stmt)
                return list(result.all())
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(_STORE_NAME, f"policy listing failed: {exc}") from exc


def _orm_to_domain(row: PolicyModel) -> Policy:
    """Convert a PolicyModel ORM row to a validated Policy."""
    return Policy(
        org_id=row.org_id,
        max_request_cost=row.max_request_cost,
        max_daily_cost=row.max_daily_cost,
        allowed_providers=frozenset(row.allowed_providers or []),
        min_alpha=row.min_alpha,
        max_alpha=row.max_alpha,
        task_overrides={k: TaskOverride.from_dict(v) for k, v in (row.task_overrides or {}).items()},
        updated_at=row.updated_at,
    )
